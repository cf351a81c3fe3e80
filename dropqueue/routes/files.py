"""Remote file browsing API routes for dropqueue"""

from flask import Blueprint, Response, jsonify, request

from dropqueue.config import get_settings
from dropqueue.services import api_client
from dropqueue.services.errors import RemoteServiceError
from dropqueue.services.log_service import get_log_service

files_bp = Blueprint("files", __name__)

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100


@files_bp.route("", methods=["GET"])
def list_files() -> tuple[Response, int]:
    """List files stored by the remote service.

    Query parameters:
        page: 1-based page number (default: 1)
        limit: Page size (default: 10, max: 100)
        search: Filter by name or type

    Returns:
        JSON with files and pagination, 502 if the remote call fails
    """
    try:
        page = max(1, int(request.args.get("page", "1")))
        limit = max(1, min(MAX_PAGE_SIZE, int(request.args.get("limit", DEFAULT_PAGE_SIZE))))
    except ValueError:
        return jsonify({"error": "page and limit must be integers"}), 400
    search = request.args.get("search", "").strip()

    settings = get_settings()
    try:
        result = api_client.list_remote_files(
            settings.remote_base_url,
            page=page,
            limit=limit,
            search=search,
            timeout=settings.request_timeout_seconds,
        )
    except RemoteServiceError as e:
        return jsonify({"error": e.message}), 502

    return jsonify(result), 200


@files_bp.route("/<file_id>", methods=["DELETE"])
def delete_file(file_id: str) -> tuple[Response, int]:
    """Delete one stored file on the remote service."""
    settings = get_settings()
    log = get_log_service()

    try:
        api_client.delete_remote_file(
            settings.remote_base_url,
            file_id,
            timeout=settings.request_timeout_seconds,
        )
    except RemoteServiceError as e:
        log.error(
            "files",
            "remote_delete_failed",
            f"Failed to delete file {file_id}: {e.message}",
            {"file_id": file_id, "error": e.message, "status_code": e.status_code},
        )
        return jsonify({"success": False, "error": e.message}), 502

    log.info("files", "remote_file_deleted", f"Deleted file {file_id}", {"file_id": file_id})
    return jsonify({"success": True, "message": "File deleted successfully"}), 200
