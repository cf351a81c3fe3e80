"""Upload queue API routes for dropqueue"""

import json
import threading
import time
from collections import deque
from collections.abc import Generator
from typing import Any

from flask import Blueprint, Response, jsonify, request

from dropqueue.services.models import FileRef
from dropqueue.services.upload_manager import get_upload_manager

queue_bp = Blueprint("queue", __name__)

# Seconds between keep-alive comments on an idle event stream
SSE_KEEPALIVE_SECONDS = 15.0
SSE_POLL_SECONDS = 0.1


@queue_bp.route("", methods=["GET"])
def get_queue() -> tuple[Response, int]:
    """Get the current queue snapshot.

    Returns:
        JSON with jobs, counts, active_count, errors and selected IDs
    """
    return jsonify(get_upload_manager().snapshot()), 200


@queue_bp.route("/files", methods=["POST"])
def enqueue_files() -> tuple[Response, int]:
    """Add dropped files to the upload queue.

    Accepts multipart/form-data with one or more ``files`` fields, or JSON
    ``{"file_paths": [...]}`` naming local files.

    Returns:
        JSON with accepted jobs and dropped duplicates (202 Accepted)
    """
    manager = get_upload_manager()

    if request.files:
        uploads = [f for f in request.files.getlist("files") if f.filename]
        if not uploads:
            return jsonify({"error": "No files provided"}), 400
        result = manager.enqueue(FileRef.from_upload(f) for f in uploads)
    elif request.is_json:
        data = request.get_json(silent=True) or {}
        file_paths = data.get("file_paths")
        if not file_paths or not isinstance(file_paths, list):
            return jsonify({"error": "No files provided"}), 400
        result = manager.enqueue_paths(str(p) for p in file_paths)
    else:
        return jsonify({"error": "No files provided"}), 400

    return jsonify(result.to_dict()), 202


@queue_bp.route("/<job_id>/retry", methods=["POST"])
def retry_job(job_id: str) -> tuple[Response, int]:
    """Re-queue one failed job.

    Returns:
        JSON with the updated job, 404 if unknown, 409 if the job is not failed
    """
    manager = get_upload_manager()
    if manager.get_job(job_id) is None:
        return jsonify({"error": "Job not found"}), 404

    if not manager.retry(job_id):
        return jsonify({"error": "Only failed jobs can be retried"}), 409

    job = manager.get_job(job_id)
    return jsonify({"success": True, "job": job.to_dict() if job else None}), 200


@queue_bp.route("/<job_id>", methods=["DELETE"])
def remove_job(job_id: str) -> tuple[Response, int]:
    """Remove one job from the queue, whatever its status."""
    manager = get_upload_manager()
    if not manager.remove(job_id):
        return jsonify({"error": "Job not found"}), 404
    return jsonify({"success": True, "job_id": job_id}), 200


@queue_bp.route("/<job_id>/select", methods=["POST"])
def toggle_selection(job_id: str) -> tuple[Response, int]:
    """Toggle bulk-action selection of one job."""
    selected = get_upload_manager().toggle_selection(job_id)
    if selected is None:
        return jsonify({"error": "Job not found"}), 404
    return jsonify({"job_id": job_id, "selected": selected}), 200


@queue_bp.route("/selection/retry", methods=["POST"])
def retry_selected() -> tuple[Response, int]:
    """Re-queue every selected failed job."""
    retried = get_upload_manager().retry_selected()
    return jsonify({"success": True, "retried": retried}), 200


@queue_bp.route("/selection/remove", methods=["POST"])
def remove_selected() -> tuple[Response, int]:
    """Remove every selected job."""
    removed = get_upload_manager().remove_selected()
    return jsonify({"success": True, "removed": removed}), 200


@queue_bp.route("/selection", methods=["DELETE"])
def clear_selection() -> tuple[Response, int]:
    """Deselect everything."""
    get_upload_manager().clear_selection()
    return jsonify({"success": True}), 200


@queue_bp.route("/errors", methods=["DELETE"])
def dismiss_errors() -> tuple[Response, int]:
    """Dismiss the aggregate error banner."""
    dismissed = get_upload_manager().dismiss_errors()
    return jsonify({"success": True, "dismissed": dismissed}), 200


@queue_bp.route("/events", methods=["GET"])
def stream_events() -> Response:
    """Stream queue snapshots via Server-Sent Events.

    The first event is the current snapshot; one event follows every change.

    Returns:
        SSE stream of snapshot dicts
    """
    manager = get_upload_manager()

    def generate() -> Generator[str, None, None]:
        # Per-client buffer filled from the scheduler thread
        queue: deque[dict[str, Any]] = deque()
        lock = threading.Lock()

        def on_change(data: dict[str, Any]) -> None:
            with lock:
                queue.append(data)

        manager.subscribe(on_change)
        try:
            yield f"data: {json.dumps(manager.snapshot())}\n\n"

            last_sent = time.monotonic()
            while True:
                with lock:
                    pending = list(queue)
                    queue.clear()
                if pending:
                    # Only the newest snapshot matters; older ones are superseded.
                    yield f"data: {json.dumps(pending[-1])}\n\n"
                    last_sent = time.monotonic()
                elif time.monotonic() - last_sent >= SSE_KEEPALIVE_SECONDS:
                    yield ": keep-alive\n\n"
                    last_sent = time.monotonic()

                time.sleep(SSE_POLL_SECONDS)
        finally:
            manager.unsubscribe(on_change)

    return Response(
        generate(),
        mimetype="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
