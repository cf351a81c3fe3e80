"""Settings API routes for dropqueue"""

from flask import Blueprint, Response, jsonify, request

from dropqueue.config import get_package_name, get_package_version, get_settings
from dropqueue.services.log_service import get_log_service

settings_bp = Blueprint("settings", __name__)

ALLOWED_KEYS = {
    "remote_base_url",
    "max_concurrent_uploads",
    "pass_delay_seconds",
    "request_timeout_seconds",
    "log_directory",
    "display_name",
}

# Keys read when the upload manager is built; changes apply after a restart
RESTART_KEYS = {"max_concurrent_uploads", "pass_delay_seconds", "request_timeout_seconds"}


def _validate(data: dict) -> str | None:
    """Return an error message for out-of-range numeric settings."""
    try:
        if "max_concurrent_uploads" in data and int(data["max_concurrent_uploads"]) < 1:
            return "max_concurrent_uploads must be at least 1"
        if "pass_delay_seconds" in data and float(data["pass_delay_seconds"]) < 0:
            return "pass_delay_seconds must not be negative"
        if "request_timeout_seconds" in data and float(data["request_timeout_seconds"]) <= 0:
            return "request_timeout_seconds must be positive"
    except (TypeError, ValueError):
        return "Numeric settings must be numbers"
    return None


@settings_bp.route("", methods=["GET"])
def get_all_settings() -> tuple[Response, int]:
    """Get all current settings.

    Returns:
        JSON response with all settings
    """
    settings = get_settings()
    return jsonify(settings.all()), 200


@settings_bp.route("", methods=["PUT"])
def update_settings() -> tuple[Response, int]:
    """Update settings.

    Request body:
        JSON object with settings to update

    Returns:
        JSON response with updated settings
    """
    if not request.is_json:
        return jsonify({"error": "JSON body required"}), 400

    data = request.get_json(silent=True)
    if not data:
        return jsonify({"error": "Empty body"}), 400

    filtered_data = {k: v for k, v in data.items() if k in ALLOWED_KEYS}
    if not filtered_data:
        return jsonify({"error": "No valid settings provided"}), 400

    error = _validate(filtered_data)
    if error:
        return jsonify({"error": error}), 400

    settings = get_settings()
    settings.update(filtered_data)

    log = get_log_service()
    log.info(
        "settings",
        "settings_updated",
        f"Updated settings: {', '.join(filtered_data.keys())}",
        {
            "changed_keys": list(filtered_data.keys()),
            "restart_required": sorted(RESTART_KEYS & filtered_data.keys()),
        },
    )

    return jsonify(settings.all()), 200


@settings_bp.route("/version", methods=["GET"])
def get_version() -> tuple[Response, int]:
    """Get the package name and version."""
    return jsonify({"name": get_package_name(), "version": get_package_version()}), 200
