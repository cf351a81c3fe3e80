"""Flask application factory for the dropqueue upload client."""

import os

from flask import Flask, Response, jsonify

from dropqueue.config import get_package_version, get_settings


def create_app() -> Flask:
    """Create and configure the Flask application."""
    app = Flask(__name__)

    settings = get_settings()
    app.config["SECRET_KEY"] = os.environ.get("SECRET_KEY", "dev-secret-key-change-in-production")
    app.config["MAX_CONTENT_LENGTH"] = 2 * 1024 * 1024 * 1024  # 2 GB per drop

    # Store settings in app config for easy access
    app.config["SETTINGS"] = settings

    from dropqueue.routes.files import files_bp
    from dropqueue.routes.logs import logs_bp
    from dropqueue.routes.queue import queue_bp
    from dropqueue.routes.settings import settings_bp

    app.register_blueprint(queue_bp, url_prefix="/api/queue")
    app.register_blueprint(files_bp, url_prefix="/api/files")
    app.register_blueprint(settings_bp, url_prefix="/api/settings")
    app.register_blueprint(logs_bp, url_prefix="/api/logs")

    @app.route("/health")
    def health() -> tuple[Response, int]:
        return jsonify({"status": "ok", "name": settings.display_name}), 200

    from dropqueue.services.log_service import get_log_service

    log = get_log_service()
    log.info(
        "app",
        "app_started",
        f"Application started (v{get_package_version()})",
        {"version": get_package_version()},
    )

    return app
