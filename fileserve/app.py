import atexit
import logging
import os
import uuid
from typing import Any, Dict, Optional, Tuple

import click
from flask import Blueprint, Flask, Response, abort, current_app, g, jsonify, request, send_file
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

from .config import load_settings
from .errors import (
    AllocationExhaustedError,
    FileServeError,
    InvalidInputError,
    NotFoundError,
    PermissionDeniedError,
    StorageFaultError,
)
from .gate import RedeemStatus, check_password, redeem
from .logs import RequestAwareLogger, configure_logging, sanitize_log_value
from .registry import delete_file, list_files, register_or_get_file
from .shares import (
    create_share,
    delete_share,
    get_public_share,
    list_shares,
    purge_spent_shares,
)
from .storage import close_storage, init_storage, ping

lifecycle_logger = RequestAwareLogger(logging.getLogger("fileserve.lifecycle"))

limiter = Limiter(key_func=get_remote_address, default_limits=[])

api = Blueprint("fileserve", __name__)

REDEMPTION_STATUS_CODES = {
    RedeemStatus.NOT_FOUND: (404, "share not found"),
    RedeemStatus.UNAUTHORIZED: (401, "invalid password"),
    RedeemStatus.EXPIRED: (403, "share expired"),
    RedeemStatus.QUOTA_EXCEEDED: (403, "download limit reached"),
}

ERROR_STATUS_CODES = (
    (NotFoundError, 404),
    (InvalidInputError, 400),
    (PermissionDeniedError, 403),
    (AllocationExhaustedError, 503),
)


def download_rate_limit_string() -> str:
    value = current_app.config.get("FILESERVE_DOWNLOAD_RATE_LIMIT_PER_MINUTE", 120)
    return f"{value} per minute"


def _json_body() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise InvalidInputError("Request body must be a JSON object")
    return payload


@api.route("/health")
def health_check():
    try:
        healthy = ping()
    except StorageFaultError:
        healthy = False
    if not healthy:
        return jsonify({"status": "unavailable"}), 503
    return jsonify({"status": "ok"})


# --- Public ---


@api.route("/api/share/<slug>")
def public_share(slug: str):
    share = get_public_share(slug)
    if share is None:
        return jsonify({"error": "share not found"}), 404
    return jsonify(share.to_dict())


@api.route("/api/share/<slug>/check", methods=["POST"])
@limiter.limit(download_rate_limit_string)
def check_share_password(slug: str):
    payload = request.get_json(silent=True)
    password = payload.get("password") if isinstance(payload, dict) else None
    status = check_password(slug, password)
    if status is RedeemStatus.ADMITTED:
        return Response(status=204)
    status_code, message = REDEMPTION_STATUS_CODES[status]
    return jsonify({"error": message, "reason": status.value}), status_code


@api.route("/api/download/<slug>")
@limiter.limit(download_rate_limit_string)
def download(slug: str):
    outcome = redeem(slug, request.args.get("password"))
    if not outcome.admitted:
        status_code, message = REDEMPTION_STATUS_CODES[outcome.status]
        return jsonify({"error": message, "reason": outcome.status.value}), status_code

    lifecycle_logger.info(
        "share_download_started slug=%s file=%s",
        sanitize_log_value(slug),
        sanitize_log_value(outcome.display_name),
    )
    try:
        return send_file(
            outcome.path,
            as_attachment=True,
            download_name=outcome.display_name,
        )
    except FileNotFoundError:
        lifecycle_logger.warning(
            "share_download_missing_path slug=%s path=%s",
            sanitize_log_value(slug),
            sanitize_log_value(outcome.path),
        )
        abort(404)
    except OSError as error:
        lifecycle_logger.exception(
            "share_download_error slug=%s path=%s error=%s",
            sanitize_log_value(slug),
            sanitize_log_value(outcome.path),
            str(error),
        )
        abort(500)


# --- Admin ---


@api.route("/admin/shares", methods=["GET"])
def admin_list_shares():
    return jsonify([share.to_dict() for share in list_shares()])


@api.route("/admin/files", methods=["GET"])
def admin_list_files():
    return jsonify([entry.to_dict() for entry in list_files()])


@api.route("/admin/file", methods=["POST"])
def admin_create_file():
    payload = _json_body()
    abs_path = payload.get("abs_path")
    if not isinstance(abs_path, str) or not abs_path.strip():
        raise InvalidInputError("abs_path is required")
    entry = register_or_get_file(abs_path)
    return jsonify(entry.to_dict())


@api.route("/admin/file/<file_id>", methods=["DELETE"])
def admin_delete_file(file_id: str):
    if delete_file(file_id):
        return Response(status=204)
    return jsonify({"error": "file not found"}), 404


@api.route("/admin/share", methods=["POST"])
def admin_create_share():
    payload = _json_body()
    file_id = payload.get("file_id")
    if not isinstance(file_id, str) or not file_id:
        raise InvalidInputError("file_id is required")
    share = create_share(
        file_id,
        expires_at=payload.get("expires_at"),
        max_downloads=payload.get("max_downloads"),
        password=payload.get("password"),
    )
    return jsonify(share.to_dict()), 201


@api.route("/admin/share/<slug>", methods=["DELETE"])
def admin_delete_share(slug: str):
    if delete_share(slug):
        return Response(status=204)
    return jsonify({"error": "share not found"}), 404


# --- Hooks ---


@api.before_app_request
def add_request_id() -> None:
    """Assign a request identifier for downstream logging."""

    g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)


@api.after_app_request
def log_request_completion(response: Response):
    lifecycle_logger.info(
        "request_completed method=%s path=%s status=%d",
        request.method,
        sanitize_log_value(request.path),
        response.status_code,
    )
    return response


@api.after_app_request
def add_response_headers(response: Response):
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    if hasattr(g, "request_id"):
        response.headers["X-Request-ID"] = g.request_id
    return response


def _status_for(error: FileServeError) -> Tuple[int, str]:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_type):
            return status_code, str(error)
    return 500, "internal server error"


@api.app_errorhandler(FileServeError)
def handle_fileserve_error(error: FileServeError):
    status_code, message = _status_for(error)
    if status_code >= 500:
        lifecycle_logger.error(
            "request_failed path=%s error_type=%s error=%s",
            sanitize_log_value(request.path),
            type(error).__name__,
            sanitize_log_value(str(error)),
        )
    return jsonify({"error": message}), status_code


@api.app_errorhandler(429)
def handle_rate_limit(error):  # pragma: no cover - framework hook
    description = getattr(error, "description", "Too many requests")
    return jsonify({"error": "Rate limit exceeded", "message": str(description)}), 429


@api.app_errorhandler(404)
def handle_not_found(error):
    return jsonify({"error": "not found"}), 404


@api.app_errorhandler(500)
def handle_server_error(error):  # pragma: no cover - framework hook
    return jsonify({"error": "internal server error"}), 500


def create_app(settings: Optional[Dict[str, Any]] = None) -> Flask:
    """Build the Flask application and open the shared store."""

    resolved = load_settings()
    if settings:
        resolved.update(settings)

    configure_logging(resolved["log_level"], resolved.get("logs_dir"))

    app = Flask(__name__)
    app.config["FILESERVE_SETTINGS"] = resolved
    app.config["FILESERVE_DOWNLOAD_RATE_LIMIT_PER_MINUTE"] = resolved[
        "download_rate_limit_per_minute"
    ]
    app.config["RATELIMIT_STORAGE_URI"] = resolved["rate_limit_storage"]

    init_storage(
        resolved["db_path"],
        pool_size=resolved["db_pool_size"],
        timeout=resolved["db_timeout_seconds"],
    )
    atexit.register(close_storage)

    limiter.init_app(app)
    app.register_blueprint(api)

    @app.cli.command("purge-shares")
    def purge_shares_command() -> None:
        """Delete expired and fully consumed shares."""

        removed = purge_spent_shares()
        click.echo(f"Removed {removed} share(s).")

    lifecycle_logger.info(
        "app_started db_path=%s pool_size=%d",
        resolved["db_path"],
        resolved["db_pool_size"],
    )
    return app


if __name__ == "__main__":
    create_app().run(host="0.0.0.0", port=int(os.environ.get("PORT", "8080")), debug=False)
