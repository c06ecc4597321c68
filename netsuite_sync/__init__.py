import os

from flask import Flask, Response, jsonify, request
from werkzeug.exceptions import HTTPException

from netsuite_sync.config import Config
from netsuite_sync.db import close_db, init_db
from netsuite_sync.db_migrations import register_db_cli
from netsuite_sync.observability import (
    configure_json_logging,
    ensure_request_id,
    mark_request_start,
    metrics_snapshot,
    observe_response,
    prometheus_metrics_text,
    queue_health,
)
from netsuite_sync.security import apply_security_headers, enforce_rate_limit


def create_app(config_class=Config):
    app = Flask(__name__)
    app.config.from_object(config_class)
    configure_json_logging(app)

    _ensure_database_dir(app)
    _register_error_handlers(app)
    _register_security(app)
    _register_blueprints(app)
    _register_health(app)
    register_db_cli(app)
    _maybe_init_schema(app)

    _register_scheduler(app)
    app.teardown_appcontext(close_db)
    return app


def _ensure_database_dir(app: Flask) -> None:
    database_dir = app.config.get("DATABASE_DIR")
    if database_dir:
        os.makedirs(database_dir, exist_ok=True)


def _maybe_init_schema(app: Flask) -> None:
    auto_init = bool(app.config.get("DB_AUTO_INIT", False))
    if app.testing:
        auto_init = True
    if not auto_init:
        return

    flask_env = (os.environ.get("FLASK_ENV", "development") or "development").strip().lower()
    if not app.testing and flask_env != "development":
        app.logger.warning("db_auto_init_ignored", extra={"flask_env": flask_env})
        return

    with app.app_context():
        init_db()


def _register_blueprints(app: Flask) -> None:
    from netsuite_sync.contexts.sync.interfaces.http import netsuite_webhook_bp, sync_admin_bp

    app.register_blueprint(sync_admin_bp)
    app.register_blueprint(netsuite_webhook_bp)


def _register_scheduler(app: Flask) -> None:
    from netsuite_sync.scheduler import start_sync_scheduler

    start_sync_scheduler(app)


def _register_error_handlers(app: Flask) -> None:
    from netsuite_sync.errors import AppError, SystemError

    @app.before_request
    def _ensure_request_id() -> None:
        ensure_request_id()
        mark_request_start()

    @app.after_request
    def _append_request_id(response):
        response.headers["X-Request-Id"] = ensure_request_id()
        response = observe_response(response)
        return apply_security_headers(response)

    def _log_error(error: AppError, request_id: str) -> None:
        log_method = app.logger.error if error.critical else app.logger.warning
        log_method(
            "application_error",
            extra={
                "request_id": request_id,
                "error_code": error.code,
                "http_status": error.http_status,
                "message_key": error.message_key,
                "details": error.details,
                "request_path": request.path,
                "http_method": request.method,
            },
            exc_info=error.critical,
        )

    @app.errorhandler(AppError)
    def _handle_app_error(exc: AppError):
        request_id = ensure_request_id()
        _log_error(exc, request_id)
        response = jsonify(exc.to_response_payload(request_id))
        retry_after = exc.payload.get("retry_after")
        if retry_after is not None:
            response.headers["Retry-After"] = str(retry_after)
        return response, exc.http_status

    @app.errorhandler(Exception)
    def _handle_unexpected(exc: Exception):
        if isinstance(exc, HTTPException):
            return exc

        request_id = ensure_request_id()
        mapped = SystemError(
            code="unexpected_error",
            message_key="unexpected_error",
            http_status=500,
            critical=True,
            details=str(exc),
        )
        app.logger.exception(
            "unexpected_exception",
            extra={
                "request_id": request_id,
                "error_code": mapped.code,
                "request_path": request.path,
                "http_method": request.method,
            },
        )
        return jsonify(mapped.to_response_payload(request_id)), mapped.http_status


def _register_security(app: Flask) -> None:
    @app.before_request
    def _rate_limit_guard() -> None:
        enforce_rate_limit()


def _register_health(app: Flask) -> None:
    @app.route("/health")
    def health():
        from netsuite_sync.db import get_db

        db_path = app.config.get("DB_PATH") or "unknown"
        backend = "postgres" if str(db_path).startswith("postgres") else "sqlite"
        payload = {
            "status": "ok",
            "db": backend,
            "netsuite_mode": app.config.get("NETSUITE_MODE", "simulator"),
            "metrics": {
                "http": metrics_snapshot(),
            },
        }
        try:
            payload["worker"] = queue_health(get_db())
        except Exception:  # noqa: BLE001
            app.logger.exception("health_queue_check_failed")
            payload["status"] = "degraded"
            payload["worker"] = {"worker_status": "unknown"}
        return payload, 200

    @app.route("/metrics")
    def metrics():
        from netsuite_sync.contexts.netsuite.infrastructure.circuit_breaker import netsuite_circuit_snapshot
        from netsuite_sync.db import get_db

        try:
            queue_state = queue_health(get_db())
        except Exception:  # noqa: BLE001
            app.logger.exception("metrics_queue_check_failed")
            queue_state = None
        body = prometheus_metrics_text(queue_state=queue_state, circuit_state=netsuite_circuit_snapshot())
        return Response(body, mimetype="text/plain; version=0.0.4")
