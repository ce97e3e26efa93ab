"""Application factory for the flowqueue workflow service."""
from __future__ import annotations

import logging
import time

from flask import Flask, jsonify
from sqlalchemy.exc import OperationalError

from .config import Config
from .errors import FlowqueueError
from .extensions import cors, db, limiter


def create_app(config_class: type[Config] = Config) -> Flask:
    """Create and configure the Flask application instance."""
    app = Flask(__name__)
    app.config.from_object(config_class)
    log_level = str(app.config.get("LOG_LEVEL", "INFO")).upper()
    app.logger.setLevel(getattr(logging, log_level, logging.INFO))

    db.init_app(app)

    allowed_origins = [
        origin.strip()
        for origin in (app.config.get("CORS_ALLOWED_ORIGINS") or "").split(",")
        if origin.strip()
    ]
    cors.init_app(
        app,
        resources={r"/api/*": {"origins": allowed_origins}},
        allow_headers=["Content-Type", "Authorization", "X-User-Id"],
    )

    limiter.init_app(app)

    from .api.events import bp as events_bp
    from .api.executions import bp as executions_bp
    from .api.health import bp as health_bp
    from .api.jobs import bp as jobs_bp
    from .api.logs import bp as logs_bp
    from .api.usage import bp as usage_bp
    from .api.workflows import bp as workflows_bp

    app.register_blueprint(health_bp, url_prefix="/api")
    app.register_blueprint(logs_bp, url_prefix="/api")
    app.register_blueprint(workflows_bp, url_prefix="/api")
    app.register_blueprint(executions_bp, url_prefix="/api")
    app.register_blueprint(events_bp, url_prefix="/api")
    app.register_blueprint(usage_bp, url_prefix="/api")
    app.register_blueprint(jobs_bp, url_prefix="/api")

    @app.errorhandler(FlowqueueError)
    def handle_flowqueue_error(exc: FlowqueueError):
        if exc.status_code >= 500:
            app.logger.error("Request failed: %s", exc)
        return jsonify(exc.to_dict()), exc.status_code

    from .workflow.admission import EXTENSION_KEY, AdmissionController
    from .workflow.usage import UsageLimitCache

    app.extensions[EXTENSION_KEY] = AdmissionController(
        UsageLimitCache(float(app.config.get("USAGE_CACHE_TTL_SECONDS", 60))),
        int(app.config.get("MAX_PENDING_JOBS_PER_TENANT", 100)),
    )

    from .cli import register_commands

    register_commands(app)

    with app.app_context():
        # Import models to ensure they are registered with SQLAlchemy before creating tables.
        from .models import execution, job, logs, usage, workflow  # noqa: F401

        _initialize_database(app)

    return app


def _initialize_database(app: Flask) -> None:
    """Initialize the database with retry logic to handle delayed availability."""

    max_retries = int(app.config.get("DB_INIT_MAX_RETRIES", 30))
    retry_delay = float(app.config.get("DB_INIT_RETRY_DELAY", 2))

    for attempt in range(1, max_retries + 1):
        try:
            db.create_all()
            return
        except OperationalError as exc:
            if attempt >= max_retries:
                app.logger.exception("Database initialization failed after %s attempts.", attempt)
                raise

            app.logger.warning(
                "Database initialization attempt %s/%s failed: %s", attempt, max_retries, exc
            )
            time.sleep(retry_delay)


__all__ = ["Config", "create_app"]
