import os
import logging
from datetime import timedelta
from logging.handlers import RotatingFileHandler
from flask import Flask, jsonify
from .extensions import db, jwt
from .settings import AppConfig
from .api import register_blueprints

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def create_app(config: AppConfig | None = None) -> Flask:
    app = Flask(__name__)

    cfg = config or AppConfig.from_env()
    app.config.update(
        SQLALCHEMY_DATABASE_URI=cfg.database_url,
        SQLALCHEMY_TRACK_MODIFICATIONS=False,
        JWT_SECRET_KEY=cfg.jwt_secret_key,
        JWT_ACCESS_TOKEN_EXPIRES=timedelta(minutes=cfg.jwt_access_minutes),
        JWT_DECODE_LEEWAY=10,
        RPA_CONFIG=cfg,
    )
    _configure_logging(app, cfg)

    db.init_app(app)
    jwt.init_app(app)

    register_blueprints(app)

    # Ensure SQLite directory exists and auto-create tables for local dev
    with app.app_context():
        try:
            uri = app.config.get("SQLALCHEMY_DATABASE_URI", "")
            if uri.startswith("sqlite:///"):
                db_path = uri.replace("sqlite:///", "", 1)
                dir_path = os.path.dirname(db_path)
                if dir_path and not os.path.exists(dir_path):
                    os.makedirs(dir_path, exist_ok=True)
            db.create_all()
        except Exception:  # noqa: BLE001
            app.logger.exception("failed to auto-create tables")

    @app.get("/health")
    def health() -> tuple[dict, int]:
        return jsonify({
            "status": "ok",
            "version": os.getenv("APP_VERSION", "0.1.0"),
        }), 200

    return app


def _configure_logging(app: Flask, cfg: AppConfig) -> None:
    """app.logger is the ``rpa_app`` logger, so browser and adapter module
    loggers inherit its level and handlers."""
    level = getattr(logging, (cfg.log_level or "INFO").upper(), logging.INFO)
    app.logger.setLevel(level)
    if cfg.log_file:
        log_dir = os.path.dirname(cfg.log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        already = any(
            isinstance(h, RotatingFileHandler) and h.baseFilename == os.path.abspath(cfg.log_file)
            for h in app.logger.handlers
        )
        if not already:
            handler = RotatingFileHandler(cfg.log_file, maxBytes=5 * 1024 * 1024, backupCount=5, encoding="utf-8")
            handler.setFormatter(logging.Formatter(LOG_FORMAT))
            app.logger.addHandler(handler)
