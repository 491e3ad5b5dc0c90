from flask import Flask
from .auth import auth_bp
from .rpa import rpa_bp


def register_blueprints(app: Flask) -> None:
    app.register_blueprint(auth_bp, url_prefix="/api/auth")
    app.register_blueprint(rpa_bp, url_prefix="/api/rpa")
