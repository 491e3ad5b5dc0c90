from datetime import timedelta
from flask import Blueprint, current_app, jsonify, request
from flask_jwt_extended import create_access_token


auth_bp = Blueprint("auth", __name__)


@auth_bp.post("/login")
def login():
    payload = request.get_json(silent=True) or {}
    username = (payload.get("username") or "").strip()
    password = payload.get("password") or ""

    cfg = current_app.config["RPA_CONFIG"]
    if username != cfg.admin_username or password != cfg.admin_password:
        current_app.logger.warning("rejected login for %s", username or "<empty>")
        return jsonify({"message": "invalid credentials"}), 401

    claims = {"roles": ["operator"]}
    token = create_access_token(
        identity=username,
        additional_claims=claims,
        expires_delta=timedelta(minutes=cfg.jwt_access_minutes),
    )
    return jsonify({"access_token": token}), 200
