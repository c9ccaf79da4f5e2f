from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required, login_user, logout_user
from werkzeug.security import check_password_hash, generate_password_hash

from app.core.extensions import db
from app.core.models import User, UserRole

logger = logging.getLogger(__name__)

auth_bp = Blueprint("auth", __name__, url_prefix="/auth")


def _credentials() -> dict:
    payload = request.get_json(silent=True) or {}
    for key in request.form.keys():
        payload.setdefault(key, request.form.get(key))
    return payload


def _user_payload(user: User) -> dict[str, object]:
    return {"id": user.id, "email": user.email, "full_name": user.full_name, "role": user.role.value}


@auth_bp.post("/register")
def register():
    payload = _credentials()
    email = (payload.get("email") or "").strip().lower()
    full_name = (payload.get("full_name") or "").strip()
    password = payload.get("password") or ""
    if not email or not full_name:
        return jsonify({"error": "invalid-input", "message": "Email and full name are required"}), 400
    if len(password) < 8:
        return jsonify({"error": "invalid-input", "message": "Password must have at least 8 characters"}), 400
    if User.query.filter_by(email=email).first():
        return jsonify({"error": "conflict", "message": "Email already registered"}), 409

    # Self-registration always creates applicants; staff accounts come from seeding
    user = User(
        email=email,
        full_name=full_name,
        password_hash=generate_password_hash(password),
        role=UserRole.APPLICANT,
    )
    db.session.add(user)
    db.session.commit()
    login_user(user)
    logger.info("Registered applicant account %s", user.id)
    return jsonify(_user_payload(user)), 201


@auth_bp.post("/login")
def login():
    payload = _credentials()
    email = (payload.get("email") or "").strip().lower()
    password = payload.get("password") or ""
    user = User.query.filter_by(email=email).first()
    if not user or not user.is_active or not check_password_hash(user.password_hash, password):
        return jsonify({"error": "invalid-credentials", "message": "Invalid credentials"}), 401
    login_user(user)
    return jsonify(_user_payload(user))


@auth_bp.post("/logout")
@login_required
def logout():
    logout_user()
    return jsonify({"ok": True})


@auth_bp.get("/me")
@login_required
def me():
    return jsonify(_user_payload(current_user))
