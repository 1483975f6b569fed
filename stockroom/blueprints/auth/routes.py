"""
Authentication Routes (session based, JSON)

Provides:
- POST /auth/login
- POST /auth/logout
- GET  /auth/me
- GET  /auth/csrf-token

Rules:
- Only active users may log in.
- Credentials validated via password hash.
- Mutating calls must carry the CSRF token in the X-CSRFToken header.
"""

import logging

from flask import Blueprint, jsonify
from flask_login import current_user, login_required, login_user, logout_user
from flask_wtf.csrf import generate_csrf

from ...errors import AuthorizationError, ValidationError
from ...models import User
from ...utils import json_body

logger = logging.getLogger(__name__)

auth_bp = Blueprint("auth", __name__, url_prefix="/auth")


# ============================================================
# CSRF
# ============================================================

@auth_bp.get("/csrf-token")
def csrf_token():
    """Token for the X-CSRFToken header of subsequent mutating calls."""
    return jsonify({"csrf_token": generate_csrf()})


# ============================================================
# LOGIN / LOGOUT
# ============================================================

@auth_bp.post("/login")
def login():
    data = json_body()
    username = str(data.get("username") or "").strip()
    password = str(data.get("password") or "")

    if not username or not password:
        raise ValidationError(
            fields={
                key: "Required."
                for key, value in (("username", username), ("password", password))
                if not value
            }
        )

    user = User.query.filter_by(username=username).first()
    if not user or not user.check_password(password):
        logger.warning("login_failed", extra={"username": username})
        raise ValidationError("Invalid username or password.", code="invalid_credentials")

    if not user.is_active:
        raise AuthorizationError("inactive_user", "This account is deactivated.")

    login_user(user)
    logger.info("login", extra={"user_id": user.id})
    return jsonify({"user": user.to_dict(), "csrf_token": generate_csrf()})


@auth_bp.post("/logout")
@login_required
def logout():
    """Log out the current user."""
    logout_user()
    return jsonify({"ok": True})


@auth_bp.get("/me")
@login_required
def me():
    return jsonify({"user": current_user.to_dict()})
