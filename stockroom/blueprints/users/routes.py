"""
User Management (JSON, can_manage_users).

Rules enforced:
- Users are never deleted, only deactivated.
- A role change re-derives every capability flag and ceiling from the role
  profile; explicit flag/ceiling overrides in the same call are applied after.
- Only an admin may grant the admin role or modify an admin account.
- Other user managers only manage technicians, analysts, interns and
  trainees, and can only grant capabilities and ceilings they hold themselves.
- Nobody can change their own role, capabilities or ceilings, or deactivate
  themselves.

Changes are logged (before/after) through the application logger.
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required
from sqlalchemy import or_, select

from ...errors import AuthorizationError, NotFoundError, ValidationError
from ...extensions import db
from ...models import ROLES, User, _money, _to_decimal
from ...profiles import CAPABILITY_FLAGS, apply_profile
from ...security import is_admin, permission_required
from ...utils import json_body, page_args, page_payload, parse_decimal, parse_optional_int, read_with_retry, unit_of_work

logger = logging.getLogger(__name__)

users_bp = Blueprint("users", __name__, url_prefix="/users")

PROFILE_FIELDS = ("full_name", "email", "department")
ACCESS_FIELDS = ("role", "capabilities", "max_request_value", "max_return_days")

# Roles a non-admin user manager may manage and assign.
MANAGED_ROLES = ("technician", "analyst", "intern", "trainee")


def _get_user(user_id: int) -> User:
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFoundError("User not found.", payload={"user_id": user_id})
    return user


def _guard_user_management(target: User | None, new_role: str | None, data: Dict[str, Any]) -> None:
    """
    Who may manage whom.

    - Nobody changes their own ACCESS_FIELDS.
    - Only an admin may touch admin accounts or hand out the admin role.
    - Other user managers only manage (and only assign) the MANAGED_ROLES,
      and never grant a capability or a ceiling above their own.
    """
    actor = current_user
    is_self = target is not None and target.id == actor.id
    if is_self and any(field in data for field in ACCESS_FIELDS):
        raise AuthorizationError("self_action_forbidden", "You cannot change your own access rights.")

    if is_admin():
        return
    if new_role == "admin" or (target is not None and target.role == "admin"):
        raise AuthorizationError("not_permitted", "Only an admin can manage admin accounts.")
    if target is not None and not is_self and target.role not in MANAGED_ROLES:
        raise AuthorizationError("not_permitted", f"You can only manage these roles: {', '.join(MANAGED_ROLES)}.")
    if new_role is not None and new_role not in MANAGED_ROLES:
        raise AuthorizationError("not_permitted", f"You can only assign these roles: {', '.join(MANAGED_ROLES)}.")

    flags = data.get("capabilities")
    if isinstance(flags, dict):
        withheld = sorted(
            flag
            for flag, value in flags.items()
            if flag in CAPABILITY_FLAGS and value is True and not getattr(actor, flag, False)
        )
        if withheld:
            raise AuthorizationError(
                "not_permitted", f"You cannot grant capabilities you do not hold: {', '.join(withheld)}."
            )

    value = parse_decimal(data.get("max_request_value"))
    if value is not None and value > _to_decimal(actor.max_request_value):
        raise AuthorizationError("not_permitted", "You cannot grant a request value ceiling above your own.")
    days = parse_optional_int(data.get("max_return_days"))
    if days is not None and days > (actor.max_return_days or 0):
        raise AuthorizationError("not_permitted", "You cannot grant a return-date ceiling above your own.")


def _parse_role(data: Dict[str, Any], required: bool) -> str | None:
    if "role" not in data:
        if required:
            raise ValidationError(fields={"role": "Required."})
        return None
    role = str(data.get("role") or "").strip()
    if role not in ROLES:
        raise ValidationError(fields={"role": f"Must be one of: {', '.join(ROLES)}."})
    return role


def _apply_overrides(user: User, data: Dict[str, Any]) -> None:
    """Explicit per-user flags and ceilings (applied after the role profile)."""
    errors: Dict[str, str] = {}

    flags = data.get("capabilities") or {}
    if not isinstance(flags, dict):
        raise ValidationError(fields={"capabilities": "Must be an object."})
    for flag, value in flags.items():
        if flag not in CAPABILITY_FLAGS:
            errors[f"capabilities.{flag}"] = "Unknown capability."
        elif not isinstance(value, bool):
            errors[f"capabilities.{flag}"] = "Must be true or false."
        else:
            setattr(user, flag, value)

    if "max_request_value" in data:
        value = parse_decimal(data.get("max_request_value"))
        if value is None or value < 0:
            errors["max_request_value"] = "Must be a non-negative amount."
        else:
            user.max_request_value = _money(value)

    if "max_return_days" in data:
        days = parse_optional_int(data.get("max_return_days"))
        if days is None or days < 0:
            errors["max_return_days"] = "Must be a non-negative integer."
        else:
            user.max_return_days = days

    if errors:
        raise ValidationError(fields=errors)


def _apply_profile_fields(user: User, data: Dict[str, Any]) -> None:
    for field in PROFILE_FIELDS:
        if field in data:
            setattr(user, field, str(data.get(field) or "").strip() or None)
    if user.full_name is None:
        user.full_name = ""

    if user.email:
        with db.session.no_autoflush:
            stmt = select(User.id).where(User.email == user.email)
            if user.id is not None:
                stmt = stmt.where(User.id != user.id)
            clash = db.session.scalar(stmt)
        if clash is not None:
            raise ValidationError(fields={"email": "Already in use."})


# ---------------------------------------------------------------------
# LIST / DETAIL
# ---------------------------------------------------------------------

@users_bp.get("")
@login_required
@permission_required("manage", "users")
def list_users():
    stmt = select(User)
    role = (request.args.get("role") or "").strip()
    if role:
        stmt = stmt.where(User.role == role)
    active = (request.args.get("active") or "").strip().lower()
    if active in {"true", "false"}:
        stmt = stmt.where(User.is_active.is_(active == "true"))
    search = (request.args.get("search") or "").strip()
    if search:
        pattern = f"%{search}%"
        stmt = stmt.where(or_(User.username.ilike(pattern), User.full_name.ilike(pattern)))
    stmt = stmt.order_by(User.username.asc())

    page, per_page = page_args()
    pagination = read_with_retry(lambda: db.paginate(stmt, page=page, per_page=per_page, error_out=False))
    return jsonify(page_payload(pagination, lambda user: user.to_dict()))


@users_bp.get("/<int:user_id>")
@login_required
@permission_required("manage", "users")
def get_user(user_id: int):
    return jsonify({"user": read_with_retry(lambda: _get_user(user_id).to_dict())})


# ---------------------------------------------------------------------
# CREATE
# ---------------------------------------------------------------------

@users_bp.post("")
@login_required
@permission_required("manage", "users")
def create_user():
    """
    Create a new system user.

    Required: username, password, role. Flags/ceilings default to the role profile.
    """
    data = json_body()
    username = str(data.get("username") or "").strip()
    password = str(data.get("password") or "")

    errors: Dict[str, str] = {}
    if not username:
        errors["username"] = "Required."
    if len(password) < 8:
        errors["password"] = "At least 8 characters."
    if errors:
        raise ValidationError(fields=errors)

    role = _parse_role(data, required=True)
    _guard_user_management(None, role, data)

    with unit_of_work():
        if User.query.filter_by(username=username).first():
            raise ValidationError(fields={"username": "Already exists."})

        user = User(username=username, is_active=True)
        user.set_password(password)
        db.session.add(user)
        _apply_profile_fields(user, data)
        apply_profile(user, role)
        _apply_overrides(user, data)

    logger.info("user_created", extra={"user_id": user.id, "role": user.role, "by": current_user.id})
    return jsonify({"user": user.to_dict()}), 201


# ---------------------------------------------------------------------
# UPDATE (role change / overrides / profile / password)
# ---------------------------------------------------------------------

@users_bp.patch("/<int:user_id>")
@login_required
@permission_required("manage", "users")
def update_user(user_id: int):
    data = json_body()
    role = _parse_role(data, required=False)

    with unit_of_work():
        user = _get_user(user_id)
        _guard_user_management(user, role, data)
        before = user.to_dict()

        _apply_profile_fields(user, data)
        if role is not None:
            apply_profile(user, role)
        _apply_overrides(user, data)

        if "is_active" in data:
            if not isinstance(data["is_active"], bool):
                raise ValidationError(fields={"is_active": "Must be true or false."})
            if user.id == current_user.id and not data["is_active"]:
                raise ValidationError(fields={"is_active": "You cannot deactivate yourself."})
            user.is_active = data["is_active"]

        password = data.get("password")
        if password:
            if len(str(password)) < 8:
                raise ValidationError(fields={"password": "At least 8 characters."})
            user.set_password(str(password))

    after = user.to_dict()
    logger.info(
        "user_updated",
        extra={
            "user_id": user.id,
            "by": current_user.id,
            "changes": {k: {"from": before[k], "to": after[k]} for k in after if before.get(k) != after[k]},
        },
    )
    return jsonify({"user": after})


@users_bp.post("/<int:user_id>/deactivate")
@login_required
@permission_required("manage", "users")
def deactivate_user(user_id: int):
    with unit_of_work():
        user = _get_user(user_id)
        _guard_user_management(user, None, {})
        if user.id == current_user.id:
            raise ValidationError(fields={"user_id": "You cannot deactivate yourself."})
        user.is_active = False

    logger.info("user_deactivated", extra={"user_id": user.id, "by": current_user.id})
    return jsonify({"user": user.to_dict()})
