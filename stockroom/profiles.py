"""
stockroom/profiles.py

Role profiles: the default capability flags and request ceilings of each role.

IMPORTANT:
- apply_profile() OVERWRITES every flag and ceiling. A role change therefore
  re-derives the whole profile; explicit per-user overrides must be applied
  after it.
- A blank role has no profile. It is stored as-is and never upgraded;
  the authorization engine denies it with `profile_unset`.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict

from .models import ROLES, User

CAPABILITY_FLAGS = (
    "can_view",
    "can_request",
    "can_register",
    "can_edit",
    "can_approve",
    "can_manage_users",
    "can_view_dashboard",
    "full_reports",
    "stock_handler",
    "receive_stock_alerts",
    "full_history",
)

# Roles that may cancel any non-terminal request.
ELEVATED_ROLES = frozenset({"admin", "stock_admin"})

_UNLIMITED_VALUE = Decimal("999999.00")


def _flags(*enabled: str) -> Dict[str, bool]:
    return {flag: flag in enabled for flag in CAPABILITY_FLAGS}


_SUPERVISOR_FLAGS = (
    "can_view",
    "can_request",
    "can_register",
    "can_edit",
    "can_approve",
    "can_manage_users",
    "can_view_dashboard",
    "full_history",
)
_STAFF_FLAGS = (
    "can_view",
    "can_request",
    "can_register",
    "can_edit",
    "can_view_dashboard",
    "full_reports",
    "full_history",
)

ROLE_PROFILES: Dict[str, Dict[str, Any]] = {
    "admin": {
        "flags": _flags(*CAPABILITY_FLAGS),
        "max_request_value": _UNLIMITED_VALUE,
        "max_return_days": 365,
    },
    "stock_admin": {
        "flags": _flags(
            "can_view",
            "can_register",
            "can_edit",
            "can_view_dashboard",
            "stock_handler",
            "receive_stock_alerts",
            "full_history",
        ),
        "max_request_value": _UNLIMITED_VALUE,
        "max_return_days": 365,
    },
    "coordinator": {
        "flags": _flags(*_SUPERVISOR_FLAGS),
        "max_request_value": _UNLIMITED_VALUE,
        "max_return_days": 365,
    },
    "manager": {
        "flags": _flags(*_SUPERVISOR_FLAGS, "full_reports"),
        "max_request_value": _UNLIMITED_VALUE,
        "max_return_days": 365,
    },
    "technician": {
        "flags": _flags(*_STAFF_FLAGS),
        "max_request_value": Decimal("2000.00"),
        "max_return_days": 45,
    },
    "analyst": {
        "flags": _flags(*_STAFF_FLAGS),
        "max_request_value": Decimal("2000.00"),
        "max_return_days": 45,
    },
    "intern": {
        "flags": _flags("can_view", "can_request"),
        "max_request_value": Decimal("300.00"),
        "max_return_days": 15,
    },
    "trainee": {
        "flags": _flags("can_view", "can_request"),
        "max_request_value": Decimal("200.00"),
        "max_return_days": 15,
    },
}

if set(ROLE_PROFILES) != set(ROLES):
    raise RuntimeError("ROLE_PROFILES must cover exactly the roles in models.ROLES")


def profile_for(role: str | None) -> Dict[str, Any] | None:
    """Return the profile for a role, or None for a blank/unknown role."""
    return ROLE_PROFILES.get((role or "").strip())


def apply_profile(user: User, role: str | None = None) -> User:
    """
    Set the user's role (optional) and re-derive all flags and ceilings from it.

    Unknown roles raise ValueError. A blank role clears every flag.
    """
    if role is not None:
        role = role.strip()
        if role and role not in ROLE_PROFILES:
            raise ValueError(f"Unknown role: {role}")
        user.role = role

    profile = profile_for(user.role)
    if profile is None:
        for flag in CAPABILITY_FLAGS:
            setattr(user, flag, False)
        user.max_request_value = Decimal("0.00")
        user.max_return_days = 0
        return user

    for flag, value in profile["flags"].items():
        setattr(user, flag, value)
    user.max_request_value = profile["max_request_value"]
    user.max_return_days = profile["max_return_days"]
    return user
