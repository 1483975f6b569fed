"""
stockroom/security.py

Authorization engine: one decision function for every server-side permission check.

    authorize(user, action, resource, context=None) -> Decision

Precedence (first match wins):
0.  profile guards: no user / unknown role -> missing_role,
    blank role -> profile_unset (never upgraded), deactivated -> inactive_user
0b. context guards (only with a target request, and BEFORE the admin bypass):
    approve/reject own request -> self_action_forbidden,
    edit/submit somebody else's request -> ownership_mismatch
1.  admin allows
2.  role-scoped allow-lists by resource prefix (stock_admin). Passing the
    list does not grant; evaluation continues.
3.  capability flag on the user record for (resource, action)
4.  static role -> resource -> action table (bool or predicate over AuthContext);
    a failing predicate -> ownership_mismatch
5.  default deny -> not_permitted

IMPORTANT:
- authorize() is pure: it reads the resolved user record and the context, nothing else.
- Decorators must preserve wrapped function metadata (functools.wraps) to avoid
  Flask endpoint collisions.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from functools import wraps
from typing import Any, Callable, Dict, Optional, Tuple, Union

from flask_login import current_user

from .errors import AuthorizationError
from .profiles import ROLE_PROFILES

logger = logging.getLogger(__name__)


class DenyReason(str, enum.Enum):
    MISSING_ROLE = "missing_role"
    PROFILE_UNSET = "profile_unset"
    INACTIVE_USER = "inactive_user"
    RESOURCE_NOT_IN_ALLOWLIST = "resource_not_in_allowlist"
    OWNERSHIP_MISMATCH = "ownership_mismatch"
    SELF_ACTION_FORBIDDEN = "self_action_forbidden"
    NOT_PERMITTED = "not_permitted"


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: Optional[DenyReason] = None

    def __bool__(self) -> bool:
        return self.allowed


ALLOW = Decision(True)


def _deny(reason: DenyReason) -> Decision:
    return Decision(False, reason)


@dataclass(frozen=True)
class AuthContext:
    """Facts about the target request that predicates may look at."""

    owner_id: Optional[int] = None
    status: Optional[str] = None

    @classmethod
    def for_request(cls, req: Any) -> "AuthContext":
        return cls(owner_id=req.requester_id, status=req.status)


def is_owner(user: Any, ctx: Optional[AuthContext]) -> bool:
    return ctx is not None and ctx.owner_id is not None and ctx.owner_id == user.id


Rule = Union[bool, Callable[[Any, Optional[AuthContext]], bool]]


# ---------------------------------------------------------------------
# Policy data
# ---------------------------------------------------------------------
SELF_FORBIDDEN_ACTIONS = frozenset({"approve", "reject"})
OWNER_ONLY_ACTIONS = frozenset({"edit", "submit"})

# role -> permitted resource prefixes
ROLE_ALLOWLISTS: Dict[str, Tuple[str, ...]] = {
    "stock_admin": (
        "dashboard",
        "requests",
        "stock",
        "items",
        "categories",
        "movements",
        "alerts",
        "history",
    ),
}

# (resource, action) or action -> capability flag that grants it
CAPABILITY_RULES: Dict[Union[Tuple[str, str], str], str] = {
    ("requests", "create"): "can_request",
    ("requests", "edit"): "can_request",
    ("requests", "submit"): "can_request",
    ("requests", "list"): "full_history",
    ("requests", "approve"): "can_approve",
    ("requests", "reject"): "can_approve",
    ("requests", "stock_accept"): "stock_handler",
    ("requests", "deliver"): "stock_handler",
    ("requests", "stock_reject"): "stock_handler",
    ("requests", "return"): "stock_handler",
    ("stock", "view"): "can_view",
    ("stock", "receive"): "stock_handler",
    ("alerts", "view"): "receive_stock_alerts",
    ("alerts", "acknowledge"): "receive_stock_alerts",
    ("history", "view"): "full_history",
    ("dashboard", "view"): "can_view_dashboard",
    "manage": "can_manage_users",
}

_REQUESTER_RULES: Dict[str, Rule] = {
    "view": True,
    "list_mine": True,
    "cancel": is_owner,
}
_RESTRICTED_RULES: Dict[str, Rule] = {
    "view": is_owner,
    "list_mine": True,
    "cancel": is_owner,
}

POLICY_TABLE: Dict[str, Dict[str, Dict[str, Rule]]] = {
    "stock_admin": {
        "requests": {"view": True, "list": True, "cancel": True},
    },
    "coordinator": {"requests": _REQUESTER_RULES},
    "manager": {"requests": _REQUESTER_RULES},
    "technician": {"requests": _REQUESTER_RULES},
    "analyst": {"requests": _REQUESTER_RULES},
    "intern": {"requests": _RESTRICTED_RULES},
    "trainee": {"requests": _RESTRICTED_RULES},
}


def _resource_root(resource: str) -> str:
    return (resource or "").split(".", 1)[0].split("/", 1)[0]


def _capability_flag(resource: str, action: str) -> Optional[str]:
    return CAPABILITY_RULES.get((_resource_root(resource), action)) or CAPABILITY_RULES.get(action)


# ---------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------
def authorize(user: Any, action: str, resource: str, context: Optional[AuthContext] = None) -> Decision:
    """Resolve (user, action, resource, context) into an allow/deny Decision."""
    if user is None or getattr(user, "role", None) is None:
        return _deny(DenyReason.MISSING_ROLE)

    role = str(user.role).strip()
    if not role:
        return _deny(DenyReason.PROFILE_UNSET)
    if role not in ROLE_PROFILES:
        return _deny(DenyReason.MISSING_ROLE)
    if not getattr(user, "is_active", False):
        return _deny(DenyReason.INACTIVE_USER)

    if context is not None and context.owner_id is not None:
        if action in SELF_FORBIDDEN_ACTIONS and context.owner_id == user.id:
            return _deny(DenyReason.SELF_ACTION_FORBIDDEN)
        if action in OWNER_ONLY_ACTIONS and context.owner_id != user.id:
            return _deny(DenyReason.OWNERSHIP_MISMATCH)

    if role == "admin":
        return ALLOW

    root = _resource_root(resource)
    allowlist = ROLE_ALLOWLISTS.get(role)
    if allowlist is not None and root not in allowlist:
        return _deny(DenyReason.RESOURCE_NOT_IN_ALLOWLIST)

    flag = _capability_flag(resource, action)
    if flag and getattr(user, flag, False):
        return ALLOW

    rule = POLICY_TABLE.get(role, {}).get(root, {}).get(action)
    if rule is True:
        return ALLOW
    if callable(rule):
        return ALLOW if rule(user, context) else _deny(DenyReason.OWNERSHIP_MISMATCH)

    return _deny(DenyReason.NOT_PERMITTED)


def require(user: Any, action: str, resource: str, context: Optional[AuthContext] = None) -> None:
    """authorize() or raise AuthorizationError carrying the deny reason."""
    decision = authorize(user, action, resource, context)
    if decision.allowed:
        return
    logger.warning(
        "authorization_denied",
        extra={
            "user_id": getattr(user, "id", None),
            "action": action,
            "resource": resource,
            "reason": decision.reason.value,
        },
    )
    raise AuthorizationError(decision.reason.value)


def is_admin(user: Any = None) -> bool:
    user = current_user if user is None else user
    return bool(getattr(user, "is_authenticated", False) and getattr(user, "role", None) == "admin")


def permission_required(action: str, resource: str) -> Callable[..., Any]:
    """
    Decorator factory: context-free permission for the current user.

    Usage:
        @bp.get("/pending-approval")
        @login_required
        @permission_required("approve", "requests")
        def pending_approval(): ...

    Per-request checks (ownership, self-action) are done by the lifecycle
    with an AuthContext.
    """
    def decorator(view_func: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(view_func)
        def wrapper(*args: Any, **kwargs: Any):
            require(current_user, action, resource)
            return view_func(*args, **kwargs)

        return wrapper

    return decorator
