"""
stockroom/audit.py

History recorder for requests (append-only).

Goals:
- Capture WHO did WHAT to WHICH request, with a structured snapshot of the change.
- Store username snapshot to preserve identity even if the username changes later.

IMPORTANT:
- record() ADDS a HistoryEntry to the current SQLAlchemy session.
  The lifecycle controls the transaction boundary, so history and request
  state are committed (or rolled back) together.
- There is no update or delete path for history entries.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select

from .extensions import db
from .models import HistoryEntry, Request

HISTORY_ACTIONS = (
    "create",
    "edit",
    "submit",
    "approve",
    "reject",
    "stock_accept",
    "deliver",
    "stock_reject",
    "cancel",
    "return",
)


def _json_safe(value: Any) -> Any:
    """Convert Decimal/date values (and containers of them) for the JSON column."""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    return value


def diff_fields(before: Dict[str, Any], after: Dict[str, Any], fields: Iterable[str]) -> Dict[str, Dict[str, Any]]:
    """{"field": {"from": old, "to": new}} for every field whose value changed."""
    changes: Dict[str, Dict[str, Any]] = {}
    for field in fields:
        old, new = before.get(field), after.get(field)
        if old != new:
            changes[field] = {"from": _json_safe(old), "to": _json_safe(new)}
    return changes


def record(
    request: Request,
    actor: Any,
    action: str,
    description: str,
    changes: Optional[Dict[str, Any]] = None,
) -> HistoryEntry:
    """Add a HistoryEntry for `request` to the current db session."""
    if action not in HISTORY_ACTIONS:
        raise ValueError(f"Unknown history action: {action}")

    # Needs a flushed request id.
    if request.id is None:
        db.session.flush()

    entry = HistoryEntry(
        request_id=request.id,
        actor_id=actor.id,
        actor_username=getattr(actor, "username", None),
        action=action,
        description=description,
        changes=_json_safe(changes or {}),
    )
    db.session.add(entry)
    return entry


# ---------------------------------------------------------------------
# Read API (audit/export tooling)
# ---------------------------------------------------------------------
def history_for(request_id: int) -> List[HistoryEntry]:
    stmt = (
        select(HistoryEntry)
        .where(HistoryEntry.request_id == request_id)
        .order_by(HistoryEntry.created_at, HistoryEntry.id)
    )
    return list(db.session.scalars(stmt))


def search_history(
    *,
    actor_id: Optional[int] = None,
    action: Optional[str] = None,
    request_id: Optional[int] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
):
    """Select statement for history entries, newest first (paginate with db.paginate)."""
    stmt = select(HistoryEntry)
    if actor_id is not None:
        stmt = stmt.where(HistoryEntry.actor_id == actor_id)
    if action:
        stmt = stmt.where(HistoryEntry.action == action)
    if request_id is not None:
        stmt = stmt.where(HistoryEntry.request_id == request_id)
    if date_from is not None:
        stmt = stmt.where(HistoryEntry.created_at >= date_from)
    if date_to is not None:
        stmt = stmt.where(HistoryEntry.created_at <= date_to)
    return stmt.order_by(HistoryEntry.created_at.desc(), HistoryEntry.id.desc())
