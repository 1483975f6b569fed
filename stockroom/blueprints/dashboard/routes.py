"""
Dashboard (JSON, can_view_dashboard).

- GET /dashboard    one summary: request counts by status, the approval and
                    stock queues, stock levels, open alerts, recent movements

A section is only included when the current user may see the data behind it.
Request counts cover every request for users allowed to list them all,
otherwise only the user's own requests.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable

from flask import Blueprint, jsonify
from flask_login import current_user, login_required
from sqlalchemy import func, select

from ... import stock
from ...extensions import db
from ...models import (
    ALERT_LEVELS,
    REQUEST_STATUSES,
    STATUS_APPROVED,
    STATUS_PENDING_APPROVAL,
    STATUS_PROCESSING_STOCK,
    STOCK_STATUSES,
    Request,
    StockAlert,
    StockItem,
    StockMovement,
)
from ...security import authorize, permission_required
from ...utils import read_with_retry

dashboard_bp = Blueprint("dashboard", __name__, url_prefix="/dashboard")

RECENT_MOVEMENTS = 10


def _counts(stmt, keys: Iterable[str]) -> Dict[str, int]:
    """Run a (key, count) GROUP BY and fill in zeros for missing keys."""
    counts = {key: 0 for key in keys}
    for key, total in db.session.execute(stmt):
        counts[key] = int(total)
    return counts


def _summary(user) -> Dict[str, Any]:
    sees_all = bool(authorize(user, "list", "requests"))
    by_status = select(Request.status, func.count(Request.id)).group_by(Request.status)
    if not sees_all:
        by_status = by_status.where(Request.requester_id == user.id)

    data: Dict[str, Any] = {
        "scope": "all" if sees_all else "own",
        "requests_by_status": _counts(by_status, REQUEST_STATUSES),
    }

    if authorize(user, "approve", "requests"):
        # Own requests are never in the approver's queue
        data["approval_queue"] = db.session.scalar(
            select(func.count(Request.id)).where(
                Request.status == STATUS_PENDING_APPROVAL,
                Request.requester_id != user.id,
            )
        )

    if authorize(user, "stock_accept", "requests"):
        stock_stage = (STATUS_APPROVED, STATUS_PROCESSING_STOCK)
        data["stock_queue"] = _counts(
            select(Request.status, func.count(Request.id))
            .where(Request.status.in_(stock_stage))
            .group_by(Request.status),
            stock_stage,
        )

    if authorize(user, "view", "stock"):
        low = stock.items_query(low_only=True).order_by(None).subquery()
        data["stock"] = {
            "items_by_status": _counts(
                select(StockItem.status, func.count(StockItem.id)).group_by(StockItem.status),
                STOCK_STATUSES,
            ),
            "low_stock_items": db.session.scalar(select(func.count()).select_from(low)),
        }

    if authorize(user, "view", "alerts"):
        data["open_alerts"] = _counts(
            select(StockAlert.level, func.count(StockAlert.id))
            .where(StockAlert.acknowledged.is_(False))
            .group_by(StockAlert.level),
            ALERT_LEVELS,
        )

    if authorize(user, "receive", "stock"):
        movements = db.session.scalars(
            select(StockMovement)
            .order_by(StockMovement.created_at.desc(), StockMovement.id.desc())
            .limit(RECENT_MOVEMENTS)
        )
        data["recent_movements"] = [movement.to_dict() for movement in movements]

    return data


@dashboard_bp.get("")
@login_required
@permission_required("view", "dashboard")
def summary():
    user = current_user._get_current_object()
    return jsonify({"dashboard": read_with_retry(lambda: _summary(user))})
