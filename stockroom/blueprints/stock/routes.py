"""
Stock routes (JSON).

- GET  /stock/items                      catalog lookup (quantity, threshold, status)
- GET  /stock/items/<id>                 item + recent movements + open alerts
- POST /stock/items/<id>/receive         inbound movement (stock-capable)
- GET  /stock/alerts                     alert list (?acknowledged=true|false, ?level=)
- POST /stock/alerts/<id>/acknowledge
- POST /stock/alerts/acknowledge-all

Catalog CRUD (creating/editing items) lives outside this service.
"""

from __future__ import annotations

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required
from sqlalchemy import select

from ... import stock
from ...errors import NotFoundError, ValidationError
from ...extensions import db
from ...models import ALERT_LEVELS, STOCK_STATUSES, StockAlert, StockItem, StockMovement
from ...security import permission_required
from ...utils import json_body, page_args, page_payload, read_with_retry, unit_of_work

stock_bp = Blueprint("stock", __name__, url_prefix="/stock")

RECENT_MOVEMENTS = 10


def _bool_arg(name: str) -> bool | None:
    raw = (request.args.get(name) or "").strip().lower()
    if not raw:
        return None
    if raw in {"1", "true", "yes"}:
        return True
    if raw in {"0", "false", "no"}:
        return False
    raise ValidationError(fields={name: "Must be true or false."})


# ============================================================
# ITEMS
# ============================================================

@stock_bp.get("/items")
@login_required
@permission_required("view", "stock")
def list_items():
    status = (request.args.get("status") or "").strip() or None
    if status and status not in STOCK_STATUSES:
        raise ValidationError(fields={"status": f"Must be one of: {', '.join(STOCK_STATUSES)}."})

    stmt = stock.items_query(
        search=(request.args.get("search") or "").strip() or None,
        status=status,
        low_only=bool(_bool_arg("low_only")),
    )
    page, per_page = page_args()
    pagination = read_with_retry(lambda: db.paginate(stmt, page=page, per_page=per_page, error_out=False))
    return jsonify(page_payload(pagination, lambda item: item.to_dict()))


@stock_bp.get("/items/<int:item_id>")
@login_required
@permission_required("view", "stock")
def item_detail(item_id: int):
    def _load():
        item = db.session.get(StockItem, item_id)
        if item is None:
            raise NotFoundError("Stock item not found.", payload={"stock_item_id": item_id})
        movements = db.session.scalars(
            select(StockMovement)
            .where(StockMovement.stock_item_id == item.id)
            .order_by(StockMovement.created_at.desc(), StockMovement.id.desc())
            .limit(RECENT_MOVEMENTS)
        )
        open_alerts = db.session.scalars(
            stock.alerts_query(acknowledged=False).where(StockAlert.stock_item_id == item.id)
        )
        data = item.to_dict()
        data["movements"] = [m.to_dict() for m in movements]
        data["open_alerts"] = [a.to_dict() for a in open_alerts]
        return data

    return jsonify({"item": read_with_retry(_load)})


@stock_bp.post("/items/<int:item_id>/receive")
@login_required
@permission_required("receive", "stock")
def receive_item(item_id: int):
    """Inbound movement, e.g. a supplier delivery."""
    data = json_body()
    note = str(data.get("note") or "").strip() or None
    with unit_of_work():
        item = stock.receive(item_id, data.get("quantity"), actor=current_user._get_current_object(), note=note)
    return jsonify({"item": item.to_dict()})


# ============================================================
# ALERTS
# ============================================================

@stock_bp.get("/alerts")
@login_required
@permission_required("view", "alerts")
def list_alerts():
    level = (request.args.get("level") or "").strip() or None
    if level and level not in ALERT_LEVELS:
        raise ValidationError(fields={"level": f"Must be one of: {', '.join(ALERT_LEVELS)}."})

    stmt = stock.alerts_query(acknowledged=_bool_arg("acknowledged"), level=level)
    page, per_page = page_args()
    pagination = read_with_retry(lambda: db.paginate(stmt, page=page, per_page=per_page, error_out=False))
    return jsonify(page_payload(pagination, lambda alert: alert.to_dict()))


@stock_bp.post("/alerts/<int:alert_id>/acknowledge")
@login_required
@permission_required("acknowledge", "alerts")
def acknowledge_alert(alert_id: int):
    with unit_of_work():
        alert = stock.acknowledge(alert_id, current_user)
    return jsonify({"alert": alert.to_dict()})


@stock_bp.post("/alerts/acknowledge-all")
@login_required
@permission_required("acknowledge", "alerts")
def acknowledge_all_alerts():
    with unit_of_work():
        count = stock.acknowledge_all(current_user)
    return jsonify({"acknowledged": count})
