"""
stockroom/stock.py

Stock reservation service: the only code that changes StockItem.quantity/status.

- reserve(item, qty): outbound. Item row locked FOR UPDATE; requires status
  "available" and enough quantity; quantity 0 -> status "reserved".
- release(item, qty): inbound. Increments quantity and restores "available".
- receive(item, qty): inbound delivery from a supplier (a release with no request).

IMPORTANT:
- Everything here runs in the CALLER's transaction: nothing commits.
  A delivery and the stock it consumes succeed or fail together.
- Every mutation writes a StockMovement and recomputes the alert level. A
  StockAlert is created only if no unacknowledged alert of the same level
  exists for the item; new alerts are queued for the alert sink.
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional, Union

from flask import current_app, has_app_context
from sqlalchemy import func, or_, select, update

from .errors import ConflictError, NotFoundError, ValidationError
from .extensions import db
from .models import (
    ALERT_CRITICAL,
    ALERT_LOW,
    ALERT_ZERO,
    MOVEMENT_INBOUND,
    MOVEMENT_OUTBOUND,
    STOCK_AVAILABLE,
    STOCK_RESERVED,
    StockAlert,
    StockItem,
    StockMovement,
    utcnow,
)
from . import notifications

logger = logging.getLogger(__name__)

DEFAULT_CRITICAL_QUANTITY = 2


def _critical_quantity() -> int:
    if has_app_context():
        return int(current_app.config.get("STOCK_CRITICAL_QUANTITY", DEFAULT_CRITICAL_QUANTITY))
    return DEFAULT_CRITICAL_QUANTITY


def alert_level_for(quantity: int, min_quantity: int, critical: Optional[int] = None) -> Optional[str]:
    """
    none (q > threshold), zero (q == 0), critical (q <= cutoff), low (q <= threshold).
    """
    quantity = int(quantity or 0)
    if quantity > int(min_quantity or 0):
        return None
    if quantity == 0:
        return ALERT_ZERO
    if quantity <= (_critical_quantity() if critical is None else critical):
        return ALERT_CRITICAL
    return ALERT_LOW


def _positive_quantity(qty: Any) -> int:
    try:
        value = int(qty)
    except (TypeError, ValueError):
        raise ValidationError(fields={"quantity": "Must be an integer."})
    if value <= 0:
        raise ValidationError(fields={"quantity": "Must be greater than zero."})
    return value


def lock_item(item: Union[StockItem, int]) -> StockItem:
    """Load (or reload) the item row with SELECT ... FOR UPDATE."""
    item_id = item.id if isinstance(item, StockItem) else int(item)
    locked = db.session.get(StockItem, item_id, with_for_update=True, populate_existing=True)
    if locked is None:
        raise NotFoundError("Stock item not found.", payload={"stock_item_id": item_id})
    return locked


def _record_movement(item: StockItem, direction: str, qty: int, actor: Any, request: Any, note: Optional[str]):
    db.session.add(
        StockMovement(
            stock_item_id=item.id,
            request_id=getattr(request, "id", None),
            actor_id=getattr(actor, "id", None),
            direction=direction,
            quantity=qty,
            resulting_quantity=item.quantity,
            note=note,
        )
    )


# ---------------------------------------------------------------------
# Reservation
# ---------------------------------------------------------------------
def reserve(
    item: Union[StockItem, int],
    qty: Any,
    *,
    actor: Any = None,
    request: Any = None,
    note: Optional[str] = None,
) -> StockItem:
    qty = _positive_quantity(qty)
    item = lock_item(item)

    if item.status != STOCK_AVAILABLE:
        raise ConflictError(
            f"Stock item '{item.name}' is not available.",
            code="item_unavailable",
            current_status=item.status,
            expected_status=STOCK_AVAILABLE,
            payload={"stock_item_id": item.id},
        )

    if item.quantity < qty:
        raise ConflictError(
            f"Insufficient stock for '{item.name}'.",
            code="insufficient_stock",
            payload={
                "stock_item_id": item.id,
                "requested": qty,
                "available": item.quantity,
                "shortfall": qty - item.quantity,
            },
        )

    item.quantity -= qty
    if item.quantity == 0:
        item.status = STOCK_RESERVED

    _record_movement(item, MOVEMENT_OUTBOUND, qty, actor, request, note)
    refresh_alerts(item)
    logger.info("stock_reserved", extra={"stock_item_id": item.id, "quantity": qty, "remaining": item.quantity})
    return item


def release(
    item: Union[StockItem, int],
    qty: Any,
    *,
    actor: Any = None,
    request: Any = None,
    note: Optional[str] = None,
) -> StockItem:
    qty = _positive_quantity(qty)
    item = lock_item(item)

    item.quantity += qty
    item.status = STOCK_AVAILABLE

    _record_movement(item, MOVEMENT_INBOUND, qty, actor, request, note)
    refresh_alerts(item)
    logger.info("stock_released", extra={"stock_item_id": item.id, "quantity": qty, "remaining": item.quantity})
    return item


def receive(item: Union[StockItem, int], qty: Any, *, actor: Any = None, note: Optional[str] = None) -> StockItem:
    """Inbound movement not tied to a request (supplier delivery)."""
    return release(item, qty, actor=actor, note=note or "received")


# ---------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------
def _alert_message(item: StockItem, level: str) -> str:
    if level == ALERT_ZERO:
        return f"{item.name} is out of stock (minimum {item.min_quantity})."
    return f"{item.name} is {level} on stock: {item.quantity} left (minimum {item.min_quantity})."


def refresh_alerts(item: StockItem) -> Optional[StockAlert]:
    """Create a StockAlert for the item's current level unless an open one exists."""
    level = alert_level_for(item.quantity, item.min_quantity)
    if level is None:
        return None

    open_alert = db.session.scalar(
        select(StockAlert.id).where(
            StockAlert.stock_item_id == item.id,
            StockAlert.level == level,
            StockAlert.acknowledged.is_(False),
        )
    )
    if open_alert is not None:
        return None

    alert = StockAlert(
        stock_item_id=item.id,
        level=level,
        quantity=item.quantity,
        min_quantity=item.min_quantity,
        message=_alert_message(item, level),
    )
    alert.stock_item = item
    db.session.add(alert)
    db.session.flush()

    notifications.enqueue(notifications.StockAlertRaised(alert=alert.to_dict()))
    return alert


def check_all_alerts() -> List[StockAlert]:
    """Recompute alert levels for every item (CLI / scheduled use)."""
    created: List[StockAlert] = []
    item_ids = list(db.session.scalars(select(StockItem.id).order_by(StockItem.id)))
    for item_id in item_ids:
        alert = refresh_alerts(lock_item(item_id))
        if alert is not None:
            created.append(alert)
    return created


def alerts_query(acknowledged: Optional[bool] = None, level: Optional[str] = None):
    stmt = select(StockAlert)
    if acknowledged is not None:
        stmt = stmt.where(StockAlert.acknowledged.is_(acknowledged))
    if level:
        stmt = stmt.where(StockAlert.level == level)
    return stmt.order_by(StockAlert.created_at.desc(), StockAlert.id.desc())


def acknowledge(alert_id: int, user: Any) -> StockAlert:
    alert = db.session.get(StockAlert, alert_id, with_for_update=True)
    if alert is None:
        raise NotFoundError("Alert not found.", payload={"alert_id": alert_id})
    if not alert.acknowledged:
        alert.acknowledged = True
        alert.acknowledged_at = utcnow()
        alert.acknowledged_by_id = user.id
    return alert


def acknowledge_all(user: Any) -> int:
    result = db.session.execute(
        update(StockAlert)
        .where(StockAlert.acknowledged.is_(False))
        .values(acknowledged=True, acknowledged_at=utcnow(), acknowledged_by_id=user.id)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


# ---------------------------------------------------------------------
# Catalog lookup (read-only)
# ---------------------------------------------------------------------
def items_query(search: Optional[str] = None, status: Optional[str] = None, low_only: bool = False):
    stmt = select(StockItem)
    if search:
        pattern = f"%{search.strip()}%"
        stmt = stmt.where(
            or_(
                StockItem.name.ilike(pattern),
                StockItem.serial_number.ilike(pattern),
                StockItem.asset_tag.ilike(pattern),
                StockItem.category.ilike(pattern),
            )
        )
    if status:
        stmt = stmt.where(StockItem.status == status)
    if low_only:
        stmt = stmt.where(StockItem.quantity <= StockItem.min_quantity)
    return stmt.order_by(func.lower(StockItem.name), StockItem.id)


def availability(item: Optional[StockItem], wanted: int) -> dict:
    """Availability snapshot of a stock-backed line (no locking)."""
    if item is None:
        return {"stock_backed": False}
    return {
        "stock_backed": True,
        "stock_item_id": item.id,
        "on_hand": item.quantity,
        "status": item.status,
        "sufficient": item.status == STOCK_AVAILABLE and item.quantity >= int(wanted or 0),
        "alert_level": alert_level_for(item.quantity, item.min_quantity),
    }
