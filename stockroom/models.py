"""
Stockroom – Domain Models

Entities:
- User (role profile + capability flags + request ceilings)
- StockItem / StockMovement / StockAlert (inventory side)
- Request / RequestItem / HistoryEntry (request lifecycle side)
- RequestSequence (per-year code counter)

IMPORTANT:
- Models are plain data. Derived permissions live in profiles.py/security.py,
  transitions in lifecycle.py, stock mutations in stock.py.
- No persistence hooks: totals and history are explicit steps in the
  lifecycle transaction.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP

from flask_login import UserMixin
from werkzeug.security import generate_password_hash, check_password_hash

from .extensions import db


# ---------------------------------------------------------------------
# Enumerations (stored as strings, guarded by CHECK constraints)
# ---------------------------------------------------------------------
ROLES = (
    "admin",
    "stock_admin",
    "coordinator",
    "manager",
    "technician",
    "analyst",
    "intern",
    "trainee",
)

PRIORITIES = ("low", "medium", "high", "urgent")
REQUEST_KINDS = ("equipment", "material", "software", "maintenance")
FULFILLMENT_MODES = ("from_stock", "new_purchase")

STATUS_DRAFT = "draft"
STATUS_PENDING_APPROVAL = "pending_approval"
STATUS_APPROVED = "approved"
STATUS_REJECTED_BY_APPROVER = "rejected_by_approver"
STATUS_PROCESSING_STOCK = "processing_stock"
STATUS_DELIVERED = "delivered"
STATUS_REJECTED_BY_STOCK = "rejected_by_stock"
STATUS_CANCELLED = "cancelled"

REQUEST_STATUSES = (
    STATUS_DRAFT,
    STATUS_PENDING_APPROVAL,
    STATUS_APPROVED,
    STATUS_REJECTED_BY_APPROVER,
    STATUS_PROCESSING_STOCK,
    STATUS_DELIVERED,
    STATUS_REJECTED_BY_STOCK,
    STATUS_CANCELLED,
)
TERMINAL_STATUSES = frozenset(
    {STATUS_DELIVERED, STATUS_REJECTED_BY_APPROVER, STATUS_REJECTED_BY_STOCK, STATUS_CANCELLED}
)

ITEM_PENDING = "pending"
ITEM_APPROVED = "approved"
ITEM_REJECTED = "rejected"
ITEM_DELIVERED = "delivered"
ITEM_RETURNED = "returned"
ITEM_STATUSES = (ITEM_PENDING, ITEM_APPROVED, ITEM_REJECTED, ITEM_DELIVERED, ITEM_RETURNED)

STOCK_AVAILABLE = "available"
STOCK_IN_USE = "in_use"
STOCK_MAINTENANCE = "maintenance"
STOCK_DISPOSED = "disposed"
STOCK_RESERVED = "reserved"
STOCK_STATUSES = (STOCK_AVAILABLE, STOCK_IN_USE, STOCK_MAINTENANCE, STOCK_DISPOSED, STOCK_RESERVED)

ALERT_LOW = "low"
ALERT_CRITICAL = "critical"
ALERT_ZERO = "zero"
ALERT_LEVELS = (ALERT_LOW, ALERT_CRITICAL, ALERT_ZERO)

MOVEMENT_INBOUND = "inbound"
MOVEMENT_OUTBOUND = "outbound"


def _in_clause(column: str, values) -> str:
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


def utcnow() -> datetime:
    """Naive UTC timestamp (all DateTime columns are stored as naive UTC)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _money(x: Decimal) -> Decimal:
    return x.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def _to_decimal(value) -> Decimal:
    """Convert Numeric/None to Decimal safely."""
    if value is None:
        return Decimal("0.00")
    return Decimal(str(value))


# ---------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------
class User(UserMixin, db.Model):
    """System user. Flags are derived from the role profile (profiles.py)."""

    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)

    username = db.Column(db.String(80), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=False)

    full_name = db.Column(db.String(120), nullable=False, default="")
    email = db.Column(db.String(120), nullable=True, unique=True)
    department = db.Column(db.String(80), nullable=True, index=True, default="IT")

    # Blank role is a legal stored value and means "no access" (never upgraded).
    role = db.Column(db.String(30), nullable=False, default="technician", index=True)

    can_view = db.Column(db.Boolean, default=False, nullable=False)
    can_request = db.Column(db.Boolean, default=False, nullable=False)
    can_register = db.Column(db.Boolean, default=False, nullable=False)
    can_edit = db.Column(db.Boolean, default=False, nullable=False)
    can_approve = db.Column(db.Boolean, default=False, nullable=False)
    can_manage_users = db.Column(db.Boolean, default=False, nullable=False)
    can_view_dashboard = db.Column(db.Boolean, default=False, nullable=False)
    full_reports = db.Column(db.Boolean, default=False, nullable=False)
    stock_handler = db.Column(db.Boolean, default=False, nullable=False)
    receive_stock_alerts = db.Column(db.Boolean, default=False, nullable=False)
    full_history = db.Column(db.Boolean, default=False, nullable=False)

    max_request_value = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    max_return_days = db.Column(db.Integer, nullable=False, default=0)

    is_active = db.Column(db.Boolean, default=True, nullable=False)

    created_at = db.Column(db.DateTime, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    def set_password(self, password: str):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        return check_password_hash(self.password_hash, password)

    def to_dict(self) -> dict:
        from .profiles import CAPABILITY_FLAGS

        data = {
            "id": self.id,
            "username": self.username,
            "full_name": self.full_name,
            "email": self.email,
            "department": self.department,
            "role": self.role,
            "is_active": self.is_active,
            "max_request_value": str(_money(_to_decimal(self.max_request_value))),
            "max_return_days": self.max_return_days,
        }
        data["capabilities"] = {flag: bool(getattr(self, flag)) for flag in CAPABILITY_FLAGS}
        return data

    def __repr__(self):
        return f"<User {self.username}>"


# ---------------------------------------------------------------------
# Inventory
# ---------------------------------------------------------------------
class StockItem(db.Model):
    """Inventory item. Quantity/status are mutated only by stock.py."""

    __tablename__ = "stock_items"

    id = db.Column(db.Integer, primary_key=True)

    name = db.Column(db.String(120), nullable=False, index=True)
    description = db.Column(db.Text, nullable=True)
    category = db.Column(db.String(80), nullable=True, index=True)
    serial_number = db.Column(db.String(100), nullable=True, unique=True)
    asset_tag = db.Column(db.String(50), nullable=True, unique=True)
    location = db.Column(db.String(100), nullable=True)
    unit_value = db.Column(db.Numeric(12, 2), nullable=True)

    quantity = db.Column(db.Integer, nullable=False, default=0)
    min_quantity = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(20), nullable=False, default=STOCK_AVAILABLE, index=True)

    created_at = db.Column(db.DateTime, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        db.CheckConstraint("quantity >= 0", name="ck_stock_quantity_non_negative"),
        db.CheckConstraint("min_quantity >= 0", name="ck_stock_min_non_negative"),
        db.CheckConstraint(_in_clause("status", STOCK_STATUSES), name="ck_stock_status"),
    )

    def to_dict(self) -> dict:
        from .stock import alert_level_for

        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "serial_number": self.serial_number,
            "asset_tag": self.asset_tag,
            "location": self.location,
            "unit_value": str(_money(_to_decimal(self.unit_value))) if self.unit_value is not None else None,
            "quantity": self.quantity,
            "min_quantity": self.min_quantity,
            "status": self.status,
            "alert_level": alert_level_for(self.quantity, self.min_quantity),
        }

    def __repr__(self):
        return f"<StockItem {self.name} qty={self.quantity}>"


class StockMovement(db.Model):
    """Inbound/outbound record written for every stock mutation."""

    __tablename__ = "stock_movements"

    id = db.Column(db.Integer, primary_key=True)

    stock_item_id = db.Column(
        db.Integer,
        db.ForeignKey("stock_items.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    request_id = db.Column(
        db.Integer,
        db.ForeignKey("requests.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    actor_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    direction = db.Column(db.String(10), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    resulting_quantity = db.Column(db.Integer, nullable=False)
    note = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, index=True)

    stock_item = db.relationship("StockItem", backref=db.backref("movements", lazy="dynamic"))

    __table_args__ = (
        db.CheckConstraint(
            _in_clause("direction", (MOVEMENT_INBOUND, MOVEMENT_OUTBOUND)), name="ck_movement_direction"
        ),
        db.CheckConstraint("quantity > 0", name="ck_movement_quantity_positive"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "stock_item_id": self.stock_item_id,
            "request_id": self.request_id,
            "actor_id": self.actor_id,
            "direction": self.direction,
            "quantity": self.quantity,
            "resulting_quantity": self.resulting_quantity,
            "note": self.note,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class StockAlert(db.Model):
    """Derived low-stock fact. Acknowledged explicitly, never deleted."""

    __tablename__ = "stock_alerts"

    id = db.Column(db.Integer, primary_key=True)

    stock_item_id = db.Column(
        db.Integer,
        db.ForeignKey("stock_items.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    level = db.Column(db.String(10), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False)
    min_quantity = db.Column(db.Integer, nullable=False)
    message = db.Column(db.Text, nullable=False)

    acknowledged = db.Column(db.Boolean, default=False, nullable=False, index=True)
    acknowledged_at = db.Column(db.DateTime, nullable=True)
    acknowledged_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, index=True)

    stock_item = db.relationship("StockItem", backref=db.backref("alerts", lazy="dynamic"))

    __table_args__ = (db.CheckConstraint(_in_clause("level", ALERT_LEVELS), name="ck_alert_level"),)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "stock_item_id": self.stock_item_id,
            "item_name": self.stock_item.name if self.stock_item else None,
            "level": self.level,
            "quantity": self.quantity,
            "min_quantity": self.min_quantity,
            "message": self.message,
            "acknowledged": self.acknowledged,
            "acknowledged_at": self.acknowledged_at.isoformat() if self.acknowledged_at else None,
            "acknowledged_by_id": self.acknowledged_by_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


# ---------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------
class RequestSequence(db.Model):
    """Per-year counter behind request codes (locked FOR UPDATE while in use)."""

    __tablename__ = "request_sequences"

    year = db.Column(db.Integer, primary_key=True, autoincrement=False)
    last_value = db.Column(db.Integer, nullable=False, default=0)


class Request(db.Model):
    __tablename__ = "requests"

    id = db.Column(db.Integer, primary_key=True)

    code = db.Column(db.String(50), nullable=False, unique=True, index=True)

    requester_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    approver_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    stock_handler_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)

    priority = db.Column(db.String(10), nullable=False, default="medium", index=True)
    kind = db.Column(db.String(20), nullable=False, default="equipment", index=True)
    fulfillment = db.Column(db.String(20), nullable=False, default="from_stock", index=True)
    status = db.Column(db.String(30), nullable=False, default=STATUS_DRAFT, index=True)

    suggested_supplier = db.Column(db.String(120), nullable=True)
    expected_return_date = db.Column(db.Date, nullable=True)

    total_value = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    total_quantity = db.Column(db.Integer, nullable=False, default=0)

    rejection_reason = db.Column(db.Text, nullable=True)
    stock_notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)
    submitted_at = db.Column(db.DateTime, nullable=True)
    approved_at = db.Column(db.DateTime, nullable=True)
    rejected_at = db.Column(db.DateTime, nullable=True)
    stock_accepted_at = db.Column(db.DateTime, nullable=True)
    delivered_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)

    requester = db.relationship("User", foreign_keys=[requester_id])
    approver = db.relationship("User", foreign_keys=[approver_id])
    stock_handler = db.relationship("User", foreign_keys=[stock_handler_id])

    items = db.relationship(
        "RequestItem",
        back_populates="request",
        cascade="all, delete-orphan",
        order_by="RequestItem.id",
    )

    history = db.relationship(
        "HistoryEntry",
        back_populates="request",
        order_by="HistoryEntry.id",
        lazy="dynamic",
    )

    __table_args__ = (
        db.CheckConstraint(_in_clause("status", REQUEST_STATUSES), name="ck_request_status"),
        db.CheckConstraint(_in_clause("priority", PRIORITIES), name="ck_request_priority"),
        db.CheckConstraint(_in_clause("kind", REQUEST_KINDS), name="ck_request_kind"),
        db.CheckConstraint(_in_clause("fulfillment", FULFILLMENT_MODES), name="ck_request_fulfillment"),
        db.CheckConstraint("total_quantity >= 0", name="ck_request_total_quantity"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def recalc_totals(self):
        total = Decimal("0.00")
        count = 0
        for line in self.items:
            count += int(line.quantity_requested or 0)
            total += line.total_value

        self.total_value = _money(total)
        self.total_quantity = count

    def to_dict(self, include_items: bool = False) -> dict:
        data = {
            "id": self.id,
            "code": self.code,
            "title": self.title,
            "description": self.description,
            "priority": self.priority,
            "kind": self.kind,
            "fulfillment": self.fulfillment,
            "status": self.status,
            "requester_id": self.requester_id,
            "requester_name": self.requester.full_name if self.requester else None,
            "department": self.requester.department if self.requester else None,
            "approver_id": self.approver_id,
            "stock_handler_id": self.stock_handler_id,
            "suggested_supplier": self.suggested_supplier,
            "expected_return_date": (
                self.expected_return_date.isoformat() if self.expected_return_date else None
            ),
            "total_value": str(_money(_to_decimal(self.total_value))),
            "total_quantity": self.total_quantity,
            "rejection_reason": self.rejection_reason,
            "stock_notes": self.stock_notes,
        }
        for stamp in (
            "created_at",
            "updated_at",
            "submitted_at",
            "approved_at",
            "rejected_at",
            "stock_accepted_at",
            "delivered_at",
            "cancelled_at",
        ):
            value = getattr(self, stamp)
            data[stamp] = value.isoformat() if value else None

        if include_items:
            data["items"] = [line.to_dict() for line in self.items]
        return data

    def __repr__(self):
        return f"<Request {self.code} {self.status}>"


class RequestItem(db.Model):
    __tablename__ = "request_items"

    id = db.Column(db.Integer, primary_key=True)

    request_id = db.Column(
        db.Integer,
        db.ForeignKey("requests.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # NULL => free-form line (new purchase)
    stock_item_id = db.Column(
        db.Integer,
        db.ForeignKey("stock_items.id", ondelete="RESTRICT"),
        nullable=True,
        index=True,
    )

    name = db.Column(db.String(255), nullable=False)
    usage_reason = db.Column(db.Text, nullable=True)

    quantity_requested = db.Column(db.Integer, nullable=False, default=1)
    quantity_approved = db.Column(db.Integer, nullable=False, default=0)
    quantity_delivered = db.Column(db.Integer, nullable=False, default=0)
    quantity_returned = db.Column(db.Integer, nullable=False, default=0)

    unit_value = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))

    status = db.Column(db.String(20), nullable=False, default=ITEM_PENDING, index=True)
    approver_note = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow)

    request = db.relationship("Request", back_populates="items")
    stock_item = db.relationship("StockItem")

    __table_args__ = (
        db.CheckConstraint("quantity_requested > 0", name="ck_line_requested_positive"),
        db.CheckConstraint(
            "quantity_approved >= 0 AND quantity_approved <= quantity_requested",
            name="ck_line_approved_range",
        ),
        db.CheckConstraint(
            "quantity_delivered >= 0 AND quantity_delivered <= quantity_approved",
            name="ck_line_delivered_range",
        ),
        db.CheckConstraint(
            "quantity_returned >= 0 AND quantity_returned <= quantity_delivered",
            name="ck_line_returned_range",
        ),
        db.CheckConstraint(_in_clause("status", ITEM_STATUSES), name="ck_line_status"),
    )

    @property
    def is_stock_backed(self) -> bool:
        return self.stock_item_id is not None

    @property
    def total_value(self) -> Decimal:
        if not self.quantity_requested or not self.unit_value:
            return Decimal("0.00")

        return _money(Decimal(int(self.quantity_requested)) * _to_decimal(self.unit_value))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "stock_item_id": self.stock_item_id,
            "name": self.name,
            "usage_reason": self.usage_reason,
            "quantity_requested": self.quantity_requested,
            "quantity_approved": self.quantity_approved,
            "quantity_delivered": self.quantity_delivered,
            "quantity_returned": self.quantity_returned,
            "unit_value": str(_money(_to_decimal(self.unit_value))),
            "total_value": str(self.total_value),
            "status": self.status,
            "approver_note": self.approver_note,
        }


class HistoryEntry(db.Model):
    """Append-only request audit trail (see audit.py)."""

    __tablename__ = "request_history"

    id = db.Column(db.Integer, primary_key=True)

    request_id = db.Column(
        db.Integer,
        db.ForeignKey("requests.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    actor_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)
    actor_username = db.Column(db.String(80), nullable=True)

    action = db.Column(db.String(30), nullable=False, index=True)
    description = db.Column(db.Text, nullable=False)
    changes = db.Column(db.JSON, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, index=True)

    request = db.relationship("Request", back_populates="history")
    actor = db.relationship("User")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "request_id": self.request_id,
            "actor_id": self.actor_id,
            "actor_username": self.actor_username,
            "action": self.action,
            "description": self.description,
            "changes": self.changes or {},
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
