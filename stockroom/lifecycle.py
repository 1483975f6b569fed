"""
stockroom/lifecycle.py

Request lifecycle manager (fixed chain: requester -> approver -> stock).

    draft -> pending_approval -> approved | rejected_by_approver
    approved -> processing_stock -> delivered | rejected_by_stock
    approved -> rejected_by_stock
    draft | pending_approval -> cancelled            (requester)
    any non-terminal -> cancelled                    (admin, stock_admin)

Every operation follows the same steps inside ONE transaction:
    lock request row -> authorize -> check state -> validate input
    -> mutate request + lines (+ stock) -> recompute totals -> append history
    -> commit -> dispatch notifications

IMPORTANT:
- Nothing here is a persistence hook: totals and history are explicit steps.
- Any exception rolls the whole action back (history, stock and state alike).
- A write that hits a DB timeout is surfaced as InternalError, never retried.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import delete, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload

from . import audit, notifications, stock
from .errors import ConflictError, NotFoundError, ValidationError
from .extensions import db
from .models import (
    FULFILLMENT_MODES,
    ITEM_APPROVED,
    ITEM_DELIVERED,
    ITEM_PENDING,
    ITEM_REJECTED,
    ITEM_RETURNED,
    PRIORITIES,
    REQUEST_KINDS,
    REQUEST_STATUSES,
    STATUS_APPROVED,
    STATUS_CANCELLED,
    STATUS_DELIVERED,
    STATUS_DRAFT,
    STATUS_PENDING_APPROVAL,
    STATUS_PROCESSING_STOCK,
    STATUS_REJECTED_BY_APPROVER,
    STATUS_REJECTED_BY_STOCK,
    TERMINAL_STATUSES,
    Request,
    RequestItem,
    StockItem,
    User,
    _money,
    _to_decimal,
    utcnow,
)
from .profiles import ELEVATED_ROLES
from .security import AuthContext, require
from .sequences import next_code
from .utils import parse_date, parse_decimal, parse_optional_int, unit_of_work

logger = logging.getLogger(__name__)

RESOURCE = "requests"

NON_TERMINAL_STATUSES = tuple(s for s in REQUEST_STATUSES if s not in TERMINAL_STATUSES)

HEADER_FIELDS = (
    "title",
    "description",
    "priority",
    "kind",
    "fulfillment",
    "suggested_supplier",
    "expected_return_date",
)


# ---------------------------------------------------------------------
# Transaction plumbing
# ---------------------------------------------------------------------
def _announce(req: Request, actor: User, action: str) -> None:
    db.session.flush()
    notifications.enqueue(
        notifications.RequestTransitioned(
            action=action,
            request=req.to_dict(include_items=True),
            actor_id=actor.id,
            actor_username=actor.username,
        )
    )
    logger.info(
        "request_%s",
        action,
        extra={"request_code": req.code, "status": req.status, "actor_id": actor.id},
    )


def _lock_request(request_id: int) -> Request:
    req = db.session.get(Request, request_id, with_for_update=True, populate_existing=True)
    if req is None:
        raise NotFoundError("Request not found.", payload={"request_id": request_id})
    return req


def _authorize(actor: User, action: str, req: Request) -> None:
    require(actor, action, RESOURCE, AuthContext.for_request(req))


def _expect(req: Request, *statuses: str) -> None:
    if req.status not in statuses:
        raise ConflictError(
            f"Request {req.code} is '{req.status}'.",
            code="invalid_state",
            current_status=req.status,
            expected_status=statuses,
        )


# ---------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------
def _clean(value: Any) -> str:
    return str(value or "").strip()


def _reason(data: Dict[str, Any], required: bool) -> Optional[str]:
    reason = _clean(data.get("reason"))
    if required and not reason:
        raise ValidationError("A reason is required.", fields={"reason": "Required."})
    return reason or None


def _parse_header(data: Dict[str, Any], *, partial: bool) -> Dict[str, Any]:
    """Validated header fields. With partial=True only the keys present are returned."""
    errors: Dict[str, str] = {}
    header: Dict[str, Any] = {}

    def present(key: str) -> bool:
        return not partial or key in data

    if present("title"):
        title = _clean(data.get("title"))
        if not title:
            errors["title"] = "Required."
        elif len(title) > 255:
            errors["title"] = "At most 255 characters."
        header["title"] = title

    if present("description"):
        header["description"] = _clean(data.get("description")) or None

    for key, allowed, default in (
        ("priority", PRIORITIES, "medium"),
        ("kind", REQUEST_KINDS, "equipment"),
        ("fulfillment", FULFILLMENT_MODES, "from_stock"),
    ):
        if present(key):
            value = _clean(data.get(key)) or default
            if value not in allowed:
                errors[key] = f"Must be one of: {', '.join(allowed)}."
            header[key] = value

    if present("suggested_supplier"):
        header["suggested_supplier"] = _clean(data.get("suggested_supplier")) or None

    if present("expected_return_date"):
        raw = data.get("expected_return_date")
        parsed = parse_date(raw)
        if raw not in (None, "") and parsed is None:
            errors["expected_return_date"] = "Invalid date (YYYY-MM-DD)."
        header["expected_return_date"] = parsed

    if errors:
        raise ValidationError(fields=errors)
    return header


def _build_lines(raw_items: Any, fulfillment: str) -> List[RequestItem]:
    if raw_items is None:
        return []
    if not isinstance(raw_items, list):
        raise ValidationError(fields={"items": "Must be a list."})

    errors: Dict[str, str] = {}
    lines: List[RequestItem] = []
    for idx, raw in enumerate(raw_items):
        key = f"items[{idx}]"
        if not isinstance(raw, dict):
            errors[key] = "Must be an object."
            continue

        stock_item = None
        stock_item_id = parse_optional_int(raw.get("stock_item_id"))
        if stock_item_id is not None:
            stock_item = db.session.get(StockItem, stock_item_id)
            if stock_item is None:
                errors[f"{key}.stock_item_id"] = "Unknown stock item."
        elif raw.get("stock_item_id") not in (None, ""):
            errors[f"{key}.stock_item_id"] = "Must be an integer."
        elif fulfillment == "from_stock":
            errors[f"{key}.stock_item_id"] = "Required for from_stock requests."

        quantity = parse_optional_int(raw.get("quantity", raw.get("quantity_requested")))
        if quantity is None or quantity <= 0:
            errors[f"{key}.quantity"] = "Must be a positive integer."

        unit_value = parse_decimal(raw.get("unit_value"))
        if raw.get("unit_value") not in (None, "") and unit_value is None:
            errors[f"{key}.unit_value"] = "Invalid amount."
        elif unit_value is not None and unit_value < 0:
            errors[f"{key}.unit_value"] = "Must not be negative."
        if unit_value is None:
            unit_value = _to_decimal(stock_item.unit_value if stock_item is not None else None)

        name = _clean(raw.get("name")) or (stock_item.name if stock_item is not None else "")
        if not name:
            errors[f"{key}.name"] = "Required."

        lines.append(
            RequestItem(
                stock_item_id=stock_item_id,
                name=name,
                usage_reason=_clean(raw.get("usage_reason")) or None,
                quantity_requested=quantity or 0,
                unit_value=_money(unit_value),
                status=ITEM_PENDING,
            )
        )

    if errors:
        raise ValidationError(fields=errors)
    return lines


def _check_stock_backing(req: Request) -> None:
    if req.fulfillment != "from_stock":
        return
    missing = [line.name for line in req.items if line.stock_item_id is None]
    if missing:
        raise ValidationError(
            fields={"items": f"from_stock requests need a stock item on every line ({', '.join(missing)})."}
        )


def _check_ceilings(actor: User, req: Request) -> None:
    """Requester ceilings: monetary value and return deadline (admin exempt)."""
    if actor.role == "admin":
        return

    errors: Dict[str, str] = {}
    ceiling = _to_decimal(actor.max_request_value)
    if _to_decimal(req.total_value) > ceiling:
        errors["total_value"] = f"Exceeds your request ceiling of {_money(ceiling)}."

    if req.expected_return_date is not None:
        today = utcnow().date()
        if req.expected_return_date < today:
            errors["expected_return_date"] = "Must not be in the past."
        elif req.expected_return_date > today + timedelta(days=int(actor.max_return_days or 0)):
            errors["expected_return_date"] = f"Must be within {actor.max_return_days} days."

    if errors:
        raise ValidationError(fields=errors)


def _line_quantities(raw_items: Any, field: str, req: Request) -> Dict[int, Dict[str, Any]]:
    """Map line id -> {"quantity": int|None, "note": str|None} from [{"id", field, "note"}]."""
    if raw_items is None:
        return {}
    if not isinstance(raw_items, list):
        raise ValidationError(fields={"items": "Must be a list."})

    line_ids = {line.id for line in req.items}
    errors: Dict[str, str] = {}
    result: Dict[int, Dict[str, Any]] = {}
    for idx, raw in enumerate(raw_items):
        key = f"items[{idx}]"
        if not isinstance(raw, dict):
            errors[key] = "Must be an object."
            continue
        line_id = parse_optional_int(raw.get("id"))
        if line_id is None or line_id not in line_ids:
            errors[f"{key}.id"] = "Unknown line item."
            continue
        quantity = parse_optional_int(raw.get(field))
        if raw.get(field) is not None and quantity is None:
            errors[f"{key}.{field}"] = "Must be an integer."
            continue
        result[line_id] = {"quantity": quantity, "note": _clean(raw.get("note")) or None}

    if errors:
        raise ValidationError(fields=errors)
    return result


def _line_states(req: Request) -> List[Dict[str, Any]]:
    return [
        {
            "id": line.id,
            "status": line.status,
            "approved": line.quantity_approved,
            "delivered": line.quantity_delivered,
            "returned": line.quantity_returned,
        }
        for line in req.items
    ]


# ---------------------------------------------------------------------
# Create / edit / submit (requester)
# ---------------------------------------------------------------------
def _is_code_collision(exc: IntegrityError) -> bool:
    message = str(getattr(exc, "orig", exc)).lower()
    return "requests.code" in message or "ix_requests_code" in message


def create_request(actor: User, data: Dict[str, Any]) -> Request:
    require(actor, "create", RESOURCE)
    header = _parse_header(data, partial=False)
    raw_items = data.get("items")

    for attempt in (1, 2):
        try:
            with unit_of_work():
                req = Request(requester_id=actor.id, status=STATUS_DRAFT, **header)
                req.requester = actor
                req.items = _build_lines(raw_items, header["fulfillment"])
                _check_stock_backing(req)
                req.recalc_totals()
                _check_ceilings(actor, req)

                req.code = next_code(resync=attempt > 1)
                db.session.add(req)
                db.session.flush()

                audit.record(
                    req,
                    actor,
                    "create",
                    f"Request {req.code} created with {len(req.items)} item(s).",
                    {
                        "status": {"from": None, "to": STATUS_DRAFT},
                        "items": len(req.items),
                        "total_value": req.total_value,
                    },
                )
                _announce(req, actor, "create")
            return req
        except IntegrityError as exc:
            if not _is_code_collision(exc):
                raise
            if attempt == 2:
                raise ConflictError("Could not allocate a unique request code.", code="duplicate_code") from exc
            logger.warning("request_code_collision_retry")

    raise AssertionError("unreachable")


def edit_request(actor: User, request_id: int, data: Dict[str, Any]) -> Request:
    """Draft only, owner only. "items" (when present) REPLACES the whole line set."""
    with unit_of_work():
        req = _lock_request(request_id)
        _authorize(actor, "edit", req)
        _expect(req, STATUS_DRAFT)

        header = _parse_header(data, partial=True)
        before = {field: getattr(req, field) for field in HEADER_FIELDS}
        before_items = {"count": len(req.items), "total_value": req.total_value}

        for field, value in header.items():
            setattr(req, field, value)

        if "items" in data:
            new_lines = _build_lines(data.get("items"), req.fulfillment)
            # One bulk delete + one bulk insert; no row-by-row churn.
            db.session.execute(
                delete(RequestItem).where(RequestItem.request_id == req.id),
                execution_options={"synchronize_session": "fetch"},
            )
            db.session.expire(req, ["items"])
            for line in new_lines:
                line.request_id = req.id
            db.session.add_all(new_lines)
            db.session.flush()

        _check_stock_backing(req)
        req.recalc_totals()
        _check_ceilings(actor, req)

        changes: Dict[str, Any] = audit.diff_fields(
            before, {field: getattr(req, field) for field in HEADER_FIELDS}, HEADER_FIELDS
        )
        if "items" in data:
            changes["items"] = {
                "from": before_items,
                "to": {"count": len(req.items), "total_value": req.total_value},
            }
        audit.record(req, actor, "edit", f"Request {req.code} edited.", changes)
        _announce(req, actor, "edit")
    return req


def submit_request(actor: User, request_id: int) -> Request:
    with unit_of_work():
        req = _lock_request(request_id)
        _authorize(actor, "submit", req)
        _expect(req, STATUS_DRAFT)

        if not req.items:
            raise ValidationError(
                "A request needs at least one line item to be submitted.",
                fields={"items": "At least one line item is required."},
            )

        req.status = STATUS_PENDING_APPROVAL
        req.submitted_at = utcnow()

        audit.record(
            req,
            actor,
            "submit",
            f"Request {req.code} submitted for approval.",
            {"status": {"from": STATUS_DRAFT, "to": STATUS_PENDING_APPROVAL}},
        )
        _announce(req, actor, "submit")
    return req


# ---------------------------------------------------------------------
# Approver actions
# ---------------------------------------------------------------------
def approve_request(actor: User, request_id: int, data: Optional[Dict[str, Any]] = None) -> Request:
    """
    Approve pending lines. Optional per-line override:
        {"items": [{"id": 3, "quantity_approved": 1, "note": "..."}]}
    0 rejects the line; at least one line must stay approved.
    """
    data = data or {}
    with unit_of_work():
        req = _lock_request(request_id)
        _authorize(actor, "approve", req)
        _expect(req, STATUS_PENDING_APPROVAL)

        overrides = _line_quantities(data.get("items"), "quantity_approved", req)
        errors: Dict[str, str] = {}
        for line in req.items:
            if line.status != ITEM_PENDING:
                continue
            override = overrides.get(line.id, {})
            quantity = override.get("quantity")
            quantity = line.quantity_requested if quantity is None else quantity
            if quantity < 0 or quantity > line.quantity_requested:
                errors[f"items.{line.id}"] = f"Approved quantity must be between 0 and {line.quantity_requested}."
                continue
            line.quantity_approved = quantity
            line.status = ITEM_APPROVED if quantity > 0 else ITEM_REJECTED
            line.approver_note = override.get("note") or line.approver_note

        if errors:
            raise ValidationError(fields=errors)
        if not any(line.status == ITEM_APPROVED for line in req.items):
            raise ValidationError(fields={"items": "At least one line item must remain approved."})

        req.status = STATUS_APPROVED
        req.approver_id = actor.id
        req.approved_at = utcnow()

        audit.record(
            req,
            actor,
            "approve",
            f"Request {req.code} approved by {actor.username}.",
            {
                "status": {"from": STATUS_PENDING_APPROVAL, "to": STATUS_APPROVED},
                "note": _clean(data.get("note")) or None,
                "lines": _line_states(req),
            },
        )
        _announce(req, actor, "approve")
    return req


def reject_request(actor: User, request_id: int, data: Optional[Dict[str, Any]] = None) -> Request:
    data = data or {}
    with unit_of_work():
        req = _lock_request(request_id)
        _authorize(actor, "reject", req)
        _expect(req, STATUS_PENDING_APPROVAL)
        reason = _reason(data, required=True)

        for line in req.items:
            if line.status == ITEM_PENDING:
                line.status = ITEM_REJECTED

        req.status = STATUS_REJECTED_BY_APPROVER
        req.approver_id = actor.id
        req.rejected_at = utcnow()
        req.rejection_reason = reason

        audit.record(
            req,
            actor,
            "reject",
            f"Request {req.code} rejected by {actor.username}: {reason}",
            {"status": {"from": STATUS_PENDING_APPROVAL, "to": STATUS_REJECTED_BY_APPROVER}, "reason": reason},
        )
        _announce(req, actor, "reject")
    return req


# ---------------------------------------------------------------------
# Stock actions
# ---------------------------------------------------------------------
def accept_into_stock(actor: User, request_id: int, data: Optional[Dict[str, Any]] = None) -> Request:
    """Acknowledge an approved request. No inventory change yet."""
    data = data or {}
    with unit_of_work():
        req = _lock_request(request_id)
        _authorize(actor, "stock_accept", req)
        _expect(req, STATUS_APPROVED)

        req.status = STATUS_PROCESSING_STOCK
        req.stock_handler_id = actor.id
        req.stock_accepted_at = utcnow()
        notes = _clean(data.get("notes"))
        if notes:
            req.stock_notes = notes

        audit.record(
            req,
            actor,
            "stock_accept",
            f"Request {req.code} accepted for stock processing by {actor.username}.",
            {"status": {"from": STATUS_APPROVED, "to": STATUS_PROCESSING_STOCK}, "notes": notes or None},
        )
        _announce(req, actor, "stock_accept")
    return req


def deliver_request(actor: User, request_id: int, data: Dict[str, Any]) -> Request:
    """
    Deliver a request in processing_stock:
        {"items": [{"id": 3, "quantity_delivered": 2}, ...], "notes": "..."}

    Every approved line needs a delivered quantity (0..approved). Stock-backed
    lines reserve stock in this same transaction; one shortfall aborts all.
    """
    with unit_of_work():
        req = _lock_request(request_id)
        _authorize(actor, "deliver", req)
        _expect(req, STATUS_PROCESSING_STOCK)

        given = _line_quantities(data.get("items"), "quantity_delivered", req)
        approved_lines = [line for line in req.items if line.status == ITEM_APPROVED]

        errors: Dict[str, str] = {}
        planned: Dict[int, int] = {}
        for line in approved_lines:
            quantity = given.get(line.id, {}).get("quantity")
            if quantity is None:
                errors[f"items.{line.id}"] = "Delivered quantity is required."
            elif quantity < 0 or quantity > line.quantity_approved:
                errors[f"items.{line.id}"] = f"Delivered quantity must be between 0 and {line.quantity_approved}."
            else:
                planned[line.id] = quantity
        if errors:
            raise ValidationError(fields=errors)
        if not any(planned.values()):
            raise ValidationError(
                fields={"items": "Nothing to deliver; reject the request at the stock stage instead."}
            )

        # Lock stock rows in a stable order.
        for line in sorted(approved_lines, key=lambda line: (line.stock_item_id or 0, line.id)):
            quantity = planned[line.id]
            if line.is_stock_backed and quantity > 0:
                stock.reserve(
                    line.stock_item_id,
                    quantity,
                    actor=actor,
                    request=req,
                    note=f"{req.code} delivery",
                )
            line.quantity_delivered = quantity
            line.status = ITEM_DELIVERED if quantity > 0 else ITEM_REJECTED

        req.status = STATUS_DELIVERED
        req.delivered_at = utcnow()
        if req.stock_handler_id is None:
            req.stock_handler_id = actor.id
        notes = _clean(data.get("notes"))
        if notes:
            req.stock_notes = notes

        audit.record(
            req,
            actor,
            "deliver",
            f"Request {req.code} delivered by {actor.username}.",
            {
                "status": {"from": STATUS_PROCESSING_STOCK, "to": STATUS_DELIVERED},
                "lines": _line_states(req),
            },
        )
        _announce(req, actor, "deliver")
    return req


def stock_reject_request(actor: User, request_id: int, data: Optional[Dict[str, Any]] = None) -> Request:
    data = data or {}
    with unit_of_work():
        req = _lock_request(request_id)
        _authorize(actor, "stock_reject", req)
        _expect(req, STATUS_APPROVED, STATUS_PROCESSING_STOCK)
        reason = _reason(data, required=True)
        previous = req.status

        for line in req.items:
            if line.status in (ITEM_PENDING, ITEM_APPROVED):
                line.status = ITEM_REJECTED

        req.status = STATUS_REJECTED_BY_STOCK
        req.stock_handler_id = actor.id
        req.rejected_at = utcnow()
        req.rejection_reason = reason

        audit.record(
            req,
            actor,
            "stock_reject",
            f"Request {req.code} rejected at stock by {actor.username}: {reason}",
            {"status": {"from": previous, "to": STATUS_REJECTED_BY_STOCK}, "reason": reason},
        )
        _announce(req, actor, "stock_reject")
    return req


def return_items(actor: User, request_id: int, data: Dict[str, Any]) -> Request:
    """
    Take delivered items back: {"items": [{"id": 3, "quantity": 1}]}.

    Stock-backed lines are released into stock. The request stays delivered;
    a line whose whole delivered quantity came back becomes "returned".
    """
    with unit_of_work():
        req = _lock_request(request_id)
        _authorize(actor, "return", req)
        _expect(req, STATUS_DELIVERED)

        given = _line_quantities(data.get("items"), "quantity", req)
        if not given:
            raise ValidationError(fields={"items": "At least one line item is required."})

        lines = {line.id: line for line in req.items}
        errors: Dict[str, str] = {}
        for line_id, entry in given.items():
            line = lines[line_id]
            quantity = entry["quantity"]
            outstanding = line.quantity_delivered - line.quantity_returned
            if line.status != ITEM_DELIVERED:
                errors[f"items.{line_id}"] = "Only delivered lines can be returned."
            elif quantity is None or quantity <= 0 or quantity > outstanding:
                errors[f"items.{line_id}"] = f"Returned quantity must be between 1 and {outstanding}."
        if errors:
            raise ValidationError(fields=errors)

        for line_id in sorted(given, key=lambda i: (lines[i].stock_item_id or 0, i)):
            line = lines[line_id]
            quantity = given[line_id]["quantity"]
            if line.is_stock_backed:
                stock.release(
                    line.stock_item_id,
                    quantity,
                    actor=actor,
                    request=req,
                    note=given[line_id]["note"] or f"{req.code} return",
                )
            line.quantity_returned += quantity
            if line.quantity_returned == line.quantity_delivered:
                line.status = ITEM_RETURNED

        audit.record(
            req,
            actor,
            "return",
            f"Items of request {req.code} returned to stock.",
            {"returned": {str(i): given[i]["quantity"] for i in given}, "lines": _line_states(req)},
        )
        _announce(req, actor, "return")
    return req


# ---------------------------------------------------------------------
# Cancel
# ---------------------------------------------------------------------
def cancel_request(actor: User, request_id: int, data: Optional[Dict[str, Any]] = None) -> Request:
    """Requester: draft/pending_approval. Elevated roles: any non-terminal state."""
    data = data or {}
    with unit_of_work():
        req = _lock_request(request_id)
        _authorize(actor, "cancel", req)
        if actor.role in ELEVATED_ROLES:
            _expect(req, *NON_TERMINAL_STATUSES)
        else:
            _expect(req, STATUS_DRAFT, STATUS_PENDING_APPROVAL)
        reason = _reason(data, required=False)
        previous = req.status

        for line in req.items:
            line.status = ITEM_REJECTED

        req.status = STATUS_CANCELLED
        req.cancelled_at = utcnow()
        if reason:
            req.rejection_reason = reason

        audit.record(
            req,
            actor,
            "cancel",
            f"Request {req.code} cancelled by {actor.username}." + (f" Reason: {reason}" if reason else ""),
            {"status": {"from": previous, "to": STATUS_CANCELLED}, "reason": reason},
        )
        _announce(req, actor, "cancel")
    return req


# ---------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------
def get_request(request_id: int) -> Request:
    req = db.session.get(Request, request_id)
    if req is None:
        raise NotFoundError("Request not found.", payload={"request_id": request_id})
    return req


def get_visible_request(actor: User, request_id: int) -> Request:
    req = get_request(request_id)
    _authorize(actor, "view", req)
    return req


def requests_query(
    *,
    status: Optional[Iterable[str] | str] = None,
    priority: Optional[str] = None,
    kind: Optional[str] = None,
    department: Optional[str] = None,
    date_from=None,
    date_to=None,
    search: Optional[str] = None,
    requester_id: Optional[int] = None,
    exclude_requester_id: Optional[int] = None,
):
    """Filtered select statement over requests, newest first."""
    stmt = select(Request).options(selectinload(Request.requester))

    if status:
        statuses = [status] if isinstance(status, str) else list(status)
        stmt = stmt.where(Request.status.in_(statuses))
    if priority:
        stmt = stmt.where(Request.priority == priority)
    if kind:
        stmt = stmt.where(Request.kind == kind)
    if department:
        stmt = stmt.where(Request.requester.has(User.department == department))
    if date_from is not None:
        stmt = stmt.where(Request.created_at >= date_from)
    if date_to is not None:
        stmt = stmt.where(Request.created_at <= date_to)
    if search:
        pattern = f"%{search.strip()}%"
        stmt = stmt.where(
            or_(
                Request.code.ilike(pattern),
                Request.title.ilike(pattern),
                Request.description.ilike(pattern),
            )
        )
    if requester_id is not None:
        stmt = stmt.where(Request.requester_id == requester_id)
    if exclude_requester_id is not None:
        stmt = stmt.where(Request.requester_id != exclude_requester_id)

    return stmt.order_by(Request.created_at.desc(), Request.id.desc())


def request_statistics(req: Request) -> Dict[str, Any]:
    lines = list(req.items)
    approved_value = sum(
        (_to_decimal(line.unit_value) * line.quantity_approved for line in lines),
        Decimal("0.00"),
    )
    end = req.delivered_at or req.cancelled_at or req.rejected_at or utcnow()
    return {
        "lines": len(lines),
        "lines_by_status": {
            status: sum(1 for line in lines if line.status == status)
            for status in (ITEM_PENDING, ITEM_APPROVED, ITEM_REJECTED, ITEM_DELIVERED, ITEM_RETURNED)
        },
        "quantity_requested": sum(line.quantity_requested for line in lines),
        "quantity_approved": sum(line.quantity_approved for line in lines),
        "quantity_delivered": sum(line.quantity_delivered for line in lines),
        "quantity_returned": sum(line.quantity_returned for line in lines),
        "total_value": str(_money(_to_decimal(req.total_value))),
        "approved_value": str(_money(approved_value)),
        "days_open": max((end - req.created_at).days, 0) if req.created_at else 0,
    }


def request_detail(req: Request) -> Dict[str, Any]:
    data = req.to_dict()
    items = []
    for line in req.items:
        row = line.to_dict()
        row["availability"] = stock.availability(line.stock_item, line.quantity_approved or line.quantity_requested)
        items.append(row)
    data["items"] = items
    data["history"] = [entry.to_dict() for entry in audit.history_for(req.id)]
    data["statistics"] = request_statistics(req)
    return data
