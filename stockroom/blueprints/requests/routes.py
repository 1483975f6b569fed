"""
Request routes (JSON).

Features:
- Create / edit / submit (requester)
- Approve / reject (approver-capable, never on one's own request)
- Stock accept / deliver / reject / return (stock-capable)
- Cancel (requester while draft/pending, admin + stock_admin at any non-terminal state)
- Lists: all (filtered), mine, pending approval, awaiting stock
- Detail with line availability, history and statistics
- History read API (/requests/<id>/history, /history)

IMPORTANT:
- Routes stay thin: lifecycle.py authorizes, validates and commits.
- Reads go through read_with_retry (one retry on a DB timeout).
"""

from __future__ import annotations

from typing import Any, Dict

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from ... import audit, lifecycle
from ...errors import ValidationError
from ...extensions import db
from ...models import (
    PRIORITIES,
    REQUEST_KINDS,
    REQUEST_STATUSES,
    STATUS_APPROVED,
    STATUS_PENDING_APPROVAL,
    STATUS_PROCESSING_STOCK,
)
from ...security import permission_required
from ...utils import (
    end_of_day,
    json_body,
    page_args,
    page_payload,
    parse_date,
    parse_optional_int,
    read_with_retry,
    start_of_day,
)

requests_bp = Blueprint("requests", __name__, url_prefix="/requests")
history_bp = Blueprint("history", __name__, url_prefix="/history")


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------
def _choice(name: str, allowed) -> str | None:
    value = (request.args.get(name) or "").strip()
    if not value:
        return None
    if value not in allowed:
        raise ValidationError(fields={name: f"Must be one of: {', '.join(allowed)}."})
    return value


def _date_arg(name: str):
    raw = request.args.get(name)
    parsed = parse_date(raw)
    if raw and parsed is None:
        raise ValidationError(fields={name: "Invalid date (YYYY-MM-DD)."})
    return parsed


def _list_filters() -> Dict[str, Any]:
    """Parse list filters from the query string."""
    statuses = [s.strip() for s in (request.args.get("status") or "").split(",") if s.strip()]
    unknown = [s for s in statuses if s not in REQUEST_STATUSES]
    if unknown:
        raise ValidationError(fields={"status": f"Unknown status: {', '.join(unknown)}."})

    date_from = _date_arg("date_from")
    date_to = _date_arg("date_to")

    return {
        "status": statuses or None,
        "priority": _choice("priority", PRIORITIES),
        "kind": _choice("kind", REQUEST_KINDS),
        "department": (request.args.get("department") or "").strip() or None,
        "date_from": start_of_day(date_from) if date_from else None,
        "date_to": end_of_day(date_to) if date_to else None,
        "search": (request.args.get("search") or "").strip() or None,
        "requester_id": parse_optional_int(request.args.get("requester_id")),
    }


def _paginated(stmt):
    page, per_page = page_args()
    pagination = read_with_retry(lambda: db.paginate(stmt, page=page, per_page=per_page, error_out=False))
    return jsonify(page_payload(pagination, lambda req: req.to_dict()))


def _actor():
    """The logged-in User row (not the proxy); services take ORM objects."""
    return current_user._get_current_object()


def _request_response(req, status: int = 200):
    return jsonify({"request": req.to_dict(include_items=True)}), status


# ----------------------------------------------------------------------
# Lists
# ----------------------------------------------------------------------
@requests_bp.get("")
@login_required
@permission_required("list", "requests")
def list_requests():
    """All requests (filterable)."""
    return _paginated(lifecycle.requests_query(**_list_filters()))


@requests_bp.get("/mine")
@login_required
@permission_required("list_mine", "requests")
def my_requests():
    filters = _list_filters()
    filters["requester_id"] = current_user.id
    return _paginated(lifecycle.requests_query(**filters))


@requests_bp.get("/pending-approval")
@login_required
@permission_required("approve", "requests")
def pending_approval():
    """Approver queue. One's own requests are never listed."""
    filters = _list_filters()
    filters["status"] = [STATUS_PENDING_APPROVAL]
    return _paginated(lifecycle.requests_query(exclude_requester_id=current_user.id, **filters))


@requests_bp.get("/awaiting-stock")
@login_required
@permission_required("stock_accept", "requests")
def awaiting_stock():
    """Stock queue: approved and in processing."""
    filters = _list_filters()
    filters["status"] = [STATUS_APPROVED, STATUS_PROCESSING_STOCK]
    return _paginated(lifecycle.requests_query(**filters))


# ----------------------------------------------------------------------
# Detail / history
# ----------------------------------------------------------------------
@requests_bp.get("/<int:request_id>")
@login_required
def request_detail(request_id: int):
    def _load():
        req = lifecycle.get_visible_request(_actor(), request_id)
        return lifecycle.request_detail(req)

    return jsonify({"request": read_with_retry(_load)})


@requests_bp.get("/<int:request_id>/history")
@login_required
def request_history(request_id: int):
    def _load():
        req = lifecycle.get_visible_request(_actor(), request_id)
        return [entry.to_dict() for entry in audit.history_for(req.id)]

    return jsonify({"request_id": request_id, "history": read_with_retry(_load)})


@history_bp.get("")
@login_required
@permission_required("view", "history")
def search_history():
    """History across requests (audit/export tooling)."""
    date_from = _date_arg("date_from")
    date_to = _date_arg("date_to")
    stmt = audit.search_history(
        actor_id=parse_optional_int(request.args.get("actor_id")),
        action=(request.args.get("action") or "").strip() or None,
        request_id=parse_optional_int(request.args.get("request_id")),
        date_from=start_of_day(date_from) if date_from else None,
        date_to=end_of_day(date_to) if date_to else None,
    )
    page, per_page = page_args()
    pagination = read_with_retry(lambda: db.paginate(stmt, page=page, per_page=per_page, error_out=False))
    return jsonify(page_payload(pagination, lambda entry: entry.to_dict()))


# ----------------------------------------------------------------------
# Requester actions
# ----------------------------------------------------------------------
@requests_bp.post("")
@login_required
def create_request():
    req = lifecycle.create_request(_actor(), json_body())
    return _request_response(req, 201)


@requests_bp.put("/<int:request_id>")
@login_required
def edit_request(request_id: int):
    return _request_response(lifecycle.edit_request(_actor(), request_id, json_body()))


@requests_bp.post("/<int:request_id>/submit")
@login_required
def submit_request(request_id: int):
    return _request_response(lifecycle.submit_request(_actor(), request_id))


@requests_bp.post("/<int:request_id>/cancel")
@login_required
def cancel_request(request_id: int):
    return _request_response(lifecycle.cancel_request(_actor(), request_id, json_body()))


# ----------------------------------------------------------------------
# Approver actions
# ----------------------------------------------------------------------
@requests_bp.post("/<int:request_id>/approve")
@login_required
def approve_request(request_id: int):
    return _request_response(lifecycle.approve_request(_actor(), request_id, json_body()))


@requests_bp.post("/<int:request_id>/reject")
@login_required
def reject_request(request_id: int):
    return _request_response(lifecycle.reject_request(_actor(), request_id, json_body()))


# ----------------------------------------------------------------------
# Stock actions
# ----------------------------------------------------------------------
@requests_bp.post("/<int:request_id>/stock/accept")
@login_required
def stock_accept(request_id: int):
    return _request_response(lifecycle.accept_into_stock(_actor(), request_id, json_body()))


@requests_bp.post("/<int:request_id>/stock/deliver")
@login_required
def stock_deliver(request_id: int):
    return _request_response(lifecycle.deliver_request(_actor(), request_id, json_body()))


@requests_bp.post("/<int:request_id>/stock/reject")
@login_required
def stock_reject(request_id: int):
    return _request_response(lifecycle.stock_reject_request(_actor(), request_id, json_body()))


@requests_bp.post("/<int:request_id>/stock/return")
@login_required
def stock_return(request_id: int):
    return _request_response(lifecycle.return_items(_actor(), request_id, json_body()))
