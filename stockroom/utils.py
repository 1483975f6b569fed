"""
Utility functions shared across the app. This includes:
- parse_decimal / parse_optional_int / parse_date: lenient input parsing.
- json_body: the JSON object of the current request (or {}).
- read_with_retry: run an idempotent read, retrying once on OperationalError.
- unit_of_work: commit a write (or roll it back), then dispatch queued notifications.
- page_args / page_payload: pagination for list endpoints.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, TypeVar

from flask import current_app, request
from sqlalchemy.exc import OperationalError

from . import notifications
from .errors import InternalError, ValidationError
from .extensions import db, write_intent

logger = logging.getLogger(__name__)

T = TypeVar("T")

_UOW_KEY = "stockroom_unit_of_work"


def parse_decimal(value: Any) -> Decimal | None:
    """Parse decimal from user input (accepts comma or dot)."""
    if value is None:
        return None
    raw = str(value).strip().replace(",", ".")
    if raw == "":
        return None
    try:
        return Decimal(raw)
    except (InvalidOperation, ValueError):
        return None


def parse_optional_int(value: Any) -> int | None:
    """Parse optional int from JSON/query."""
    if value is None or isinstance(value, bool):
        return None
    raw = str(value).strip()
    if raw == "":
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def parse_date(value: Any) -> date | None:
    """Parse an ISO date (YYYY-MM-DD); a full ISO datetime is truncated to its date."""
    if value is None:
        return None
    raw = str(value).strip()
    if raw == "":
        return None
    try:
        return date.fromisoformat(raw[:10])
    except ValueError:
        return None


def json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object.")
    return data


def read_with_retry(fn: Callable[[], T]) -> T:
    """
    Run an idempotent read. A DB timeout/unavailability is retried once,
    then surfaced as an opaque InternalError.
    """
    try:
        return fn()
    except OperationalError:
        logger.warning("read_retry", exc_info=True)
        db.session.rollback()

    try:
        return fn()
    except OperationalError as exc:
        db.session.rollback()
        logger.exception("read_failed")
        raise InternalError(details=str(exc)) from exc


@contextmanager
def unit_of_work():
    """
    One write transaction: commit on success, roll back (and drop queued
    events) on any error. A DB timeout on a write is fatal: InternalError.
    Queued notifications are dispatched only after the commit.

    A read-only transaction still open on the session (user loader, earlier
    lookups) is ended first so the write opens a fresh, write-locked one.
    Nested units join the outer one.
    """
    session = db.session
    if session.info.get(_UOW_KEY):
        yield
        return

    session.info[_UOW_KEY] = True
    try:
        if session().in_transaction() and not (session.new or session.dirty or session.deleted):
            session.commit()
        with write_intent():
            session.connection()
        yield
        session.commit()
    except OperationalError as exc:
        db.session.rollback()
        notifications.discard_pending()
        logger.exception("write_failed")
        raise InternalError(details=str(exc)) from exc
    except Exception:
        db.session.rollback()
        notifications.discard_pending()
        raise
    finally:
        session.info.pop(_UOW_KEY, None)
    notifications.dispatch_pending()


def page_args() -> tuple[int, int]:
    page = parse_optional_int(request.args.get("page")) or 1
    default_size = int(current_app.config.get("DEFAULT_PAGE_SIZE", 20))
    max_size = int(current_app.config.get("MAX_PAGE_SIZE", 100))
    per_page = parse_optional_int(request.args.get("per_page")) or default_size
    return max(page, 1), min(max(per_page, 1), max_size)


def page_payload(pagination, serialize: Callable[[Any], Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "items": [serialize(obj) for obj in pagination.items],
        "page": pagination.page,
        "per_page": pagination.per_page,
        "total": pagination.total,
        "pages": pagination.pages,
    }


def start_of_day(value: date) -> datetime:
    return datetime(value.year, value.month, value.day)


def end_of_day(value: date) -> datetime:
    return datetime(value.year, value.month, value.day, 23, 59, 59, 999999)
