"""
stockroom/sequences.py

Year-scoped request codes: PREFIX-YYYY-NNN (REQ-2025-001, ..., REQ-2025-1000).

IMPORTANT:
- next_code() must run inside the caller's write transaction
  (utils.unit_of_work). The per-year counter row stays locked
  (SELECT ... FOR UPDATE) until that transaction ends, so concurrent
  creations in the same year are serialized.
- On SQLite a write unit opens with BEGIN IMMEDIATE
  (extensions.configure_sqlite_locking), which gives the same serialization.
- The first code of a year creates the counter row. Two workers racing to
  create it are resolved through a savepoint: the loser re-reads the winner's row.
"""

from __future__ import annotations

import logging
from typing import Optional

from flask import current_app
from sqlalchemy import Integer, cast, func, select
from sqlalchemy.exc import IntegrityError

from .extensions import db
from .models import Request, RequestSequence, utcnow

logger = logging.getLogger(__name__)


def code_prefix() -> str:
    return str(current_app.config.get("REQUEST_CODE_PREFIX", "REQ")).strip() or "REQ"


def format_code(prefix: str, year: int, value: int) -> str:
    return f"{prefix}-{year}-{value:03d}"


def _largest_existing(prefix: str, year: int) -> int:
    """Largest numeric suffix already used for (prefix, year), 0 if none."""
    head = f"{prefix}-{year}-"
    suffix = cast(func.substr(Request.code, len(head) + 1), Integer)
    stmt = select(func.max(suffix)).where(Request.code.like(f"{head}%"))
    return int(db.session.scalar(stmt) or 0)


def _locked_counter(year: int) -> Optional[RequestSequence]:
    return db.session.get(RequestSequence, year, with_for_update=True, populate_existing=True)


def next_code(year: Optional[int] = None, resync: bool = False) -> str:
    """
    Reserve and return the next request code for `year` (default: current year).

    resync=True first moves the counter past the largest code already stored
    (used when a creation hit a duplicate code).
    """
    year = int(year or utcnow().year)
    prefix = code_prefix()

    counter = _locked_counter(year)
    if counter is None:
        start = _largest_existing(prefix, year)
        try:
            with db.session.begin_nested():
                counter = RequestSequence(year=year, last_value=start)
                db.session.add(counter)
        except IntegrityError:
            logger.info("sequence_row_race", extra={"year": year})
            counter = _locked_counter(year)
            if counter is None:
                raise

    if resync:
        counter.last_value = max(int(counter.last_value), _largest_existing(prefix, year))

    counter.last_value = int(counter.last_value) + 1
    db.session.flush()
    return format_code(prefix, year, counter.last_value)
