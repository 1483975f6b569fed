"""
stockroom/logging_config.py

Structured logging for the service.

- One JSON object per line (LOG_JSON=True), or the stock text format.
- Every record carries the request id (X-Request-Id header or a fresh uuid4).
  Background work (notification workers) inherits the id through a contextvar.
"""

from __future__ import annotations

import contextlib
import contextvars
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Dict

from flask import Flask, g, has_request_context, request

_REQUEST_ID_CTX: contextvars.ContextVar[str] = contextvars.ContextVar("stockroom_request_id", default="")

_TEXT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def _normalize(value: str | None) -> str:
    return str(value or "").strip() or "n/a"


@contextlib.contextmanager
def bind_request_id(request_id: str | None):
    """Bind a request id for log records emitted outside a request context."""
    token = _REQUEST_ID_CTX.set(_normalize(request_id))
    try:
        yield _REQUEST_ID_CTX.get()
    finally:
        _REQUEST_ID_CTX.reset(token)


def ensure_request_id() -> str:
    request_id = str(getattr(g, "request_id", "") or "").strip()
    if request_id:
        return request_id
    incoming = str(request.headers.get("X-Request-Id") or "").strip()
    request_id = incoming or str(uuid.uuid4())
    g.request_id = request_id
    _REQUEST_ID_CTX.set(request_id)
    return request_id


def current_request_id(default: str = "n/a") -> str:
    if has_request_context():
        request_id = str(getattr(g, "request_id", "") or "").strip()
        if request_id:
            return request_id
    return str(_REQUEST_ID_CTX.get() or "").strip() or default


class JsonLogFormatter(logging.Formatter):
    _base_keys = {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
    }

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, object] = {
            "ts": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": current_request_id(),
        }
        if has_request_context():
            payload["path"] = request.path
            payload["method"] = request.method

        # extra={...} fields
        for key, value in record.__dict__.items():
            if key in self._base_keys or key.startswith("_") or key in payload:
                continue
            if callable(value):
                continue
            payload[key] = value

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, default=str, separators=(",", ":"))


def configure_logging(app: Flask) -> None:
    level_name = str(app.config.get("LOG_LEVEL", "INFO")).strip().upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler()
    if app.config.get("LOG_JSON", True):
        handler.setFormatter(JsonLogFormatter())
    else:
        handler.setFormatter(logging.Formatter(_TEXT_FORMAT))

    # app.logger is the "stockroom" logger; module loggers propagate into it.
    app.logger.handlers = [handler]
    app.logger.setLevel(level)
    app.logger.propagate = False

    @app.before_request
    def _bind_request_id():
        ensure_request_id()

    @app.after_request
    def _echo_request_id(response):
        response.headers["X-Request-Id"] = current_request_id()
        return response
