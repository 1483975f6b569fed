"""
stockroom/errors.py

Error taxonomy shared by services and routes.

IMPORTANT:
- Services raise these; routes never catch them.
- The factory's error handlers render them as JSON:
    {"error": code, "message": ..., "request_id": ..., **payload}
- InternalError is opaque: details are logged, never returned.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, Optional


class AppError(Exception):
    default_code = "system_error"
    default_message = "The operation could not be completed."
    default_http_status = 500
    default_critical = True

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        http_status: int | None = None,
        critical: bool | None = None,
        details: str | None = None,
        payload: Dict[str, Any] | None = None,
    ) -> None:
        self.code = (code or self.default_code).strip()
        self.message = (message or self.default_message).strip()
        self.http_status = int(http_status or self.default_http_status)
        self.critical = bool(self.default_critical if critical is None else critical)
        self.details = (details or "").strip() or None
        self.payload = dict(payload or {})
        super().__init__(self.details or self.message)

    def to_response_payload(self, request_id: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "error": self.code,
            "message": self.message,
            "request_id": request_id,
        }
        if self.payload:
            payload.update(self.payload)
        return payload


class ValidationError(AppError):
    """Malformed or out-of-bounds input. `fields` maps field name -> problem."""

    default_code = "validation_error"
    default_message = "Invalid input."
    default_http_status = 400
    default_critical = False

    def __init__(self, message: str | None = None, *, fields: Dict[str, str] | None = None, **kwargs: Any) -> None:
        self.fields = dict(fields or {})
        payload = dict(kwargs.pop("payload", None) or {})
        if self.fields:
            payload["fields"] = self.fields
        super().__init__(message, payload=payload, **kwargs)


class AuthorizationError(AppError):
    default_code = "forbidden"
    default_message = "You are not allowed to perform this action."
    default_http_status = 403
    default_critical = False

    def __init__(self, reason: str, message: str | None = None, **kwargs: Any) -> None:
        self.reason = str(reason)
        payload = dict(kwargs.pop("payload", None) or {})
        payload["reason"] = self.reason
        super().__init__(message, payload=payload, **kwargs)


class NotFoundError(AppError):
    default_code = "not_found"
    default_message = "Resource not found."
    default_http_status = 404
    default_critical = False


class ConflictError(AppError):
    """
    State conflict: wrong lifecycle state, unavailable or insufficient stock.

    `expected_status` names the state(s) the transition requires.
    """

    default_code = "conflict"
    default_message = "The resource is not in a compatible state."
    default_http_status = 409
    default_critical = False

    def __init__(
        self,
        message: str | None = None,
        *,
        current_status: Optional[str] = None,
        expected_status: Iterable[str] | str | None = None,
        **kwargs: Any,
    ) -> None:
        payload = dict(kwargs.pop("payload", None) or {})
        if current_status is not None:
            payload["current_status"] = current_status
        if expected_status is not None:
            if isinstance(expected_status, str):
                expected_status = [expected_status]
            payload["expected_status"] = list(expected_status)
        super().__init__(message, payload=payload, **kwargs)


class InternalError(AppError):
    default_code = "internal_error"
    default_message = "Internal error. Please try again later."
    default_http_status = 500
    default_critical = True
