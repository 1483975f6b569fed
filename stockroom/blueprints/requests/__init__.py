"""
stockroom/blueprints/requests/__init__.py

Blueprint package export.

IMPORTANT:
- Must expose requests_bp and history_bp for app factory registration.
- Keep import minimal to avoid side effects.
"""

from __future__ import annotations

from .routes import history_bp, requests_bp  # noqa: F401
