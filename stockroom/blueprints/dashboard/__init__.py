"""
Dashboard blueprint package.

Exposes dashboard_bp for app factory registration.
"""

from .routes import dashboard_bp  # noqa: F401
