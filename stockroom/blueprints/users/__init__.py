"""
Users blueprint package.

Exposes users_bp for app factory registration.
"""

from .routes import users_bp  # noqa: F401
