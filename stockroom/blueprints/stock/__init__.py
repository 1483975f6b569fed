"""
Stock blueprint package.

Exposes stock_bp for app factory registration.
"""

from .routes import stock_bp  # noqa: F401
