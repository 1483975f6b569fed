"""
Central place for Flask extensions.

This avoids circular imports and keeps create_app clean.
Extensions are initialized in create_app() in __init__.py, where the app context is available.
"""

from contextlib import contextmanager
from contextvars import ContextVar

from sqlalchemy import event
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_login import LoginManager
from flask_wtf import CSRFProtect

# Global extension instances - these are imported and initialized in create_app() in __init__.py with the app context.
db = SQLAlchemy()
migrate = Migrate()
login_manager = LoginManager()
csrf = CSRFProtect()

# Set while a write unit opens its transaction (see utils.unit_of_work).
_write_intent: ContextVar[bool] = ContextVar("stockroom_write_intent", default=False)


@contextmanager
def write_intent():
    """Transactions begun inside this block take the SQLite write lock up front."""
    token = _write_intent.set(True)
    try:
        yield
    finally:
        _write_intent.reset(token)


def configure_sqlite_locking(engine) -> None:
    """
    SQLite transaction modes.

    SQLite has no row-level locks and ignores SELECT ... FOR UPDATE, so two
    deferred write transactions could both read a stock quantity and then
    both write. Write units therefore open with BEGIN IMMEDIATE: writers are
    serialized and wait for the busy timeout. Reads use a plain deferred
    BEGIN and, with the WAL journal, never block a writer (or get blocked).
    """
    if engine.dialect.name != "sqlite":
        return

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # pysqlite must not emit its own BEGIN
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE" if _write_intent.get() else "BEGIN")
