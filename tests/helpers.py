from __future__ import annotations

import shutil
import tempfile
import unittest
from decimal import Decimal
from pathlib import Path

from config import Config
from stockroom import create_app, lifecycle
from stockroom.extensions import db
from stockroom.models import StockItem, User
from stockroom.profiles import apply_profile

PASSWORD = "secret-pass"


class TempDbSandbox:
    """A throwaway directory holding one SQLite file."""

    def __init__(self, prefix: str = "stockroom") -> None:
        self.temp_dir = tempfile.mkdtemp(prefix=f"{prefix}_")
        self.db_path = str(Path(self.temp_dir) / "stockroom-test.db")

    @property
    def uri(self) -> str:
        return f"sqlite:///{self.db_path}"

    def cleanup(self) -> None:
        shutil.rmtree(self.temp_dir, ignore_errors=True)


def build_app(temp_db: TempDbSandbox, **overrides):
    attrs = {
        "SQLALCHEMY_DATABASE_URI": temp_db.uri,
        "SECRET_KEY": "test-secret",
        "TESTING": True,
        "WTF_CSRF_ENABLED": False,
        "NOTIFY_ASYNC": False,
        "LOG_LEVEL": "CRITICAL",
        "DB_TIMEOUT_SECONDS": 30,
    }
    attrs.update(overrides)
    temp_config = type("TempConfig", (Config,), attrs)
    app = create_app(temp_config)
    with app.app_context():
        db.create_all()
    return app


class StockroomTestCase(unittest.TestCase):
    """Fresh app + SQLite file per test. Helpers return ids, not ORM objects."""

    config_overrides: dict = {}

    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix=self.__class__.__name__.lower())
        self.app = build_app(self._temp_db, **self.config_overrides)
        self.client = self.app.test_client()

    def tearDown(self) -> None:
        with self.app.app_context():
            db.session.remove()
            db.engine.dispose()
        self._temp_db.cleanup()

    # ------------------------------------------------------------------
    # Fixtures
    # ------------------------------------------------------------------
    def make_user(self, username: str, role: str = "technician", *, department: str = "IT", is_active: bool = True) -> int:
        with self.app.app_context():
            user = User(
                username=username,
                full_name=username.title(),
                department=department,
                is_active=is_active,
            )
            user.set_password(PASSWORD)
            apply_profile(user, role)
            db.session.add(user)
            db.session.commit()
            return user.id

    def make_item(
        self,
        name: str = "Laptop",
        quantity: int = 10,
        *,
        min_quantity: int = 0,
        status: str = "available",
        unit_value: str = "100.00",
    ) -> int:
        with self.app.app_context():
            item = StockItem(
                name=name,
                quantity=quantity,
                min_quantity=min_quantity,
                status=status,
                unit_value=Decimal(unit_value),
            )
            db.session.add(item)
            db.session.commit()
            return item.id

    def user(self, user_id: int) -> User:
        """Load a user in the CURRENT app context."""
        return db.session.get(User, user_id)

    def item_quantity(self, item_id: int) -> int:
        with self.app.app_context():
            return db.session.get(StockItem, item_id).quantity

    def login(self, username: str, client=None):
        client = client or self.app.test_client()
        res = client.post("/auth/login", json={"username": username, "password": PASSWORD})
        self.assertEqual(res.status_code, 200, res.get_json())
        return client

    # ------------------------------------------------------------------
    # Lifecycle shortcuts (service level)
    # ------------------------------------------------------------------
    def create_draft(self, requester_id: int, item_id: int | None, quantity: int = 1, **fields) -> int:
        data = {"title": fields.pop("title", "Equipment for new hire"), **fields}
        if item_id is None:
            data.setdefault("fulfillment", "new_purchase")
            data["items"] = [{"name": "Docking station", "quantity": quantity, "unit_value": "50.00"}]
        else:
            data["items"] = [{"stock_item_id": item_id, "quantity": quantity}]
        with self.app.app_context():
            return lifecycle.create_request(self.user(requester_id), data).id

    def advance(self, request_id: int, *, requester_id: int, approver_id: int, stock_id: int | None = None,
                to: str = "approved") -> None:
        """Drive a draft request forward: submitted -> approved -> processing_stock."""
        with self.app.app_context():
            lifecycle.submit_request(self.user(requester_id), request_id)
            if to == "pending_approval":
                return
            lifecycle.approve_request(self.user(approver_id), request_id)
            if to == "approved":
                return
            lifecycle.accept_into_stock(self.user(stock_id), request_id)
