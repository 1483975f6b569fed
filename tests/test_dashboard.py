import unittest

from stockroom import stock
from stockroom.extensions import db
from stockroom.utils import unit_of_work
from tests.helpers import StockroomTestCase


class DashboardTest(StockroomTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.tech_id = self.make_user("tech", "technician")
        self.coord_id = self.make_user("coord", "coordinator")
        self.stock_id = self.make_user("stock", "stock_admin")
        self.make_user("intern", "intern")
        self.laptop_id = self.make_item("Laptop", 10, min_quantity=2)
        self.headset_id = self.make_item("Headset", 1, min_quantity=3)

        self.create_draft(self.tech_id, self.laptop_id)
        pending = self.create_draft(self.tech_id, self.laptop_id)
        self.advance(pending, requester_id=self.tech_id, approver_id=self.coord_id, to="pending_approval")
        approved = self.create_draft(self.tech_id, self.laptop_id)
        self.advance(approved, requester_id=self.tech_id, approver_id=self.coord_id)
        own = self.create_draft(self.coord_id, self.laptop_id)
        self.advance(own, requester_id=self.coord_id, approver_id=self.tech_id, to="pending_approval")

        with self.app.app_context():
            with unit_of_work():
                stock.check_all_alerts()

    def dashboard(self, username):
        res = self.login(username).get("/dashboard")
        self.assertEqual(res.status_code, 200, res.get_json())
        return res.get_json()["dashboard"]

    def test_approver_summary(self):
        data = self.dashboard("coord")
        self.assertEqual(data["scope"], "all")
        counts = data["requests_by_status"]
        self.assertEqual((counts["draft"], counts["pending_approval"], counts["approved"]), (1, 2, 1))
        self.assertEqual(counts["delivered"], 0)
        self.assertEqual(data["approval_queue"], 1)
        self.assertEqual(data["stock"]["low_stock_items"], 1)
        self.assertEqual(data["stock"]["items_by_status"]["available"], 2)
        for section in ("stock_queue", "open_alerts", "recent_movements"):
            self.assertNotIn(section, data)

    def test_stock_summary(self):
        client = self.login("stock")
        client.post(f"/stock/items/{self.laptop_id}/receive", json={"quantity": 2, "note": "PO-9"})

        data = self.dashboard("stock")
        self.assertNotIn("approval_queue", data)
        self.assertEqual(data["stock_queue"], {"approved": 1, "processing_stock": 0})
        self.assertEqual(data["open_alerts"], {"low": 0, "critical": 1, "zero": 0})
        self.assertEqual([m["note"] for m in data["recent_movements"]], ["PO-9"])

    def test_counts_only_own_requests_without_full_history(self):
        with self.app.app_context():
            self.user(self.tech_id).full_history = False
            db.session.commit()

        data = self.dashboard("tech")
        self.assertEqual(data["scope"], "own")
        counts = data["requests_by_status"]
        self.assertEqual((counts["draft"], counts["pending_approval"], counts["approved"]), (1, 1, 1))

    def test_needs_dashboard_capability(self):
        res = self.login("intern").get("/dashboard")
        self.assertEqual(res.status_code, 403)
        self.assertEqual(res.get_json()["reason"], "not_permitted")

        with self.app.app_context():
            self.user(self.coord_id).can_view_dashboard = False
            db.session.commit()
        self.assertEqual(self.login("coord").get("/dashboard").status_code, 403)


if __name__ == "__main__":
    unittest.main()
