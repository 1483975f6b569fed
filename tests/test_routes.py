import unittest

from tests.helpers import PASSWORD, StockroomTestCase


class RoutesTestCase(StockroomTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.tech_id = self.make_user("tech", "technician")
        self.make_user("coord", "coordinator")
        self.make_user("stock", "stock_admin")
        self.make_user("intern", "intern")
        self.item_id = self.make_item("Laptop", 10, min_quantity=2)

    def new_request(self, client, quantity=1, **fields):
        body = {"title": "Laptop for onboarding", "items": [{"stock_item_id": self.item_id, "quantity": quantity}]}
        body.update(fields)
        res = client.post("/requests", json=body)
        self.assertEqual(res.status_code, 201, res.get_json())
        return res.get_json()["request"]


class AuthRoutesTest(RoutesTestCase):
    def test_banner_is_public(self):
        res = self.client.get("/")
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json(), {"name": "Stockroom", "authenticated": False})

    def test_unauthenticated_calls_get_401(self):
        res = self.client.get("/requests/mine")
        self.assertEqual(res.status_code, 401)
        self.assertEqual(res.get_json()["error"], "unauthenticated")

    def test_login_errors(self):
        res = self.client.post("/auth/login", json={"username": "tech"})
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json()["fields"], {"password": "Required."})

        res = self.client.post("/auth/login", json={"username": "tech", "password": "wrong-pass"})
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json()["error"], "invalid_credentials")

    def test_inactive_user_cannot_log_in(self):
        self.make_user("gone", "technician", is_active=False)
        res = self.client.post("/auth/login", json={"username": "gone", "password": PASSWORD})
        self.assertEqual(res.status_code, 403)
        self.assertEqual(res.get_json()["reason"], "inactive_user")

    def test_me_and_logout(self):
        client = self.login("tech")
        me = client.get("/auth/me").get_json()["user"]
        self.assertEqual(me["username"], "tech")
        self.assertTrue(me["capabilities"]["can_request"])

        self.assertEqual(client.post("/auth/logout").status_code, 200)
        self.assertEqual(client.get("/auth/me").status_code, 401)


class ErrorPayloadTest(RoutesTestCase):
    def test_request_id_is_echoed(self):
        client = self.login("tech")
        res = client.get("/requests/999", headers={"X-Request-Id": "abc-123"})
        self.assertEqual(res.status_code, 404)
        self.assertEqual(res.headers["X-Request-Id"], "abc-123")
        body = res.get_json()
        self.assertEqual(body["error"], "not_found")
        self.assertEqual(body["request_id"], "abc-123")

    def test_request_id_generated_when_missing(self):
        res = self.client.get("/")
        self.assertTrue(res.headers.get("X-Request-Id"))

    def test_validation_payload_lists_fields(self):
        client = self.login("tech")
        res = client.post("/requests", json={"title": "", "items": [{"quantity": 0}]})
        self.assertEqual(res.status_code, 400)
        body = res.get_json()
        self.assertEqual(body["error"], "validation_error")
        self.assertIn("title", body["fields"])

    def test_body_must_be_an_object(self):
        client = self.login("tech")
        res = client.post("/requests", json=["not", "an", "object"])
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json()["error"], "validation_error")

    def test_conflict_payload(self):
        client = self.login("tech")
        created = self.new_request(client)
        coord = self.login("coord")
        res = coord.post(f"/requests/{created['id']}/approve", json={})
        self.assertEqual(res.status_code, 409)
        body = res.get_json()
        self.assertEqual(body["error"], "invalid_state")
        self.assertEqual(body["current_status"], "draft")
        self.assertEqual(body["expected_status"], ["pending_approval"])

    def test_forbidden_payload(self):
        client = self.login("intern")
        res = client.get("/requests")
        self.assertEqual(res.status_code, 403)
        body = res.get_json()
        self.assertEqual(body["error"], "forbidden")
        self.assertEqual(body["reason"], "not_permitted")

    def test_unknown_route_and_method(self):
        client = self.login("tech")
        self.assertEqual(client.get("/nowhere").get_json()["error"], "not_found")
        res = client.delete("/requests")
        self.assertEqual(res.status_code, 405)
        self.assertEqual(res.get_json()["error"], "method_not_allowed")


class RequestFlowRoutesTest(RoutesTestCase):
    def test_full_flow_over_http(self):
        tech = self.login("tech")
        created = self.new_request(tech, quantity=3)
        self.assertEqual(created["status"], "draft")
        request_id = created["id"]
        line_id = created["items"][0]["id"]

        res = tech.put(f"/requests/{request_id}", json={"priority": "high"})
        self.assertEqual(res.get_json()["request"]["priority"], "high")

        res = tech.post(f"/requests/{request_id}/submit")
        self.assertEqual(res.get_json()["request"]["status"], "pending_approval")

        coord = self.login("coord")
        queue = coord.get("/requests/pending-approval").get_json()
        self.assertEqual([row["id"] for row in queue["items"]], [request_id])
        res = coord.post(
            f"/requests/{request_id}/approve",
            json={"items": [{"id": line_id, "quantity_approved": 2}]},
        )
        self.assertEqual(res.status_code, 200, res.get_json())
        self.assertEqual(res.get_json()["request"]["items"][0]["quantity_approved"], 2)

        stock = self.login("stock")
        queue = stock.get("/requests/awaiting-stock").get_json()
        self.assertEqual(queue["total"], 1)
        self.assertEqual(stock.post(f"/requests/{request_id}/stock/accept", json={}).status_code, 200)
        res = stock.post(
            f"/requests/{request_id}/stock/deliver",
            json={"items": [{"id": line_id, "quantity_delivered": 2}]},
        )
        self.assertEqual(res.status_code, 200, res.get_json())
        self.assertEqual(res.get_json()["request"]["status"], "delivered")

        detail = tech.get(f"/requests/{request_id}").get_json()["request"]
        self.assertEqual(
            [entry["action"] for entry in detail["history"]],
            ["create", "edit", "submit", "approve", "stock_accept", "deliver"],
        )
        self.assertEqual(detail["statistics"]["quantity_delivered"], 2)
        self.assertEqual(self.item_quantity(self.item_id), 8)

    def test_own_requests_are_not_in_the_approval_queue(self):
        coord = self.login("coord")
        created = self.new_request(coord)
        coord.post(f"/requests/{created['id']}/submit")

        queue = coord.get("/requests/pending-approval").get_json()
        self.assertEqual(queue["items"], [])

        res = coord.post(f"/requests/{created['id']}/approve", json={})
        self.assertEqual(res.status_code, 403)
        self.assertEqual(res.get_json()["reason"], "self_action_forbidden")

    def test_list_filters_and_pagination(self):
        tech = self.login("tech")
        for n in range(3):
            self.new_request(tech, title=f"Request {n}", priority="urgent" if n == 0 else "low")

        page = tech.get("/requests?per_page=2").get_json()
        self.assertEqual((page["total"], page["pages"], len(page["items"])), (3, 2, 2))

        urgent = tech.get("/requests/mine?priority=urgent").get_json()
        self.assertEqual([row["title"] for row in urgent["items"]], ["Request 0"])

        res = tech.get("/requests?status=bogus")
        self.assertEqual(res.status_code, 400)
        self.assertIn("status", res.get_json()["fields"])

        res = tech.get("/requests?date_from=yesterday")
        self.assertEqual(res.status_code, 400)
        self.assertIn("date_from", res.get_json()["fields"])

    def test_restricted_role_only_sees_own_detail(self):
        tech = self.login("tech")
        created = self.new_request(tech)

        intern = self.login("intern")
        res = intern.get(f"/requests/{created['id']}")
        self.assertEqual(res.status_code, 403)
        self.assertEqual(res.get_json()["reason"], "ownership_mismatch")
        self.assertEqual(intern.get("/requests/mine").get_json()["items"], [])

    def test_cancel_over_http(self):
        tech = self.login("tech")
        created = self.new_request(tech)
        res = tech.post(f"/requests/{created['id']}/cancel", json={"reason": "Duplicate"})
        self.assertEqual(res.status_code, 200)
        body = res.get_json()["request"]
        self.assertEqual((body["status"], body["rejection_reason"]), ("cancelled", "Duplicate"))


class HistoryRoutesTest(RoutesTestCase):
    def test_request_history_and_search(self):
        tech = self.login("tech")
        created = self.new_request(tech)
        tech.post(f"/requests/{created['id']}/submit")

        history = tech.get(f"/requests/{created['id']}/history").get_json()
        self.assertEqual(history["request_id"], created["id"])
        self.assertEqual([entry["action"] for entry in history["history"]], ["create", "submit"])
        self.assertEqual(history["history"][0]["actor_username"], "tech")

        stock = self.login("stock")
        found = stock.get(f"/history?action=submit&actor_id={self.tech_id}").get_json()
        self.assertEqual(found["total"], 1)
        self.assertEqual(found["items"][0]["request_id"], created["id"])

        intern = self.login("intern")
        self.assertEqual(intern.get("/history").status_code, 403)


class StockRoutesTest(RoutesTestCase):
    def test_catalog_and_receive(self):
        tech = self.login("tech")
        items = tech.get("/stock/items?search=lap").get_json()["items"]
        self.assertEqual([item["id"] for item in items], [self.item_id])

        res = tech.post(f"/stock/items/{self.item_id}/receive", json={"quantity": 5})
        self.assertEqual(res.status_code, 403)

        stock = self.login("stock")
        res = stock.post(f"/stock/items/{self.item_id}/receive", json={"quantity": 5, "note": "PO-77"})
        self.assertEqual(res.status_code, 200, res.get_json())
        self.assertEqual(res.get_json()["item"]["quantity"], 15)

        res = stock.post(f"/stock/items/{self.item_id}/receive", json={"quantity": 0})
        self.assertEqual(res.status_code, 400)

        detail = stock.get(f"/stock/items/{self.item_id}").get_json()["item"]
        self.assertEqual(detail["movements"][0]["note"], "PO-77")
        self.assertEqual(detail["movements"][0]["direction"], "inbound")

    def test_alerts(self):
        low_id = self.make_item("Headset", 1, min_quantity=4)
        stock = self.login("stock")
        stock.post(f"/stock/items/{low_id}/receive", json={"quantity": 1})

        alerts = stock.get("/stock/alerts?acknowledged=false").get_json()
        self.assertEqual(alerts["total"], 1)
        alert = alerts["items"][0]
        self.assertEqual((alert["stock_item_id"], alert["level"]), (low_id, "critical"))

        res = stock.post(f"/stock/alerts/{alert['id']}/acknowledge")
        self.assertTrue(res.get_json()["alert"]["acknowledged"])
        self.assertEqual(stock.post("/stock/alerts/acknowledge-all").get_json(), {"acknowledged": 0})

        self.assertEqual(stock.get("/stock/alerts?level=purple").status_code, 400)
        self.assertEqual(self.login("tech").get("/stock/alerts").status_code, 403)


class CsrfTest(RoutesTestCase):
    config_overrides = {"WTF_CSRF_ENABLED": True}

    def test_mutations_need_the_token_header(self):
        client = self.app.test_client()
        token = client.get("/auth/csrf-token").get_json()["csrf_token"]

        res = client.post("/auth/login", json={"username": "tech", "password": PASSWORD})
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json()["error"], "csrf_failed")

        res = client.post(
            "/auth/login",
            json={"username": "tech", "password": PASSWORD},
            headers={"X-CSRFToken": token},
        )
        self.assertEqual(res.status_code, 200)
        token = res.get_json()["csrf_token"]

        body = {"title": "Laptop", "items": [{"stock_item_id": self.item_id, "quantity": 1}]}
        self.assertEqual(client.post("/requests", json=body).get_json()["error"], "csrf_failed")
        self.assertEqual(client.post("/requests", json=body, headers={"X-CSRFToken": token}).status_code, 201)


if __name__ == "__main__":
    unittest.main()
