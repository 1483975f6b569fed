import unittest

from tests.helpers import PASSWORD, StockroomTestCase


class UserRoutesTestCase(StockroomTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.admin_id = self.make_user("root", "admin")
        self.coord_id = self.make_user("coord", "coordinator")
        self.tech_id = self.make_user("tech", "technician")
        self.make_user("stock", "stock_admin")


class CreateUserTest(UserRoutesTestCase):
    def test_create_derives_profile(self):
        admin = self.login("root")
        res = admin.post(
            "/users",
            json={
                "username": "newbie",
                "password": PASSWORD,
                "role": "intern",
                "full_name": "New Intern",
                "email": "newbie@example.com",
            },
        )
        self.assertEqual(res.status_code, 201, res.get_json())
        user = res.get_json()["user"]
        self.assertEqual(user["role"], "intern")
        self.assertEqual(user["max_request_value"], "300.00")
        self.assertEqual(user["max_return_days"], 15)
        self.assertTrue(user["capabilities"]["can_request"])
        self.assertFalse(user["capabilities"]["can_approve"])

        self.assertEqual(self.login("newbie").get("/auth/me").status_code, 200)

    def test_create_validation(self):
        admin = self.login("root")
        res = admin.post("/users", json={"username": "", "password": "short", "role": "intern"})
        self.assertEqual(res.status_code, 400)
        self.assertEqual(set(res.get_json()["fields"]), {"username", "password"})

        res = admin.post("/users", json={"username": "x", "password": "long-enough", "role": "wizard"})
        self.assertIn("role", res.get_json()["fields"])

        res = admin.post("/users", json={"username": "tech", "password": "long-enough", "role": "intern"})
        self.assertEqual(res.get_json()["fields"], {"username": "Already exists."})

    def test_duplicate_email(self):
        admin = self.login("root")
        admin.post("/users", json={"username": "a1", "password": "long-enough", "role": "intern", "email": "x@y.z"})
        res = admin.post("/users", json={"username": "a2", "password": "long-enough", "role": "intern", "email": "x@y.z"})
        self.assertEqual(res.status_code, 400)
        self.assertIn("email", res.get_json()["fields"])


class UpdateUserTest(UserRoutesTestCase):
    def test_role_change_rederives_then_overrides_apply(self):
        admin = self.login("root")
        res = admin.patch(
            f"/users/{self.tech_id}",
            json={"role": "manager", "capabilities": {"stock_handler": True}, "max_return_days": 90},
        )
        self.assertEqual(res.status_code, 200, res.get_json())
        user = res.get_json()["user"]
        self.assertEqual(user["role"], "manager")
        self.assertTrue(user["capabilities"]["can_approve"])
        self.assertTrue(user["capabilities"]["full_reports"])
        self.assertTrue(user["capabilities"]["stock_handler"])
        self.assertEqual(user["max_return_days"], 90)

        res = admin.patch(f"/users/{self.tech_id}", json={"role": "trainee"})
        user = res.get_json()["user"]
        self.assertFalse(user["capabilities"]["stock_handler"])
        self.assertEqual(user["max_return_days"], 15)

    def test_invalid_overrides(self):
        admin = self.login("root")
        res = admin.patch(
            f"/users/{self.tech_id}",
            json={"capabilities": {"can_fly": True, "can_view": "yes"}, "max_request_value": "-5"},
        )
        self.assertEqual(res.status_code, 400)
        self.assertEqual(
            set(res.get_json()["fields"]),
            {"capabilities.can_fly", "capabilities.can_view", "max_request_value"},
        )

    def test_flag_override_grants_access_immediately(self):
        admin = self.login("root")
        tech = self.login("tech")
        self.assertEqual(tech.get("/stock/alerts").status_code, 403)

        admin.patch(f"/users/{self.tech_id}", json={"capabilities": {"receive_stock_alerts": True}})
        self.assertEqual(tech.get("/stock/alerts").status_code, 200)

    def test_password_change(self):
        admin = self.login("root")
        self.assertEqual(admin.patch(f"/users/{self.tech_id}", json={"password": "short"}).status_code, 400)
        self.assertEqual(admin.patch(f"/users/{self.tech_id}", json={"password": "brand-new-pass"}).status_code, 200)

        res = self.client.post("/auth/login", json={"username": "tech", "password": PASSWORD})
        self.assertEqual(res.status_code, 400)
        res = self.client.post("/auth/login", json={"username": "tech", "password": "brand-new-pass"})
        self.assertEqual(res.status_code, 200)


class AdminGuardTest(UserRoutesTestCase):
    def test_non_admin_manager_cannot_touch_admins(self):
        coord = self.login("coord")
        self.assertEqual(coord.get("/users").status_code, 200)

        res = coord.patch(f"/users/{self.admin_id}", json={"full_name": "Pwned"})
        self.assertEqual(res.status_code, 403)
        self.assertEqual(res.get_json()["reason"], "not_permitted")

        res = coord.patch(f"/users/{self.tech_id}", json={"role": "admin"})
        self.assertEqual(res.status_code, 403)

        res = coord.post("/users", json={"username": "boss", "password": "long-enough", "role": "admin"})
        self.assertEqual(res.status_code, 403)

    def test_stock_admin_is_outside_user_management(self):
        stock = self.login("stock")
        res = stock.get("/users")
        self.assertEqual(res.status_code, 403)
        self.assertEqual(res.get_json()["reason"], "resource_not_in_allowlist")

    def test_requesters_cannot_manage_users(self):
        res = self.login("tech").get(f"/users/{self.tech_id}")
        self.assertEqual(res.status_code, 403)
        self.assertEqual(res.get_json()["reason"], "not_permitted")

    def test_unknown_user(self):
        self.assertEqual(self.login("root").get("/users/999").status_code, 404)


class DelegationLimitTest(UserRoutesTestCase):
    def capabilities_of(self, user_id):
        return self.login("root").get(f"/users/{user_id}").get_json()["user"]["capabilities"]

    def test_nobody_changes_their_own_access(self):
        coord = self.login("coord")
        res = coord.patch(f"/users/{self.coord_id}", json={"capabilities": {"stock_handler": True}})
        self.assertEqual(res.status_code, 403)
        self.assertEqual(res.get_json()["reason"], "self_action_forbidden")
        self.assertFalse(self.capabilities_of(self.coord_id)["stock_handler"])

        res = coord.patch(f"/users/{self.coord_id}", json={"role": "manager"})
        self.assertEqual(res.get_json()["reason"], "self_action_forbidden")

        res = self.login("root").patch(f"/users/{self.admin_id}", json={"role": "technician"})
        self.assertEqual(res.get_json()["reason"], "self_action_forbidden")

        res = coord.patch(f"/users/{self.coord_id}", json={"full_name": "Coord Renamed"})
        self.assertEqual(res.status_code, 200, res.get_json())

    def test_only_lower_tier_accounts_are_managed(self):
        peer_id = self.make_user("coord2", "coordinator")
        stock_id = self.make_user("stock2", "stock_admin")
        coord = self.login("coord")

        for target in (peer_id, stock_id):
            res = coord.patch(f"/users/{target}", json={"full_name": "Changed"})
            self.assertEqual(res.status_code, 403)
            self.assertEqual(res.get_json()["reason"], "not_permitted")
        self.assertEqual(coord.post(f"/users/{peer_id}/deactivate").status_code, 403)

        res = coord.patch(f"/users/{self.tech_id}", json={"department": "Field"})
        self.assertEqual(res.status_code, 200)

    def test_only_lower_tier_roles_are_assigned(self):
        coord = self.login("coord")
        for role in ("manager", "coordinator", "stock_admin"):
            res = coord.patch(f"/users/{self.tech_id}", json={"role": role})
            self.assertEqual(res.status_code, 403, role)
        self.assertEqual(
            coord.post("/users", json={"username": "boss2", "password": "long-enough", "role": "manager"}).status_code,
            403,
        )

        res = coord.patch(f"/users/{self.tech_id}", json={"role": "analyst"})
        self.assertEqual(res.get_json()["user"]["role"], "analyst")
        res = coord.post("/users", json={"username": "kid", "password": "long-enough", "role": "intern"})
        self.assertEqual(res.status_code, 201)

    def test_cannot_grant_what_they_do_not_hold(self):
        coord = self.login("coord")
        res = coord.patch(f"/users/{self.tech_id}", json={"capabilities": {"stock_handler": True}})
        self.assertEqual(res.status_code, 403)
        self.assertEqual(res.get_json()["reason"], "not_permitted")
        self.assertFalse(self.capabilities_of(self.tech_id)["stock_handler"])

        res = coord.post(
            "/users",
            json={
                "username": "helper",
                "password": "long-enough",
                "role": "intern",
                "capabilities": {"receive_stock_alerts": True},
            },
        )
        self.assertEqual(res.status_code, 403)

        res = coord.patch(f"/users/{self.tech_id}", json={"max_request_value": "1000000"})
        self.assertEqual(res.status_code, 403)

        res = coord.patch(f"/users/{self.tech_id}", json={"capabilities": {"full_reports": False, "can_approve": True}})
        self.assertEqual(res.status_code, 200, res.get_json())
        capabilities = res.get_json()["user"]["capabilities"]
        self.assertEqual((capabilities["full_reports"], capabilities["can_approve"]), (False, True))


class DeactivateTest(UserRoutesTestCase):
    def test_deactivation_ends_an_open_session(self):
        tech = self.login("tech")
        self.assertEqual(tech.get("/requests/mine").status_code, 200)

        admin = self.login("root")
        res = admin.post(f"/users/{self.tech_id}/deactivate")
        self.assertEqual(res.status_code, 200)
        self.assertFalse(res.get_json()["user"]["is_active"])

        res = tech.get("/requests/mine")
        self.assertEqual(res.status_code, 401)
        self.assertEqual(res.get_json()["error"], "unauthenticated")

        res = self.client.post("/auth/login", json={"username": "tech", "password": PASSWORD})
        self.assertEqual(res.get_json()["reason"], "inactive_user")

    def test_nobody_deactivates_themselves(self):
        admin = self.login("root")
        res = admin.post(f"/users/{self.admin_id}/deactivate")
        self.assertEqual(res.status_code, 400)
        res = admin.patch(f"/users/{self.admin_id}", json={"is_active": False})
        self.assertEqual(res.status_code, 400)

    def test_list_filters(self):
        admin = self.login("root")
        admin.post(f"/users/{self.tech_id}/deactivate")

        inactive = admin.get("/users?active=false").get_json()["items"]
        self.assertEqual([user["username"] for user in inactive], ["tech"])

        coords = admin.get("/users?role=coordinator").get_json()["items"]
        self.assertEqual([user["username"] for user in coords], ["coord"])

        found = admin.get("/users?search=sto").get_json()["items"]
        self.assertEqual([user["username"] for user in found], ["stock"])


if __name__ == "__main__":
    unittest.main()
