import unittest
from concurrent.futures import ThreadPoolExecutor

from sqlalchemy import delete

from stockroom import lifecycle
from stockroom.extensions import db
from stockroom.models import Request, RequestSequence, utcnow
from stockroom.sequences import format_code, next_code
from stockroom.utils import unit_of_work
from tests.helpers import StockroomTestCase


class FormatCodeTest(unittest.TestCase):
    def test_zero_padded_to_three_digits(self):
        self.assertEqual(format_code("REQ", 2025, 1), "REQ-2025-001")
        self.assertEqual(format_code("REQ", 2025, 42), "REQ-2025-042")

    def test_grows_past_three_digits(self):
        self.assertEqual(format_code("REQ", 2025, 1000), "REQ-2025-1000")


class NextCodeTest(StockroomTestCase):
    def _codes(self, count, year=None, resync=False):
        with self.app.app_context():
            codes = [next_code(year=year, resync=resync) for _ in range(count)]
            db.session.commit()
            return codes

    def test_sequential_within_year(self):
        self.assertEqual(self._codes(3, year=2030), ["REQ-2030-001", "REQ-2030-002", "REQ-2030-003"])
        self.assertEqual(self._codes(1, year=2030), ["REQ-2030-004"])

    def test_each_year_restarts(self):
        self._codes(2, year=2030)
        self.assertEqual(self._codes(1, year=2031), ["REQ-2031-001"])
        self.assertEqual(self._codes(1, year=2030), ["REQ-2030-003"])

    def test_defaults_to_current_year(self):
        (code,) = self._codes(1)
        self.assertTrue(code.startswith(f"REQ-{utcnow().year}-"))

    def test_rollback_releases_the_number(self):
        with self.app.app_context():
            self.assertEqual(next_code(year=2030), "REQ-2030-001")
            db.session.rollback()
        self.assertEqual(self._codes(1, year=2030), ["REQ-2030-001"])

    def test_counter_starts_after_existing_codes(self):
        tech_id = self.make_user("tech")
        item_id = self.make_item()
        for _ in range(3):
            self.create_draft(tech_id, item_id)

        with self.app.app_context():
            db.session.execute(delete(RequestSequence))
            db.session.commit()

        year = utcnow().year
        self.assertEqual(self._codes(1), [f"REQ-{year}-004"])

    def test_resync_skips_codes_already_taken(self):
        tech_id = self.make_user("tech")
        item_id = self.make_item()
        self.create_draft(tech_id, item_id)
        self.create_draft(tech_id, item_id)

        year = utcnow().year
        with self.app.app_context():
            db.session.get(RequestSequence, year).last_value = 0
            db.session.commit()

        self.assertEqual(self._codes(1, resync=True), [f"REQ-{year}-003"])

    def test_concurrent_allocation_is_gapless_and_unique(self):
        total = 1000

        def allocate(_):
            with self.app.app_context():
                with unit_of_work():
                    code = next_code(year=2032)
                return code

        with ThreadPoolExecutor(max_workers=8) as pool:
            codes = list(pool.map(allocate, range(total)))

        self.assertEqual(len(set(codes)), total)
        self.assertEqual(set(codes), {format_code("REQ", 2032, n) for n in range(1, total + 1)})

        with self.app.app_context():
            self.assertEqual(db.session.get(RequestSequence, 2032).last_value, total)


class ConcurrentCreationTest(StockroomTestCase):
    def test_concurrent_creations_get_distinct_consecutive_codes(self):
        total = 1000
        tech_id = self.make_user("tech")
        item_id = self.make_item("Mouse", 5)

        def create(n):
            with self.app.app_context():
                req = lifecycle.create_request(
                    self.user(tech_id),
                    {"title": f"Mouse #{n}", "items": [{"stock_item_id": item_id, "quantity": 1}]},
                )
                return req.code

        with ThreadPoolExecutor(max_workers=8) as pool:
            codes = list(pool.map(create, range(total)))

        year = utcnow().year
        self.assertEqual(set(codes), {format_code("REQ", year, n) for n in range(1, total + 1)})
        with self.app.app_context():
            self.assertEqual(db.session.query(Request).count(), total)
            self.assertEqual(db.session.get(RequestSequence, year).last_value, total)


class CustomPrefixTest(StockroomTestCase):
    config_overrides = {"REQUEST_CODE_PREFIX": "IT"}

    def test_prefix_from_config(self):
        with self.app.app_context():
            code = next_code(year=2030)
            db.session.commit()
        self.assertEqual(code, "IT-2030-001")


if __name__ == "__main__":
    unittest.main()
