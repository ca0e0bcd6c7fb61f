from __future__ import annotations

import os
import time
import unittest
from datetime import date, timedelta

from carmarket import create_app
from carmarket.extensions import db
from carmarket.models import Notification, RentalListing, User
from carmarket.utils.jwt_utils import create_access_token


def _day(offset: int) -> str:
    return (date.today() + timedelta(days=offset)).isoformat()


class RentalsAndBookingsTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._prev_db_uri = os.getenv("SQLALCHEMY_DATABASE_URI")
        cls._prev_db_url = os.getenv("DATABASE_URL")
        db_uri = "sqlite:///:memory:"
        os.environ["SQLALCHEMY_DATABASE_URI"] = db_uri
        os.environ["DATABASE_URL"] = db_uri
        cls.app = create_app()
        cls.app.config.update(TESTING=True)
        with cls.app.app_context():
            db.create_all()
        cls.client = cls.app.test_client()

    @classmethod
    def tearDownClass(cls):
        if cls._prev_db_uri is None:
            os.environ.pop("SQLALCHEMY_DATABASE_URI", None)
        else:
            os.environ["SQLALCHEMY_DATABASE_URI"] = cls._prev_db_uri
        if cls._prev_db_url is None:
            os.environ.pop("DATABASE_URL", None)
        else:
            os.environ["DATABASE_URL"] = cls._prev_db_url

    def _seed_user(self, role: str) -> tuple[int, str]:
        suffix = str(time.time_ns())
        with self.app.app_context():
            row = User(name=f"{role}-{suffix[-4:]}", email=f"{role}-{suffix}@carmarket.test", role=role, is_verified=True)
            row.set_password("Passw0rd!")
            db.session.add(row)
            db.session.commit()
            return int(row.id), create_access_token(int(row.id), role=role)

    def _headers(self, token: str) -> dict:
        return {"Authorization": f"Bearer {token}"}

    def _create_rental(self, token: str, **overrides) -> dict:
        payload = {
            "title": "Toyota Noah 8-seater",
            "make": "Toyota",
            "model": "Noah",
            "year": 2017,
            "category": "van",
            "price_per_day": 5000,
            "seats": 8,
            "location": "Mombasa",
        }
        payload.update(overrides)
        res = self.client.post("/api/rental-listings", json=payload, headers=self._headers(token))
        self.assertEqual(res.status_code, 201, res.get_data(as_text=True))
        return (res.get_json(force=True) or {})["rental_listing"]

    def _book(self, token: str, rental_id: int, start: int, end: int):
        return self.client.post(
            "/api/bookings",
            json={"rental_listing_id": rental_id, "start_date": _day(start), "end_date": _day(end)},
            headers=self._headers(token),
        )

    def test_only_rental_roles_can_list_vehicles(self):
        _buyer_id, buyer_token = self._seed_user("buyer")
        res = self.client.post(
            "/api/rental-listings",
            json={"title": "X", "make": "Y", "model": "Z", "year": 2019, "price_per_day": 10},
            headers=self._headers(buyer_token),
        )
        self.assertEqual(res.status_code, 403)

    def test_rental_validation(self):
        _cid, company_token = self._seed_user("rental_company")
        base = {"title": "Axio", "make": "Toyota", "model": "Axio", "year": 2015, "price_per_day": 3000}
        for extra in ({"seats": 1}, {"category": "spaceship"}, {"min_rental_days": 5, "max_rental_days": 2}, {"price_per_day": 0}):
            payload = dict(base, **extra)
            res = self.client.post("/api/rental-listings", json=payload, headers=self._headers(company_token))
            self.assertEqual(res.status_code, 400, extra)

    def test_booking_prices_by_night_and_rejects_overlap(self):
        _cid, company_token = self._seed_user("rental_company")
        renter_id, renter_token = self._seed_user("buyer")
        _other_id, other_token = self._seed_user("buyer")
        rental = self._create_rental(company_token)

        res = self._book(renter_token, rental["id"], 10, 13)
        self.assertEqual(res.status_code, 201, res.get_data(as_text=True))
        booking = (res.get_json(force=True) or {})["booking"]
        self.assertEqual(booking["status"], "PENDING")
        self.assertEqual(booking["total_days"], 3)
        self.assertEqual(booking["total_price"], 15000.0)
        self.assertEqual(len(booking["price_breakdown"]), 3)

        overlap = self._book(other_token, rental["id"], 12, 15)
        self.assertEqual(overlap.status_code, 409)
        body = overlap.get_json(force=True) or {}
        self.assertEqual(body.get("error"), "BOOKING_CONFLICT")
        self.assertEqual(body["conflicts"][0]["booking_id"], booking["id"])

        # Shared turnover day counts as an overlap.
        touching = self._book(other_token, rental["id"], 13, 16)
        self.assertEqual(touching.status_code, 409)

        clear = self._book(other_token, rental["id"], 14, 16)
        self.assertEqual(clear.status_code, 201)

        with self.app.app_context():
            self.assertTrue(Notification.query.filter_by(user_id=renter_id, type="booking").count() >= 1)

    def test_booking_date_rules(self):
        company_id, company_token = self._seed_user("rental_company")
        _renter_id, renter_token = self._seed_user("buyer")
        rental = self._create_rental(company_token, min_rental_days=2)

        self.assertEqual(self._book(renter_token, rental["id"], 0, 3).status_code, 400)
        self.assertEqual(self._book(renter_token, rental["id"], 5, 5).status_code, 400)
        self.assertEqual(self._book(renter_token, rental["id"], 5, 6).status_code, 400)
        self.assertEqual(self._book(company_token, rental["id"], 5, 8).status_code, 400)
        missing = self.client.post("/api/bookings", json={"rental_listing_id": 999999, "start_date": _day(3), "end_date": _day(5)}, headers=self._headers(renter_token))
        self.assertEqual(missing.status_code, 404)

    def test_owner_status_transitions_and_renter_cancel(self):
        _cid, company_token = self._seed_user("rental_company")
        _renter_id, renter_token = self._seed_user("buyer")
        rental = self._create_rental(company_token)
        booking = (self._book(renter_token, rental["id"], 20, 22).get_json(force=True) or {})["booking"]

        renter_confirm = self.client.patch(f"/api/bookings/{booking['id']}/status", json={"status": "CONFIRMED"}, headers=self._headers(renter_token))
        self.assertEqual(renter_confirm.status_code, 403)

        confirm = self.client.patch(f"/api/bookings/{booking['id']}/status", json={"status": "CONFIRMED"}, headers=self._headers(company_token))
        self.assertEqual(confirm.status_code, 200)
        self.assertEqual((confirm.get_json(force=True) or {})["booking"]["status"], "CONFIRMED")

        skip = self.client.patch(f"/api/bookings/{booking['id']}/status", json={"status": "COMPLETED"}, headers=self._headers(company_token))
        self.assertEqual(skip.status_code, 400)

        cancel = self.client.post(f"/api/bookings/{booking['id']}/cancel", json={"reason": "Plans changed"}, headers=self._headers(renter_token))
        self.assertEqual(cancel.status_code, 200)
        cancelled = (cancel.get_json(force=True) or {})["booking"]
        self.assertEqual(cancelled["status"], "CANCELLED")
        self.assertEqual(cancelled["cancellation_reason"], "Plans changed")

        again = self.client.post(f"/api/bookings/{booking['id']}/cancel", headers=self._headers(renter_token))
        self.assertEqual(again.status_code, 400)

        # Cancelled bookings free the dates.
        self.assertEqual(self._book(renter_token, rental["id"], 20, 22).status_code, 201)

    def test_booking_lists_for_renter_and_owner(self):
        _cid, company_token = self._seed_user("rental_company")
        _renter_id, renter_token = self._seed_user("buyer")
        rental = self._create_rental(company_token)
        self._book(renter_token, rental["id"], 30, 32)

        mine = self.client.get("/api/bookings", headers=self._headers(renter_token)).get_json(force=True) or {}
        self.assertEqual(len(mine["items"]), 1)
        self.assertEqual(mine["items"][0]["rental_listing"]["id"], rental["id"])
        owned = self.client.get("/api/bookings?as=owner", headers=self._headers(company_token)).get_json(force=True) or {}
        self.assertEqual(len(owned["items"]), 1)

    def test_delete_rental_with_bookings_deactivates(self):
        _cid, company_token = self._seed_user("rental_company")
        _renter_id, renter_token = self._seed_user("buyer")
        rental = self._create_rental(company_token)
        spare = self._create_rental(company_token, title="Spare")
        self._book(renter_token, rental["id"], 40, 42)

        res = self.client.delete(f"/api/rental-listings/{rental['id']}", headers=self._headers(company_token))
        self.assertTrue((res.get_json(force=True) or {}).get("deactivated"))
        with self.app.app_context():
            self.assertFalse(db.session.get(RentalListing, rental["id"]).is_active)

        res = self.client.delete(f"/api/rental-listings/{spare['id']}", headers=self._headers(company_token))
        self.assertTrue((res.get_json(force=True) or {}).get("deleted"))
        with self.app.app_context():
            self.assertIsNone(db.session.get(RentalListing, spare["id"]))

    def test_pricing_rules_and_blocked_dates(self):
        _cid, company_token = self._seed_user("rental_company")
        _other_id, other_token = self._seed_user("rental_company")
        _renter_id, renter_token = self._seed_user("buyer")
        rental = self._create_rental(company_token)

        payload = {
            "rental_listing_id": rental["id"],
            "blocked_dates": [_day(50)],
            "pricing_rules": [
                {"name": "Peak", "start_date": _day(60), "end_date": _day(61), "multiplier": 1.5, "priority": 1},
                {"name": "Holiday", "start_date": _day(60), "end_date": _day(60), "price_per_day": 9000, "priority": 1},
                {"name": "Low", "start_date": _day(60), "end_date": _day(62), "price_per_day": 100, "priority": 0},
            ],
        }
        denied = self.client.post("/api/rental/availability/sync", json=payload, headers=self._headers(other_token))
        self.assertEqual(denied.status_code, 403)
        synced = self.client.post("/api/rental/availability/sync", json=payload, headers=self._headers(company_token))
        self.assertEqual(synced.status_code, 200, synced.get_data(as_text=True))
        self.assertEqual((synced.get_json(force=True) or {})["blocked_dates"], [_day(50)])

        check = self.client.post(
            "/api/rental/availability/check",
            json={"rental_listing_id": rental["id"], "start_date": _day(60), "end_date": _day(63)},
        )
        self.assertEqual(check.status_code, 200)
        body = check.get_json(force=True) or {}
        self.assertTrue(body["available"])
        self.assertEqual(body["days"], 3)
        # Fixed price beats multiplier at equal priority; highest priority wins over lower ones.
        self.assertEqual([row["price"] for row in body["breakdown"]], [9000.0, 7500.0, 100.0])
        self.assertEqual(body["total_price"], 16600.0)

        blocked = self._book(renter_token, rental["id"], 49, 51)
        self.assertEqual(blocked.status_code, 409)
        self.assertEqual((blocked.get_json(force=True) or {})["blocked_dates"], [_day(50)])

        calendar = self.client.get(f"/api/rental/availability/sync?rental_listing_id={rental['id']}&start={_day(49)}&end={_day(51)}")
        self.assertEqual(calendar.status_code, 200)
        days = (calendar.get_json(force=True) or {})["days"]
        self.assertEqual(len(days), 3)
        self.assertEqual([d["blocked"] for d in days], [False, True, False])

    def test_availability_input_validation(self):
        _cid, company_token = self._seed_user("rental_company")
        rental = self._create_rental(company_token)
        bad_rule = self.client.post(
            "/api/rental/availability/sync",
            json={"rental_listing_id": rental["id"], "pricing_rules": [{"start_date": _day(5), "end_date": _day(6)}]},
            headers=self._headers(company_token),
        )
        self.assertEqual(bad_rule.status_code, 400)
        bad_range = self.client.post(
            "/api/rental/availability/check",
            json={"rental_listing_id": rental["id"], "start_date": _day(6), "end_date": _day(5)},
        )
        self.assertEqual(bad_range.status_code, 400)
        too_long = self.client.get(f"/api/rental/availability/sync?rental_listing_id={rental['id']}&start={_day(1)}&end={_day(500)}")
        self.assertEqual(too_long.status_code, 400)

    def test_admin_status_change_after_rental_removed(self):
        _cid, company_token = self._seed_user("rental_company")
        renter_id, renter_token = self._seed_user("buyer")
        _admin_id, admin_token = self._seed_user("admin")
        rental = self._create_rental(company_token, title="Mazda Demio")
        booking = (self._book(renter_token, rental["id"], 50, 52).get_json(force=True) or {})["booking"]
        with self.app.app_context():
            db.session.delete(db.session.get(RentalListing, rental["id"]))
            db.session.commit()

        res = self.client.patch(f"/api/bookings/{booking['id']}/status", json={"status": "CANCELLED"}, headers=self._headers(admin_token))
        self.assertEqual(res.status_code, 200, res.get_data(as_text=True))
        body = (res.get_json(force=True) or {})["booking"]
        self.assertEqual(body["status"], "CANCELLED")
        self.assertIsNone(body["rental_listing"])
        with self.app.app_context():
            note = Notification.query.filter_by(user_id=renter_id, channel="in_app", title="Booking cancelled").one()
            self.assertIn(f"rental #{rental['id']}", note.message)

        self.assertEqual(self.client.get(f"/api/bookings/{booking['id']}", headers=self._headers(renter_token)).status_code, 200)


if __name__ == "__main__":
    unittest.main()
