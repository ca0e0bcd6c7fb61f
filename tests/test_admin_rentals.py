from __future__ import annotations

import os
import time
import unittest
from datetime import date, timedelta

from carmarket import create_app
from carmarket.extensions import db
from carmarket.models import Commission, Notification, RentalBooking, User
from carmarket.utils.jwt_utils import create_access_token


def _day(offset: int) -> str:
    return (date.today() + timedelta(days=offset)).isoformat()


class AdminRentalsTestCase(unittest.TestCase):
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
            "title": "Subaru Forester",
            "make": "Subaru",
            "model": "Forester",
            "year": 2016,
            "category": "suv",
            "price_per_day": 5000,
            "seats": 5,
            "location": "Nakuru",
        }
        payload.update(overrides)
        res = self.client.post("/api/rental-listings", json=payload, headers=self._headers(token))
        self.assertEqual(res.status_code, 201, res.get_data(as_text=True))
        return (res.get_json(force=True) or {})["rental_listing"]

    def _booking(self, start: int = 10, end: int = 13) -> tuple[int, int, dict]:
        owner_id, owner_token = self._seed_user("rental_company")
        renter_id, renter_token = self._seed_user("buyer")
        rental = self._create_rental(owner_token)
        res = self.client.post(
            "/api/bookings",
            json={"rental_listing_id": rental["id"], "start_date": _day(start), "end_date": _day(end)},
            headers=self._headers(renter_token),
        )
        self.assertEqual(res.status_code, 201, res.get_data(as_text=True))
        return owner_id, renter_id, (res.get_json(force=True) or {})["booking"]

    def test_admin_routes_require_admin(self):
        _uid, token = self._seed_user("buyer")
        for path in ("/api/admin/rental-bookings", "/api/admin/rental-companies", "/api/admin/disputes", "/api/admin/stats"):
            self.assertEqual(self.client.get(path, headers=self._headers(token)).status_code, 403, path)
            self.assertEqual(self.client.get(path).status_code, 401, path)

    def test_marking_booking_paid_records_commission_once(self):
        owner_id, _renter_id, booking = self._booking()
        self.assertEqual(booking["total_price"], 15000.0)
        _admin_id, admin_token = self._seed_user("admin")

        bad = self.client.patch(
            f"/api/admin/rental-bookings/{booking['id']}", json={"payment_status": "SETTLED"}, headers=self._headers(admin_token)
        )
        self.assertEqual(bad.status_code, 400)

        res = self.client.patch(
            f"/api/admin/rental-bookings/{booking['id']}", json={"payment_status": "PAID"}, headers=self._headers(admin_token)
        )
        self.assertEqual(res.status_code, 200, res.get_data(as_text=True))
        commission = (res.get_json(force=True) or {})["commission"]
        self.assertEqual(commission["type"], "rental")
        self.assertEqual(commission["amount"], 15000.0)
        self.assertEqual(commission["rate"], 15.0)
        self.assertEqual(commission["commission_amount"], 2250.0)

        again = self.client.patch(
            f"/api/admin/rental-bookings/{booking['id']}", json={"payment_status": "PAID"}, headers=self._headers(admin_token)
        )
        self.assertEqual(again.status_code, 200)
        with self.app.app_context():
            self.assertEqual(Commission.query.filter_by(type="rental", source_id=booking["id"]).count(), 1)

        _other_id, other_token = self._seed_user("buyer")
        owner_token = create_access_token(owner_id, role="rental_company")
        summary = self.client.get("/api/commissions", headers=self._headers(owner_token))
        self.assertEqual(summary.status_code, 200)
        body = summary.get_json(force=True) or {}
        self.assertEqual(len(body["items"]), 1)
        self.assertEqual(body["summary"]["pending"], {"count": 1, "amount": 2250.0})
        self.assertEqual(body["summary"]["total"], 2250.0)

        spy = self.client.get(f"/api/commissions?user_id={owner_id}", headers=self._headers(other_token))
        self.assertEqual(spy.status_code, 403)
        as_admin = self.client.get(f"/api/commissions?user_id={owner_id}", headers=self._headers(admin_token))
        self.assertEqual(len((as_admin.get_json(force=True) or {})["items"]), 1)

        paid = self.client.patch(f"/api/commissions/{commission['id']}", json={"status": "paid"}, headers=self._headers(admin_token))
        self.assertEqual(paid.status_code, 200)
        self.assertIsNotNone((paid.get_json(force=True) or {})["commission"]["paid_at"])

    def test_admin_status_change_notifies_renter(self):
        _owner_id, renter_id, booking = self._booking(20, 22)
        _admin_id, admin_token = self._seed_user("admin")
        res = self.client.patch(
            f"/api/admin/rental-bookings/{booking['id']}",
            json={"status": "CANCELLED", "cancellation_reason": "Vehicle unavailable"},
            headers=self._headers(admin_token),
        )
        self.assertEqual(res.status_code, 200)
        self.assertEqual((res.get_json(force=True) or {})["booking"]["status"], "CANCELLED")
        with self.app.app_context():
            self.assertTrue(Notification.query.filter_by(user_id=renter_id, type="booking").count() >= 1)
        deleted = self.client.delete(f"/api/admin/rental-bookings/{booking['id']}", headers=self._headers(admin_token))
        self.assertEqual(deleted.status_code, 200)

    def test_only_cancelled_or_disputed_bookings_can_be_deleted(self):
        _owner_id, _renter_id, booking = self._booking(30, 32)
        _admin_id, admin_token = self._seed_user("admin")
        res = self.client.delete(f"/api/admin/rental-bookings/{booking['id']}", headers=self._headers(admin_token))
        self.assertEqual(res.status_code, 400)

    def test_dispute_lifecycle(self):
        _owner_id, renter_id, booking = self._booking(40, 43)
        _admin_id, admin_token = self._seed_user("admin")
        missing = self.client.post("/api/admin/disputes", json={"booking_id": booking["id"]}, headers=self._headers(admin_token))
        self.assertEqual(missing.status_code, 400)

        res = self.client.post(
            "/api/admin/disputes",
            json={"booking_id": booking["id"], "title": "Damage claim", "description": "Scratched bumper", "priority": "high"},
            headers=self._headers(admin_token),
        )
        self.assertEqual(res.status_code, 201, res.get_data(as_text=True))
        dispute = (res.get_json(force=True) or {})["dispute"]
        self.assertEqual(dispute["status"], "OPEN")
        self.assertEqual(dispute["priority"], "HIGH")
        self.assertEqual(dispute["booking"]["status"], "DISPUTED")

        note = self.client.post(
            f"/api/admin/disputes/{dispute['id']}/messages",
            json={"message": "Called the renter", "is_internal": True},
            headers=self._headers(admin_token),
        )
        self.assertEqual(note.status_code, 201)
        messages = (self.client.get(f"/api/admin/disputes/{dispute['id']}/messages", headers=self._headers(admin_token)).get_json(force=True) or {})
        self.assertEqual(len(messages["items"]), 1)

        early_delete = self.client.delete(f"/api/admin/disputes/{dispute['id']}", headers=self._headers(admin_token))
        self.assertEqual(early_delete.status_code, 400)

        bad_refund = self.client.patch(
            f"/api/admin/disputes/{dispute['id']}", json={"refund_amount": -5}, headers=self._headers(admin_token)
        )
        self.assertEqual(bad_refund.status_code, 400)
        resolved = self.client.patch(
            f"/api/admin/disputes/{dispute['id']}",
            json={"status": "RESOLVED", "resolution": "Renter pays excess", "refund_amount": 0},
            headers=self._headers(admin_token),
        )
        self.assertEqual(resolved.status_code, 200)
        body = (resolved.get_json(force=True) or {})["dispute"]
        self.assertEqual(body["booking"]["status"], "COMPLETED")
        self.assertIsNotNone(body["resolved_at"])

        closed = self.client.patch(f"/api/admin/disputes/{dispute['id']}", json={"status": "CLOSED"}, headers=self._headers(admin_token))
        self.assertEqual(closed.status_code, 200)
        self.assertEqual(self.client.delete(f"/api/admin/disputes/{dispute['id']}", headers=self._headers(admin_token)).status_code, 200)
        with self.app.app_context():
            self.assertIsNotNone(db.session.get(RentalBooking, booking["id"]))

    def test_rental_company_verification(self):
        buyer_id, _buyer_token = self._seed_user("buyer")
        _admin_id, admin_token = self._seed_user("admin")
        res = self.client.post(
            "/api/admin/rental-companies",
            json={"user_id": buyer_id, "company_name": "Rift Valley Rentals", "kra_pin": "A001234567Z"},
            headers=self._headers(admin_token),
        )
        self.assertEqual(res.status_code, 201, res.get_data(as_text=True))
        company = (res.get_json(force=True) or {})["company"]
        dup = self.client.post(
            "/api/admin/rental-companies",
            json={"user_id": buyer_id, "company_name": "Again"},
            headers=self._headers(admin_token),
        )
        self.assertEqual(dup.status_code, 400)
        with self.app.app_context():
            self.assertEqual(db.session.get(User, buyer_id).role, "rental_company")

        bad = self.client.patch(
            f"/api/admin/rental-companies/{company['id']}", json={"verification_status": "MAYBE"}, headers=self._headers(admin_token)
        )
        self.assertEqual(bad.status_code, 400)
        approved = self.client.patch(
            f"/api/admin/rental-companies/{company['id']}", json={"verification_status": "approved"}, headers=self._headers(admin_token)
        )
        self.assertEqual(approved.status_code, 200)
        data = (approved.get_json(force=True) or {})["company"]
        self.assertTrue(data["is_verified"])
        self.assertEqual(data["verification_status"], "APPROVED")

        listed = (self.client.get("/api/admin/rental-companies?verification_status=APPROVED", headers=self._headers(admin_token)).get_json(force=True) or {})
        self.assertIn(company["id"], [c["id"] for c in listed["items"]])
        self.assertGreaterEqual(listed["counts"]["APPROVED"], 1)
