from __future__ import annotations

import os
import time
import unittest

from carmarket import create_app
from carmarket.extensions import db
from carmarket.models import Notification, User
from carmarket.services.notification_service import DELIVERY_MAX_ATTEMPTS, deliver_queued, notify
from carmarket.tasks.notification_tasks import send_notification
from carmarket.utils.jwt_utils import create_access_token


class NotificationsTestCase(unittest.TestCase):
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

    def _seed_user(self, role: str = "buyer") -> tuple[int, str]:
        suffix = str(time.time_ns())
        with self.app.app_context():
            row = User(name=f"{role}-{suffix[-4:]}", email=f"{role}-{suffix}@carmarket.test", role=role, is_verified=True)
            row.set_password("Passw0rd!")
            db.session.add(row)
            db.session.commit()
            return int(row.id), create_access_token(int(row.id), role=role)

    def _headers(self, token: str) -> dict:
        return {"Authorization": f"Bearer {token}"}

    def _notify(self, user_id: int, kind: str, title: str) -> None:
        with self.app.app_context():
            notify(user_id, kind, title, f"{title} body")
            db.session.commit()

    def test_inbox_counts_and_mark_read(self):
        uid, token = self._seed_user()
        self.assertEqual(self.client.get("/api/notifications").status_code, 401)
        self._notify(uid, "booking", "Booking confirmed")
        self._notify(uid, "payment", "Payment received")

        res = self.client.get("/api/notifications", headers=self._headers(token))
        self.assertEqual(res.status_code, 200)
        body = res.get_json(force=True) or {}
        self.assertEqual(body["unread_count"], 2)
        self.assertEqual(body["counts_by_type"], {"booking": 1, "payment": 1})

        only_booking = (self.client.get("/api/notifications?type=booking", headers=self._headers(token)).get_json(force=True) or {})
        self.assertEqual(len(only_booking["items"]), 1)

        target = body["items"][0]
        read = self.client.post(f"/api/notifications/{target['id']}/read", headers=self._headers(token))
        self.assertEqual(read.status_code, 200)
        self.assertTrue((read.get_json(force=True) or {})["is_read"])

        unread = (self.client.get("/api/notifications?unread_only=true", headers=self._headers(token)).get_json(force=True) or {})
        self.assertEqual(len(unread["items"]), 1)

        all_read = self.client.post("/api/notifications/read-all", headers=self._headers(token))
        self.assertEqual((all_read.get_json(force=True) or {})["updated"], 1)

    def test_cannot_touch_other_users_notifications(self):
        uid, _token = self._seed_user()
        _other_id, other_token = self._seed_user()
        self._notify(uid, "system", "Welcome")
        with self.app.app_context():
            note_id = Notification.query.filter_by(user_id=uid).first().id
        self.assertEqual(self.client.post(f"/api/notifications/{note_id}/read", headers=self._headers(other_token)).status_code, 404)
        self.assertEqual(self.client.delete(f"/api/notifications/{note_id}", headers=self._headers(other_token)).status_code, 404)

    def test_topic_toggle_suppresses_but_system_always_delivers(self):
        uid, token = self._seed_user()
        res = self.client.put("/api/user/notification-settings", json={"booking_updates": False}, headers=self._headers(token))
        self.assertEqual(res.status_code, 200)
        self._notify(uid, "booking", "Suppressed")
        self._notify(uid, "system", "Maintenance window")
        with self.app.app_context():
            titles = [n.title for n in Notification.query.filter_by(user_id=uid, channel="in_app").all()]
        self.assertEqual(titles, ["Maintenance window"])

    def test_admin_broadcast_and_delivery(self):
        _uid, user_token = self._seed_user()
        target_id, _target_token = self._seed_user()
        _admin_id, admin_token = self._seed_user("admin")

        denied = self.client.post(
            "/api/notifications", json={"title": "Hi", "message": "There", "user_ids": [target_id]}, headers=self._headers(user_token)
        )
        self.assertEqual(denied.status_code, 403)
        bad_type = self.client.post(
            "/api/notifications",
            json={"title": "Hi", "message": "There", "type": "spam", "user_ids": [target_id]},
            headers=self._headers(admin_token),
        )
        self.assertEqual(bad_type.status_code, 400)
        no_audience = self.client.post("/api/notifications", json={"title": "Hi", "message": "There"}, headers=self._headers(admin_token))
        self.assertEqual(no_audience.status_code, 400)

        res = self.client.post(
            "/api/notifications",
            json={"title": "New features", "message": "Try instant booking", "user_ids": [target_id], "send_email": True},
            headers=self._headers(admin_token),
        )
        self.assertEqual(res.status_code, 201, res.get_data(as_text=True))
        self.assertEqual(res.get_json(force=True), {"ok": True, "recipients": 1, "sent": 1})

        with self.app.app_context():
            queued = Notification.query.filter_by(user_id=target_id, channel="email").one()
            self.assertEqual(queued.status, "queued")
            summary = deliver_queued()
            self.assertGreaterEqual(summary["sent"], 1)
            self.assertEqual(db.session.get(Notification, queued.id).status, "sent")

    def _queued_sms(self, message: str) -> int:
        uid, _token = self._seed_user()
        with self.app.app_context():
            user = db.session.get(User, uid)
            user.phone = f"+2547{str(time.time_ns())[-8:]}"
            row = Notification(user_id=uid, type="booking", channel="sms", title="Reminder", message=message, status="queued", is_read=True)
            db.session.add(row)
            db.session.commit()
            return int(row.id)

    def test_failed_delivery_stays_queued_until_attempts_run_out(self):
        note_id = self._queued_sms("Pickup at 9am [fail]")
        with self.app.app_context():
            summary = deliver_queued()
            self.assertGreaterEqual(summary["retrying"], 1)
            row = db.session.get(Notification, note_id)
            self.assertEqual(row.status, "queued")
            self.assertEqual(row.meta_data["delivery_attempts"], 1)

            for _ in range(DELIVERY_MAX_ATTEMPTS - 1):
                deliver_queued()
            row = db.session.get(Notification, note_id)
            self.assertEqual(row.status, "failed")
            self.assertEqual(row.meta_data["delivery_attempts"], DELIVERY_MAX_ATTEMPTS)

    def test_send_notification_task(self):
        with self.app.app_context():
            self.assertEqual(send_notification.run(notification_id=987654321), {"ok": False, "detail": "not_found"})

        ok_id = self._queued_sms("Your booking is confirmed")
        with self.app.app_context():
            self.assertEqual(send_notification.run(notification_id=ok_id, trace_id="t-1"), {"ok": True, "detail": "sent"})
            self.assertEqual(db.session.get(Notification, ok_id).status, "sent")
            self.assertEqual(send_notification.run(notification_id=ok_id), {"ok": True, "detail": "already_sent"})

    def test_send_notification_task_retries_then_gives_up(self):
        note_id = self._queued_sms("Balance due [fail]")
        with self.app.app_context():
            with self.assertRaises(RuntimeError):
                send_notification.run(notification_id=note_id)
            row = db.session.get(Notification, note_id)
            self.assertEqual(row.status, "queued")

            row.meta_data = {"delivery_attempts": DELIVERY_MAX_ATTEMPTS - 1}
            db.session.commit()
            self.assertEqual(send_notification.run(notification_id=note_id), {"ok": False, "detail": "failed"})
            self.assertEqual(db.session.get(Notification, note_id).status, "failed")


if __name__ == "__main__":
    unittest.main()
