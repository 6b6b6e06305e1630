from __future__ import annotations

import json
import logging
import unittest
from datetime import datetime, timezone

from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from portal_auth.logging import AuditLogger, log_security_event
from portal_auth.models import AuditLog, Base


class AuditLoggingTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_engine("sqlite+pysqlite:///:memory:", future=True)
        Base.metadata.create_all(self.engine)
        self.session = Session(self.engine)
        self.audit = AuditLogger(self.session)

    def tearDown(self) -> None:
        self.session.close()
        self.engine.dispose()

    def test_record_persists(self) -> None:
        entry = self.audit.record(
            7,
            "USER_ROLE_UPDATED",
            "users",
            12,
            {"role": "staff"},
            {"role": "admin"},
            "10.0.0.1",
            "pytest",
        )
        stored = self.session.query(AuditLog).filter_by(id=entry.id).one()
        self.assertEqual(stored.user_id, 7)
        self.assertEqual(stored.record_id, "12")
        self.assertEqual(stored.old_values, {"role": "staff"})
        self.assertEqual(stored.new_values, {"role": "admin"})
        self.assertEqual(stored.ip_address, "10.0.0.1")
        self.assertIsNotNone(stored.created_at)

    def test_system_events_have_no_actor(self) -> None:
        moment = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
        entry = self.audit.record(None, "SESSIONS_PURGED", "sessions", "all", now=moment)
        self.assertIsNone(entry.user_id)
        self.assertIsNone(entry.old_values)
        self.assertEqual(entry.created_at.replace(tzinfo=timezone.utc), moment)

    def test_entries_for_returns_history_in_order(self) -> None:
        self.audit.record(1, "USER_CREATED", "users", 5)
        self.audit.record(1, "USER_DEACTIVATED", "users", 5)
        self.audit.record(1, "USER_CREATED", "users", 6)

        actions = [entry.action for entry in self.audit.entries_for("users", 5)]
        self.assertEqual(actions, ["USER_CREATED", "USER_DEACTIVATED"])

    def test_logs_are_immutable(self) -> None:
        entry = self.audit.record(1, "USER_CREATED", "users", 5)

        entry.action = "TAMPERED"
        with self.assertRaises(ValueError):
            self.session.commit()
        self.session.rollback()

        with self.assertRaises(ValueError):
            self.session.delete(entry)
            self.session.commit()
        self.session.rollback()
        self.assertEqual(self.session.query(AuditLog).count(), 1)

    def test_entries_are_emitted_as_json(self) -> None:
        with self.assertLogs("portal_auth.audit", level=logging.INFO) as captured:
            self.audit.record(3, "LOGIN", "users", 3, ip_address="10.0.0.2")

        payload = json.loads(captured.records[0].getMessage())
        self.assertEqual(payload["category"], "audit")
        self.assertEqual(payload["action"], "LOGIN")
        self.assertEqual(payload["ip_address"], "10.0.0.2")


class SecurityEventLoggingTests(unittest.TestCase):
    def test_security_event_is_structured_json(self) -> None:
        with self.assertLogs("portal_auth.security", level=logging.INFO) as captured:
            log_security_event("login", "failure", "bad_password", {"user_id": 4})

        payload = json.loads(captured.records[0].getMessage())
        self.assertEqual(payload["action"], "login")
        self.assertEqual(payload["outcome"], "failure")
        self.assertEqual(payload["reason"], "bad_password")
        self.assertEqual(payload["metadata"], {"user_id": 4})
        self.assertIn("timestamp", payload)


if __name__ == "__main__":
    unittest.main()
