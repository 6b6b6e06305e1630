from __future__ import annotations

import unittest
from datetime import datetime, timezone
from unittest.mock import patch

from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from portal_auth.auth import AuthService, PasswordHasher
from portal_auth.errors import ErrorCode
from portal_auth.models import AuditLog, Base

NOW = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
PASSWORD = "Password123"


class UserAdministrationTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_engine("sqlite+pysqlite:///:memory:", future=True)
        Base.metadata.create_all(self.engine)
        self.session = Session(self.engine)
        self.service = AuthService(
            self.session,
            password_hasher=PasswordHasher(rounds=1, memory_cost=1024, parallelism=1),
        )
        self.root = self.service.create_user("root", "root@example.com", PASSWORD, "Root", role="superadmin").user
        self.admin = self.service.create_user("admin1", "admin@example.com", PASSWORD, "Admin", role="admin").user
        self.staff = self.service.create_user(
            "staff1", None, PASSWORD, "Staff", role="staff", created_by=self.root.id
        ).user

    def tearDown(self) -> None:
        self.session.close()
        self.engine.dispose()

    def _audit_actions(self, user_id: int) -> list[str]:
        return [entry.action for entry in self.service.audit.entries_for("users", user_id)]

    def test_create_user_validates_input(self) -> None:
        bad_email = self.service.create_user("someone", "not-an-email", PASSWORD, "Someone")
        short_password = self.service.create_user("someone", "someone@example.com", "short", "Someone")
        bad_role = self.service.create_user("someone", "someone@example.com", PASSWORD, "Someone", role="root")
        no_email_applicant = self.service.create_user("someone", None, PASSWORD, "Someone", role="applicant")

        for result in (bad_email, short_password, bad_role, no_email_applicant):
            self.assertFalse(result.success)
            self.assertEqual(result.error, ErrorCode.VALIDATION_ERROR)

    def test_create_user_rejects_duplicates_case_insensitively(self) -> None:
        by_name = self.service.create_user("ROOT", "other@example.com", PASSWORD, "Other")
        by_email = self.service.create_user("other", "Root@Example.com", PASSWORD, "Other")

        self.assertEqual(by_name.error, ErrorCode.CONFLICT)
        self.assertEqual(by_email.error, ErrorCode.CONFLICT)

    def test_create_user_records_creator_and_audit(self) -> None:
        self.assertEqual(self.staff.created_by, self.root.id)
        self.assertIsNone(self.staff.email)
        entry = self.service.audit.entries_for("users", self.staff.id)[0]
        self.assertEqual(entry.action, "USER_CREATED")
        self.assertEqual(entry.user_id, self.root.id)
        self.assertEqual(entry.new_values["role"], "staff")

    def test_update_profile_audits_changed_fields_only(self) -> None:
        result = self.service.update_user_profile(
            self.staff.id, full_name="Staff Member", email="Staff@Example.com", actor_id=self.root.id
        )

        self.assertTrue(result.success)
        self.assertEqual(result.user.email, "staff@example.com")
        entry = self.service.audit.entries_for("users", self.staff.id)[-1]
        self.assertEqual(entry.action, "USER_PROFILE_UPDATED")
        self.assertEqual(entry.old_values, {"email": None, "full_name": "Staff"})
        self.assertEqual(entry.new_values, {"email": "staff@example.com", "full_name": "Staff Member"})

    def test_update_profile_rejects_taken_email(self) -> None:
        result = self.service.update_user_profile(self.staff.id, email="admin@example.com")
        self.assertEqual(result.error, ErrorCode.CONFLICT)

    def test_role_change_requires_superadmin_with_password(self) -> None:
        by_admin = self.service.update_user_role(self.staff.id, "admin", self.admin.id, PASSWORD)
        wrong_password = self.service.update_user_role(self.staff.id, "admin", self.root.id, "WrongPassword")
        unknown_actor = self.service.update_user_role(self.staff.id, "admin", 9999, PASSWORD)

        self.assertEqual(by_admin.error, ErrorCode.FORBIDDEN)
        self.assertEqual(wrong_password.error, ErrorCode.INVALID_CREDENTIALS)
        self.assertEqual(unknown_actor.error, ErrorCode.UNAUTHORIZED)
        self.assertEqual(self.service.get_user_by_id(self.staff.id).role, "staff")

    def test_role_change_is_audited(self) -> None:
        result = self.service.update_user_role(self.staff.id, "admin", self.root.id, PASSWORD, ip_address="10.0.0.9")

        self.assertTrue(result.success)
        self.assertEqual(self.service.get_user_by_id(self.staff.id).role, "admin")
        entry = self.service.audit.entries_for("users", self.staff.id)[-1]
        self.assertEqual(entry.action, "USER_ROLE_UPDATED")
        self.assertEqual(entry.old_values, {"role": "staff"})
        self.assertEqual(entry.new_values, {"role": "admin"})
        self.assertEqual(entry.user_id, self.root.id)
        self.assertEqual(entry.ip_address, "10.0.0.9")

    def test_role_change_limits(self) -> None:
        to_applicant = self.service.update_user_role(self.staff.id, "applicant", self.root.id, PASSWORD)
        on_self = self.service.update_user_role(self.root.id, "admin", self.root.id, PASSWORD)

        self.assertEqual(to_applicant.error, ErrorCode.VALIDATION_ERROR)
        self.assertEqual(on_self.error, ErrorCode.FORBIDDEN)

    def test_superadmin_can_be_replaced_by_another_superadmin(self) -> None:
        promoted = self.service.update_user_role(self.admin.id, "superadmin", self.root.id, PASSWORD)
        self.assertTrue(promoted.success)

        demoted = self.service.update_user_role(self.root.id, "admin", self.admin.id, PASSWORD)

        self.assertTrue(demoted.success)
        self.assertEqual(self.service.get_user_by_id(self.root.id).role, "admin")

    def test_last_superadmin_guard_holds_without_actor_check(self) -> None:
        # authorization delegated to the caller: the guard still applies
        with patch.object(self.service, "_authorize_actor", return_value=None):
            demote = self.service.update_user_role(self.root.id, "admin", self.admin.id, PASSWORD)
            deactivate = self.service.deactivate_user(self.root.id, self.admin.id, PASSWORD)
            delete = self.service.delete_user(self.root.id, self.admin.id, PASSWORD)

        for result in (demote, deactivate, delete):
            self.assertFalse(result.success)
            self.assertEqual(result.error, ErrorCode.CONFLICT)
        root = self.service.get_user_by_id(self.root.id)
        self.assertEqual(root.role, "superadmin")
        self.assertTrue(root.is_active)

    def test_inactive_actor_is_unauthorized(self) -> None:
        second = self.service.create_user("root2", "root2@example.com", PASSWORD, "Root Two", role="superadmin").user
        self.assertTrue(self.service.deactivate_user(second.id, self.root.id, PASSWORD).success)

        result = self.service.update_user_role(self.staff.id, "admin", second.id, PASSWORD)

        self.assertEqual(result.error, ErrorCode.UNAUTHORIZED)

    def test_deactivate_rejects_self_regardless_of_role(self) -> None:
        for user in (self.root, self.admin, self.staff):
            result = self.service.deactivate_user(user.id, user.id, PASSWORD)
            self.assertFalse(result.success)
            self.assertEqual(result.error, ErrorCode.FORBIDDEN)
        self.assertTrue(self.service.get_user_by_id(self.root.id).is_active)

    def test_deactivate_revokes_sessions_and_is_audited(self) -> None:
        token = self.service.login_user("staff1", PASSWORD, now=NOW).token

        result = self.service.deactivate_user(self.staff.id, self.root.id, PASSWORD)

        self.assertTrue(result.success)
        self.assertIsNone(self.service.validate_session(token, now=NOW))
        self.assertFalse(self.service.login_user("staff1", PASSWORD, now=NOW).success)
        self.assertIn("USER_DEACTIVATED", self._audit_actions(self.staff.id))
        again = self.service.deactivate_user(self.staff.id, self.root.id, PASSWORD)
        self.assertEqual(again.error, ErrorCode.CONFLICT)

    def test_activate_user(self) -> None:
        self.service.deactivate_user(self.staff.id, self.root.id, PASSWORD)

        by_admin = self.service.activate_user(self.staff.id, self.admin.id, PASSWORD)
        by_root = self.service.activate_user(self.staff.id, self.root.id, PASSWORD)

        self.assertEqual(by_admin.error, ErrorCode.FORBIDDEN)
        self.assertTrue(by_root.success)
        self.assertTrue(self.service.login_user("staff1", PASSWORD, now=NOW).success)
        self.assertIn("USER_ACTIVATED", self._audit_actions(self.staff.id))

    def test_delete_user(self) -> None:
        self.service.login_user("staff1", PASSWORD, now=NOW)

        wrong_password = self.service.delete_user(self.staff.id, self.root.id, "WrongPassword")
        self.assertEqual(wrong_password.error, ErrorCode.INVALID_CREDENTIALS)

        result = self.service.delete_user(self.staff.id, self.root.id, PASSWORD)

        self.assertTrue(result.success)
        self.assertIsNone(self.service.get_user_by_id(self.staff.id))
        self.assertEqual(self.service.sessions.count_for_user(self.staff.id), 0)
        entry = self.service.audit.entries_for("users", self.staff.id)[-1]
        self.assertEqual(entry.action, "USER_DELETED")
        self.assertEqual(entry.old_values["username"], "staff1")
        self.assertEqual(self.service.delete_user(self.staff.id, self.root.id, PASSWORD).error, ErrorCode.NOT_FOUND)

    def test_approve_user(self) -> None:
        applicant = self.service.create_user(
            "appl1", "appl@example.com", PASSWORD, "Applicant", role="applicant", is_approved=False
        ).user

        by_staff = self.service.approve_user(applicant.id, self.staff.id, PASSWORD)
        by_admin = self.service.approve_user(applicant.id, self.admin.id, PASSWORD)
        twice = self.service.approve_user(applicant.id, self.admin.id, PASSWORD)

        self.assertEqual(by_staff.error, ErrorCode.FORBIDDEN)
        self.assertTrue(by_admin.success)
        self.assertEqual(twice.error, ErrorCode.CONFLICT)
        self.assertTrue(self.service.login_user("appl1", PASSWORD, now=NOW).success)

    def test_audit_failure_does_not_abort_operation(self) -> None:
        with patch.object(self.service.audit, "record", side_effect=OperationalError("insert", {}, Exception("down"))):
            result = self.service.update_user_role(self.staff.id, "admin", self.root.id, PASSWORD)
            entry = self.service.log_audit_event(self.root.id, "NOTE", "users", self.root.id)

        self.assertTrue(result.success)
        self.assertIsNone(entry)
        self.assertEqual(self.service.get_user_by_id(self.staff.id).role, "admin")
        self.assertEqual(self.session.query(AuditLog).filter_by(action="USER_ROLE_UPDATED").count(), 0)


if __name__ == "__main__":
    unittest.main()
