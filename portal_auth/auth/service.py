from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Mapping

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from portal_auth.config import Settings
from portal_auth.errors import ErrorCode
from portal_auth.logging import AuditLogger, get_logger, log_security_event
from portal_auth.models import ROLES, AuditLog, User
from portal_auth.utils import (
    as_utc,
    extract_changed_values,
    generate_token,
    hash_token,
    is_token_shaped,
    normalize_email,
    normalize_username,
    password_problem,
    seconds_until,
    utcnow,
)

from .passwords import PasswordHasher
from .results import OK, LoginResult, OperationResult, UserResult, UserView, failure
from .sessions import SessionStore

logger = get_logger("auth")

ASSIGNABLE_ROLES = ("superadmin", "admin", "staff")
USER_ADMIN_ROLES = ("superadmin",)
APPROVER_ROLES = ("superadmin", "admin")

# Same message whether the identifier is unknown or the password is wrong
_LOGIN_FAIL = "Invalid username or password"
_SNAPSHOT_FIELDS = ("username", "email", "full_name", "role", "is_active", "is_approved", "is_first_login")


class AuthService:
    def __init__(
        self,
        session: Session,
        password_hasher: PasswordHasher | None = None,
        audit_logger: AuditLogger | None = None,
        session_store: SessionStore | None = None,
        session_ttl_seconds: int = 24 * 60 * 60,
        max_failed_attempts: int = 5,
        lockout_minutes: int = 30,
    ) -> None:
        self.session = session
        self.hasher = password_hasher or PasswordHasher()
        self.audit = audit_logger or AuditLogger(session)
        self.sessions = session_store or SessionStore(session)
        self.session_ttl_seconds = session_ttl_seconds
        self.max_failed_attempts = max_failed_attempts
        self.lockout_minutes = lockout_minutes

    # -- credentials -------------------------------------------------------

    def hash_password(self, plaintext: str) -> str:
        return self.hasher.hash(plaintext)

    def verify_user_password(self, user_id: int, plaintext: str) -> bool:
        user = self._get(user_id)
        if user is None:
            self.hasher.burn(plaintext)
            return False
        return self.hasher.verify(plaintext, user.password_hash)

    def login_user(
        self,
        identifier: str,
        password: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
        now: datetime | None = None,
    ) -> LoginResult:
        moment = as_utc(now) or utcnow()
        user = self._find_by_identifier(identifier)
        if user is None:
            self.hasher.burn(password)
            log_security_event("login", "failure", "unknown_identifier", {"ip": ip_address})
            return LoginResult(success=False, error=ErrorCode.INVALID_CREDENTIALS, message=_LOGIN_FAIL)

        locked_until = as_utc(user.locked_until)
        if locked_until and locked_until > moment:
            log_security_event("login", "failure", "locked", {"user_id": user.id, "ip": ip_address})
            return LoginResult(
                success=False,
                error=ErrorCode.RATE_LIMITED,
                message="Account is temporarily locked",
                retry_after_seconds=seconds_until(locked_until, moment),
            )

        if not self.hasher.verify(password, user.password_hash):
            self._register_failure(user.id, moment)
            log_security_event("login", "failure", "bad_password", {"user_id": user.id, "ip": ip_address})
            return LoginResult(success=False, error=ErrorCode.INVALID_CREDENTIALS, message=_LOGIN_FAIL)

        # only reachable with the right password, so the reason is not an enumeration leak
        if not user.is_active or not user.is_approved:
            reason = "inactive" if not user.is_active else "pending_approval"
            log_security_event("login", "failure", reason, {"user_id": user.id, "ip": ip_address})
            message = "Account is deactivated" if not user.is_active else "Account pending approval"
            return LoginResult(success=False, error=ErrorCode.INVALID_CREDENTIALS, message=message)

        token = generate_token()
        expires_at = moment + timedelta(seconds=self.session_ttl_seconds)
        try:
            # row lock serialises concurrent logins of one user until commit
            self.session.scalar(select(User.id).where(User.id == user.id).with_for_update())
            # single active session: earlier sessions die in the same transaction
            superseded = self.sessions.delete_for_user(user.id)
            self.sessions.create(user.id, hash_token(token), moment, expires_at, ip_address, user_agent)
            user.failed_login_attempts = 0
            user.locked_until = None
            user.last_login = moment
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise

        view = UserView.from_model(user)
        log_security_event("login", "success", None, {"user_id": user.id, "superseded_sessions": superseded})
        self.log_audit_event(user.id, "LOGIN", "users", user.id, None, None, ip_address, user_agent, now=moment)
        return LoginResult(success=True, user=view, token=token, expires_at=expires_at)

    # -- sessions ----------------------------------------------------------

    def validate_session(self, token: str, now: datetime | None = None) -> UserView | None:
        if not is_token_shaped(token):
            return None
        moment = as_utc(now) or utcnow()
        token_hash = hash_token(token)
        found = self.sessions.find_with_user(token_hash)
        if found is None:
            return None
        record, user = found
        if as_utc(record.expires_at) <= moment:
            self._discard_session(token_hash, moment, "expired")
            return None
        if not user.is_active or not user.is_approved:
            self._discard_session(token_hash, None, "account_disabled")
            return None
        return UserView.from_model(user)

    def invalidate_session(self, token: str) -> None:
        """Log out. Never raises; an unknown token is already logged out."""
        if not is_token_shaped(token):
            return
        try:
            removed = self.sessions.delete(hash_token(token))
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            logger.exception("Session invalidation failed")
            return
        if removed:
            log_security_event("logout", "success")

    def cleanup_expired_sessions(self, now: datetime | None = None) -> int:
        moment = as_utc(now) or utcnow()
        try:
            removed = self.sessions.delete_expired(moment)
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise
        if removed:
            logger.info("Removed %d expired sessions", removed)
        return removed

    # -- lookups -----------------------------------------------------------

    def get_user_by_id(self, user_id: int) -> UserView | None:
        user = self._get(user_id)
        return UserView.from_model(user) if user else None

    def get_user_by_email(self, email: str) -> UserView | None:
        user = self._find_by_email(email)
        return UserView.from_model(user) if user else None

    def get_user_by_username(self, username: str) -> UserView | None:
        user = self._find_by_username(username)
        return UserView.from_model(user) if user else None

    def list_users(self) -> list[UserView]:
        query = self.session.query(User).order_by(User.created_at.desc(), User.id.desc())
        return [UserView.from_model(user) for user in query.all()]

    # -- user lifecycle ----------------------------------------------------

    def create_user(
        self,
        username: str,
        email: str | None,
        password: str,
        full_name: str,
        role: str = "staff",
        created_by: int | None = None,
        is_approved: bool = True,
        is_first_login: bool = False,
        ip_address: str | None = None,
        user_agent: str | None = None,
        now: datetime | None = None,
    ) -> UserResult:
        moment = as_utc(now) or utcnow()
        normalized_username = normalize_username(username)
        if normalized_username is None:
            return UserResult(success=False, error=ErrorCode.VALIDATION_ERROR, message="Invalid username")
        normalized_email = None
        if email is not None and str(email).strip():
            normalized_email = normalize_email(email)
            if normalized_email is None:
                return UserResult(success=False, error=ErrorCode.VALIDATION_ERROR, message="Invalid email address")
        elif role == "applicant":
            return UserResult(success=False, error=ErrorCode.VALIDATION_ERROR, message="Applicants need an email address")
        problem = password_problem(password)
        if problem:
            return UserResult(success=False, error=ErrorCode.VALIDATION_ERROR, message=problem)
        name = full_name.strip() if isinstance(full_name, str) else ""
        if not name or len(name) > 255:
            return UserResult(success=False, error=ErrorCode.VALIDATION_ERROR, message="Full name is required")
        if role not in ROLES:
            return UserResult(success=False, error=ErrorCode.VALIDATION_ERROR, message="Invalid role")
        if self._identity_taken(normalized_username, normalized_email):
            return UserResult(success=False, error=ErrorCode.CONFLICT, message="Username or email already exists")

        user = User(
            username=normalized_username,
            email=normalized_email,
            password_hash=self.hasher.hash(password),
            full_name=name,
            role=role,
            is_active=True,
            is_approved=is_approved,
            is_first_login=is_first_login,
            failed_login_attempts=0,
            password_changed_at=moment,
            created_by=created_by,
        )
        self.session.add(user)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            return UserResult(success=False, error=ErrorCode.CONFLICT, message="Username or email already exists")
        except SQLAlchemyError:
            self.session.rollback()
            raise
        self.session.refresh(user)

        view = UserView.from_model(user)
        self.log_audit_event(
            created_by,
            "USER_CREATED",
            "users",
            user.id,
            None,
            {"username": user.username, "email": user.email, "role": user.role},
            ip_address,
            user_agent,
            now=moment,
        )
        return UserResult(success=True, user=view)

    def update_user_profile(
        self,
        user_id: int,
        full_name: str | None = None,
        email: str | None = None,
        username: str | None = None,
        actor_id: int | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> UserResult:
        user = self._get(user_id)
        if user is None:
            return UserResult(success=False, error=ErrorCode.NOT_FOUND, message="User not found")

        changes: dict[str, Any] = {}
        if full_name is not None:
            name = full_name.strip()
            if not name or len(name) > 255:
                return UserResult(success=False, error=ErrorCode.VALIDATION_ERROR, message="Full name is required")
            changes["full_name"] = name
        if email is not None:
            normalized_email = normalize_email(email)
            if normalized_email is None:
                return UserResult(success=False, error=ErrorCode.VALIDATION_ERROR, message="Invalid email address")
            changes["email"] = normalized_email
        if username is not None:
            normalized_username = normalize_username(username)
            if normalized_username is None:
                return UserResult(success=False, error=ErrorCode.VALIDATION_ERROR, message="Invalid username")
            changes["username"] = normalized_username
        if not changes:
            return UserResult(success=False, error=ErrorCode.VALIDATION_ERROR, message="No fields to update")
        if self._identity_taken(changes.get("username"), changes.get("email"), exclude_id=user.id):
            return UserResult(success=False, error=ErrorCode.CONFLICT, message="Username or email already exists")

        before = _snapshot(user)
        for field, value in changes.items():
            setattr(user, field, value)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            return UserResult(success=False, error=ErrorCode.CONFLICT, message="Username or email already exists")
        except SQLAlchemyError:
            self.session.rollback()
            raise

        after = _snapshot(user)
        view = UserView.from_model(user)
        old_values, new_values = extract_changed_values(before, after)
        if new_values:
            self.log_audit_event(
                actor_id if actor_id is not None else user.id,
                "USER_PROFILE_UPDATED",
                "users",
                user.id,
                old_values,
                new_values,
                ip_address,
                user_agent,
            )
        return UserResult(success=True, user=view)

    def update_user_role(
        self,
        user_id: int,
        role: str,
        actor_id: int,
        actor_password: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> OperationResult:
        if role not in ASSIGNABLE_ROLES:
            return failure(ErrorCode.VALIDATION_ERROR, "Only staff, admin and superadmin roles can be assigned")
        if _same_id(user_id, actor_id):
            return failure(ErrorCode.FORBIDDEN, "Cannot change your own role")
        error = self._authorize_actor(actor_id, actor_password, USER_ADMIN_ROLES)
        if error:
            return error
        target = self._get(user_id)
        if target is None:
            return failure(ErrorCode.NOT_FOUND, "User not found")
        if target.role == role:
            return OK
        if target.role == "superadmin" and self._is_last_superadmin(target):
            return failure(ErrorCode.CONFLICT, "Cannot demote the last superadmin")

        old_role = target.role
        target.role = role
        self._commit()
        log_security_event("role_change", "success", None, {"user_id": target.id, "actor_id": actor_id})
        self.log_audit_event(
            actor_id, "USER_ROLE_UPDATED", "users", target.id, {"role": old_role}, {"role": role}, ip_address, user_agent
        )
        return OK

    def approve_user(
        self,
        user_id: int,
        actor_id: int,
        actor_password: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> OperationResult:
        error = self._authorize_actor(actor_id, actor_password, APPROVER_ROLES)
        if error:
            return error
        target = self._get(user_id)
        if target is None:
            return failure(ErrorCode.NOT_FOUND, "User not found")
        if target.is_approved:
            return failure(ErrorCode.CONFLICT, "User is already approved")
        target.is_approved = True
        self._commit()
        self.log_audit_event(
            actor_id, "USER_APPROVED", "users", target.id, {"is_approved": False}, {"is_approved": True}, ip_address, user_agent
        )
        return OK

    def activate_user(
        self,
        user_id: int,
        actor_id: int,
        actor_password: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> OperationResult:
        error = self._authorize_actor(actor_id, actor_password, USER_ADMIN_ROLES)
        if error:
            return error
        target = self._get(user_id)
        if target is None:
            return failure(ErrorCode.NOT_FOUND, "User not found")
        if target.is_active:
            return failure(ErrorCode.CONFLICT, "User is already active")
        target.is_active = True
        self._commit()
        self.log_audit_event(
            actor_id, "USER_ACTIVATED", "users", target.id, {"is_active": False}, {"is_active": True}, ip_address, user_agent
        )
        return OK

    def deactivate_user(
        self,
        user_id: int,
        actor_id: int,
        actor_password: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> OperationResult:
        if _same_id(user_id, actor_id):
            return failure(ErrorCode.FORBIDDEN, "Cannot deactivate your own account")
        error = self._authorize_actor(actor_id, actor_password, USER_ADMIN_ROLES)
        if error:
            return error
        target = self._get(user_id)
        if target is None:
            return failure(ErrorCode.NOT_FOUND, "User not found")
        if not target.is_active:
            return failure(ErrorCode.CONFLICT, "User is already deactivated")
        if target.role == "superadmin" and self._is_last_superadmin(target):
            return failure(ErrorCode.CONFLICT, "Cannot deactivate the last superadmin")

        target.is_active = False
        self.sessions.delete_for_user(target.id)
        self._commit()
        log_security_event("deactivate", "success", None, {"user_id": target.id, "actor_id": actor_id})
        self.log_audit_event(
            actor_id, "USER_DEACTIVATED", "users", target.id, {"is_active": True}, {"is_active": False}, ip_address, user_agent
        )
        return OK

    def delete_user(
        self,
        user_id: int,
        actor_id: int,
        actor_password: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> OperationResult:
        if _same_id(user_id, actor_id):
            return failure(ErrorCode.FORBIDDEN, "Cannot delete your own account")
        error = self._authorize_actor(actor_id, actor_password, USER_ADMIN_ROLES)
        if error:
            return error
        target = self._get(user_id)
        if target is None:
            return failure(ErrorCode.NOT_FOUND, "User not found")
        if target.role == "superadmin" and self._is_last_superadmin(target):
            return failure(ErrorCode.CONFLICT, "Cannot delete the last superadmin")

        target_id = target.id
        before = _snapshot(target)
        self.sessions.delete_for_user(target_id)
        self.session.delete(target)
        self._commit()
        log_security_event("delete_user", "success", None, {"user_id": target_id, "actor_id": actor_id})
        self.log_audit_event(actor_id, "USER_DELETED", "users", target_id, before, None, ip_address, user_agent)
        return OK

    # -- passwords ---------------------------------------------------------

    def change_password(
        self,
        user_id: int,
        current_password: str,
        new_password: str,
        keep_token: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        now: datetime | None = None,
    ) -> OperationResult:
        """Change a password after re-checking the current one.

        Every other session of the user is revoked; *keep_token* names the
        session the request came from, which survives.
        """
        moment = as_utc(now) or utcnow()
        user = self._get(user_id)
        if user is None:
            return failure(ErrorCode.NOT_FOUND, "User not found")
        if not self.hasher.verify(current_password, user.password_hash):
            return failure(ErrorCode.INVALID_CREDENTIALS, "Current password is incorrect")
        problem = password_problem(new_password)
        if problem:
            return failure(ErrorCode.VALIDATION_ERROR, problem)

        user.password_hash = self.hasher.hash(new_password)
        user.password_changed_at = moment
        user.is_first_login = False
        keep_hash = hash_token(keep_token) if is_token_shaped(keep_token) else None
        self.sessions.delete_for_user(user.id, keep_token_hash=keep_hash)
        self._commit()
        self.log_audit_event(user.id, "PASSWORD_CHANGED", "users", user.id, None, None, ip_address, user_agent, now=moment)
        return OK

    def set_password(
        self,
        user_id: int,
        new_password: str,
        actor_id: int | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        now: datetime | None = None,
    ) -> OperationResult:
        """Overwrite a password without the old one.

        Only for callers that already proved control of the account, such as
        a redeemed verification token. Revokes every session of the user.
        """
        moment = as_utc(now) or utcnow()
        problem = password_problem(new_password)
        if problem:
            return failure(ErrorCode.VALIDATION_ERROR, problem)
        user = self._get(user_id)
        if user is None:
            return failure(ErrorCode.NOT_FOUND, "User not found")

        user.password_hash = self.hasher.hash(new_password)
        user.password_changed_at = moment
        user.failed_login_attempts = 0
        user.locked_until = None
        user.is_first_login = False
        self.sessions.delete_for_user(user.id)
        self._commit()
        self.log_audit_event(
            actor_id if actor_id is not None else user.id,
            "PASSWORD_RESET",
            "users",
            user.id,
            None,
            None,
            ip_address,
            user_agent,
            now=moment,
        )
        return OK

    # -- audit -------------------------------------------------------------

    def log_audit_event(
        self,
        actor_id: int | None,
        action: str,
        table_name: str,
        record_id: int | str,
        old_values: Mapping[str, Any] | None = None,
        new_values: Mapping[str, Any] | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        now: datetime | None = None,
    ) -> AuditLog | None:
        """Write an audit entry; a failed write is logged, never raised."""
        try:
            return self.audit.record(
                actor_id, action, table_name, record_id, old_values, new_values, ip_address, user_agent, now=now
            )
        except SQLAlchemyError:
            logger.exception("Audit write failed action=%s table=%s record=%s", action, table_name, record_id)
            return None

    # -- internals ---------------------------------------------------------

    def _authorize_actor(
        self, actor_id: int, actor_password: str | None, allowed_roles: tuple[str, ...]
    ) -> OperationResult | None:
        actor = self._get(actor_id)
        if actor is None or not actor.is_active:
            return failure(ErrorCode.UNAUTHORIZED, "Acting user is not signed in")
        if actor.role not in allowed_roles:
            return failure(ErrorCode.FORBIDDEN, "Insufficient permissions")
        if not self.hasher.verify(actor_password, actor.password_hash):
            return failure(ErrorCode.INVALID_CREDENTIALS, "Invalid current password")
        return None

    def _register_failure(self, user_id: int, moment: datetime) -> None:
        try:
            self.session.execute(
                update(User)
                .where(User.id == user_id)
                .values(failed_login_attempts=User.failed_login_attempts + 1)
                .execution_options(synchronize_session=False)
            )
            attempts = self.session.scalar(select(User.failed_login_attempts).where(User.id == user_id))
            if attempts is not None and attempts >= self.max_failed_attempts:
                self.session.execute(
                    update(User)
                    .where(User.id == user_id)
                    .values(
                        failed_login_attempts=0,
                        locked_until=moment + timedelta(minutes=self.lockout_minutes),
                    )
                    .execution_options(synchronize_session=False)
                )
                log_security_event("login", "lockout", None, {"user_id": user_id})
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise

    def _discard_session(self, token_hash: str, expired_at: datetime | None, reason: str) -> None:
        try:
            if expired_at is not None:
                self.sessions.delete_if_expired(token_hash, expired_at)
            else:
                self.sessions.delete(token_hash)
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            logger.exception("Could not discard %s session", reason)

    def _is_last_superadmin(self, target: User) -> bool:
        others = (
            self.session.query(User)
            .filter(User.role == "superadmin", User.is_active.is_(True), User.id != target.id)
            .count()
        )
        return others == 0

    def _identity_taken(self, username: str | None, email: str | None, exclude_id: int | None = None) -> bool:
        clauses = []
        if username:
            clauses.append(func.lower(User.username) == username.lower())
        if email:
            clauses.append(User.email == email)
        if not clauses:
            return False
        query = self.session.query(User.id).filter(or_(*clauses))
        if exclude_id is not None:
            query = query.filter(User.id != exclude_id)
        return query.first() is not None

    def _get(self, user_id: int | str | None) -> User | None:
        try:
            key = int(user_id)
        except (TypeError, ValueError):
            return None
        return self.session.get(User, key, populate_existing=True)

    def _find_by_email(self, email: str) -> User | None:
        normalized = normalize_email(email)
        if normalized is None:
            return None
        return self.session.query(User).filter_by(email=normalized).first()

    def _find_by_username(self, username: str) -> User | None:
        if not isinstance(username, str) or not username.strip():
            return None
        return self.session.query(User).filter(func.lower(User.username) == username.strip().lower()).first()

    def _find_by_identifier(self, identifier: str) -> User | None:
        if not isinstance(identifier, str) or not identifier.strip():
            return None
        needle = identifier.strip().lower()
        stmt = select(User).where(or_(func.lower(User.username) == needle, User.email == needle))
        return self.session.scalars(stmt.execution_options(populate_existing=True)).first()

    def _commit(self) -> None:
        try:
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise


def _snapshot(user: User) -> dict[str, Any]:
    return {field: getattr(user, field) for field in _SNAPSHOT_FIELDS}


def _same_id(left: int | str | None, right: int | str | None) -> bool:
    return left is not None and right is not None and str(left) == str(right)


def build_auth_service(settings: Settings, session: Session) -> AuthService:
    return AuthService(
        session,
        session_ttl_seconds=settings.session_ttl_seconds,
        max_failed_attempts=settings.max_failed_logins,
        lockout_minutes=settings.lockout_minutes,
    )
