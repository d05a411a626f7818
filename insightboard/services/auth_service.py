"""
services/auth_service.py

Session lifecycle: register, login, logout, refresh, terms acceptance and
the password reset and update flows.

Login security:
- Unknown email and wrong password produce the same error and take the
  same bcrypt time.
- Each failure writes a LOGIN_FAILED audit entry and security event.
- Once an IP reaches `max_failed_logins` failures inside one hour it is
  blacklisted for `block_hours` by the system actor (created_by NULL).
- A successful login creates a `user_sessions` row; the JWT only points
  at it. Logout revokes the row.
"""

import hashlib
import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from insightboard.core.config import get_settings
from insightboard.core.errors import (
    AlreadyBlacklisted,
    Conflict,
    Unauthenticated,
    UserInactive,
    ValidationFailed,
)
from insightboard.core.permissions import RoleName, SessionSnapshot
from insightboard.core.security import (
    burn_password_check,
    create_access_token,
    get_password_hash,
    verify_password,
)
from insightboard.db.models import PasswordReset, Role, SecurityEvent, User, UserSession
from insightboard.models.schemas import RegisterRequest, Severity
from insightboard.services.audit import AuditAction, AuditRecorder, SecurityEventType
from insightboard.services.ip_gate import IPReputationGate
from insightboard.utils.clock import as_utc, utcnow

logger = logging.getLogger(__name__)

_INVALID_CREDENTIALS = "Invalid email or password."


@dataclass
class IssuedSession:
    token: str
    session: UserSession
    user: User


class AuthService:
    def __init__(
        self,
        gate: IPReputationGate,
        recorder: AuditRecorder,
        *,
        max_failed_logins: Optional[int] = None,
        block_hours: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        settings = get_settings()
        self._gate = gate
        self._recorder = recorder
        self._max_failed_logins = max_failed_logins or settings.max_failed_logins_per_hour
        self._block_hours = block_hours or settings.auto_blacklist_hours
        self._clock = clock

    # ─── Registration ────────────────────────────────────────────────────────

    async def register(
        self,
        db: AsyncSession,
        payload: RegisterRequest,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> User:
        email = payload.email.strip().lower()
        existing = await db.execute(select(User.id).where(User.email == email))
        if existing.first() is not None:
            raise Conflict("An account with this email address already exists.", error_code="EMAIL_EXISTS")

        role = (await db.execute(select(Role).where(Role.name == RoleName.VIEWER))).scalar_one_or_none()
        user = User(
            email=email,
            full_name=payload.full_name.strip(),
            hashed_password=get_password_hash(payload.password),
            role=role,
            is_active=True,
        )
        db.add(user)
        await db.flush()

        self._recorder.record_audit(
            AuditAction.USER_REGISTERED,
            user_id=user.id,
            resource_type="user",
            resource_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        logger.info(f"New user registered: {user.email}")
        return user

    # ─── Login ───────────────────────────────────────────────────────────────

    async def login(
        self,
        db: AsyncSession,
        email: str,
        password: str,
        *,
        remember: bool = False,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> IssuedSession:
        email = email.strip().lower()
        user = (await db.execute(select(User).where(User.email == email))).scalar_one_or_none()

        if user is None or user.deleted_at is not None:
            burn_password_check(password)
            await self._login_failed(db, email, None, "unknown_email", ip_address, user_agent)
            raise Unauthenticated(_INVALID_CREDENTIALS, error_code="INVALID_CREDENTIALS")

        if not verify_password(password, user.hashed_password):
            await self._login_failed(db, email, user.id, "invalid_password", ip_address, user_agent)
            raise Unauthenticated(_INVALID_CREDENTIALS, error_code="INVALID_CREDENTIALS")

        if not user.is_active:
            self._recorder.record_audit(
                AuditAction.LOGIN_FAILED,
                user_id=user.id,
                ip_address=ip_address,
                user_agent=user_agent,
                details={"email": email, "reason": "account_inactive"},
            )
            logger.warning(f"Login attempt on deactivated account: {email}")
            raise UserInactive("Your account has been suspended. Contact an administrator.", error_code="ACCOUNT_SUSPENDED")

        settings = get_settings()
        now = self._clock()
        lifetime = timedelta(days=settings.remember_me_days) if remember else timedelta(hours=settings.session_hours)
        session = UserSession(
            id=str(uuid.uuid4()),
            user_id=user.id,
            ip_address=ip_address,
            user_agent=(user_agent or "")[:512] or None,
            issued_at=now,
            expires_at=now + lifetime,
        )
        db.add(session)
        user.last_login = now
        await db.flush()

        token = create_access_token(user.id, session.id, now, session.expires_at)
        self._recorder.record_audit(
            AuditAction.LOGIN_SUCCESS,
            user_id=user.id,
            resource_type="session",
            resource_id=session.id,
            ip_address=ip_address,
            user_agent=user_agent,
            details={"remember": remember},
        )
        logger.info(f"Successful login: {user.email} | session {session.id}")
        return IssuedSession(token=token, session=session, user=user)

    async def failed_logins_since(self, db: AsyncSession, ip_address: str, since: datetime) -> int:
        result = await db.execute(
            select(func.count(SecurityEvent.id)).where(
                SecurityEvent.event_type == SecurityEventType.LOGIN_FAILED,
                SecurityEvent.ip_address == ip_address,
                SecurityEvent.created_at >= since,
            )
        )
        return result.scalar_one()

    async def _login_failed(
        self,
        db: AsyncSession,
        email: str,
        user_id: Optional[int],
        reason: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> None:
        details = {"email": email, "reason": reason}
        self._recorder.record_audit(
            AuditAction.LOGIN_FAILED,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            details=details,
        )
        self._recorder.record_security_event(
            SecurityEventType.LOGIN_FAILED,
            ip_address=ip_address,
            user_id=user_id,
            severity=Severity.MEDIUM,
            details=details,
        )
        logger.warning(f"Failed login for {email} from {ip_address} | reason: {reason}")

        if not ip_address or ip_address == "unknown":
            return

        # The event just scheduled may not be committed yet; count it explicitly.
        failures = await self.failed_logins_since(db, ip_address, self._clock() - timedelta(hours=1)) + 1
        if failures < self._max_failed_logins:
            return

        try:
            await self._gate.add(
                db,
                ip_address,
                f"Automatic block: {failures} failed login attempts within one hour",
                duration_hours=self._block_hours,
                attempts_count=failures,
                severity=Severity.HIGH,
                actor_ip=ip_address,
                user_agent=user_agent,
            )
        except AlreadyBlacklisted:
            return
        # The caller is about to raise, which rolls back the request session.
        await db.commit()

    # ─── Session maintenance ─────────────────────────────────────────────────

    async def logout(
        self,
        db: AsyncSession,
        snapshot: SessionSnapshot,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        session = await db.get(UserSession, snapshot.session_id) if snapshot.session_id else None
        if session is not None and session.revoked_at is None:
            session.revoked_at = self._clock()
            await db.flush()

        self._recorder.record_audit(
            AuditAction.USER_LOGOUT,
            user_id=snapshot.user_id,
            resource_type="session",
            resource_id=snapshot.session_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        logger.info(f"User logged out: {snapshot.email} | session {snapshot.session_id}")

    async def refresh(self, db: AsyncSession, snapshot: SessionSnapshot) -> IssuedSession:
        """Slides the session expiry forward by its original lifetime and re-issues the token."""
        session = await db.get(UserSession, snapshot.session_id) if snapshot.session_id else None
        now = self._clock()
        if session is None or not session.is_valid_at(now):
            raise Unauthenticated("Session has expired or was revoked.")

        lifetime = as_utc(session.expires_at) - as_utc(session.issued_at)
        session.expires_at = now + lifetime
        session.last_refreshed_at = now
        user = await db.get(User, snapshot.user_id)
        await db.flush()

        token = create_access_token(snapshot.user_id, session.id, now, session.expires_at)
        self._recorder.record_audit(
            AuditAction.SESSION_REFRESHED,
            user_id=snapshot.user_id,
            resource_type="session",
            resource_id=session.id,
        )
        logger.debug(f"Session refreshed: {session.id} | expires {session.expires_at.isoformat()}")
        return IssuedSession(token=token, session=session, user=user)

    async def accept_terms(
        self,
        db: AsyncSession,
        snapshot: SessionSnapshot,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> User:
        user = await db.get(User, snapshot.user_id)
        if user.terms_accepted_at is None:
            user.terms_accepted_at = self._clock()
            await db.flush()
            self._recorder.record_audit(
                AuditAction.TERMS_ACCEPTED,
                user_id=user.id,
                resource_type="user",
                resource_id=user.id,
                ip_address=ip_address,
                user_agent=user_agent,
            )
        return user

    # ─── Password reset ──────────────────────────────────────────────────────

    async def request_password_reset(
        self,
        db: AsyncSession,
        email: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[str]:
        """
        Issue a one-time reset token for an active account and return it.

        Never reveals whether the account exists: unknown, inactive and
        cooling-down accounts all return None without raising. Only the
        token's SHA-256 is stored; earlier unused tokens are spent. Email
        delivery is an external collaborator; in development the token is
        logged at DEBUG.
        """
        settings = get_settings()
        email = email.strip().lower()
        user = (await db.execute(select(User).where(User.email == email))).scalar_one_or_none()
        if user is None or not user.is_active or user.deleted_at is not None:
            logger.info(f"Password reset requested for unknown or inactive account: {email}")
            return None

        now = self._clock()
        recent = await db.execute(
            select(PasswordReset.id).where(
                PasswordReset.user_id == user.id,
                PasswordReset.created_at > now - timedelta(seconds=settings.password_reset_cooldown_seconds),
            )
        )
        if recent.first() is not None:
            logger.info(f"Password reset for {email} skipped: previous request still cooling down")
            return None

        await db.execute(
            update(PasswordReset)
            .where(PasswordReset.user_id == user.id, PasswordReset.is_used.is_(False))
            .values(is_used=True, used_at=now)
        )

        reset_token = secrets.token_urlsafe(32)
        db.add(
            PasswordReset(
                user_id=user.id,
                token_hash=hash_reset_token(reset_token),
                expires_at=now + timedelta(minutes=settings.password_reset_minutes),
                created_at=now,
            )
        )
        await db.flush()
        if settings.app_env == "development":
            logger.debug(f"[DEV] Password reset token for {email}: {reset_token}")

        self._recorder.record_audit(
            AuditAction.PASSWORD_RESET_REQUESTED,
            user_id=user.id,
            resource_type="user",
            resource_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        logger.info(f"Password reset link generated for: {email}")
        return reset_token

    async def reset_password(
        self,
        db: AsyncSession,
        token: str,
        new_password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> User:
        """Spend a reset token, set the new password and revoke every open session."""
        now = self._clock()
        reset = (
            await db.execute(
                select(PasswordReset).where(
                    PasswordReset.token_hash == hash_reset_token(token),
                    PasswordReset.is_used.is_(False),
                )
            )
        ).scalar_one_or_none()
        if reset is None:
            raise ValidationFailed("This reset link is invalid or has already been used.", error_code="INVALID_TOKEN")
        if reset.is_expired_at(now):
            raise ValidationFailed("This reset link has expired. Request a new one.", error_code="TOKEN_EXPIRED")

        user = reset.user
        if not user.is_active or user.deleted_at is not None:
            raise ValidationFailed("This account is not active.", error_code="USER_INACTIVE")

        user.hashed_password = get_password_hash(new_password)
        user.must_change_password = False
        reset.is_used = True
        reset.used_at = now
        reset.used_ip = ip_address
        revoked = await self._revoke_sessions(db, user.id, now)
        await db.flush()

        self._recorder.record_audit(
            AuditAction.PASSWORD_RESET_COMPLETED,
            user_id=user.id,
            resource_type="user",
            resource_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
            details={"sessions_revoked": revoked},
        )
        logger.info(f"Password reset completed for {user.email} | {revoked} session(s) revoked")
        return user

    async def update_password(
        self,
        db: AsyncSession,
        snapshot: SessionSnapshot,
        current_password: str,
        new_password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> User:
        """Change the signed-in user's password; every other session of theirs is revoked."""
        user = await db.get(User, snapshot.user_id)
        if not verify_password(current_password, user.hashed_password):
            self._recorder.record_audit(
                AuditAction.PASSWORD_UPDATE_FAILED,
                user_id=user.id,
                resource_type="user",
                resource_id=user.id,
                ip_address=ip_address,
                user_agent=user_agent,
                details={"reason": "invalid_current_password"},
            )
            logger.warning(f"Password update with wrong current password: {user.email}")
            raise ValidationFailed("Current password is incorrect.", error_code="INVALID_CURRENT_PASSWORD")
        if verify_password(new_password, user.hashed_password):
            raise ValidationFailed(
                "New password must be different from the current one.", error_code="SAME_PASSWORD"
            )

        now = self._clock()
        user.hashed_password = get_password_hash(new_password)
        user.must_change_password = False
        revoked = await self._revoke_sessions(db, user.id, now, keep=snapshot.session_id)
        await db.flush()

        self._recorder.record_audit(
            AuditAction.PASSWORD_UPDATED,
            user_id=user.id,
            resource_type="user",
            resource_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
            details={"sessions_revoked": revoked},
        )
        logger.info(f"Password updated for {user.email} | {revoked} other session(s) revoked")
        return user

    async def _revoke_sessions(
        self, db: AsyncSession, user_id: int, now: datetime, keep: Optional[str] = None
    ) -> int:
        stmt = update(UserSession).where(UserSession.user_id == user_id, UserSession.revoked_at.is_(None))
        if keep is not None:
            stmt = stmt.where(UserSession.id != keep)
        result = await db.execute(stmt.values(revoked_at=now))
        return result.rowcount


def hash_reset_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()
