"""
services/audit.py

Append-only audit log and security event recorder.

Two write paths:

- `record_audit` / `record_security_event` are fire-and-forget. The row is
  written by a detached asyncio task through its own database session, so
  the request neither waits for it nor fails because of it. Failures are
  logged here and go no further. Pending tasks are held in a set so they
  are not garbage collected mid-flight; `drain()` awaits them (shutdown,
  tests).

- `create_security_event` is awaited inside the caller's session. Used when
  the event itself is the deliverable (the admin "create event" endpoint);
  failures propagate to the caller.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, Optional, Set

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from insightboard.db.models import AuditLog, SecurityEvent
from insightboard.models.schemas import Severity

logger = logging.getLogger(__name__)


class AuditAction:
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILED = "LOGIN_FAILED"
    USER_LOGOUT = "USER_LOGOUT"
    SESSION_REFRESHED = "SESSION_REFRESHED"
    USER_REGISTERED = "USER_REGISTERED"
    PASSWORD_RESET_REQUESTED = "PASSWORD_RESET_REQUESTED"
    PASSWORD_RESET_COMPLETED = "PASSWORD_RESET_COMPLETED"
    PASSWORD_UPDATED = "PASSWORD_UPDATED"
    PASSWORD_UPDATE_FAILED = "PASSWORD_UPDATE_FAILED"
    TERMS_ACCEPTED = "TERMS_ACCEPTED"

    USER_UPDATED = "USER_UPDATED"
    USER_DELETED = "USER_DELETED"
    ROLE_CHANGED = "ROLE_CHANGED"

    ROLE_CREATED = "ROLE_CREATED"
    ROLE_UPDATED = "ROLE_UPDATED"
    ROLE_DELETED = "ROLE_DELETED"
    ROLE_VIEWED = "ROLE_VIEWED"
    ROLE_LIST_VIEWED = "ROLE_LIST_VIEWED"

    CONTENT_CREATED = "CONTENT_CREATED"
    CONTENT_UPDATED = "CONTENT_UPDATED"
    CONTENT_DELETED = "CONTENT_DELETED"

    IP_BLACKLIST_ADD = "IP_BLACKLIST_ADD"
    IP_BLACKLIST_REMOVE = "IP_BLACKLIST_REMOVE"
    SECURITY_EVENT_CREATED = "SECURITY_EVENT_CREATED"


class SecurityEventType:
    IP_BLOCKED = "IP_BLOCKED"
    IP_UNBLOCKED = "IP_UNBLOCKED"
    LOGIN_FAILED = "LOGIN_FAILED"


class AuditRecorder:
    def __init__(self, session_factory: async_sessionmaker) -> None:
        self._session_factory = session_factory
        self._pending: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    # ─── Fire-and-forget ─────────────────────────────────────────────────────

    def record_audit(
        self,
        action: str,
        *,
        user_id: Optional[int] = None,
        resource_type: Optional[str] = None,
        resource_id: Any = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> asyncio.Task:
        def build() -> AuditLog:
            return AuditLog(
                user_id=user_id,
                action=action,
                resource_type=resource_type,
                resource_id=str(resource_id) if resource_id is not None else None,
                ip_address=ip_address,
                user_agent=(user_agent or "")[:512] or None,
                details=details or {},
            )

        return self._spawn(build, f"audit {action}")

    def record_security_event(
        self,
        event_type: str,
        *,
        ip_address: Optional[str] = None,
        user_id: Optional[int] = None,
        severity: Severity = Severity.LOW,
        details: Optional[Dict[str, Any]] = None,
    ) -> asyncio.Task:
        def build() -> SecurityEvent:
            return SecurityEvent(
                event_type=event_type,
                ip_address=ip_address,
                user_id=user_id,
                severity=Severity(severity).value,
                details=details or {},
            )

        return self._spawn(build, f"security event {event_type}")

    def _spawn(self, build: Callable[[], Any], label: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self._write(build, label))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _write(self, build: Callable[[], Any], label: str) -> None:
        try:
            async with self._session_factory() as session:
                session.add(build())
                await session.commit()
        except Exception as e:
            logger.error(f"Failed to record {label}: {e}", exc_info=True)

    async def drain(self) -> None:
        """Wait for every write issued so far."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ─── Awaited ─────────────────────────────────────────────────────────────

    async def create_security_event(
        self,
        db: AsyncSession,
        event_type: str,
        *,
        ip_address: Optional[str] = None,
        user_id: Optional[int] = None,
        severity: Severity = Severity.LOW,
        details: Optional[Dict[str, Any]] = None,
    ) -> SecurityEvent:
        event = SecurityEvent(
            event_type=event_type,
            ip_address=ip_address,
            user_id=user_id,
            severity=Severity(severity).value,
            details=details or {},
        )
        db.add(event)
        await db.flush()
        return event
