"""
services/ip_gate.py

IP reputation gate backed by the `ip_blacklist` table.

An IP is blocked while it has an entry that is permanent or whose
`blocked_until` lies in the future. Expired entries stay in the table as
history and simply stop matching. At most one active entry per IP exists;
`add` checks before inserting.

Every add and remove is paired with a security event and an audit entry,
both written fire-and-forget through the AuditRecorder.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from insightboard.core.errors import AlreadyBlacklisted, NotFound
from insightboard.db.models import IPBlacklistEntry, SecurityEvent
from insightboard.models.schemas import Severity
from insightboard.services.audit import AuditAction, AuditRecorder, SecurityEventType
from insightboard.utils.clock import utcnow

logger = logging.getLogger(__name__)

RELATED_EVENTS_LIMIT = 10


def _active_clause(now: datetime):
    return or_(IPBlacklistEntry.is_permanent.is_(True), IPBlacklistEntry.blocked_until > now)


class IPReputationGate:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        recorder: AuditRecorder,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._recorder = recorder
        self._clock = clock

    # ─── Lookups ─────────────────────────────────────────────────────────────

    async def active_entry(self, db: AsyncSession, ip_address: str) -> Optional[IPBlacklistEntry]:
        result = await db.execute(
            select(IPBlacklistEntry)
            .where(IPBlacklistEntry.ip_address == ip_address, _active_clause(self._clock()))
            .order_by(IPBlacklistEntry.blocked_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def is_blocked(self, ip_address: str, db: Optional[AsyncSession] = None) -> bool:
        """Read-only. Opens its own session when none is given (middleware path)."""
        if not ip_address or ip_address == "unknown":
            return False
        if db is not None:
            return await self.active_entry(db, ip_address) is not None
        async with self._session_factory() as session:
            return await self.active_entry(session, ip_address) is not None

    # ─── Mutations ───────────────────────────────────────────────────────────

    async def add(
        self,
        db: AsyncSession,
        ip_address: str,
        reason: str,
        *,
        is_permanent: bool = False,
        duration_hours: Optional[int] = None,
        created_by: Optional[int] = None,
        attempts_count: int = 0,
        severity: Severity = Severity.MEDIUM,
        actor_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> IPBlacklistEntry:
        if await self.active_entry(db, ip_address) is not None:
            raise AlreadyBlacklisted(f"IP address {ip_address} is already blacklisted.")

        now = self._clock()
        blocked_until = None if is_permanent else now + timedelta(hours=duration_hours or 24)
        entry = IPBlacklistEntry(
            ip_address=ip_address,
            reason=reason,
            is_permanent=is_permanent,
            blocked_until=blocked_until,
            blocked_at=now,
            created_by=created_by,
            attempts_count=attempts_count,
        )
        db.add(entry)
        await db.flush()

        details = {
            "entry_id": entry.id,
            "reason": reason,
            "is_permanent": is_permanent,
            "blocked_until": blocked_until.isoformat() if blocked_until else None,
        }
        self._recorder.record_security_event(
            SecurityEventType.IP_BLOCKED,
            ip_address=ip_address,
            user_id=created_by,
            severity=severity,
            details=details,
        )
        self._recorder.record_audit(
            AuditAction.IP_BLACKLIST_ADD,
            user_id=created_by,
            resource_type="ip_blacklist",
            resource_id=entry.id,
            ip_address=actor_ip,
            user_agent=user_agent,
            details={"ip_address": ip_address, **details},
        )
        logger.warning(
            f"IP blacklisted: {ip_address} | permanent={is_permanent} | until={blocked_until} | by={created_by or 'system'}"
        )
        return entry

    async def remove(
        self,
        db: AsyncSession,
        entry_id: int,
        *,
        removed_by: Optional[int] = None,
        actor_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> IPBlacklistEntry:
        entry = await db.get(IPBlacklistEntry, entry_id)
        if entry is None:
            raise NotFound(f"Blacklist entry {entry_id} not found.")

        await db.delete(entry)
        await db.flush()

        self._recorder.record_security_event(
            SecurityEventType.IP_UNBLOCKED,
            ip_address=entry.ip_address,
            user_id=removed_by,
            severity=Severity.LOW,
            details={"entry_id": entry_id, "reason": entry.reason},
        )
        self._recorder.record_audit(
            AuditAction.IP_BLACKLIST_REMOVE,
            user_id=removed_by,
            resource_type="ip_blacklist",
            resource_id=entry_id,
            ip_address=actor_ip,
            user_agent=user_agent,
            details={"ip_address": entry.ip_address},
        )
        logger.info(f"IP unblocked: {entry.ip_address} | by={removed_by}")
        return entry

    # ─── Listing ─────────────────────────────────────────────────────────────

    async def list_entries(
        self,
        db: AsyncSession,
        *,
        page: int = 1,
        limit: int = 20,
        active_only: bool = False,
    ) -> Tuple[int, List[IPBlacklistEntry]]:
        stmt = select(IPBlacklistEntry)
        if active_only:
            stmt = stmt.where(_active_clause(self._clock()))

        total = (await db.execute(select(func.count()).select_from(stmt.subquery()))).scalar_one()
        result = await db.execute(
            stmt.order_by(IPBlacklistEntry.blocked_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return total, list(result.scalars().all())

    async def get_entry(
        self, db: AsyncSession, entry_id: int
    ) -> Tuple[IPBlacklistEntry, List[SecurityEvent]]:
        entry = await db.get(IPBlacklistEntry, entry_id)
        if entry is None:
            raise NotFound(f"Blacklist entry {entry_id} not found.")

        result = await db.execute(
            select(SecurityEvent)
            .where(SecurityEvent.ip_address == entry.ip_address)
            .order_by(SecurityEvent.created_at.desc())
            .limit(RELATED_EVENTS_LIMIT)
        )
        return entry, list(result.scalars().all())

    async def count(self, db: AsyncSession) -> Tuple[int, int]:
        """(all entries, currently active entries)"""
        total = (await db.execute(select(func.count(IPBlacklistEntry.id)))).scalar_one()
        active = (
            await db.execute(select(func.count(IPBlacklistEntry.id)).where(_active_clause(self._clock())))
        ).scalar_one()
        return total, active
