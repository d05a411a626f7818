"""
api/routes_security.py

Security administration: IP blacklist, security events and summary stats.

Reads require system.security.view OR system.admin.
Writes require system.security.manage OR system.admin.
Neither accepts the admin role on its own.

Creating a security event through this API is the one audited write that
is awaited: the event is the deliverable, so a failed insert fails the
request instead of being logged and dropped.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from insightboard.api.deps import AuthContext, authorize, get_ip_gate, get_recorder
from insightboard.core.errors import ValidationFailed
from insightboard.core.guards import requires_any
from insightboard.core.permissions import Permission
from insightboard.db.database import get_db
from insightboard.db.models import SecurityEvent
from insightboard.models.schemas import (
    BlacklistCreate,
    BlacklistDetailResponse,
    BlacklistEntryResponse,
    BlacklistListResponse,
    MessageResponse,
    SecurityEventCreate,
    SecurityEventListResponse,
    SecurityEventResponse,
    SecurityStats,
    Severity,
)
from insightboard.services.audit import AuditAction, AuditRecorder, SecurityEventType
from insightboard.services.ip_gate import IPReputationGate
from insightboard.utils.clock import utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/system/security", tags=["Security"])

_view = authorize(requires_any(Permission.SYSTEM_SECURITY_VIEW, Permission.SYSTEM_ADMIN))
_manage = authorize(requires_any(Permission.SYSTEM_SECURITY_MANAGE, Permission.SYSTEM_ADMIN))


# ─── Blacklist ────────────────────────────────────────────────────────────────

@router.get("/blacklist", response_model=BlacklistListResponse)
async def list_blacklist(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    active_only: bool = False,
    ctx: AuthContext = Depends(_view),
    db: AsyncSession = Depends(get_db),
    gate: IPReputationGate = Depends(get_ip_gate),
) -> BlacklistListResponse:
    total, entries = await gate.list_entries(db, page=page, limit=limit, active_only=active_only)
    return BlacklistListResponse(
        total=total,
        page=page,
        limit=limit,
        entries=[BlacklistEntryResponse.model_validate(e) for e in entries],
    )


@router.get("/blacklist/{entry_id}", response_model=BlacklistDetailResponse)
async def get_blacklist_entry(
    entry_id: int,
    ctx: AuthContext = Depends(_view),
    db: AsyncSession = Depends(get_db),
    gate: IPReputationGate = Depends(get_ip_gate),
) -> BlacklistDetailResponse:
    entry, events = await gate.get_entry(db, entry_id)
    return BlacklistDetailResponse(
        **BlacklistEntryResponse.model_validate(entry).model_dump(),
        related_events=[SecurityEventResponse.model_validate(e) for e in events],
    )


@router.post("/blacklist", response_model=BlacklistEntryResponse, status_code=status.HTTP_201_CREATED)
async def add_to_blacklist(
    payload: BlacklistCreate,
    ctx: AuthContext = Depends(_manage),
    db: AsyncSession = Depends(get_db),
    gate: IPReputationGate = Depends(get_ip_gate),
) -> BlacklistEntryResponse:
    ip_address = str(payload.ip_address)
    if ip_address == ctx.ip_address:
        raise ValidationFailed(
            "You cannot blacklist the IP address you are connecting from.",
            details={"fields": {"ip_address": "matches the requesting client"}},
        )

    entry = await gate.add(
        db,
        ip_address,
        payload.reason,
        is_permanent=payload.is_permanent,
        duration_hours=payload.duration_hours,
        created_by=ctx.user_id,
        severity=Severity.MEDIUM,
        actor_ip=ctx.ip_address,
        user_agent=ctx.user_agent,
    )
    return BlacklistEntryResponse.model_validate(entry)


@router.delete("/blacklist/{entry_id}", response_model=MessageResponse)
async def remove_from_blacklist(
    entry_id: int,
    ctx: AuthContext = Depends(_manage),
    db: AsyncSession = Depends(get_db),
    gate: IPReputationGate = Depends(get_ip_gate),
) -> MessageResponse:
    entry = await gate.remove(
        db, entry_id, removed_by=ctx.user_id, actor_ip=ctx.ip_address, user_agent=ctx.user_agent
    )
    return MessageResponse(message=f"IP address {entry.ip_address} removed from blacklist.")


# ─── Events ───────────────────────────────────────────────────────────────────

@router.get("/events", response_model=SecurityEventListResponse)
async def list_events(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    event_type: Optional[str] = None,
    severity: Optional[Severity] = None,
    ip_address: Optional[str] = None,
    user_id: Optional[int] = None,
    from_date: Optional[datetime] = None,
    to_date: Optional[datetime] = None,
    ctx: AuthContext = Depends(_view),
    db: AsyncSession = Depends(get_db),
) -> SecurityEventListResponse:
    stmt = select(SecurityEvent)
    if event_type:
        stmt = stmt.where(SecurityEvent.event_type == event_type)
    if severity:
        stmt = stmt.where(SecurityEvent.severity == severity.value)
    if ip_address:
        stmt = stmt.where(SecurityEvent.ip_address == ip_address)
    if user_id is not None:
        stmt = stmt.where(SecurityEvent.user_id == user_id)
    if from_date:
        stmt = stmt.where(SecurityEvent.created_at >= from_date)
    if to_date:
        stmt = stmt.where(SecurityEvent.created_at <= to_date)

    total = (await db.execute(select(func.count()).select_from(stmt.subquery()))).scalar_one()
    result = await db.execute(
        stmt.order_by(SecurityEvent.created_at.desc(), SecurityEvent.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return SecurityEventListResponse(
        total=total,
        page=page,
        limit=limit,
        events=[SecurityEventResponse.model_validate(e) for e in result.scalars().all()],
    )


@router.post("/events", response_model=SecurityEventResponse, status_code=status.HTTP_201_CREATED)
async def create_event(
    payload: SecurityEventCreate,
    ctx: AuthContext = Depends(_manage),
    db: AsyncSession = Depends(get_db),
    recorder: AuditRecorder = Depends(get_recorder),
) -> SecurityEventResponse:
    event = await recorder.create_security_event(
        db,
        payload.event_type,
        ip_address=str(payload.ip_address) if payload.ip_address else None,
        user_id=payload.user_id,
        severity=payload.severity,
        details=payload.details,
    )
    await db.commit()

    ctx.audit(
        AuditAction.SECURITY_EVENT_CREATED,
        "security_event",
        event.id,
        details={"event_type": event.event_type, "severity": event.severity},
    )
    return SecurityEventResponse.model_validate(event)


# ─── Stats ────────────────────────────────────────────────────────────────────

@router.get("/stats", response_model=SecurityStats)
async def security_stats(
    ctx: AuthContext = Depends(_view),
    db: AsyncSession = Depends(get_db),
    gate: IPReputationGate = Depends(get_ip_gate),
) -> SecurityStats:
    since = utcnow() - timedelta(hours=24)
    total_blocked, active_blocks = await gate.count(db)

    failed_logins = (
        await db.execute(
            select(func.count(SecurityEvent.id)).where(
                SecurityEvent.event_type == SecurityEventType.LOGIN_FAILED,
                SecurityEvent.created_at >= since,
            )
        )
    ).scalar_one()

    by_severity = {
        severity: count
        for severity, count in (
            await db.execute(
                select(SecurityEvent.severity, func.count(SecurityEvent.id))
                .where(SecurityEvent.created_at >= since)
                .group_by(SecurityEvent.severity)
            )
        ).all()
    }

    return SecurityStats(
        total_blocked=total_blocked,
        active_blocks=active_blocks,
        failed_logins_24h=failed_logins,
        events_24h=sum(by_severity.values()),
        events_by_severity_24h={s.value: by_severity.get(s.value, 0) for s in Severity},
    )
