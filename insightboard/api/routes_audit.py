"""
api/routes_audit.py

Read access to the audit trail, including the login-count ranking used by
the security dashboard. Requires audit.read.
"""

from datetime import timedelta
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from insightboard.api.deps import authorize
from insightboard.core.guards import requires
from insightboard.core.permissions import Permission
from insightboard.db.database import get_db
from insightboard.db.models import AuditLog, User
from insightboard.models.schemas import AuditLogListResponse, AuditLogResponse, TopUserEntry
from insightboard.services.audit import AuditAction
from insightboard.utils.clock import utcnow

router = APIRouter(
    prefix="/api/audit",
    tags=["Audit"],
    dependencies=[Depends(authorize(requires(Permission.AUDIT_READ)))],
)


@router.get("/logs", response_model=AuditLogListResponse)
async def list_audit_logs(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    action: Optional[str] = None,
    user_id: Optional[int] = None,
    resource_type: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
) -> AuditLogListResponse:
    stmt = select(AuditLog)
    if action:
        stmt = stmt.where(AuditLog.action == action)
    if user_id is not None:
        stmt = stmt.where(AuditLog.user_id == user_id)
    if resource_type:
        stmt = stmt.where(AuditLog.resource_type == resource_type)

    total = (await db.execute(select(func.count()).select_from(stmt.subquery()))).scalar_one()
    result = await db.execute(
        stmt.order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return AuditLogListResponse(
        total=total,
        page=page,
        limit=limit,
        logs=[AuditLogResponse.model_validate(row) for row in result.scalars().all()],
    )


@router.get("/top-users", response_model=List[TopUserEntry])
async def top_users_by_logins(
    limit: int = Query(10, ge=1, le=100),
    days: int = Query(30, ge=1, le=365),
    db: AsyncSession = Depends(get_db),
) -> List[TopUserEntry]:
    login_count = func.count(AuditLog.id).label("login_count")
    result = await db.execute(
        select(AuditLog.user_id, User.email, login_count)
        .join(User, User.id == AuditLog.user_id)
        .where(
            AuditLog.action == AuditAction.LOGIN_SUCCESS,
            AuditLog.created_at >= utcnow() - timedelta(days=days),
        )
        .group_by(AuditLog.user_id, User.email)
        .order_by(login_count.desc(), AuditLog.user_id)
        .limit(limit)
    )
    return [
        TopUserEntry(user_id=user_id, email=email, login_count=count)
        for user_id, email, count in result.all()
    ]
