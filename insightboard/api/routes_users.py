"""
api/routes_users.py

User administration.

Access rules per endpoint:
- list               : user.read
- get / update       : the user themself, or user.read / user.update
- changing role_id   : role.assign, even for the user themself
- changing is_active : user.update, even for the user themself
- delete (soft)      : user.delete; revokes every open session
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from insightboard.api.deps import AuthContext, authorize
from insightboard.core.errors import Conflict, Forbidden, NotFound
from insightboard.core.guards import owner_or, requires
from insightboard.core.permissions import Permission
from insightboard.db.database import get_db
from insightboard.db.models import User, UserSession
from insightboard.models.schemas import MessageResponse, UserListResponse, UserResponse, UserUpdate
from insightboard.services import role_service
from insightboard.services.audit import AuditAction
from insightboard.utils.clock import utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/users", tags=["Users"])


def user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        full_name=user.full_name,
        role_id=user.role_id,
        role=user.role.name if user.role else None,
        is_active=user.is_active,
        must_change_password=user.must_change_password,
        terms_accepted_at=user.terms_accepted_at,
        last_login=user.last_login,
        created_at=user.created_at,
    )


async def _get_live_user(db: AsyncSession, user_id: int) -> User:
    user = await db.get(User, user_id)
    if user is None or user.deleted_at is not None:
        raise NotFound(f"User {user_id} not found.")
    return user


@router.get("", response_model=UserListResponse)
async def list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    role_id: Optional[int] = None,
    is_active: Optional[bool] = None,
    ctx: AuthContext = Depends(authorize(requires(Permission.USER_READ))),
    db: AsyncSession = Depends(get_db),
) -> UserListResponse:
    stmt = select(User).where(User.deleted_at.is_(None))
    if role_id is not None:
        stmt = stmt.where(User.role_id == role_id)
    if is_active is not None:
        stmt = stmt.where(User.is_active.is_(is_active))

    total = (await db.execute(select(func.count()).select_from(stmt.subquery()))).scalar_one()
    result = await db.execute(stmt.order_by(User.id).offset((page - 1) * limit).limit(limit))
    return UserListResponse(
        total=total,
        page=page,
        limit=limit,
        users=[user_response(u) for u in result.scalars().all()],
    )


@router.get("/{user_id}", response_model=UserResponse)
async def get_user(
    user_id: int,
    ctx: AuthContext = Depends(authorize(owner_or(Permission.USER_READ))),
    db: AsyncSession = Depends(get_db),
) -> UserResponse:
    ctx.enforce(owner_id=user_id)
    return user_response(await _get_live_user(db, user_id))


@router.patch("/{user_id}", response_model=UserResponse)
async def update_user(
    user_id: int,
    payload: UserUpdate,
    ctx: AuthContext = Depends(authorize(owner_or(Permission.USER_UPDATE))),
    db: AsyncSession = Depends(get_db),
) -> UserResponse:
    ctx.enforce(owner_id=user_id)
    user = await _get_live_user(db, user_id)

    role_change = payload.role_id is not None and payload.role_id != user.role_id
    active_change = payload.is_active is not None and payload.is_active != user.is_active

    # Every check runs before the first write or audit entry.
    missing = []
    if role_change and not ctx.checker.has_permission(Permission.ROLE_ASSIGN):
        missing.append(Permission.ROLE_ASSIGN.value)
    if active_change and not ctx.checker.has_permission(Permission.USER_UPDATE):
        missing.append(Permission.USER_UPDATE.value)
    if missing:
        raise Forbidden(details={"required": missing})
    new_role = await role_service.get_role(db, payload.role_id) if role_change else None

    changed = []
    old_role = user.role.name if user.role else None
    if new_role is not None:
        user.role = new_role
        changed.append("role_id")
    if active_change:
        user.is_active = payload.is_active
        changed.append("is_active")
    if payload.full_name is not None and payload.full_name != user.full_name:
        user.full_name = payload.full_name.strip()
        changed.append("full_name")

    await db.flush()
    if new_role is not None:
        ctx.audit(AuditAction.ROLE_CHANGED, "user", user.id, details={"from": old_role, "to": new_role.name})
    if changed:
        ctx.audit(AuditAction.USER_UPDATED, "user", user.id, details={"changed": changed})
    return user_response(user)


@router.delete("/{user_id}", response_model=MessageResponse)
async def delete_user(
    user_id: int,
    ctx: AuthContext = Depends(authorize(requires(Permission.USER_DELETE))),
    db: AsyncSession = Depends(get_db),
) -> MessageResponse:
    if user_id == ctx.user_id:
        raise Conflict("You cannot delete your own account.", error_code="SELF_DELETE")

    user = await _get_live_user(db, user_id)
    now = utcnow()
    user.deleted_at = now
    user.is_active = False
    await db.execute(
        update(UserSession)
        .where(UserSession.user_id == user_id, UserSession.revoked_at.is_(None))
        .values(revoked_at=now)
    )
    await db.flush()

    ctx.audit(AuditAction.USER_DELETED, "user", user_id, details={"email": user.email})
    logger.info(f"User {user.email} soft-deleted by user {ctx.user_id}")
    return MessageResponse(message="User deleted.")
