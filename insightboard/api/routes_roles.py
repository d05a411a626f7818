"""
api/routes_roles.py

Role management. Every endpoint requires the explicit ROLE_* permission;
the admin role gets no implicit pass here, only super_admin does.
Throttled with the "roles" budget (20/min per IP).
"""

import logging
from typing import List

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from insightboard.api.deps import AuthContext, authorize
from insightboard.core.guards import requires
from insightboard.core.permissions import Permission
from insightboard.db.database import get_db
from insightboard.db.models import Role
from insightboard.models.schemas import (
    MessageResponse,
    PermissionResponse,
    RoleCreate,
    RoleResponse,
    RoleUpdate,
)
from insightboard.services import role_service
from insightboard.services.audit import AuditAction

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/roles", tags=["Roles"])


def role_response(role: Role, user_count: int = 0) -> RoleResponse:
    permissions = sorted((rp.permission for rp in role.role_permissions), key=lambda p: p.name)
    return RoleResponse(
        id=role.id,
        name=role.name,
        description=role.description,
        is_active=role.is_active,
        is_system=role.is_system,
        permissions=[PermissionResponse.model_validate(p) for p in permissions],
        user_count=user_count,
    )


@router.get("", response_model=List[RoleResponse])
async def list_roles(
    ctx: AuthContext = Depends(authorize(requires(Permission.ROLE_READ), "roles")),
    db: AsyncSession = Depends(get_db),
) -> List[RoleResponse]:
    rows = await role_service.list_roles(db)
    ctx.audit(AuditAction.ROLE_LIST_VIEWED, "role", details={"count": len(rows)})
    return [role_response(role, n) for role, n in rows]


@router.get("/{role_id}", response_model=RoleResponse)
async def get_role(
    role_id: int,
    ctx: AuthContext = Depends(authorize(requires(Permission.ROLE_READ), "roles")),
    db: AsyncSession = Depends(get_db),
) -> RoleResponse:
    role = await role_service.get_role(db, role_id)
    count = await role_service.user_count(db, role_id)
    ctx.audit(AuditAction.ROLE_VIEWED, "role", role.id)
    return role_response(role, count)


@router.post("", response_model=RoleResponse, status_code=status.HTTP_201_CREATED)
async def create_role(
    payload: RoleCreate,
    ctx: AuthContext = Depends(authorize(requires(Permission.ROLE_CREATE), "roles")),
    db: AsyncSession = Depends(get_db),
) -> RoleResponse:
    role = await role_service.create_role(db, payload)
    ctx.audit(
        AuditAction.ROLE_CREATED,
        "role",
        role.id,
        details={"name": role.name, "permissions": role.permission_names},
    )
    return role_response(role)


@router.put("/{role_id}", response_model=RoleResponse)
async def update_role(
    role_id: int,
    payload: RoleUpdate,
    ctx: AuthContext = Depends(authorize(requires(Permission.ROLE_UPDATE), "roles")),
    db: AsyncSession = Depends(get_db),
) -> RoleResponse:
    role, changed = await role_service.update_role(db, role_id, payload)
    count = await role_service.user_count(db, role_id)
    ctx.audit(
        AuditAction.ROLE_UPDATED,
        "role",
        role.id,
        details={"changed": changed, "permissions": role.permission_names},
    )
    return role_response(role, count)


@router.delete("/{role_id}", response_model=MessageResponse)
async def delete_role(
    role_id: int,
    ctx: AuthContext = Depends(authorize(requires(Permission.ROLE_DELETE), "roles")),
    db: AsyncSession = Depends(get_db),
) -> MessageResponse:
    role = await role_service.delete_role(db, role_id)
    ctx.audit(AuditAction.ROLE_DELETED, "role", role_id, details={"name": role.name})
    return MessageResponse(message=f"Role '{role.name}' deleted.")
