"""
api/routes_permissions.py

Read-only view of the seeded permission vocabulary, flat or grouped the
way the role editor presents it.
"""

from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from insightboard.api.deps import authorize
from insightboard.core.guards import admin_or, requires
from insightboard.core.permissions import PERMISSION_GROUPS, Permission as PermissionName
from insightboard.db.database import get_db
from insightboard.db.models import Permission
from insightboard.models.schemas import PermissionGroupResponse, PermissionResponse

router = APIRouter(prefix="/api/permissions", tags=["Permissions"])

_read = authorize(requires(PermissionName.ROLE_READ), "roles")
# The role editor sidebar is shown to any admin, whether or not the role holds role.read.
_browse = authorize(admin_or(PermissionName.ROLE_READ), "roles")


@router.get("", response_model=List[PermissionResponse], dependencies=[Depends(_read)])
async def list_permissions(db: AsyncSession = Depends(get_db)) -> List[PermissionResponse]:
    result = await db.execute(select(Permission).order_by(Permission.name))
    return [PermissionResponse.model_validate(p) for p in result.scalars().all()]


@router.get("/grouped", response_model=List[PermissionGroupResponse], dependencies=[Depends(_browse)])
async def list_permission_groups(db: AsyncSession = Depends(get_db)) -> List[PermissionGroupResponse]:
    result = await db.execute(select(Permission))
    by_name = {p.name: p for p in result.scalars().all()}
    return [
        PermissionGroupResponse(
            group=group,
            permissions=[
                PermissionResponse.model_validate(by_name[member.value])
                for member in members
                if member.value in by_name
            ],
        )
        for group, members in PERMISSION_GROUPS.items()
    ]
