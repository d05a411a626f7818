"""
services/seed.py

Idempotent seeding of the permission vocabulary and the default roles.

Permissions are managed data: every member of core.permissions.Permission
gets a row. Default roles receive their default permission sets only when
they are first created; later edits by administrators are left alone.
"""

import logging
from typing import Dict

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from insightboard.core.config import get_settings
from insightboard.core.permissions import DEFAULT_ROLE_PERMISSIONS, PERMISSION_GROUPS, Permission as PermissionName, RoleName
from insightboard.core.security import get_password_hash
from insightboard.db.models import Permission, Role, RolePermission, User

logger = logging.getLogger(__name__)

ROLE_DESCRIPTIONS = {
    RoleName.SUPER_ADMIN: "Full access to every capability",
    RoleName.ADMIN: "Administers users, roles and content",
    RoleName.EDITOR: "Creates and edits content",
    RoleName.VIEWER: "Read-only access",
}


def _group_of(permission: PermissionName) -> str:
    for group, members in PERMISSION_GROUPS.items():
        if permission in members:
            return group
    return "Other"


async def seed_permissions(db: AsyncSession) -> Dict[str, Permission]:
    existing = {p.name: p for p in (await db.execute(select(Permission))).scalars().all()}
    for member in PermissionName:
        if member.value not in existing:
            row = Permission(
                name=member.value,
                resource=member.resource,
                action=member.action,
                description=f"{_group_of(member)}: {member.action}",
            )
            db.add(row)
            existing[member.value] = row
    await db.flush()
    return existing


async def seed_roles(db: AsyncSession, permissions: Dict[str, Permission]) -> Dict[str, Role]:
    roles: Dict[str, Role] = {}
    for name, defaults in DEFAULT_ROLE_PERMISSIONS.items():
        result = await db.execute(select(Role).where(func.lower(Role.name) == name))
        role = result.scalar_one_or_none()
        if role is None:
            role = Role(
                name=name,
                description=ROLE_DESCRIPTIONS.get(name),
                is_system=True,
                role_permissions=[
                    RolePermission(permission_id=permissions[p.value].id, permission=permissions[p.value])
                    for p in sorted(defaults, key=lambda p: p.value)
                ],
            )
            db.add(role)
            logger.info(f"Seeded role '{name}' with {len(defaults)} permissions.")
        roles[name] = role
    await db.flush()
    return roles


async def seed_bootstrap_admin(db: AsyncSession, roles: Dict[str, Role]) -> None:
    settings = get_settings()
    if not (settings.bootstrap_admin_email and settings.bootstrap_admin_password):
        return

    email = settings.bootstrap_admin_email.strip().lower()
    result = await db.execute(select(User.id).where(User.email == email))
    if result.first() is not None:
        return

    db.add(User(
        email=email,
        full_name="Administrator",
        hashed_password=get_password_hash(settings.bootstrap_admin_password),
        role_id=roles[RoleName.SUPER_ADMIN].id,
        is_active=True,
        must_change_password=True,
    ))
    await db.flush()
    logger.info(f"Bootstrap super admin created: {email}")


async def seed_all(db: AsyncSession) -> Dict[str, Role]:
    permissions = await seed_permissions(db)
    roles = await seed_roles(db, permissions)
    await seed_bootstrap_admin(db, roles)
    return roles
