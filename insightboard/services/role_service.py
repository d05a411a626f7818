"""
services/role_service.py

Role management: CRUD over roles and their permission sets.

Rules:
- Role names are unique case-insensitively. The pre-check gives a clean
  error; the functional unique index settles concurrent creates, and its
  IntegrityError maps to the same Conflict.
- A role and its initial role_permissions rows are flushed together in the
  request transaction, so a half-configured role is never committed.
- Permission ids are de-duplicated; unknown ids reject the whole request.
- A role referenced by any user cannot be deleted.
- Seeded system roles cannot be renamed or deleted.
"""

import logging
from typing import Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from insightboard.core.errors import Conflict, NotFound, ValidationFailed
from insightboard.db.models import Permission, Role, RolePermission, User
from insightboard.models.schemas import RoleCreate, RoleUpdate

logger = logging.getLogger(__name__)


async def load_permissions(db: AsyncSession, permission_ids: Iterable[int]) -> List[Permission]:
    ids = list(dict.fromkeys(permission_ids))
    if not ids:
        return []
    result = await db.execute(select(Permission).where(Permission.id.in_(ids)))
    found = {p.id: p for p in result.scalars().all()}
    missing = [pid for pid in ids if pid not in found]
    if missing:
        raise ValidationFailed(
            "One or more permission ids do not exist.",
            details={"fields": {"permission_ids": f"unknown ids: {missing}"}},
            error_code="INVALID_PERMISSIONS",
        )
    return [found[pid] for pid in ids]


async def get_role(db: AsyncSession, role_id: int) -> Role:
    role = await db.get(Role, role_id)
    if role is None:
        raise NotFound(f"Role {role_id} not found.")
    return role


async def user_count(db: AsyncSession, role_id: int) -> int:
    result = await db.execute(select(func.count(User.id)).where(User.role_id == role_id))
    return result.scalar_one()


async def list_roles(db: AsyncSession) -> List[Tuple[Role, int]]:
    counts = (
        select(User.role_id, func.count(User.id).label("n"))
        .group_by(User.role_id)
        .subquery()
    )
    result = await db.execute(
        select(Role, func.coalesce(counts.c.n, 0))
        .outerjoin(counts, counts.c.role_id == Role.id)
        .order_by(Role.id)
    )
    return [(role, n) for role, n in result.all()]


async def _ensure_name_free(db: AsyncSession, name: str, exclude_id: Optional[int] = None) -> None:
    stmt = select(Role.id).where(func.lower(Role.name) == name.strip().lower())
    if exclude_id is not None:
        stmt = stmt.where(Role.id != exclude_id)
    if (await db.execute(stmt)).first() is not None:
        raise Conflict(f"A role named '{name}' already exists.", error_code="ROLE_EXISTS")


async def _flush_or_conflict(db: AsyncSession, name: str) -> None:
    try:
        await db.flush()
    except IntegrityError as e:
        await db.rollback()
        logger.info(f"Role name collision on flush for '{name}': {e.orig}")
        raise Conflict(f"A role named '{name}' already exists.", error_code="ROLE_EXISTS") from e


def _replace_permissions(role: Role, permissions: Sequence[Permission]) -> None:
    wanted = {p.id: p for p in permissions}
    role.role_permissions = [rp for rp in role.role_permissions if rp.permission_id in wanted]
    present = {rp.permission_id for rp in role.role_permissions}
    for pid, permission in wanted.items():
        if pid not in present:
            role.role_permissions.append(RolePermission(permission_id=pid, permission=permission))


async def create_role(db: AsyncSession, payload: RoleCreate) -> Role:
    name = payload.name.strip()
    await _ensure_name_free(db, name)
    permissions = await load_permissions(db, payload.permission_ids)

    role = Role(
        name=name,
        description=payload.description,
        is_active=payload.is_active,
        is_system=False,
        role_permissions=[RolePermission(permission_id=p.id, permission=p) for p in permissions],
    )
    db.add(role)
    await _flush_or_conflict(db, name)

    logger.info(f"Role created: {role.name} | permissions: {len(permissions)}")
    return role


async def update_role(db: AsyncSession, role_id: int, payload: RoleUpdate) -> Tuple[Role, List[str]]:
    """Returns the role and the list of changed field names."""
    role = await get_role(db, role_id)
    changed: List[str] = []

    if payload.name is not None and payload.name.strip() != role.name:
        if role.is_system:
            raise Conflict("System roles cannot be renamed.", error_code="SYSTEM_ROLE")
        await _ensure_name_free(db, payload.name, exclude_id=role.id)
        role.name = payload.name.strip()
        changed.append("name")

    if payload.description is not None and payload.description != role.description:
        role.description = payload.description
        changed.append("description")

    if payload.is_active is not None and payload.is_active != role.is_active:
        role.is_active = payload.is_active
        changed.append("is_active")

    if payload.permission_ids is not None:
        permissions = await load_permissions(db, payload.permission_ids)
        before = set(role.permission_names)
        _replace_permissions(role, permissions)
        if before != {p.name for p in permissions}:
            changed.append("permissions")

    await _flush_or_conflict(db, role.name)
    logger.info(f"Role updated: {role.name} | changed: {changed}")
    return role, changed


async def delete_role(db: AsyncSession, role_id: int) -> Role:
    role = await get_role(db, role_id)
    if role.is_system:
        raise Conflict("System roles cannot be deleted.", error_code="SYSTEM_ROLE")

    assigned = await user_count(db, role_id)
    if assigned:
        raise Conflict(
            f"Role '{role.name}' is assigned to {assigned} user(s) and cannot be deleted.",
            error_code="ROLE_IN_USE",
            details={"user_count": assigned},
        )

    await db.delete(role)
    await db.flush()
    logger.info(f"Role deleted: {role.name}")
    return role
