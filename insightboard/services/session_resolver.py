"""
services/session_resolver.py

Turns request credential material (auth cookie or bearer token) into a
fully hydrated SessionSnapshot.

The token only proves identity (user id + session id). The user's role and
its permissions are read from the database on every call, so role edits
and revocations apply on the next request without re-login. No audit
entry is written here; callers audit at the point of use.

Outcomes:
- SessionSnapshot                -- valid session, active user
- Unauthenticated                -- missing/malformed/expired token, revoked
                                    or unknown session, deleted user
- UserInactive                   -- valid session, deactivated account
- TransientError                 -- the store could not be reached
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.orm import selectinload
from starlette.requests import Request

from insightboard.core.errors import TransientError, Unauthenticated, UserInactive
from insightboard.core.permissions import SessionSnapshot
from insightboard.core.security import decode_access_token, extract_token
from insightboard.db.models import Role, RolePermission, User, UserSession
from insightboard.utils.clock import as_utc, utcnow

logger = logging.getLogger(__name__)


def snapshot_for(user: User, session: Optional[UserSession] = None) -> SessionSnapshot:
    """Builds a snapshot from a user loaded with role + permissions."""
    role = user.role
    if role is not None and role.is_active:
        role_name = role.name
        permissions = frozenset(rp.permission.name for rp in role.role_permissions)
    else:
        # A deactivated role grants nothing, super_admin included.
        role_name = None
        permissions = frozenset()

    return SessionSnapshot(
        user_id=user.id,
        email=user.email,
        is_active=user.is_active,
        role_id=user.role_id,
        role_name=role_name,
        permissions=permissions,
        session_id=session.id if session else None,
        issued_at=as_utc(session.issued_at) if session else None,
        expires_at=as_utc(session.expires_at) if session else None,
        full_name=user.full_name,
        must_change_password=user.must_change_password,
        terms_accepted_at=as_utc(user.terms_accepted_at),
    )


class SessionResolver:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    async def resolve(self, token: Optional[str]) -> SessionSnapshot:
        if not token:
            raise Unauthenticated()

        claims = decode_access_token(token)
        if claims is None:
            raise Unauthenticated("Session is invalid or expired.")
        try:
            user_id = int(claims["sub"])
        except (TypeError, ValueError):
            raise Unauthenticated("Session is invalid or expired.")
        session_id = str(claims["sid"])

        try:
            async with self._session_factory() as db:
                session_row = await db.get(UserSession, session_id)
                result = await db.execute(
                    select(User)
                    .options(
                        selectinload(User.role)
                        .selectinload(Role.role_permissions)
                        .selectinload(RolePermission.permission)
                    )
                    .where(User.id == user_id)
                )
                user = result.scalar_one_or_none()
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"Session store unavailable while resolving session {session_id}: {e}")
            raise TransientError() from e

        if session_row is None or session_row.user_id != user_id:
            raise Unauthenticated("Session not found.")
        if not session_row.is_valid_at(self._clock()):
            raise Unauthenticated("Session has expired or was revoked.")
        if user is None or user.deleted_at is not None:
            raise Unauthenticated("Session is invalid or expired.")
        if not user.is_active:
            raise UserInactive()

        return snapshot_for(user, session_row)

    async def resolve_request(self, request: Request) -> SessionSnapshot:
        return await self.resolve(extract_token(request))
