"""Data helpers shared by the test modules. Imported after conftest has set the environment."""
import uuid
from datetime import timedelta
from typing import Optional

from sqlalchemy import select

from insightboard.core.security import create_access_token, get_password_hash
from insightboard.db.database import AsyncSessionLocal
from insightboard.db.models import Permission, Role, User, UserSession
from insightboard.utils.clock import utcnow

DEFAULT_PASSWORD = "correct-horse-battery"
DEFAULT_IP = "203.0.113.10"


async def role_by_name(name: str) -> Role:
    async with AsyncSessionLocal() as db:
        return (await db.execute(select(Role).where(Role.name == name))).scalar_one()


async def permission_ids(*names: str) -> dict:
    async with AsyncSessionLocal() as db:
        rows = (await db.execute(select(Permission).where(Permission.name.in_(names)))).scalars().all()
        return {p.name: p.id for p in rows}


async def create_user(
    email: str,
    role_name: Optional[str] = "viewer",
    password: str = DEFAULT_PASSWORD,
    **fields,
) -> User:
    async with AsyncSessionLocal() as db:
        role_id = None
        if role_name:
            role = (await db.execute(select(Role).where(Role.name == role_name))).scalar_one()
            role_id = role.id
        user = User(
            email=email.lower(),
            full_name=fields.pop("full_name", email.split("@")[0]),
            hashed_password=get_password_hash(password),
            role_id=role_id,
            **fields,
        )
        db.add(user)
        await db.commit()
        return user


async def issue_token(user_id: int, hours: int = 1) -> str:
    """Opens a session row directly, bypassing the throttled login endpoint."""
    now = utcnow()
    session = UserSession(
        id=str(uuid.uuid4()),
        user_id=user_id,
        ip_address=DEFAULT_IP,
        issued_at=now,
        expires_at=now + timedelta(hours=hours),
    )
    async with AsyncSessionLocal() as db:
        db.add(session)
        await db.commit()
    return create_access_token(user_id, session.id, now, session.expires_at)


def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}
