"""
db/models.py

SQLAlchemy ORM models for InsightBoard's authorization schema.

Design decisions baked into the schema:
- `users.email` is stored lower-cased, so the unique index is case-insensitive.
- `roles.name` carries a functional unique index on lower(name); two
  concurrent creates of "Editor" and "editor" cannot both commit.
- Users are never hard-deleted (`deleted_at`), keeping audit rows resolvable.
- `role_permissions` rows belong to their role and go with it on delete.
- `security_events` and `audit_logs` are append-only; nothing updates them.
- Blacklist entries are never purged on expiry; `is_active` is derived.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import relationship

from insightboard.db.database import Base
from insightboard.utils.clock import as_utc, utcnow


class Role(Base):
    """
    Named bundle of permissions. `super_admin` and `admin` are distinguished
    by name in core/permissions.py; nothing in the schema marks them.
    """

    __tablename__ = "roles"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(64), nullable=False)
    description = Column(String(255), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    is_system = Column(
        Boolean,
        default=False,
        nullable=False,
        comment="Seeded default roles",
    )
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    role_permissions = relationship(
        "RolePermission",
        back_populates="role",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @property
    def permission_names(self) -> List[str]:
        return sorted(rp.permission.name for rp in self.role_permissions)

    def __repr__(self) -> str:
        return f"<Role id={self.id} name={self.name}>"


Index("uq_roles_name_lower", func.lower(Role.name), unique=True)


class Permission(Base):
    __tablename__ = "permissions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), unique=True, index=True, nullable=False)
    resource = Column(String(64), nullable=False)
    action = Column(String(64), nullable=False)
    description = Column(String(255), nullable=True)

    def __repr__(self) -> str:
        return f"<Permission {self.name}>"


class RolePermission(Base):
    __tablename__ = "role_permissions"
    __table_args__ = (
        UniqueConstraint("role_id", "permission_id", name="uq_role_permission"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    role_id = Column(Integer, ForeignKey("roles.id", ondelete="CASCADE"), nullable=False, index=True)
    permission_id = Column(Integer, ForeignKey("permissions.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    role = relationship("Role", back_populates="role_permissions")
    permission = relationship("Permission", lazy="selectin")


class User(Base):
    """InsightBoard user account. Maps to the `users` table."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    email = Column(
        String(255),
        unique=True,
        index=True,
        nullable=False,
        comment="Always lower-cased before insert",
    )

    full_name = Column(String(255), nullable=False, default="")
    hashed_password = Column(String(255), nullable=False)

    role_id = Column(
        Integer,
        ForeignKey("roles.id", ondelete="RESTRICT"),
        nullable=True,
        index=True,
    )

    is_active = Column(
        Boolean,
        default=True,
        nullable=False,
        comment="Deactivated accounts cannot log in but retain audit history",
    )

    must_change_password = Column(Boolean, default=False, nullable=False)
    terms_accepted_at = Column(DateTime(timezone=True), nullable=True)
    last_login = Column(DateTime(timezone=True), nullable=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    role = relationship("Role", lazy="selectin")

    def __repr__(self) -> str:
        return f"<User id={self.id} email={self.email} role_id={self.role_id} active={self.is_active}>"


class UserSession(Base):
    """Server-side record backing one issued token."""

    __tablename__ = "user_sessions"

    id = Column(String(36), primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(String(512), nullable=True)
    issued_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    last_refreshed_at = Column(DateTime(timezone=True), nullable=True)
    revoked_at = Column(DateTime(timezone=True), nullable=True)

    def is_valid_at(self, now: datetime) -> bool:
        return self.revoked_at is None and as_utc(self.expires_at) > now


class PasswordReset(Base):
    """
    One-time reset link. Only the SHA-256 of the emailed token is stored;
    a row is spent once `is_used` is set, whether by a reset or by a newer
    request for the same user.
    """

    __tablename__ = "password_resets"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    token_hash = Column(String(64), unique=True, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    is_used = Column(Boolean, default=False, nullable=False)
    used_at = Column(DateTime(timezone=True), nullable=True)
    used_ip = Column(String(45), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    user = relationship("User", lazy="selectin")

    def is_expired_at(self, now: datetime) -> bool:
        return as_utc(self.expires_at) <= now


class IPBlacklistEntry(Base):
    __tablename__ = "ip_blacklist"

    id = Column(Integer, primary_key=True, autoincrement=True)
    ip_address = Column(String(45), nullable=False, index=True)
    reason = Column(Text, nullable=False)
    is_permanent = Column(Boolean, default=False, nullable=False)
    blocked_until = Column(DateTime(timezone=True), nullable=True)
    blocked_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    created_by = Column(
        Integer,
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        comment="NULL when blocked automatically by the system",
    )
    attempts_count = Column(Integer, default=0, nullable=False)

    def is_active_at(self, now: datetime) -> bool:
        if self.is_permanent:
            return True
        blocked_until = as_utc(self.blocked_until)
        return blocked_until is not None and blocked_until > now

    @property
    def is_active(self) -> bool:
        return self.is_active_at(utcnow())

    def __repr__(self) -> str:
        return f"<IPBlacklistEntry ip={self.ip_address} permanent={self.is_permanent} until={self.blocked_until}>"


class SecurityEvent(Base):
    __tablename__ = "security_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_type = Column(String(64), nullable=False, index=True)
    ip_address = Column(String(45), nullable=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    severity = Column(String(16), nullable=False, default="LOW")
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
        comment="NULL for anonymous or system actions",
    )
    action = Column(String(64), nullable=False, index=True)
    resource_type = Column(String(64), nullable=True)
    resource_id = Column(String(64), nullable=True)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(String(512), nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)


class Content(Base):
    """Minimal content record; exists so ownership rules have a target."""

    __tablename__ = "content"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(255), nullable=False)
    body = Column(Text, nullable=False, default="")
    is_public = Column(Boolean, default=False, nullable=False)
    created_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    @property
    def owner_id(self) -> Optional[int]:
        return self.created_by
