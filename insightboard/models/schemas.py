"""
models/schemas.py

Pydantic models are the contract between the InsightBoard API and its
clients. Request models validate input before any authorization-relevant
state is touched; response models never expose password hashes or tokens
beyond the one being issued.
"""

from pydantic import BaseModel, Field, IPvAnyAddress, model_validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from enum import Enum


_EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


# ─────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────

class Severity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class MessageResponse(BaseModel):
    message: str


# ─────────────────────────────────────────────
# Authentication Schemas
# ─────────────────────────────────────────────

class RegisterRequest(BaseModel):
    """
    Registration payload. Password is accepted as plaintext here and
    hashed immediately in the auth service.
    """
    email: str = Field(..., pattern=_EMAIL_PATTERN, description="Must be a valid email address")
    full_name: str = Field(..., min_length=2, max_length=255)
    password: str = Field(..., min_length=8, description="Minimum 8 characters")


class RegisterResponse(BaseModel):
    message: str
    id: int
    email: str
    role: Optional[str]


class LoginRequest(BaseModel):
    email: str
    password: str
    remember: bool = False


class SessionUser(BaseModel):
    """What the frontend needs to render navigation for the signed-in user."""
    id: int
    email: str
    full_name: Optional[str] = None
    role: Optional[str] = None
    permissions: List[str] = Field(default_factory=list)
    is_admin: bool = False
    requires_password_change: bool = False
    requires_terms_acceptance: bool = False
    session_expires_at: Optional[datetime] = None


class TokenResponse(BaseModel):
    """
    Bearer token response. The same token is also set as the auth cookie,
    so browser clients can ignore `access_token`.
    """
    access_token: str
    token_type: str = "bearer"
    expires_at: datetime
    user: SessionUser


class ForgotPasswordRequest(BaseModel):
    email: str = Field(..., pattern=_EMAIL_PATTERN)


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., min_length=1)
    password: str = Field(..., min_length=8, description="Minimum 8 characters")


class UpdatePasswordRequest(BaseModel):
    current_password: str
    new_password: str = Field(..., min_length=8, description="Minimum 8 characters")


# ─────────────────────────────────────────────
# Roles & Permissions
# ─────────────────────────────────────────────

class PermissionResponse(BaseModel):
    id: int
    name: str
    resource: str
    action: str
    description: Optional[str] = None

    class Config:
        from_attributes = True


class PermissionGroupResponse(BaseModel):
    group: str
    permissions: List[PermissionResponse]


class RoleCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=64, pattern=r"^[A-Za-z][A-Za-z0-9_\- ]*$")
    description: Optional[str] = Field(default=None, max_length=255)
    is_active: bool = True
    permission_ids: List[int] = Field(default_factory=list)


class RoleUpdate(BaseModel):
    """Only provided fields change. `permission_ids`, when given, replaces the set."""
    name: Optional[str] = Field(default=None, min_length=2, max_length=64, pattern=r"^[A-Za-z][A-Za-z0-9_\- ]*$")
    description: Optional[str] = Field(default=None, max_length=255)
    is_active: Optional[bool] = None
    permission_ids: Optional[List[int]] = None


class RoleResponse(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    is_active: bool
    is_system: bool
    permissions: List[PermissionResponse] = Field(default_factory=list)
    user_count: int = 0


# ─────────────────────────────────────────────
# Users
# ─────────────────────────────────────────────

class UserResponse(BaseModel):
    """Public-safe user record; never includes hashed_password."""
    id: int
    email: str
    full_name: str
    role_id: Optional[int]
    role: Optional[str] = None
    is_active: bool
    must_change_password: bool
    terms_accepted_at: Optional[datetime] = None
    last_login: Optional[datetime] = None
    created_at: datetime


class UserUpdate(BaseModel):
    full_name: Optional[str] = Field(default=None, min_length=2, max_length=255)
    role_id: Optional[int] = None
    is_active: Optional[bool] = None


class UserListResponse(BaseModel):
    total: int
    page: int
    limit: int
    users: List[UserResponse]


# ─────────────────────────────────────────────
# Content
# ─────────────────────────────────────────────

class ContentCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    body: str = ""
    is_public: bool = False


class ContentUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    body: Optional[str] = None
    is_public: Optional[bool] = None


class ContentResponse(BaseModel):
    id: int
    title: str
    body: str
    is_public: bool
    created_by: Optional[int]
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


# ─────────────────────────────────────────────
# Security: Blacklist & Events
# ─────────────────────────────────────────────

class BlacklistCreate(BaseModel):
    ip_address: IPvAnyAddress
    reason: str = Field(..., min_length=1, max_length=500)
    is_permanent: bool = False
    duration_hours: Optional[int] = Field(default=24, ge=1, le=8760)

    @model_validator(mode="after")
    def _duration_for_temporary_blocks(self) -> "BlacklistCreate":
        if not self.is_permanent and self.duration_hours is None:
            raise ValueError("duration_hours is required for temporary blocks")
        return self


class BlacklistEntryResponse(BaseModel):
    id: int
    ip_address: str
    reason: str
    is_permanent: bool
    blocked_until: Optional[datetime] = None
    blocked_at: datetime
    created_by: Optional[int] = None
    attempts_count: int
    is_active: bool

    class Config:
        from_attributes = True


class SecurityEventCreate(BaseModel):
    event_type: str = Field(..., min_length=2, max_length=64, pattern=r"^[A-Z][A-Z0-9_]*$")
    ip_address: Optional[IPvAnyAddress] = None
    user_id: Optional[int] = None
    severity: Severity = Severity.LOW
    details: Dict[str, Any] = Field(default_factory=dict)


class SecurityEventResponse(BaseModel):
    id: int
    event_type: str
    ip_address: Optional[str] = None
    user_id: Optional[int] = None
    severity: Severity
    details: Optional[Dict[str, Any]] = None
    created_at: datetime

    class Config:
        from_attributes = True


class BlacklistDetailResponse(BlacklistEntryResponse):
    related_events: List[SecurityEventResponse] = Field(default_factory=list)


class BlacklistListResponse(BaseModel):
    total: int
    page: int
    limit: int
    entries: List[BlacklistEntryResponse]


class SecurityEventListResponse(BaseModel):
    total: int
    page: int
    limit: int
    events: List[SecurityEventResponse]


class SecurityStats(BaseModel):
    total_blocked: int
    active_blocks: int
    failed_logins_24h: int
    events_24h: int
    events_by_severity_24h: Dict[str, int]


# ─────────────────────────────────────────────
# Audit
# ─────────────────────────────────────────────

class AuditLogResponse(BaseModel):
    id: int
    user_id: Optional[int] = None
    action: str
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    created_at: datetime

    class Config:
        from_attributes = True


class AuditLogListResponse(BaseModel):
    total: int
    page: int
    limit: int
    logs: List[AuditLogResponse]


class TopUserEntry(BaseModel):
    user_id: int
    email: str
    login_count: int
