"""
core/permissions.py

The InsightBoard permission graph.

Capabilities are a closed vocabulary (`Permission`) of dotted
"resource.action" names. A role holds a set of them through the
role_permissions join table; a user holds exactly one role.

Two tiers of elevated access exist and are kept separate on purpose:
- `super_admin` implicitly holds every permission (`has_permission` bypass).
- `admin` is only a role check (`is_admin()`); it still needs explicit
  permission rows for anything guarded by `has_permission`.
Each route declares which of the two it accepts; see core/guards.py.

`PermissionChecker` is pure and synchronous: it is built from an already
hydrated `SessionSnapshot` and never touches the database.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Optional


class Permission(str, Enum):
    # Users
    USER_CREATE = "user.create"
    USER_READ = "user.read"
    USER_UPDATE = "user.update"
    USER_DELETE = "user.delete"
    USER_MANAGE = "user.manage"

    # Roles
    ROLE_CREATE = "role.create"
    ROLE_READ = "role.read"
    ROLE_UPDATE = "role.update"
    ROLE_DELETE = "role.delete"
    ROLE_ASSIGN = "role.assign"

    # Content
    CONTENT_CREATE = "content.create"
    CONTENT_READ = "content.read"
    CONTENT_UPDATE = "content.update"
    CONTENT_DELETE = "content.delete"
    CONTENT_PUBLISH = "content.publish"
    CONTENT_MANAGE = "content.manage"

    # Categories
    CATEGORY_CREATE = "category.create"
    CATEGORY_READ = "category.read"
    CATEGORY_UPDATE = "category.update"
    CATEGORY_DELETE = "category.delete"

    # Dashboards
    DASHBOARD_VIEW = "dashboard.view"
    DASHBOARD_ANALYTICS = "dashboard.analytics"
    DASHBOARD_EXPORT = "dashboard.export"

    # Files
    FILE_UPLOAD = "file.upload"
    FILE_READ = "file.read"
    FILE_DELETE = "file.delete"
    FILE_MANAGE = "file.manage"

    # Settings
    SETTING_READ = "setting.read"
    SETTING_UPDATE = "setting.update"

    # Audit
    AUDIT_READ = "audit.read"
    AUDIT_EXPORT = "audit.export"

    # System
    SYSTEM_ADMIN = "system.admin"
    SYSTEM_MAINTENANCE = "system.maintenance"
    SYSTEM_BACKUP = "system.backup"
    SYSTEM_RESTORE = "system.restore"
    SYSTEM_SECURITY_VIEW = "system.security.view"
    SYSTEM_SECURITY_MANAGE = "system.security.manage"

    @property
    def resource(self) -> str:
        return self.value.rsplit(".", 1)[0]

    @property
    def action(self) -> str:
        return self.value.rsplit(".", 1)[1]

    @classmethod
    def parse(cls, name: str) -> Optional["Permission"]:
        """Returns the member for `name`, or None for names outside the vocabulary."""
        try:
            return cls(name)
        except ValueError:
            return None


class RoleName:
    SUPER_ADMIN = "super_admin"
    ADMIN = "admin"
    EDITOR = "editor"
    VIEWER = "viewer"

    ADMIN_ROLES = frozenset({SUPER_ADMIN, ADMIN})


# ─── Groupings & Defaults ─────────────────────────────────────────────────────

PERMISSION_GROUPS: Dict[str, List[Permission]] = {
    "User Management": [
        Permission.USER_CREATE, Permission.USER_READ, Permission.USER_UPDATE,
        Permission.USER_DELETE, Permission.USER_MANAGE,
    ],
    "Role Management": [
        Permission.ROLE_CREATE, Permission.ROLE_READ, Permission.ROLE_UPDATE,
        Permission.ROLE_DELETE, Permission.ROLE_ASSIGN,
    ],
    "Content Management": [
        Permission.CONTENT_CREATE, Permission.CONTENT_READ, Permission.CONTENT_UPDATE,
        Permission.CONTENT_DELETE, Permission.CONTENT_PUBLISH, Permission.CONTENT_MANAGE,
    ],
    "Category Management": [
        Permission.CATEGORY_CREATE, Permission.CATEGORY_READ,
        Permission.CATEGORY_UPDATE, Permission.CATEGORY_DELETE,
    ],
    "Dashboard": [
        Permission.DASHBOARD_VIEW, Permission.DASHBOARD_ANALYTICS, Permission.DASHBOARD_EXPORT,
    ],
    "File Management": [
        Permission.FILE_UPLOAD, Permission.FILE_READ, Permission.FILE_DELETE, Permission.FILE_MANAGE,
    ],
    "Settings": [Permission.SETTING_READ, Permission.SETTING_UPDATE],
    "Audit": [Permission.AUDIT_READ, Permission.AUDIT_EXPORT],
    "System": [
        Permission.SYSTEM_ADMIN, Permission.SYSTEM_MAINTENANCE, Permission.SYSTEM_BACKUP,
        Permission.SYSTEM_RESTORE, Permission.SYSTEM_SECURITY_VIEW, Permission.SYSTEM_SECURITY_MANAGE,
    ],
}

DEFAULT_ROLE_PERMISSIONS: Dict[str, FrozenSet[Permission]] = {
    RoleName.SUPER_ADMIN: frozenset(Permission),
    RoleName.ADMIN: frozenset({
        *PERMISSION_GROUPS["User Management"],
        *PERMISSION_GROUPS["Role Management"],
        *PERMISSION_GROUPS["Content Management"],
        *PERMISSION_GROUPS["Category Management"],
        *PERMISSION_GROUPS["Dashboard"],
        *PERMISSION_GROUPS["File Management"],
        Permission.SETTING_READ,
        Permission.AUDIT_READ,
        Permission.SYSTEM_SECURITY_VIEW,
    }),
    RoleName.EDITOR: frozenset({
        Permission.CONTENT_CREATE,
        Permission.CONTENT_READ,
        Permission.CONTENT_UPDATE,
        Permission.CONTENT_PUBLISH,
        Permission.CATEGORY_READ,
        Permission.DASHBOARD_VIEW,
        Permission.DASHBOARD_ANALYTICS,
        Permission.FILE_UPLOAD,
        Permission.FILE_READ,
    }),
    RoleName.VIEWER: frozenset({
        Permission.CONTENT_READ,
        Permission.CATEGORY_READ,
        Permission.DASHBOARD_VIEW,
        Permission.FILE_READ,
    }),
}


# ─── Snapshot ─────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SessionSnapshot:
    """
    Per-request identity plus the role and permission set read from the
    store on this request. Never cached across requests.
    """

    user_id: int
    email: str
    is_active: bool
    role_id: Optional[int]
    role_name: Optional[str]
    permissions: FrozenSet[str] = field(default_factory=frozenset)
    session_id: Optional[str] = None
    issued_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    full_name: Optional[str] = None
    must_change_password: bool = False
    terms_accepted_at: Optional[datetime] = None


# ─── Checker ──────────────────────────────────────────────────────────────────

def _name(permission) -> str:
    return permission.value if isinstance(permission, Permission) else str(permission)


class PermissionChecker:
    def __init__(self, snapshot: SessionSnapshot) -> None:
        self.snapshot = snapshot

    @property
    def user_id(self) -> int:
        return self.snapshot.user_id

    @property
    def role_name(self) -> Optional[str]:
        return self.snapshot.role_name

    def has_permission(self, permission) -> bool:
        if not self.snapshot.is_active:
            return False
        if self.snapshot.role_name == RoleName.SUPER_ADMIN:
            return True
        return _name(permission) in self.snapshot.permissions

    def has_any_permission(self, permissions: Iterable) -> bool:
        return any(self.has_permission(p) for p in permissions)

    def has_all_permissions(self, permissions: Iterable) -> bool:
        return all(self.has_permission(p) for p in permissions)

    def has_role(self, role_name: str) -> bool:
        return self.snapshot.role_name == role_name

    def has_any_role(self, role_names: Iterable[str]) -> bool:
        return self.snapshot.role_name in set(role_names)

    def is_admin(self) -> bool:
        return self.snapshot.is_active and self.snapshot.role_name in RoleName.ADMIN_ROLES

    def is_super_admin(self) -> bool:
        return self.snapshot.is_active and self.snapshot.role_name == RoleName.SUPER_ADMIN

    def owns_resource(self, owner_id: Optional[int]) -> bool:
        return owner_id is not None and self.snapshot.user_id == owner_id

    def can_access_resource(self, owner_id: Optional[int], permission) -> bool:
        """Owner OR holder of `permission`."""
        return self.owns_resource(owner_id) or self.has_permission(permission)

    def can_perform_action(self, resource: str, action: str) -> bool:
        return self.has_permission(f"{resource}.{action}")

    def can_access_admin(self) -> bool:
        return self.is_admin() or self.has_permission(Permission.SYSTEM_ADMIN)

    def all_permissions(self) -> List[str]:
        """Effective permission names, expanded to the full vocabulary for super_admin."""
        if not self.snapshot.is_active:
            return []
        if self.is_super_admin():
            return sorted(p.value for p in Permission)
        return sorted(self.snapshot.permissions)
