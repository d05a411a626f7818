"""
core/guards.py

Route guard composition, expressed as pure functions that return a typed
decision (Allow | Deny | Redirect) instead of writing a response.

The authorization middleware and the API dependencies translate decisions
into HTTP; everything here can be exercised without a running app.

Route classes (segment-aware prefix match, so `/administrator` is not `/admin`):
- protected  : session required, anonymous users are sent to the login page
- admin-only : session + `is_admin()` (role check, not a permission check)
- auth-only  : login/register pages, signed-in users are bounced to the landing page
"""

from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple, Union
from urllib.parse import quote

from insightboard.core.errors import AppError, Forbidden
from insightboard.core.permissions import Permission, PermissionChecker, SessionSnapshot

PROTECTED_PREFIXES: Tuple[str, ...] = (
    "/dashboard",
    "/admin",
    "/profile",
    "/settings",
    "/content",
    "/analytics",
    "/users",
    "/roles",
    "/permissions",
)

ADMIN_PREFIXES: Tuple[str, ...] = (
    "/admin",
    "/users",
    "/roles",
    "/permissions",
    "/settings/system",
)

AUTH_ONLY_PREFIXES: Tuple[str, ...] = (
    "/login",
    "/register",
    "/forgot-password",
    "/reset-password",
)


# ─── Decisions ────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Allow:
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Deny:
    status_code: int
    error_code: str
    reason: str
    details: Optional[Dict[str, object]] = None

    def to_error(self) -> AppError:
        return AppError(
            self.reason,
            details=self.details,
            error_code=self.error_code,
            status_code=self.status_code,
        )


@dataclass(frozen=True)
class Redirect:
    location: str


Decision = Union[Allow, Deny, Redirect]


FORBIDDEN = Deny(status_code=403, error_code=Forbidden.error_code, reason="Forbidden")


# ─── Route Classification ─────────────────────────────────────────────────────

def matches_prefix(path: str, prefix: str) -> bool:
    return path == prefix or path.startswith(prefix.rstrip("/") + "/")


def _matches_any(path: str, prefixes: Tuple[str, ...]) -> bool:
    return any(matches_prefix(path, p) for p in prefixes)


def is_protected_route(path: str) -> bool:
    return _matches_any(path, PROTECTED_PREFIXES)


def is_admin_route(path: str) -> bool:
    return _matches_any(path, ADMIN_PREFIXES)


def is_auth_route(path: str) -> bool:
    return _matches_any(path, AUTH_ONLY_PREFIXES)


def is_page_route(path: str) -> bool:
    return path == "/" or is_protected_route(path) or is_auth_route(path)


def safe_return_url(return_url: Optional[str]) -> Optional[str]:
    """Only same-site absolute paths are honoured; `//host` is an open redirect."""
    if return_url and return_url.startswith("/") and not return_url.startswith("//"):
        return return_url
    return None


def login_redirect(path: str, login_page: str = "/login") -> Redirect:
    return Redirect(f"{login_page}?returnUrl={quote(path, safe='/')}")


# ─── Page Guard ───────────────────────────────────────────────────────────────

def evaluate_page_request(
    path: str,
    session: Optional[SessionSnapshot],
    return_url: Optional[str] = None,
    landing_page: str = "/dashboard",
    login_page: str = "/login",
) -> Decision:
    """
    Decides a page request once the IP gate and rate limiter have passed and
    the session (if any) has been resolved.
    """
    if path == "/":
        return Redirect(landing_page if session else login_page)

    if session is None:
        if is_protected_route(path):
            return login_redirect(path, login_page)
        return Allow()

    if is_auth_route(path):
        return Redirect(safe_return_url(return_url) or landing_page)

    checker = PermissionChecker(session)
    if is_admin_route(path) and not checker.is_admin():
        return FORBIDDEN

    if is_protected_route(path):
        return Allow(headers={
            "x-user-id": str(session.user_id),
            "x-user-role": session.role_name or "",
        })
    return Allow()


# ─── API Access Policies ──────────────────────────────────────────────────────

@dataclass(frozen=True)
class AccessPolicy:
    """
    Per-endpoint access rule.

    permissions          -- required permission names
    require_all          -- AND instead of OR over `permissions`
    admin_role_sufficient-- `is_admin()` alone grants access
    allow_owner          -- owning the target resource grants access
    """

    permissions: Tuple[Permission, ...] = ()
    require_all: bool = False
    admin_role_sufficient: bool = False
    allow_owner: bool = False

    @property
    def needs_owner(self) -> bool:
        return self.allow_owner

    def evaluate(self, checker: PermissionChecker, owner_id: Optional[int] = None) -> Decision:
        if self.admin_role_sufficient and checker.is_admin():
            return Allow()
        if self.allow_owner and checker.owns_resource(owner_id):
            return Allow()
        if not self.permissions:
            if self.allow_owner or self.admin_role_sufficient:
                return FORBIDDEN
            return Allow()

        if self.require_all:
            granted = checker.has_all_permissions(self.permissions)
        else:
            granted = checker.has_any_permission(self.permissions)
        if granted:
            return Allow()
        return Deny(
            status_code=403,
            error_code=Forbidden.error_code,
            reason="Forbidden",
            details={"required": [p.value for p in self.permissions]},
        )


SESSION_ONLY = AccessPolicy()


def requires(*permissions: Permission) -> AccessPolicy:
    return AccessPolicy(permissions=tuple(permissions), require_all=True)


def requires_any(*permissions: Permission) -> AccessPolicy:
    return AccessPolicy(permissions=tuple(permissions))


def owner_or(*permissions: Permission) -> AccessPolicy:
    return AccessPolicy(permissions=tuple(permissions), allow_owner=True)


def admin_or(*permissions: Permission) -> AccessPolicy:
    """Role membership alone is enough; for navigation-level reads, never for mutations."""
    return AccessPolicy(permissions=tuple(permissions), admin_role_sufficient=True)


def raise_for(decision: Decision) -> None:
    """Turns a Deny into the matching AppError; Allow passes through."""
    if isinstance(decision, Deny):
        raise decision.to_error()
