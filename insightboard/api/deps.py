"""
api/deps.py

FastAPI dependencies that chain the API-side guards in a fixed order:

    rate limit -> session resolve -> permission policy

The IP gate has already run in AuthorizationMiddleware by the time any of
these execute. Each stage rejects by raising an AppError, so a handler body
never runs partially.

Usage:
    @router.delete("/{role_id}")
    async def delete_role(ctx: AuthContext = Depends(authorize(requires(Permission.ROLE_DELETE), "roles"))):
        ...

Owner-aware policies (`owner_or(...)`) are evaluated by the handler once it
has loaded the resource: `ctx.enforce(owner_id=content.created_by)`.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import Request

from insightboard.core.guards import SESSION_ONLY, AccessPolicy, Deny
from insightboard.core.permissions import PermissionChecker, SessionSnapshot
from insightboard.services.audit import AuditRecorder
from insightboard.services.auth_service import AuthService
from insightboard.services.ip_gate import IPReputationGate
from insightboard.services.rate_limiter import RateLimiter
from insightboard.services.session_resolver import SessionResolver

logger = logging.getLogger(__name__)


# ─── Client Identity ──────────────────────────────────────────────────────────

def get_client_ip(request: Request) -> str:
    """
    Connection IP first, then the first X-Forwarded-For hop, then
    X-Real-IP, then the literal "unknown".
    """
    if request.client and request.client.host:
        return request.client.host

    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    real_ip = request.headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()

    return "unknown"


def get_user_agent(request: Request) -> Optional[str]:
    return request.headers.get("user-agent")


# ─── Service Accessors ────────────────────────────────────────────────────────
# Populated on app.state by main.startup().

def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def get_session_resolver(request: Request) -> SessionResolver:
    return request.app.state.session_resolver


def get_ip_gate(request: Request) -> IPReputationGate:
    return request.app.state.ip_gate


def get_recorder(request: Request) -> AuditRecorder:
    return request.app.state.audit_recorder


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


# ─── Authorization Context ────────────────────────────────────────────────────

@dataclass
class AuthContext:
    session: SessionSnapshot
    checker: PermissionChecker
    policy: AccessPolicy
    ip_address: str
    user_agent: Optional[str]
    recorder: AuditRecorder
    path: str = ""

    @property
    def user_id(self) -> int:
        return self.session.user_id

    def enforce(self, owner_id: Optional[int] = None) -> None:
        decision = self.policy.evaluate(self.checker, owner_id)
        if isinstance(decision, Deny):
            logger.warning(
                f"Access denied: user {self.user_id} ({self.session.role_name}) on {self.path} | {decision.details}"
            )
            raise decision.to_error()

    def audit(
        self,
        action: str,
        resource_type: Optional[str] = None,
        resource_id: Any = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.recorder.record_audit(
            action,
            user_id=self.user_id,
            resource_type=resource_type,
            resource_id=resource_id,
            ip_address=self.ip_address,
            user_agent=self.user_agent,
            details=details,
        )


def rate_limit(endpoint_class: str):
    """Dependency factory for public endpoints that only need throttling."""

    async def limiter(request: Request) -> None:
        await get_rate_limiter(request).enforce(endpoint_class, get_client_ip(request))

    return limiter


def authorize(policy: AccessPolicy = SESSION_ONLY, endpoint_class: str = "api"):
    """
    Dependency factory: throttle, resolve the session, then apply `policy`.
    Owner-aware policies are deferred to `AuthContext.enforce`.
    """

    async def dependency(request: Request) -> AuthContext:
        ip_address = get_client_ip(request)
        await get_rate_limiter(request).enforce(endpoint_class, ip_address)

        snapshot = await get_session_resolver(request).resolve_request(request)
        ctx = AuthContext(
            session=snapshot,
            checker=PermissionChecker(snapshot),
            policy=policy,
            ip_address=ip_address,
            user_agent=get_user_agent(request),
            recorder=get_recorder(request),
            path=request.url.path,
        )
        if not policy.needs_owner:
            ctx.enforce()
        return ctx

    return dependency
