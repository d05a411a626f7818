"""
api/routes_auth.py

Authentication endpoints for InsightBoard.

Security architecture overview:
- Passwords never touch a log line or response body; they're hashed
  immediately upon receipt.
- Login, registration and password-reset requests are throttled per IP
  before any database work (see services/rate_limiter.py for budgets).
- Forgot-password always returns 200; a 404 on unknown emails would leak
  which accounts exist.
- The issued token is set as an http-only cookie for page requests and
  returned in the body for API clients. Either way it only identifies a
  server-side session; role and permissions are re-read per request.
"""

import logging
from dataclasses import replace

from fastapi import APIRouter, Depends, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from insightboard.api.deps import (
    AuthContext,
    authorize,
    get_auth_service,
    get_client_ip,
    get_user_agent,
    rate_limit,
)
from insightboard.core.config import get_settings
from insightboard.core.permissions import PermissionChecker, SessionSnapshot
from insightboard.db.database import get_db
from insightboard.models.schemas import (
    ForgotPasswordRequest,
    LoginRequest,
    MessageResponse,
    RegisterRequest,
    RegisterResponse,
    ResetPasswordRequest,
    SessionUser,
    TokenResponse,
    UpdatePasswordRequest,
)
from insightboard.services.auth_service import AuthService, IssuedSession
from insightboard.services.session_resolver import snapshot_for
from insightboard.utils.clock import as_utc, utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["Authentication"])

_GENERIC_RESET_MESSAGE = (
    "If this email is registered, a password reset link has been sent. "
    "Check your inbox (and spam folder)."
)


def session_user(snapshot: SessionSnapshot) -> SessionUser:
    checker = PermissionChecker(snapshot)
    return SessionUser(
        id=snapshot.user_id,
        email=snapshot.email,
        full_name=snapshot.full_name,
        role=snapshot.role_name,
        permissions=checker.all_permissions(),
        is_admin=checker.is_admin(),
        requires_password_change=snapshot.must_change_password,
        requires_terms_acceptance=snapshot.terms_accepted_at is None,
        session_expires_at=snapshot.expires_at,
    )


def _set_auth_cookie(response: Response, issued: IssuedSession) -> None:
    settings = get_settings()
    expires_at = as_utc(issued.session.expires_at)
    response.set_cookie(
        key=settings.auth_cookie_name,
        value=issued.token,
        max_age=max(0, int((expires_at - utcnow()).total_seconds())),
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        path="/",
    )


def _token_response(issued: IssuedSession) -> TokenResponse:
    return TokenResponse(
        access_token=issued.token,
        expires_at=as_utc(issued.session.expires_at),
        user=session_user(snapshot_for(issued.user, issued.session)),
    )


# ─── A. Register ──────────────────────────────────────────────────────────────

@router.post(
    "/register",
    response_model=RegisterResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit("register"))],
    summary="Register a new account with the default viewer role",
)
async def register(
    payload: RegisterRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    auth: AuthService = Depends(get_auth_service),
) -> RegisterResponse:
    user = await auth.register(
        db, payload, ip_address=get_client_ip(request), user_agent=get_user_agent(request)
    )
    return RegisterResponse(
        message="Account created successfully. You may now log in.",
        id=user.id,
        email=user.email,
        role=user.role.name if user.role else None,
    )


# ─── B. Login ─────────────────────────────────────────────────────────────────

@router.post(
    "/login",
    response_model=TokenResponse,
    dependencies=[Depends(rate_limit("login"))],
    summary="Authenticate and open a session",
)
async def login(
    payload: LoginRequest,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
    auth: AuthService = Depends(get_auth_service),
) -> TokenResponse:
    """
    Verifies credentials, creates a session row (24h, or 30 days with
    `remember`) and sets the auth cookie. The response tells the client
    whether a password change or terms acceptance is pending.
    """
    issued = await auth.login(
        db,
        payload.email,
        payload.password,
        remember=payload.remember,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    _set_auth_cookie(response, issued)
    return _token_response(issued)


# ─── C. Password Reset ────────────────────────────────────────────────────────

@router.post(
    "/forgot-password",
    response_model=MessageResponse,
    dependencies=[Depends(rate_limit("password_reset"))],
    summary="Request a password reset link",
)
async def forgot_password(
    payload: ForgotPasswordRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    auth: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    await auth.request_password_reset(
        db, payload.email, ip_address=get_client_ip(request), user_agent=get_user_agent(request)
    )
    return MessageResponse(message=_GENERIC_RESET_MESSAGE)


@router.post(
    "/reset-password",
    response_model=MessageResponse,
    dependencies=[Depends(rate_limit("password_reset"))],
    summary="Set a new password with a reset token",
)
async def reset_password(
    payload: ResetPasswordRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    auth: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    await auth.reset_password(
        db,
        payload.token,
        payload.password,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    return MessageResponse(message="Password has been reset. Sign in with your new password.")


@router.post("/update-password", response_model=MessageResponse, summary="Change the signed-in user's password")
async def update_password(
    payload: UpdatePasswordRequest,
    ctx: AuthContext = Depends(authorize(endpoint_class="password_update")),
    db: AsyncSession = Depends(get_db),
    auth: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    await auth.update_password(
        db,
        ctx.session,
        payload.current_password,
        payload.new_password,
        ip_address=ctx.ip_address,
        user_agent=ctx.user_agent,
    )
    return MessageResponse(message="Password updated. Other sessions have been signed out.")


# ─── D. Session ───────────────────────────────────────────────────────────────

@router.get("/me", response_model=SessionUser, summary="Current session and effective permissions")
async def get_me(ctx: AuthContext = Depends(authorize())) -> SessionUser:
    return session_user(ctx.session)


@router.post("/refresh", response_model=TokenResponse, summary="Extend the current session")
async def refresh(
    response: Response,
    ctx: AuthContext = Depends(authorize()),
    db: AsyncSession = Depends(get_db),
    auth: AuthService = Depends(get_auth_service),
) -> TokenResponse:
    issued = await auth.refresh(db, ctx.session)
    _set_auth_cookie(response, issued)
    return _token_response(issued)


@router.post("/logout", response_model=MessageResponse, summary="Revoke the current session")
async def logout(
    response: Response,
    ctx: AuthContext = Depends(authorize()),
    db: AsyncSession = Depends(get_db),
    auth: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    await auth.logout(db, ctx.session, ip_address=ctx.ip_address, user_agent=ctx.user_agent)
    response.delete_cookie(get_settings().auth_cookie_name, path="/")
    return MessageResponse(message="Logged out.")


@router.post("/accept-terms", response_model=SessionUser, summary="Record terms acceptance")
async def accept_terms(
    ctx: AuthContext = Depends(authorize()),
    db: AsyncSession = Depends(get_db),
    auth: AuthService = Depends(get_auth_service),
) -> SessionUser:
    user = await auth.accept_terms(db, ctx.session, ip_address=ctx.ip_address, user_agent=ctx.user_agent)
    return session_user(replace(ctx.session, terms_accepted_at=as_utc(user.terms_accepted_at)))
