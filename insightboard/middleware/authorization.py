"""
middleware/authorization.py

Request-level authorization pipeline.

Every request (apart from health/docs) passes the IP reputation gate first.
Page routes then run the rest of the pipeline here:

    IP gate -> page rate limit -> session resolve -> page guard

API routes continue to their handlers, where api/deps.py applies the rate
limit, session and permission stages in the same order.

Services are read lazily from request.app.state, so the middleware can be
registered at import time, before the lifespan has created them.

Failure policy: an unexpected error while resolving the session on a
protected page redirects to the login page with a return URL. Protected
pages never render on an error path.
"""

import logging
from typing import Callable

from fastapi import Request, Response
from fastapi.responses import PlainTextResponse, RedirectResponse
from starlette.middleware.base import BaseHTTPMiddleware

from insightboard.api.deps import get_client_ip
from insightboard.core.config import get_settings
from insightboard.core.errors import (
    IPBlocked,
    RateLimited,
    TransientError,
    Unauthenticated,
    UserInactive,
    error_response,
)
from insightboard.core.guards import (
    Deny,
    Redirect,
    evaluate_page_request,
    is_page_route,
    is_protected_route,
    login_redirect,
)
from insightboard.core.security import extract_token

logger = logging.getLogger(__name__)

# Paths that bypass the pipeline entirely.
_SKIP_PATHS = {"/health", "/docs", "/redoc", "/openapi.json", "/favicon.ico"}

_IDENTITY_HEADERS = (b"x-user-id", b"x-user-role")


def _strip_identity_headers(request: Request) -> None:
    """Clients must never be able to supply the downstream identity headers themselves."""
    request.scope["headers"] = [
        (key, value) for key, value in request.scope["headers"] if key.lower() not in _IDENTITY_HEADERS
    ]


def _inject_headers(request: Request, headers: dict) -> None:
    request.scope["headers"] = list(request.scope["headers"]) + [
        (key.encode("latin-1"), value.encode("latin-1")) for key, value in headers.items()
    ]


class AuthorizationMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        if path in _SKIP_PATHS:
            return await call_next(request)

        _strip_identity_headers(request)
        state = request.app.state
        client_ip = get_client_ip(request)
        protected = path == "/" or is_protected_route(path)

        # ── 1. IP reputation gate ──
        try:
            blocked = await state.ip_gate.is_blocked(client_ip)
        except Exception as e:
            logger.error(f"IP gate lookup failed for {client_ip} on {path}: {e}", exc_info=True)
            if protected:
                return RedirectResponse(login_redirect(path, get_settings().login_page).location)
            return error_response(TransientError())

        if blocked:
            logger.warning(f"Blocked IP {client_ip} denied on {request.method} {path}")
            if is_page_route(path):
                return PlainTextResponse("Access Denied", status_code=403)
            return error_response(IPBlocked())

        if not is_page_route(path):
            return await call_next(request)

        return await self._guard_page(request, call_next, path, client_ip, protected)

    async def _guard_page(
        self,
        request: Request,
        call_next: Callable,
        path: str,
        client_ip: str,
        protected: bool,
    ) -> Response:
        settings = get_settings()
        state = request.app.state

        # ── 2. Rate limit ──
        limit = await state.rate_limiter.hit("page", client_ip)
        if not limit.allowed:
            logger.warning(f"Page rate limit exceeded for {client_ip} on {path}")
            return error_response(RateLimited(limit.retry_after))

        # ── 3. Session ──
        session = None
        token = extract_token(request)
        if token:
            try:
                session = await state.session_resolver.resolve(token)
            except (Unauthenticated, UserInactive):
                session = None
            except Exception as e:
                logger.error(f"Session resolution failed on {path}: {e}", exc_info=True)
                if protected:
                    return RedirectResponse(login_redirect(path, settings.login_page).location)

        # ── 4. Page guard ──
        decision = evaluate_page_request(
            path,
            session,
            return_url=request.query_params.get("returnUrl"),
            landing_page=settings.default_landing_page,
            login_page=settings.login_page,
        )
        if isinstance(decision, Redirect):
            return RedirectResponse(decision.location)
        if isinstance(decision, Deny):
            logger.warning(f"Page access denied: user {session.user_id if session else None} on {path}")
            return PlainTextResponse(decision.reason, status_code=decision.status_code)

        _inject_headers(request, decision.headers)
        response = await call_next(request)
        for key, value in decision.headers.items():
            response.headers[key] = value
        return response

