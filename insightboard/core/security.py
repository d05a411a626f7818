"""
core/security.py

Cryptographic utilities for InsightBoard authentication.

Design principles:
1. bcrypt for password hashing via passlib. The cost factor comes from
   settings so the test suite can run with a low one.

2. The JWT carries identity only: `sub` (user id) and `sid` (session id).
   Roles and permissions are NOT embedded; the session resolver re-reads
   them from the database on every request so a revoked permission stops
   working on the very next call.

3. Every token is backed by a `user_sessions` row. Logout revokes the row,
   which kills the token even though its signature is still valid.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

import jwt
from fastapi import Request
from jwt.exceptions import ExpiredSignatureError, InvalidTokenError
from passlib.context import CryptContext

from insightboard.core.config import get_settings

logger = logging.getLogger(__name__)

# ─── Password Hashing ─────────────────────────────────────────────────────────

pwd_context = CryptContext(
    schemes=["bcrypt"],
    deprecated="auto",
    bcrypt__rounds=get_settings().bcrypt_rounds,
)

# Used to burn the same bcrypt time on unknown emails as on real ones.
_DUMMY_HASH = pwd_context.hash("timing-attack-prevention-dummy")


def get_password_hash(password: str) -> str:
    """
    Hashes a plaintext password using bcrypt with a random salt.

    Returns:
        A bcrypt hash string (includes algorithm, cost factor, and salt).
    """
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Constant-time comparison of a plaintext password against a bcrypt hash."""
    return pwd_context.verify(plain_password, hashed_password)


def burn_password_check(plain_password: str) -> None:
    pwd_context.verify(plain_password, _DUMMY_HASH)


# ─── JWT Token Management ─────────────────────────────────────────────────────

def create_access_token(
    user_id: int,
    session_id: str,
    issued_at: datetime,
    expires_at: datetime,
) -> str:
    """
    Creates a signed JWT for a persisted session.

    Claims:
    - `sub`: user id, as a string per RFC 7519
    - `sid`: the `user_sessions` row backing this token
    - `iat` / `exp`: mirror the session row
    - `iss`: rejects tokens minted by other services sharing the secret
    """
    settings = get_settings()
    payload = {
        "sub": str(user_id),
        "sid": session_id,
        "iat": issued_at,
        "exp": expires_at,
        "iss": settings.jwt_issuer,
    }
    token = jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)
    logger.debug(f"Access token issued for user {user_id} | session {session_id} | expires: {expires_at.isoformat()}")
    return token


def decode_access_token(token: str) -> Optional[Dict[str, Any]]:
    """
    Decodes and validates a JWT access token.

    Returns None on any validation failure rather than raising; the
    session resolver treats None as `Unauthenticated`.
    """
    settings = get_settings()
    try:
        return jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
            issuer=settings.jwt_issuer,
            options={"require": ["exp", "iat", "sub", "sid"]},
        )
    except ExpiredSignatureError:
        logger.info("JWT rejected: token expired.")
        return None
    except InvalidTokenError as e:
        logger.warning(f"JWT rejected: invalid token: {e}")
        return None


# ─── Credential Extraction ────────────────────────────────────────────────────
# Cookie first (browser page loads), then `Authorization: Bearer` (API clients).

def extract_token(request: Request) -> Optional[str]:
    settings = get_settings()
    cookie = request.cookies.get(settings.auth_cookie_name)
    if cookie:
        return cookie

    authorization = request.headers.get("authorization", "")
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()
    return None
