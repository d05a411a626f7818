"""
main.py — InsightBoard FastAPI Application

Wires together the authorization core at startup:
- Creates tables and seeds the permission vocabulary and default roles
- Connects Redis for the shared rate-limit counters (optional)
- Builds the service singletons (audit recorder, IP gate, rate limiter,
  session resolver, auth service) and stores them on app.state, where
  the middleware and the API dependencies read them lazily

`startup(app)` / `shutdown(app)` are plain coroutines so tests can run
them without a lifespan-aware client.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from insightboard.api import (
    routes_audit,
    routes_auth,
    routes_content,
    routes_pages,
    routes_permissions,
    routes_roles,
    routes_security,
    routes_users,
)
from insightboard.core.config import get_settings
from insightboard.core.errors import register_exception_handlers
from insightboard.db.database import AsyncSessionLocal, init_db
from insightboard.integrations.redis_client import RedisClient
from insightboard.middleware.authorization import AuthorizationMiddleware
from insightboard.middleware.logging import RequestLoggingMiddleware
from insightboard.services.audit import AuditRecorder
from insightboard.services.auth_service import AuthService
from insightboard.services.ip_gate import IPReputationGate
from insightboard.services.rate_limiter import RateLimiter
from insightboard.services.seed import seed_all
from insightboard.services.session_resolver import SessionResolver

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)

settings = get_settings()


# ─── Application Lifecycle ────────────────────────────────────────────────────

async def startup(app: FastAPI) -> None:
    logger.info(f"Starting {settings.app_name} backend...")

    await init_db()
    if settings.seed_on_startup:
        async with AsyncSessionLocal() as db:
            await seed_all(db)
            await db.commit()
        logger.info("Permissions and default roles seeded.")

    # ── Redis (optional) ──
    redis_client = None
    if settings.rate_limit_backend == "redis":
        redis_client = RedisClient()
        await redis_client.connect()
        if await redis_client.is_connected():
            logger.info("Redis connection established. Rate limits are shared across replicas.")
        else:
            logger.warning("Redis unavailable. Rate limiting falls back to in-memory counters.")
            redis_client = None

    # ── Services ──
    recorder = AuditRecorder(AsyncSessionLocal)
    gate = IPReputationGate(AsyncSessionLocal, recorder)

    app.state.redis_client = redis_client
    app.state.audit_recorder = recorder
    app.state.ip_gate = gate
    app.state.rate_limiter = RateLimiter(redis_client)
    app.state.session_resolver = SessionResolver(AsyncSessionLocal)
    app.state.auth_service = AuthService(gate, recorder)

    logger.info(f"{settings.app_name} startup complete. ENV: {settings.app_env}")


async def shutdown(app: FastAPI) -> None:
    logger.info(f"Shutting down {settings.app_name}...")
    recorder = getattr(app.state, "audit_recorder", None)
    if recorder:
        await recorder.drain()
    redis_client = getattr(app.state, "redis_client", None)
    if redis_client:
        await redis_client.close()
    logger.info("All connections closed. Shutdown complete.")


@asynccontextmanager
async def lifespan(app: FastAPI):
    await startup(app)
    yield
    await shutdown(app)


# ─── FastAPI Application ───────────────────────────────────────────────────────

app = FastAPI(
    title="InsightBoard",
    description="Multi-tenant BI dashboard backend: sessions, roles, permissions and security auditing.",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# ── CORS ──────────────────────────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.cors_origins.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Authorization Middleware ──────────────────────────────────────────────────
# Reads its services from app.state at request time, so registering it
# before the lifespan runs is safe.
app.add_middleware(AuthorizationMiddleware)

# ── Access Logging (outermost, so denials are logged too) ────────────────────
app.add_middleware(RequestLoggingMiddleware)

# ── Exception Handlers ────────────────────────────────────────────────────────
register_exception_handlers(app)

# ── Routers ───────────────────────────────────────────────────────────────────
app.include_router(routes_auth.router)
app.include_router(routes_roles.router)
app.include_router(routes_permissions.router)
app.include_router(routes_users.router)
app.include_router(routes_content.router)
app.include_router(routes_security.router)
app.include_router(routes_audit.router)
app.include_router(routes_pages.router)


# ── Health ────────────────────────────────────────────────────────────────────
@app.get("/health", tags=["Health"])
async def health():
    """
    Liveness probe. Reports which rate-limit backend is active so operators
    can spot a silent fallback to per-process counters.
    """
    limiter = getattr(app.state, "rate_limiter", None)
    return {
        "status": "healthy",
        "service": settings.app_name,
        "environment": settings.app_env,
        "rate_limit_backend": limiter.backend_name if limiter else "uninitialized",
    }
