import os
import tempfile

# -----------------------------------------------------------------------------
# Environment (must be set before any insightboard import builds Settings)
# -----------------------------------------------------------------------------

_DB_DIR = tempfile.mkdtemp(prefix="insightboard-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_DIR}/insightboard.db"
os.environ["RATE_LIMIT_BACKEND"] = "memory"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["SEED_ON_STARTUP"] = "true"
os.environ["APP_ENV"] = "test"
os.environ["JWT_SECRET_KEY"] = "test-secret-key-with-enough-length-for-hs256"
os.environ["BOOTSTRAP_ADMIN_EMAIL"] = ""
os.environ["BOOTSTRAP_ADMIN_PASSWORD"] = ""

from typing import Optional  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
from httpx import ASGITransport  # noqa: E402

from insightboard import main  # noqa: E402
from insightboard.db.database import drop_db, engine  # noqa: E402
from tests.factories import DEFAULT_IP, bearer, create_user, issue_token  # noqa: E402

# -----------------------------------------------------------------------------
# Application Fixtures
# -----------------------------------------------------------------------------


@pytest.fixture
async def app():
    """
    Fresh schema, seeded vocabulary and fresh service singletons per test.
    The lifespan is driven directly so no lifespan-aware client is needed.
    """
    await drop_db()
    await main.startup(main.app)
    yield main.app
    await main.shutdown(main.app)
    await engine.dispose()


@pytest.fixture
def recorder(app):
    return app.state.audit_recorder


@pytest.fixture
def make_client(app):
    """Factory: an AsyncClient whose requests originate from `ip`. Use as a context manager."""

    def _make(ip: str = DEFAULT_IP) -> httpx.AsyncClient:
        transport = ASGITransport(app=app, client=(ip, 50000))
        return httpx.AsyncClient(transport=transport, base_url="http://testserver")

    return _make


@pytest.fixture
async def client(make_client):
    async with make_client() as c:
        yield c


# -----------------------------------------------------------------------------
# User Fixtures
# -----------------------------------------------------------------------------


@pytest.fixture
def user_factory(app):
    """Factory: creates a user with `role_name` and returns (user, auth headers)."""

    async def _make(email: str, role_name: Optional[str] = "viewer", **fields):
        user = await create_user(email, role_name, **fields)
        token = await issue_token(user.id)
        return user, bearer(token)

    return _make
