"""Authorization middleware: IP gate, page guards, redirects and identity headers end to end."""
from unittest.mock import AsyncMock

import pytest

from insightboard.core.errors import TransientError
from insightboard.db.database import AsyncSessionLocal

from tests.factories import create_user, issue_token


async def block_ip(app, ip, **kwargs):
    async with AsyncSessionLocal() as db:
        await app.state.ip_gate.add(db, ip, "blocked in test", **kwargs)
        await db.commit()


# =============================================================================
# Page guards
# =============================================================================


class TestProtectedPages:
    async def test_anonymous_dashboard_redirects_to_login(self, client):
        response = await client.get("/dashboard")
        assert response.status_code == 307
        assert response.headers["location"] == "/login?returnUrl=/dashboard"

    async def test_nested_protected_path_keeps_full_return_url(self, client):
        response = await client.get("/content/42/edit")
        assert response.headers["location"] == "/login?returnUrl=/content/42/edit"

    async def test_invalid_token_is_treated_as_anonymous(self, client):
        response = await client.get("/dashboard", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 307
        assert response.headers["location"].startswith("/login?returnUrl=")

    async def test_signed_in_user_sees_page_with_identity_headers(self, client, user_factory):
        user, headers = await user_factory("viewer@example.com", "viewer")
        response = await client.get("/dashboard", headers=headers)
        assert response.status_code == 200
        assert response.headers["x-user-id"] == str(user.id)
        assert response.headers["x-user-role"] == "viewer"
        assert response.json() == {"page": "/dashboard", "user_id": str(user.id), "role": "viewer"}

    async def test_cookie_session_is_accepted(self, client):
        user = await create_user("cookie@example.com", "editor")
        token = await issue_token(user.id)
        client.cookies.set("auth-token", token)
        response = await client.get("/analytics")
        assert response.status_code == 200
        assert response.headers["x-user-role"] == "editor"

    async def test_client_supplied_identity_headers_are_ignored(self, client):
        response = await client.get("/login", headers={"x-user-id": "1", "x-user-role": "super_admin"})
        assert response.status_code == 200
        assert response.json()["user_id"] is None
        assert response.json()["role"] is None

    async def test_inactive_user_is_treated_as_anonymous(self, client):
        user = await create_user("gone@example.com", "admin", is_active=False)
        token = await issue_token(user.id)
        response = await client.get("/admin", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 307
        assert response.headers["location"] == "/login?returnUrl=/admin"


class TestAdminPages:
    async def test_non_admin_gets_plain_forbidden(self, client, user_factory):
        _, headers = await user_factory("editor@example.com", "editor")
        response = await client.get("/admin", headers=headers)
        assert response.status_code == 403
        assert response.text == "Forbidden"

    @pytest.mark.parametrize("path", ["/users", "/roles/3", "/permissions", "/settings/system"])
    async def test_admin_only_prefixes_reject_viewers(self, client, user_factory, path):
        _, headers = await user_factory("viewer@example.com", "viewer")
        response = await client.get(path, headers=headers)
        assert response.status_code == 403

    async def test_plain_settings_page_is_open_to_any_session(self, client, user_factory):
        _, headers = await user_factory("viewer@example.com", "viewer")
        response = await client.get("/settings", headers=headers)
        assert response.status_code == 200

    @pytest.mark.parametrize("role_name", ["admin", "super_admin"])
    async def test_admin_roles_pass(self, client, user_factory, role_name):
        _, headers = await user_factory(f"{role_name}@example.com", role_name)
        response = await client.get("/admin", headers=headers)
        assert response.status_code == 200
        assert response.headers["x-user-role"] == role_name


class TestRootAndAuthPages:
    async def test_root_without_session(self, client):
        response = await client.get("/")
        assert response.status_code == 307
        assert response.headers["location"] == "/login"

    async def test_root_with_session(self, client, user_factory):
        _, headers = await user_factory("viewer@example.com", "viewer")
        response = await client.get("/", headers=headers)
        assert response.status_code == 307
        assert response.headers["location"] == "/dashboard"

    async def test_login_page_is_public(self, client):
        response = await client.get("/login")
        assert response.status_code == 200

    async def test_signed_in_user_is_bounced_from_login(self, client, user_factory):
        _, headers = await user_factory("viewer@example.com", "viewer")
        response = await client.get("/login", headers=headers)
        assert response.headers["location"] == "/dashboard"

        response = await client.get("/register?returnUrl=/content/7", headers=headers)
        assert response.headers["location"] == "/content/7"


# =============================================================================
# IP gate
# =============================================================================


class TestBlockedIp:
    async def test_blocked_ip_is_denied_before_authentication(self, app, make_client):
        await block_ip(app, "10.0.0.5", is_permanent=True)
        resolver = AsyncMock()
        app.state.session_resolver = resolver

        async with make_client("10.0.0.5") as blocked:
            for path in ("/dashboard", "/admin", "/login", "/"):
                response = await blocked.get(path, headers={"Authorization": "Bearer anything"})
                assert response.status_code == 403
                assert response.text == "Access Denied"

        resolver.resolve.assert_not_awaited()
        resolver.resolve_request.assert_not_awaited()

    async def test_blocked_ip_gets_json_envelope_on_api(self, app, make_client):
        await block_ip(app, "10.0.0.5", is_permanent=True)
        async with make_client("10.0.0.5") as blocked:
            response = await blocked.post("/api/auth/login", json={"email": "a@b.co", "password": "x"})
        assert response.status_code == 403
        assert response.json() == {"error": "IP_BLOCKED", "message": "Access Denied"}

    async def test_other_ips_are_unaffected(self, app, make_client):
        await block_ip(app, "10.0.0.5", is_permanent=True)
        async with make_client("10.0.0.6") as other:
            response = await other.get("/login")
        assert response.status_code == 200

    async def test_health_bypasses_gate(self, app, make_client):
        await block_ip(app, "10.0.0.5", is_permanent=True)
        async with make_client("10.0.0.5") as blocked:
            response = await blocked.get("/health")
        assert response.status_code == 200
        assert response.json()["rate_limit_backend"] == "memory"


# =============================================================================
# Failure handling
# =============================================================================


class TestFailClosed:
    async def test_resolver_crash_on_protected_page_redirects_to_login(self, app, client):
        resolver = AsyncMock()
        resolver.resolve.side_effect = RuntimeError("store exploded")
        app.state.session_resolver = resolver

        response = await client.get("/dashboard/sales", headers={"Authorization": "Bearer whatever"})
        assert response.status_code == 307
        assert response.headers["location"] == "/login?returnUrl=/dashboard/sales"

    async def test_store_outage_on_api_is_503(self, app, client):
        resolver = AsyncMock()
        resolver.resolve_request.side_effect = TransientError()
        app.state.session_resolver = resolver

        response = await client.get("/api/auth/me", headers={"Authorization": "Bearer whatever"})
        assert response.status_code == 503
        assert response.json()["error"] == "SERVICE_UNAVAILABLE"

    async def test_gate_outage_on_protected_page_redirects(self, app, client):
        gate = AsyncMock()
        gate.is_blocked.side_effect = RuntimeError("db down")
        app.state.ip_gate = gate

        response = await client.get("/dashboard")
        assert response.status_code == 307
        assert response.headers["location"] == "/login?returnUrl=/dashboard"

    async def test_page_rate_limit(self, app, client):
        for _ in range(120):
            await app.state.rate_limiter.hit("page", "203.0.113.10")
        response = await client.get("/login")
        assert response.status_code == 429
        assert response.json()["error"] == "RATE_LIMITED"
        assert "retry-after" in response.headers
