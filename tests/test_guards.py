"""Route classification, the page guard state machine and API access policies."""
import pytest

from insightboard.core.errors import AppError
from insightboard.core.guards import (
    SESSION_ONLY,
    Allow,
    Deny,
    Redirect,
    admin_or,
    evaluate_page_request,
    is_admin_route,
    is_auth_route,
    is_protected_route,
    login_redirect,
    owner_or,
    raise_for,
    requires,
    requires_any,
    safe_return_url,
)
from insightboard.core.permissions import Permission, PermissionChecker, RoleName, SessionSnapshot


def session(role_name, permissions=(), user_id=5):
    return SessionSnapshot(
        user_id=user_id,
        email="user@example.com",
        is_active=True,
        role_id=1,
        role_name=role_name,
        permissions=frozenset(p.value for p in permissions),
    )


# =============================================================================
# Route classification
# =============================================================================


class TestRouteClasses:
    @pytest.mark.parametrize("path", ["/dashboard", "/dashboard/sales", "/settings", "/permissions"])
    def test_protected(self, path):
        assert is_protected_route(path) is True

    @pytest.mark.parametrize("path", ["/dashboards", "/administrator", "/api/roles", "/", "/login"])
    def test_not_protected(self, path):
        assert is_protected_route(path) is False

    def test_admin_prefixes_are_segment_aware(self):
        assert is_admin_route("/admin") is True
        assert is_admin_route("/admin/users") is True
        assert is_admin_route("/settings/system") is True
        assert is_admin_route("/settings") is False
        assert is_admin_route("/settings/systemic") is False
        assert is_admin_route("/administrator") is False

    def test_auth_routes(self):
        assert is_auth_route("/login") is True
        assert is_auth_route("/reset-password/abc") is True
        assert is_auth_route("/logins") is False


class TestReturnUrl:
    def test_login_redirect_keeps_destination(self):
        assert login_redirect("/dashboard").location == "/login?returnUrl=/dashboard"
        assert login_redirect("/admin/a b").location == "/login?returnUrl=/admin/a%20b"

    @pytest.mark.parametrize("value", [None, "", "https://evil.example", "//evil.example", "dashboard"])
    def test_unsafe_return_urls_are_dropped(self, value):
        assert safe_return_url(value) is None

    def test_same_site_path_is_kept(self):
        assert safe_return_url("/content/3") == "/content/3"


# =============================================================================
# Page guard
# =============================================================================


class TestPageGuard:
    def test_root_without_session_goes_to_login(self):
        assert evaluate_page_request("/", None) == Redirect("/login")

    def test_root_with_session_goes_to_landing(self):
        assert evaluate_page_request("/", session(RoleName.VIEWER)) == Redirect("/dashboard")

    def test_anonymous_protected_page_redirects_with_return_url(self):
        assert evaluate_page_request("/dashboard", None) == Redirect("/login?returnUrl=/dashboard")

    def test_anonymous_auth_page_is_allowed(self):
        assert evaluate_page_request("/login", None) == Allow()

    def test_signed_in_user_is_bounced_from_auth_pages(self):
        viewer = session(RoleName.VIEWER)
        assert evaluate_page_request("/login", viewer) == Redirect("/dashboard")
        assert evaluate_page_request("/login", viewer, return_url="/content/9") == Redirect("/content/9")
        assert evaluate_page_request("/login", viewer, return_url="//evil.example") == Redirect("/dashboard")

    def test_non_admin_on_admin_page_is_forbidden(self):
        # Permissions do not matter for page-level admin gating; only the role does.
        decision = evaluate_page_request("/admin", session(RoleName.EDITOR, list(Permission)))
        assert isinstance(decision, Deny)
        assert decision.status_code == 403
        assert decision.reason == "Forbidden"

    def test_admin_page_allowed_for_admin_role_with_identity_headers(self):
        decision = evaluate_page_request("/users", session(RoleName.ADMIN, user_id=11))
        assert decision == Allow(headers={"x-user-id": "11", "x-user-role": RoleName.ADMIN})

    def test_protected_page_allowed_for_any_session(self):
        decision = evaluate_page_request("/dashboard", session(RoleName.VIEWER, user_id=3))
        assert isinstance(decision, Allow)
        assert decision.headers["x-user-id"] == "3"


# =============================================================================
# API access policies
# =============================================================================


class TestAccessPolicy:
    def test_session_only_allows_any_session(self):
        assert SESSION_ONLY.evaluate(PermissionChecker(session("nobody"))) == Allow()

    def test_requires_all(self):
        policy = requires(Permission.ROLE_READ, Permission.ROLE_UPDATE)
        partial = PermissionChecker(session(RoleName.EDITOR, [Permission.ROLE_READ]))
        full = PermissionChecker(session(RoleName.EDITOR, [Permission.ROLE_READ, Permission.ROLE_UPDATE]))
        assert isinstance(policy.evaluate(partial), Deny)
        assert policy.evaluate(full) == Allow()

    def test_requires_any(self):
        policy = requires_any(Permission.SYSTEM_SECURITY_VIEW, Permission.SYSTEM_ADMIN)
        checker = PermissionChecker(session(RoleName.ADMIN, [Permission.SYSTEM_SECURITY_VIEW]))
        assert policy.evaluate(checker) == Allow()

    def test_admin_role_is_not_enough_for_permission_policies(self):
        policy = requires(Permission.ROLE_DELETE)
        decision = policy.evaluate(PermissionChecker(session(RoleName.ADMIN)))
        assert isinstance(decision, Deny)
        assert decision.details == {"required": ["role.delete"]}

    def test_admin_or_accepts_role_membership(self):
        policy = admin_or(Permission.ROLE_READ)
        assert policy.evaluate(PermissionChecker(session(RoleName.ADMIN))) == Allow()
        assert isinstance(policy.evaluate(PermissionChecker(session(RoleName.EDITOR))), Deny)

    def test_owner_or(self):
        policy = owner_or(Permission.CONTENT_DELETE)
        checker = PermissionChecker(session(RoleName.VIEWER, user_id=9))
        assert policy.needs_owner is True
        assert policy.evaluate(checker, owner_id=9) == Allow()
        assert isinstance(policy.evaluate(checker, owner_id=10), Deny)
        assert isinstance(policy.evaluate(checker, owner_id=None), Deny)

    def test_super_admin_passes_every_policy(self):
        checker = PermissionChecker(session(RoleName.SUPER_ADMIN))
        for policy in (requires(*Permission), owner_or(Permission.USER_DELETE), requires_any(Permission.AUDIT_READ)):
            assert policy.evaluate(checker, owner_id=None) == Allow()

    def test_raise_for(self):
        raise_for(Allow())
        with pytest.raises(AppError) as excinfo:
            raise_for(requires(Permission.USER_DELETE).evaluate(PermissionChecker(session(RoleName.VIEWER))))
        assert excinfo.value.status_code == 403
        assert excinfo.value.error_code == "FORBIDDEN"
