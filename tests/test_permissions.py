"""Permission checker: super_admin bypass, admin role check, ownership and the closed vocabulary."""
import pytest

from insightboard.core.permissions import (
    DEFAULT_ROLE_PERMISSIONS,
    PERMISSION_GROUPS,
    Permission,
    PermissionChecker,
    RoleName,
    SessionSnapshot,
)


def snapshot(role_name, permissions=(), user_id=7, is_active=True):
    return SessionSnapshot(
        user_id=user_id,
        email="someone@example.com",
        is_active=is_active,
        role_id=1,
        role_name=role_name,
        permissions=frozenset(p.value if isinstance(p, Permission) else p for p in permissions),
    )


# =============================================================================
# has_permission
# =============================================================================


class TestHasPermission:
    @pytest.mark.parametrize("permission", list(Permission))
    def test_super_admin_holds_every_permission(self, permission):
        checker = PermissionChecker(snapshot(RoleName.SUPER_ADMIN))
        assert checker.has_permission(permission) is True

    @pytest.mark.parametrize("permission", list(Permission))
    def test_empty_role_holds_nothing(self, permission):
        checker = PermissionChecker(snapshot("auditor"))
        assert checker.has_permission(permission) is False

    def test_admin_is_not_an_implicit_bypass(self):
        checker = PermissionChecker(snapshot(RoleName.ADMIN, [Permission.USER_READ]))
        assert checker.is_admin() is True
        assert checker.has_permission(Permission.USER_READ) is True
        assert checker.has_permission(Permission.SYSTEM_BACKUP) is False

    def test_membership_only(self):
        granted = [Permission.CONTENT_READ, Permission.CONTENT_UPDATE]
        checker = PermissionChecker(snapshot(RoleName.EDITOR, granted))
        for permission in Permission:
            assert checker.has_permission(permission) is (permission in granted)

    def test_accepts_plain_strings(self):
        checker = PermissionChecker(snapshot(RoleName.EDITOR, [Permission.CONTENT_READ]))
        assert checker.has_permission("content.read") is True
        assert checker.has_permission("content.nonexistent") is False

    def test_inactive_user_holds_nothing(self):
        checker = PermissionChecker(snapshot(RoleName.SUPER_ADMIN, is_active=False))
        assert checker.has_permission(Permission.CONTENT_READ) is False
        assert checker.all_permissions() == []
        assert checker.is_admin() is False
        assert checker.is_super_admin() is False
        assert checker.can_access_admin() is False


class TestComposition:
    @pytest.fixture()
    def editor(self):
        return PermissionChecker(snapshot(RoleName.EDITOR, [Permission.CONTENT_READ, Permission.CONTENT_UPDATE]))

    def test_any(self, editor):
        assert editor.has_any_permission([Permission.CONTENT_DELETE, Permission.CONTENT_UPDATE]) is True
        assert editor.has_any_permission([Permission.CONTENT_DELETE]) is False
        assert editor.has_any_permission([]) is False

    def test_all(self, editor):
        assert editor.has_all_permissions([Permission.CONTENT_READ, Permission.CONTENT_UPDATE]) is True
        assert editor.has_all_permissions([Permission.CONTENT_READ, Permission.CONTENT_DELETE]) is False

    def test_roles(self, editor):
        assert editor.has_role(RoleName.EDITOR) is True
        assert editor.has_role(RoleName.ADMIN) is False
        assert editor.has_any_role([RoleName.VIEWER, RoleName.EDITOR]) is True
        assert editor.is_admin() is False
        assert editor.is_super_admin() is False

    def test_action_helpers(self, editor):
        assert editor.can_perform_action("content", "update") is True
        assert editor.can_perform_action("content", "delete") is False
        assert editor.can_access_admin() is False


class TestOwnership:
    def test_owns_resource(self):
        checker = PermissionChecker(snapshot(RoleName.VIEWER, user_id=42))
        assert checker.owns_resource(42) is True
        assert checker.owns_resource(43) is False
        assert checker.owns_resource(None) is False

    def test_owner_or_permission(self):
        checker = PermissionChecker(snapshot(RoleName.VIEWER, user_id=42))
        assert checker.can_access_resource(42, Permission.CONTENT_DELETE) is True
        assert checker.can_access_resource(1, Permission.CONTENT_DELETE) is False


# =============================================================================
# Vocabulary and defaults
# =============================================================================


class TestVocabulary:
    def test_resource_and_action_split_on_last_dot(self):
        assert Permission.SYSTEM_SECURITY_VIEW.resource == "system.security"
        assert Permission.SYSTEM_SECURITY_VIEW.action == "view"
        assert Permission.CONTENT_UPDATE.resource == "content"

    def test_parse_rejects_unknown_names(self):
        assert Permission.parse("role.create") is Permission.ROLE_CREATE
        assert Permission.parse("role.creat") is None

    def test_groups_cover_vocabulary_once(self):
        grouped = [p for members in PERMISSION_GROUPS.values() for p in members]
        assert sorted(grouped) == sorted(Permission)
        assert len(grouped) == len(set(grouped))

    def test_editor_cannot_delete_content(self):
        editor = DEFAULT_ROLE_PERMISSIONS[RoleName.EDITOR]
        assert Permission.CONTENT_UPDATE in editor
        assert Permission.CONTENT_DELETE not in editor

    def test_super_admin_all_permissions_lists_vocabulary(self):
        checker = PermissionChecker(snapshot(RoleName.SUPER_ADMIN))
        assert checker.all_permissions() == sorted(p.value for p in Permission)
