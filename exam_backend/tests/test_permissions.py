"""
Role/permission table and the authorize / verify_role guards.
"""
from itertools import combinations

import pytest

from exam_backend.errors import ErrorCode, ForbiddenError
from exam_backend.security.auth import TokenUser
from exam_backend.security.permissions import (
    ROLE_PERMISSIONS,
    Permission,
    has_permissions,
    is_known_role,
    permissions_for,
)
from exam_backend.security.rbac import authorize, verify_role

ALL_PERMISSIONS = sorted(set().union(*ROLE_PERMISSIONS.values()))


def token_user(role: str) -> TokenUser:
    return TokenUser(user_id=1, role=role, email=f"{role}@school.edu")


class TestPermissionTable:

    def test_admin_and_super_admin_share_permissions(self):
        assert permissions_for("admin") == permissions_for("super_admin")
        assert Permission.MANAGE_ADMINS in permissions_for("admin")

    def test_teacher_permissions(self):
        assert permissions_for("teacher") == frozenset({
            "view_courses", "view_questions", "view_students", "view_reports",
            "view_analytics", "manage_content", "manage_topics",
        })

    def test_student_permissions(self):
        assert permissions_for("student") == frozenset({
            "view_courses", "answer_questions", "view_progress", "view_badges", "view_ranking",
        })

    def test_unknown_role(self):
        assert not is_known_role("guest")
        assert permissions_for("guest") is None
        assert not has_permissions("guest", [])


class TestAuthorize:

    @pytest.mark.parametrize("role", sorted(ROLE_PERMISSIONS))
    async def test_authorize_iff_subset(self, role):
        """Every pair of permissions passes exactly when both are held."""
        held = ROLE_PERMISSIONS[role]
        for size in (1, 2):
            for required in combinations(ALL_PERMISSIONS, size):
                checker = authorize(*required)
                if set(required) <= held:
                    assert (await checker(current_user=token_user(role))).role == role
                else:
                    with pytest.raises(ForbiddenError) as exc_info:
                        await checker(current_user=token_user(role))
                    assert exc_info.value.message == "Permission denied"
                    assert exc_info.value.code == ErrorCode.PERMISSION_DENIED

    async def test_no_required_permissions(self):
        checker = authorize()
        assert (await checker(current_user=token_user("student"))).role == "student"

    async def test_unknown_role_rejected(self):
        checker = authorize(Permission.VIEW_COURSES)
        with pytest.raises(ForbiddenError) as exc_info:
            await checker(current_user=token_user("guest"))
        assert exc_info.value.message == "Role not authorized"


class TestVerifyRole:

    async def test_listed_role_passes(self):
        checker = verify_role("admin", "super_admin")
        assert (await checker(current_user=token_user("super_admin"))).role == "super_admin"

    async def test_role_is_literal_not_hierarchical(self):
        checker = verify_role("admin")
        with pytest.raises(ForbiddenError) as exc_info:
            await checker(current_user=token_user("super_admin"))
        assert exc_info.value.message == "Role not authorized"
        assert exc_info.value.details == {"required_roles": ["admin"]}
