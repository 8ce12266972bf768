"""
exam_backend/security/rbac.py
Route guards built on the permission table

Usage:
    @router.get("/students", dependencies=[Depends(authorize(Permission.VIEW_STUDENTS))])
    async def list_students(...): ...

    async def handler(current_user: TokenUser = Depends(require_super_admin)): ...
"""
import logging

from fastapi import Depends

from exam_backend.errors import ForbiddenError, ErrorCode
from exam_backend.orm.user import UserRole
from exam_backend.security.auth import TokenUser, get_current_user
from exam_backend.security.permissions import has_permissions, is_known_role

logger = logging.getLogger(__name__)


def authorize(*required_permissions: str):
    """Dependency factory: caller's role must hold every listed permission."""
    required = tuple(required_permissions)

    async def permission_checker(current_user: TokenUser = Depends(get_current_user)) -> TokenUser:
        if not is_known_role(current_user.role):
            raise ForbiddenError("Role not authorized", ErrorCode.ROLE_NOT_AUTHORIZED)
        if not has_permissions(current_user.role, required):
            logger.warning(
                f"Permission denied: user {current_user.user_id} ({current_user.role}) "
                f"lacks one of {list(required)}"
            )
            raise ForbiddenError(
                "Permission denied",
                ErrorCode.PERMISSION_DENIED,
                details={"required_permissions": list(required)},
            )
        return current_user

    return permission_checker


def verify_role(*allowed_roles):
    """Dependency factory: caller's role must literally be one of allowed_roles."""
    allowed = tuple(r.value if isinstance(r, UserRole) else r for r in allowed_roles)

    async def role_checker(current_user: TokenUser = Depends(get_current_user)) -> TokenUser:
        if current_user.role not in allowed:
            raise ForbiddenError(
                "Role not authorized",
                ErrorCode.ROLE_NOT_AUTHORIZED,
                details={"required_roles": list(allowed)},
            )
        return current_user

    return role_checker


require_super_admin = verify_role(UserRole.super_admin)
require_admin = verify_role(UserRole.admin, UserRole.super_admin)
require_student = verify_role(UserRole.student)
