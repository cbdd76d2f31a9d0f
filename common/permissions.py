import logging
from dataclasses import dataclass

from rest_framework.exceptions import PermissionDenied
from rest_framework.permissions import BasePermission

from core.models import User

logger = logging.getLogger("security.authorization")

ADMIN_ROLES = {User.Role.SUPER_ADMIN, User.Role.BRANCH_ADMIN}
ALL_ROLES = {User.Role.SUPER_ADMIN, User.Role.BRANCH_ADMIN, User.Role.STAFF}

ROLE_CAPABILITY_MATRIX = {
    "dues.view": ALL_ROLES,
    "dues.manage": ADMIN_ROLES,
    "dues.payment.create": ALL_ROLES,
    "dues.payment.manage": ADMIN_ROLES,
    "stock.movement.view": ALL_ROLES,
    "stock.movement.manage": ADMIN_ROLES,
}


@dataclass(frozen=True)
class CallerContext:
    """Resolved identity of the caller, passed explicitly into scoped operations."""

    user_id: object
    role: str
    branch_id: object = None

    @property
    def is_super_admin(self):
        return self.role == User.Role.SUPER_ADMIN

    @property
    def is_admin(self):
        return self.role in ADMIN_ROLES

    def scope_branch_id(self, requested_branch_id=None):
        """Branch filter to apply to list queries.

        Super-admins may look at any branch (or all of them); everybody else is
        pinned to their own branch regardless of what they ask for.
        """
        if self.is_super_admin:
            return requested_branch_id or None
        return self.branch_id

    def can_access_branch(self, *branch_ids):
        if self.is_super_admin:
            return True
        return self.branch_id is not None and any(branch_id == self.branch_id for branch_id in branch_ids)


def get_user_role(user):
    if not user or not user.is_authenticated:
        return None
    if user.is_superuser:
        return User.Role.SUPER_ADMIN
    role = getattr(user, "role", None)
    if role:
        return role
    return User.Role.STAFF


def caller_context_for(user):
    role = get_user_role(user)
    if role is None:
        raise PermissionDenied("Authentication is required.")
    if role != User.Role.SUPER_ADMIN and not getattr(user, "branch_id", None):
        raise PermissionDenied("Your account is not assigned to a branch.")
    return CallerContext(user_id=user.id, role=role, branch_id=getattr(user, "branch_id", None))


def user_has_capability(user, capability):
    if not user or not user.is_authenticated:
        return False
    if user.is_superuser:
        return True
    allowed_roles = ROLE_CAPABILITY_MATRIX.get(capability)
    if not allowed_roles:
        return False
    return get_user_role(user) in allowed_roles


class RoleCapabilityPermission(BasePermission):
    """Permission class that validates role capability by action/method and logs denied attempts."""

    message = "You do not have permission to perform this action."

    def has_permission(self, request, view):
        capability_map = getattr(view, "permission_action_map", {})
        action_key = getattr(view, "action", None) or request.method.lower()
        capability = capability_map.get(action_key)
        if capability is None:
            return True

        allowed = user_has_capability(request.user, capability)
        if not allowed:
            logger.warning(
                "permission_denied capability=%s user=%s role=%s method=%s path=%s view=%s action=%s",
                capability,
                getattr(request.user, "username", "anonymous"),
                get_user_role(request.user),
                request.method,
                request.path,
                view.__class__.__name__,
                action_key,
            )
        return allowed
