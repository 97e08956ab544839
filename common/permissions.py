import logging

from rest_framework.permissions import BasePermission

from core.models import AccessEntry

logger = logging.getLogger("security.authorization")

ADMIN = AccessEntry.Role.ADMIN
EMPLOYEE = AccessEntry.Role.EMPLOYEE

ROLE_CAPABILITY_MATRIX = {
    "orders.view": {EMPLOYEE, ADMIN},
    "orders.manage": {EMPLOYEE, ADMIN},
    "orders.delete": {ADMIN},
    "orders.recalc": {ADMIN},
    "payments.view": {EMPLOYEE, ADMIN},
    "payments.register": {EMPLOYEE, ADMIN},
    "payments.register_detached": {ADMIN},
    "catalog.view": {EMPLOYEE, ADMIN},
    "catalog.manage": {EMPLOYEE, ADMIN},
    "journal.view": {EMPLOYEE, ADMIN},
    "journal.manage": {EMPLOYEE, ADMIN},
    "reports.view": {EMPLOYEE, ADMIN},
    "access.manage": {ADMIN},
    "audit.view": {ADMIN},
}


def get_user_role(user):
    """Role of an authenticated user, taken from the access list.

    Superusers are always admins. A user whose email is missing from the
    access list, or whose entry is inactive, has no role at all.
    """
    if not user or not user.is_authenticated:
        return None
    if user.is_superuser:
        return ADMIN
    cached = getattr(user, "_access_role", False)
    if cached is not False:
        return cached
    entry = AccessEntry.objects.active_for_email(user.email)
    role = entry.role if entry else None
    user._access_role = role
    return role


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
    """Permission class that validates role capability by action/method and logs denied attempts.

    Any authenticated user without an active access-list entry is rejected,
    even for actions that map to no capability.
    """

    message = "You do not have permission to perform this action."

    def has_permission(self, request, view):
        action_key = getattr(view, "action", None) or request.method.lower()
        role = get_user_role(request.user)
        if role is None:
            self._log_denied(request, view, action_key, capability=None, role=None)
            return False

        capability_map = getattr(view, "permission_action_map", {})
        capability = capability_map.get(action_key)
        if capability is None:
            return True

        allowed = user_has_capability(request.user, capability)
        if not allowed:
            self._log_denied(request, view, action_key, capability=capability, role=role)
        return allowed

    def _log_denied(self, request, view, action_key, *, capability, role):
        logger.warning(
            "permission_denied capability=%s user=%s role=%s method=%s path=%s view=%s action=%s",
            capability,
            getattr(request.user, "username", "anonymous"),
            role,
            request.method,
            request.path,
            view.__class__.__name__,
            action_key,
        )
