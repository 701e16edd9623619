from __future__ import annotations

from typing import Iterable, Tuple

from api.authentication import Principal

ROLE_ADMIN = "ADMIN"
ROLE_TEACHER = "TEACHER"

PERM_REQUEST_VIEW_ALL = "requisitions.request.view_all"
PERM_REQUEST_VIEW_OWN = "requisitions.request.view_own"
PERM_REQUEST_SUBMIT = "requisitions.request.submit"
PERM_REQUEST_APPROVE = "requisitions.request.approve"
PERM_REQUEST_REJECT = "requisitions.request.reject"
PERM_REQUEST_RESPOND = "requisitions.request.respond"
PERM_REQUEST_ADJUST = "requisitions.request.adjust"
PERM_REQUEST_RETURN = "requisitions.request.return"
PERM_REQUEST_INSPECT = "requisitions.request.inspect"
PERM_REQUEST_DELETE = "requisitions.request.delete"
PERM_REPORT_SUBMIT = "requisitions.report.submit"
PERM_REPORT_MANAGE = "requisitions.report.manage"
PERM_INVENTORY_VIEW = "requisitions.inventory.view"
PERM_NOTIFICATIONS_VIEW = "requisitions.notifications.view"
PERM_BUDGET_VIEW = "requisitions.budget.view"
PERM_BUDGET_MANAGE = "requisitions.budget.manage"

_ROLE_PERMISSION_MAP = {
    ROLE_ADMIN: {
        PERM_REQUEST_VIEW_ALL,
        PERM_REQUEST_APPROVE,
        PERM_REQUEST_REJECT,
        PERM_REQUEST_RESPOND,
        PERM_REQUEST_ADJUST,
        PERM_REQUEST_INSPECT,
        PERM_REQUEST_DELETE,
        PERM_REPORT_MANAGE,
        PERM_INVENTORY_VIEW,
        PERM_NOTIFICATIONS_VIEW,
        PERM_BUDGET_VIEW,
        PERM_BUDGET_MANAGE,
    },
    ROLE_TEACHER: {
        PERM_REQUEST_VIEW_OWN,
        PERM_REQUEST_SUBMIT,
        PERM_REQUEST_RETURN,
        PERM_REPORT_SUBMIT,
        PERM_INVENTORY_VIEW,
        PERM_NOTIFICATIONS_VIEW,
    },
}


def _dedupe_preserve_order(items: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(items))


def _normalize_roles(roles: Iterable[str]) -> list[str]:
    return _dedupe_preserve_order(
        str(role).strip().upper() for role in roles if str(role).strip()
    )


def _permissions_for_roles(roles: Iterable[str]) -> list[str]:
    permissions: set[str] = set()
    for role in roles:
        permissions |= _ROLE_PERMISSION_MAP.get(role, set())
    return sorted(permissions)


def resolve_roles_and_permissions(
    request, principal: Principal
) -> Tuple[list[str], list[str]]:
    if hasattr(request, "_rbac_cache"):
        cached = request._rbac_cache
        return cached["roles"], cached["permissions"]

    roles = _normalize_roles(principal.roles or [])
    permissions = _permissions_for_roles(roles)

    request._rbac_cache = {"roles": roles, "permissions": permissions}
    return roles, permissions


def has_permission(request, permission: str) -> bool:
    _, permissions = resolve_roles_and_permissions(request, request.user)
    return permission in permissions
