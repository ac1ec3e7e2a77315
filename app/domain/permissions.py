from __future__ import annotations

from typing import Any

PERM_WILDCARD = "*"
PERM_BILLING_READ = "billing.read"
PERM_BILLING_WRITE = "billing.write"
PERM_BILLING_APPROVE = "billing.approve"
PERM_TENANT_READ = "tenant.read"
PERM_TENANT_WRITE = "tenant.write"
PERM_TENANT_LIFECYCLE = "tenant.lifecycle"


def has_permission(claims: dict[str, Any], permission: str) -> bool:
    permissions = claims.get("permissions", [])
    if not isinstance(permissions, list):
        return False
    return permission in permissions or PERM_WILDCARD in permissions
