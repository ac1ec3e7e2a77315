from __future__ import annotations

from datetime import datetime
from enum import StrEnum


class CustomPlanStatus(StrEnum):
    DRAFT = "DRAFT"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED = "APPROVED"
    ACTIVE = "ACTIVE"
    REJECTED = "REJECTED"


CUSTOM_PLAN_TRANSITIONS: dict[CustomPlanStatus, set[CustomPlanStatus]] = {
    CustomPlanStatus.DRAFT: {CustomPlanStatus.PENDING_APPROVAL},
    CustomPlanStatus.PENDING_APPROVAL: {
        CustomPlanStatus.APPROVED,
        CustomPlanStatus.REJECTED,
        CustomPlanStatus.DRAFT,
    },
    CustomPlanStatus.APPROVED: {CustomPlanStatus.ACTIVE},
    CustomPlanStatus.ACTIVE: set(),
    CustomPlanStatus.REJECTED: set(),
}

CUSTOM_PLAN_MODIFIABLE = {CustomPlanStatus.DRAFT, CustomPlanStatus.PENDING_APPROVAL}


def can_custom_plan_transition(source: CustomPlanStatus, target: CustomPlanStatus) -> bool:
    return target in CUSTOM_PLAN_TRANSITIONS.get(source, set())


def can_modify_custom_plan(status: CustomPlanStatus) -> bool:
    return status in CUSTOM_PLAN_MODIFIABLE


class TenantStatus(StrEnum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    CANCELLED = "CANCELLED"


class TenantLifecycle(StrEnum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    DEACTIVATED = "DEACTIVATED"
    ARCHIVED = "ARCHIVED"


TENANT_TRANSITIONS: dict[TenantLifecycle, set[TenantLifecycle]] = {
    TenantLifecycle.PENDING: {
        TenantLifecycle.ACTIVE,
        TenantLifecycle.SUSPENDED,
        TenantLifecycle.DEACTIVATED,
        TenantLifecycle.ARCHIVED,
    },
    TenantLifecycle.ACTIVE: {TenantLifecycle.SUSPENDED, TenantLifecycle.DEACTIVATED},
    TenantLifecycle.SUSPENDED: {
        TenantLifecycle.ACTIVE,
        TenantLifecycle.DEACTIVATED,
        TenantLifecycle.ARCHIVED,
    },
    TenantLifecycle.DEACTIVATED: {TenantLifecycle.ACTIVE, TenantLifecycle.ARCHIVED},
    TenantLifecycle.ARCHIVED: set(),
}

# Deactivated and archived tenants share the CANCELLED column value.
LIFECYCLE_TO_STATUS: dict[TenantLifecycle, TenantStatus] = {
    TenantLifecycle.PENDING: TenantStatus.PENDING,
    TenantLifecycle.ACTIVE: TenantStatus.ACTIVE,
    TenantLifecycle.SUSPENDED: TenantStatus.SUSPENDED,
    TenantLifecycle.DEACTIVATED: TenantStatus.CANCELLED,
    TenantLifecycle.ARCHIVED: TenantStatus.CANCELLED,
}


def resolve_lifecycle(status: TenantStatus, archived_at: datetime | None) -> TenantLifecycle:
    if status == TenantStatus.CANCELLED:
        return TenantLifecycle.ARCHIVED if archived_at is not None else TenantLifecycle.DEACTIVATED
    return TenantLifecycle(status.value)


def can_tenant_transition(source: TenantLifecycle, target: TenantLifecycle) -> bool:
    return target in TENANT_TRANSITIONS.get(source, set())
