from __future__ import annotations

from datetime import UTC, datetime

import pytest

from app.domain.billing_cycles import add_months, round_cents
from app.domain.state_machine import (
    CustomPlanStatus,
    TenantLifecycle,
    TenantStatus,
    can_custom_plan_transition,
    can_modify_custom_plan,
    can_tenant_transition,
    resolve_lifecycle,
)


@pytest.mark.parametrize(
    ("source", "target", "allowed"),
    [
        (TenantLifecycle.PENDING, TenantLifecycle.ACTIVE, True),
        (TenantLifecycle.PENDING, TenantLifecycle.ARCHIVED, True),
        (TenantLifecycle.ACTIVE, TenantLifecycle.SUSPENDED, True),
        (TenantLifecycle.ACTIVE, TenantLifecycle.ARCHIVED, False),
        (TenantLifecycle.SUSPENDED, TenantLifecycle.ACTIVE, True),
        (TenantLifecycle.DEACTIVATED, TenantLifecycle.ACTIVE, True),
        (TenantLifecycle.DEACTIVATED, TenantLifecycle.SUSPENDED, False),
        (TenantLifecycle.ARCHIVED, TenantLifecycle.ACTIVE, False),
    ],
)
def test_tenant_transitions(source: TenantLifecycle, target: TenantLifecycle, allowed: bool) -> None:
    assert can_tenant_transition(source, target) is allowed


def test_cancelled_status_resolves_by_archive_marker() -> None:
    archived_at = datetime(2026, 1, 1, tzinfo=UTC)
    assert resolve_lifecycle(TenantStatus.CANCELLED, None) == TenantLifecycle.DEACTIVATED
    assert resolve_lifecycle(TenantStatus.CANCELLED, archived_at) == TenantLifecycle.ARCHIVED
    assert resolve_lifecycle(TenantStatus.SUSPENDED, None) == TenantLifecycle.SUSPENDED


def test_custom_plan_transitions() -> None:
    assert can_custom_plan_transition(CustomPlanStatus.DRAFT, CustomPlanStatus.PENDING_APPROVAL)
    assert can_custom_plan_transition(CustomPlanStatus.PENDING_APPROVAL, CustomPlanStatus.DRAFT)
    assert can_custom_plan_transition(CustomPlanStatus.APPROVED, CustomPlanStatus.ACTIVE)
    assert not can_custom_plan_transition(CustomPlanStatus.DRAFT, CustomPlanStatus.APPROVED)
    assert not can_custom_plan_transition(CustomPlanStatus.REJECTED, CustomPlanStatus.DRAFT)
    assert not can_custom_plan_transition(CustomPlanStatus.ACTIVE, CustomPlanStatus.DRAFT)

    assert can_modify_custom_plan(CustomPlanStatus.PENDING_APPROVAL)
    assert not can_modify_custom_plan(CustomPlanStatus.APPROVED)


def test_add_months_clamps_to_month_end() -> None:
    assert add_months(datetime(2026, 1, 31, tzinfo=UTC), 1) == datetime(2026, 2, 28, tzinfo=UTC)
    assert add_months(datetime(2026, 11, 15, tzinfo=UTC), 3) == datetime(2027, 2, 15, tzinfo=UTC)


def test_round_cents_half_up() -> None:
    assert round_cents(2.5) == 3
    assert round_cents(1499.5) == 1500
    assert round_cents(10) == 10
