from __future__ import annotations

from dataclasses import dataclass, field

import structlog
from sqlmodel import Session, select

from app.domain.models import Tenant, now_utc
from app.domain.state_machine import (
    LIFECYCLE_TO_STATUS,
    TenantLifecycle,
    can_tenant_transition,
)
from app.infra.audit import record_audit
from app.infra.db import get_engine
from app.infra.events import (
    TENANT_ACTIVATED,
    TENANT_ARCHIVED,
    TENANT_DEACTIVATED,
    TENANT_SUSPENDED,
    event_bus,
)
from app.services.errors import ConflictError, NotFoundError, ServiceError, ValidationError

logger = structlog.get_logger(__name__)

_EVENTS = {
    TenantLifecycle.SUSPENDED: TENANT_SUSPENDED,
    TenantLifecycle.ACTIVE: TENANT_ACTIVATED,
    TenantLifecycle.DEACTIVATED: TENANT_DEACTIVATED,
    TenantLifecycle.ARCHIVED: TENANT_ARCHIVED,
}
_AUDIT_ACTIONS = {
    TenantLifecycle.SUSPENDED: "TENANT_SUSPENDED",
    TenantLifecycle.ACTIVE: "TENANT_ACTIVATED",
    TenantLifecycle.DEACTIVATED: "TENANT_DEACTIVATED",
    TenantLifecycle.ARCHIVED: "TENANT_ARCHIVED",
}


@dataclass
class BulkActionResult:
    succeeded: list[str] = field(default_factory=list)
    failed: list[tuple[str, str]] = field(default_factory=list)


def _apply_transition(tenant: Tenant, target: TenantLifecycle, reason: str | None, actor_id: str | None) -> None:
    now = now_utc()
    tenant.status = LIFECYCLE_TO_STATUS[target]
    tenant.updated_at = now
    if target == TenantLifecycle.SUSPENDED:
        tenant.suspended_at = now
        tenant.suspension_reason = reason
        tenant.suspended_by = actor_id
    elif target == TenantLifecycle.ACTIVE:
        tenant.activated_at = now
        tenant.last_activity_at = now
        tenant.suspended_at = None
        tenant.suspension_reason = None
        tenant.suspended_by = None
        tenant.deactivated_at = None
        tenant.deactivation_reason = None
        tenant.deactivated_by = None
    elif target == TenantLifecycle.DEACTIVATED:
        tenant.deactivated_at = now
        tenant.deactivation_reason = reason
        tenant.deactivated_by = actor_id
    elif target == TenantLifecycle.ARCHIVED:
        tenant.archived_at = now
        tenant.archive_reason = reason
        tenant.archived_by = actor_id


class TenantLifecycleService:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _transition(
        self,
        tenant_id: str,
        target: TenantLifecycle,
        *,
        reason: str | None,
        actor_id: str | None,
    ) -> Tenant:
        with self._session() as session:
            tenant = session.exec(select(Tenant).where(Tenant.id == tenant_id).with_for_update()).first()
            if tenant is None:
                raise NotFoundError("tenant not found")
            source = tenant.lifecycle_state
            if source == target:
                raise ConflictError(f"Tenant is already {target.value.lower()}")
            if not can_tenant_transition(source, target):
                raise ValidationError(f"Cannot move tenant from {source.value} to {target.value}")

            _apply_transition(tenant, target, reason, actor_id)
            session.add(tenant)
            record_audit(
                session,
                tenant_id=tenant.id,
                action=_AUDIT_ACTIONS[target],
                entity_type="tenant",
                entity_id=tenant.id,
                actor_id=actor_id,
                changes={"from": source.value, "to": target.value, "reason": reason},
            )
            session.commit()
            session.refresh(tenant)

        logger.info("tenant.transitioned", tenant_id=tenant.id, source=source.value, target=target.value)
        event_bus.publish_dict(
            _EVENTS[target],
            tenant.id,
            {"from": source.value, "to": target.value, "reason": reason},
            actor_id=actor_id,
        )
        return tenant

    def suspend(self, tenant_id: str, reason: str, actor_id: str | None = None) -> Tenant:
        return self._transition(tenant_id, TenantLifecycle.SUSPENDED, reason=reason, actor_id=actor_id)

    def activate(self, tenant_id: str, actor_id: str | None = None, reason: str | None = None) -> Tenant:
        return self._transition(tenant_id, TenantLifecycle.ACTIVE, reason=reason, actor_id=actor_id)

    def deactivate(self, tenant_id: str, reason: str, actor_id: str | None = None) -> Tenant:
        return self._transition(tenant_id, TenantLifecycle.DEACTIVATED, reason=reason, actor_id=actor_id)

    def archive(self, tenant_id: str, reason: str, actor_id: str | None = None) -> Tenant:
        return self._transition(tenant_id, TenantLifecycle.ARCHIVED, reason=reason, actor_id=actor_id)

    def bulk_suspend(self, tenant_ids: list[str], reason: str, actor_id: str | None = None) -> BulkActionResult:
        result = BulkActionResult()
        for tenant_id in tenant_ids:
            try:
                self.suspend(tenant_id, reason, actor_id)
            except ServiceError as exc:
                logger.warning("tenant.bulk_suspend_failed", tenant_id=tenant_id, error=str(exc))
                result.failed.append((tenant_id, str(exc)))
                continue
            result.succeeded.append(tenant_id)
        return result

    def bulk_activate(self, tenant_ids: list[str], actor_id: str | None = None) -> BulkActionResult:
        result = BulkActionResult()
        for tenant_id in tenant_ids:
            try:
                self.activate(tenant_id, actor_id)
            except ServiceError as exc:
                logger.warning("tenant.bulk_activate_failed", tenant_id=tenant_id, error=str(exc))
                result.failed.append((tenant_id, str(exc)))
                continue
            result.succeeded.append(tenant_id)
        return result
