from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, status

from app.api.deps import require_perm
from app.domain.models import (
    ProvisioningReportRead,
    ProvisioningStatusRead,
    ProvisioningStepRead,
    ProvisionTenantRequest,
)
from app.domain.permissions import PERM_TENANT_LIFECYCLE, PERM_TENANT_READ
from app.infra.audit import set_audit_context
from app.services.errors import NotFoundError
from app.services.tenant_provisioning_service import ProvisioningReport, TenantProvisioningService
from app.services.tenant_service import TenantService

router = APIRouter()


def get_provisioning_service() -> TenantProvisioningService:
    return TenantProvisioningService()


def get_tenant_service() -> TenantService:
    return TenantService()


Provisioning = Annotated[TenantProvisioningService, Depends(get_provisioning_service)]
Tenants = Annotated[TenantService, Depends(get_tenant_service)]


def provisioning_report_read(report: ProvisioningReport) -> ProvisioningReportRead:
    return ProvisioningReportRead(
        tenant_id=report.tenant_id,
        success=report.success,
        steps=[
            ProvisioningStepRead(
                name=step.name,
                status=step.status,
                started_at=step.started_at,
                completed_at=step.completed_at,
                duration_ms=step.duration_ms,
                error=step.error,
            )
            for step in report.steps
        ],
        schema_name=report.schema_name,
        admin_user_id=report.admin_user_id,
        invitation_sent=report.invitation_sent,
        backup_path=report.backup_path,
        error=report.error,
    )


def _ensure_tenant(tenants: TenantService, tenant_id: str) -> None:
    try:
        tenants.get_tenant(tenant_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


@router.post(
    "/{tenant_id}/provision",
    response_model=ProvisioningReportRead,
    dependencies=[Depends(require_perm(PERM_TENANT_LIFECYCLE))],
)
def provision_tenant(
    tenant_id: str,
    payload: ProvisionTenantRequest,
    request: Request,
    tenants: Tenants,
    provisioning: Provisioning,
) -> ProvisioningReportRead:
    _ensure_tenant(tenants, tenant_id)
    report = provisioning.provision_tenant(tenant_id, payload)
    set_audit_context(
        request,
        action="tenant.provision",
        resource=f"/api/tenants/{tenant_id}/provision",
        detail={"what": {"success": report.success, "error": report.error}},
    )
    return provisioning_report_read(report)


@router.post(
    "/{tenant_id}/deprovision",
    response_model=ProvisioningReportRead,
    dependencies=[Depends(require_perm(PERM_TENANT_LIFECYCLE))],
)
def deprovision_tenant(
    tenant_id: str,
    request: Request,
    tenants: Tenants,
    provisioning: Provisioning,
) -> ProvisioningReportRead:
    _ensure_tenant(tenants, tenant_id)
    report = provisioning.deprovision_tenant(tenant_id)
    set_audit_context(
        request,
        action="tenant.deprovision",
        resource=f"/api/tenants/{tenant_id}/deprovision",
        detail={"what": {"success": report.success, "backup_path": report.backup_path}},
    )
    return provisioning_report_read(report)


@router.get(
    "/{tenant_id}/provisioning-status",
    response_model=ProvisioningStatusRead,
    dependencies=[Depends(require_perm(PERM_TENANT_READ))],
)
def get_provisioning_status(tenant_id: str, provisioning: Provisioning) -> ProvisioningStatusRead:
    label, state = provisioning.get_provisioning_status(tenant_id)
    return ProvisioningStatusRead(tenant_id=tenant_id, status=label, lifecycle_state=state)
