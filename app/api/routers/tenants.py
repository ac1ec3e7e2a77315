from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status

from app.api.deps import get_current_claims, require_perm
from app.api.routers.tenant_provisioning import provisioning_report_read
from app.domain.models import (
    AuditLogRead,
    PlanTier,
    TenantActivateRequest,
    TenantBulkActionRead,
    TenantBulkActionRequest,
    TenantBulkFailure,
    TenantCreate,
    TenantCreateRead,
    TenantListRead,
    TenantNoteCreate,
    TenantNoteRead,
    TenantNoteUpdate,
    TenantRead,
    TenantReasonRequest,
    TenantStatsRead,
    TenantUpdate,
    TenantUsageRead,
)
from app.domain.permissions import PERM_TENANT_LIFECYCLE, PERM_TENANT_READ, PERM_TENANT_WRITE
from app.domain.state_machine import TenantLifecycle
from app.infra.audit import set_audit_context
from app.services.errors import ConflictError, NotFoundError, ValidationError
from app.services.tenant_lifecycle_service import BulkActionResult, TenantLifecycleService
from app.services.tenant_service import TenantService

router = APIRouter()


def get_tenant_service() -> TenantService:
    return TenantService()


def get_lifecycle_service() -> TenantLifecycleService:
    return TenantLifecycleService()


Claims = Annotated[dict[str, Any], Depends(get_current_claims)]
Service = Annotated[TenantService, Depends(get_tenant_service)]
Lifecycle = Annotated[TenantLifecycleService, Depends(get_lifecycle_service)]


def _handle_tenant_error(exc: Exception) -> None:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, ValidationError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    raise exc


def _bulk_read(result: BulkActionResult) -> TenantBulkActionRead:
    return TenantBulkActionRead(
        succeeded=result.succeeded,
        failed=[TenantBulkFailure(tenant_id=tenant_id, error=error) for tenant_id, error in result.failed],
    )


@router.post(
    "",
    response_model=TenantCreateRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_TENANT_WRITE))],
)
def create_tenant(
    payload: TenantCreate,
    request: Request,
    claims: Claims,
    service: Service,
) -> TenantCreateRead:
    try:
        tenant, report = service.create_tenant(payload, created_by=claims["sub"])
        set_audit_context(
            request,
            action="tenant.create",
            resource="/api/tenants",
            detail={
                "what": {
                    "tenant_id": tenant.id,
                    "slug": tenant.slug,
                    "provisioned": report.success if report is not None else None,
                }
            },
        )
        return TenantCreateRead(
            tenant=TenantRead.model_validate(tenant),
            provisioning=provisioning_report_read(report) if report is not None else None,
        )
    except (ConflictError, ValidationError) as exc:
        _handle_tenant_error(exc)
        raise


@router.get(
    "",
    response_model=TenantListRead,
    dependencies=[Depends(require_perm(PERM_TENANT_READ))],
)
def list_tenants(
    service: Service,
    state: TenantLifecycle | None = None,
    tier: PlanTier | None = None,
    search: str | None = None,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
) -> TenantListRead:
    rows, total = service.list_tenants(state=state, tier=tier, search=search, page=page, limit=limit)
    return TenantListRead(
        items=[TenantRead.model_validate(item) for item in rows],
        total=total,
        page=page,
        limit=limit,
    )


@router.get(
    "/stats",
    response_model=TenantStatsRead,
    dependencies=[Depends(require_perm(PERM_TENANT_READ))],
)
def get_stats(service: Service) -> TenantStatsRead:
    return service.get_stats()


@router.get(
    "/search",
    response_model=list[TenantRead],
    dependencies=[Depends(require_perm(PERM_TENANT_READ))],
)
def search_tenants(
    service: Service,
    q: Annotated[str, Query(min_length=1)],
    limit: Annotated[int, Query(ge=1, le=50)] = 10,
) -> list[TenantRead]:
    return [TenantRead.model_validate(item) for item in service.search_tenants(q, limit)]


@router.get(
    "/near-limits",
    response_model=list[TenantUsageRead],
    dependencies=[Depends(require_perm(PERM_TENANT_READ))],
)
def list_near_limits(
    service: Service,
    threshold: Annotated[float, Query(gt=0, le=100)] = 80,
) -> list[TenantUsageRead]:
    return service.list_near_limits(threshold)


@router.get(
    "/expiring-trials",
    response_model=list[TenantRead],
    dependencies=[Depends(require_perm(PERM_TENANT_READ))],
)
def list_expiring_trials(
    service: Service,
    days: Annotated[int, Query(ge=1, le=365)] = 7,
) -> list[TenantRead]:
    return [TenantRead.model_validate(item) for item in service.list_expiring_trials(days)]


@router.post(
    "/bulk/suspend",
    response_model=TenantBulkActionRead,
    dependencies=[Depends(require_perm(PERM_TENANT_LIFECYCLE))],
)
def bulk_suspend(
    payload: TenantBulkActionRequest,
    request: Request,
    claims: Claims,
    lifecycle: Lifecycle,
) -> TenantBulkActionRead:
    if not payload.reason or not payload.reason.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="a suspension reason is required")
    result = lifecycle.bulk_suspend(payload.tenant_ids, payload.reason, actor_id=claims["sub"])
    set_audit_context(
        request,
        action="tenant.bulk_suspend",
        resource="/api/tenants/bulk/suspend",
        detail={"what": {"succeeded": len(result.succeeded), "failed": len(result.failed)}},
    )
    return _bulk_read(result)


@router.post(
    "/bulk/activate",
    response_model=TenantBulkActionRead,
    dependencies=[Depends(require_perm(PERM_TENANT_LIFECYCLE))],
)
def bulk_activate(
    payload: TenantBulkActionRequest,
    request: Request,
    claims: Claims,
    lifecycle: Lifecycle,
) -> TenantBulkActionRead:
    result = lifecycle.bulk_activate(payload.tenant_ids, actor_id=claims["sub"])
    set_audit_context(
        request,
        action="tenant.bulk_activate",
        resource="/api/tenants/bulk/activate",
        detail={"what": {"succeeded": len(result.succeeded), "failed": len(result.failed)}},
    )
    return _bulk_read(result)


@router.get(
    "/slug/{slug}",
    response_model=TenantRead,
    dependencies=[Depends(require_perm(PERM_TENANT_READ))],
)
def get_tenant_by_slug(slug: str, service: Service) -> TenantRead:
    try:
        return TenantRead.model_validate(service.get_tenant_by_slug(slug))
    except NotFoundError as exc:
        _handle_tenant_error(exc)
        raise


@router.get(
    "/{tenant_id}",
    response_model=TenantRead,
    dependencies=[Depends(require_perm(PERM_TENANT_READ))],
)
def get_tenant(tenant_id: str, service: Service) -> TenantRead:
    try:
        return TenantRead.model_validate(service.get_tenant(tenant_id))
    except NotFoundError as exc:
        _handle_tenant_error(exc)
        raise


@router.put(
    "/{tenant_id}",
    response_model=TenantRead,
    dependencies=[Depends(require_perm(PERM_TENANT_WRITE))],
)
def update_tenant(
    tenant_id: str,
    payload: TenantUpdate,
    request: Request,
    service: Service,
) -> TenantRead:
    try:
        tenant = service.update_tenant(tenant_id, payload)
        set_audit_context(
            request,
            action="tenant.update",
            resource=f"/api/tenants/{tenant_id}",
            detail={"what": {"fields": sorted(payload.model_dump(exclude_unset=True))}},
        )
        return TenantRead.model_validate(tenant)
    except (NotFoundError, ConflictError, ValidationError) as exc:
        _handle_tenant_error(exc)
        raise


@router.get(
    "/{tenant_id}/usage",
    response_model=TenantUsageRead,
    dependencies=[Depends(require_perm(PERM_TENANT_READ))],
)
def get_usage(tenant_id: str, service: Service) -> TenantUsageRead:
    try:
        return service.get_usage(tenant_id)
    except NotFoundError as exc:
        _handle_tenant_error(exc)
        raise


@router.get(
    "/{tenant_id}/activities",
    response_model=list[AuditLogRead],
    dependencies=[Depends(require_perm(PERM_TENANT_READ))],
)
def list_activities(
    tenant_id: str,
    service: Service,
    limit: Annotated[int, Query(ge=1, le=500)] = 50,
) -> list[AuditLogRead]:
    try:
        return [AuditLogRead.model_validate(item) for item in service.list_activities(tenant_id, limit)]
    except NotFoundError as exc:
        _handle_tenant_error(exc)
        raise


@router.post(
    "/{tenant_id}/suspend",
    response_model=TenantRead,
    dependencies=[Depends(require_perm(PERM_TENANT_LIFECYCLE))],
)
def suspend_tenant(
    tenant_id: str,
    payload: TenantReasonRequest,
    request: Request,
    claims: Claims,
    lifecycle: Lifecycle,
) -> TenantRead:
    try:
        tenant = lifecycle.suspend(tenant_id, payload.reason, actor_id=claims["sub"])
        set_audit_context(
            request,
            action="tenant.suspend",
            resource=f"/api/tenants/{tenant_id}/suspend",
            detail={"what": {"reason": payload.reason}},
        )
        return TenantRead.model_validate(tenant)
    except (NotFoundError, ConflictError, ValidationError) as exc:
        _handle_tenant_error(exc)
        raise


@router.post(
    "/{tenant_id}/activate",
    response_model=TenantRead,
    dependencies=[Depends(require_perm(PERM_TENANT_LIFECYCLE))],
)
def activate_tenant(
    tenant_id: str,
    payload: TenantActivateRequest,
    request: Request,
    claims: Claims,
    lifecycle: Lifecycle,
) -> TenantRead:
    try:
        tenant = lifecycle.activate(tenant_id, actor_id=claims["sub"], reason=payload.reason)
        set_audit_context(
            request,
            action="tenant.activate",
            resource=f"/api/tenants/{tenant_id}/activate",
            detail={"what": {"reason": payload.reason}},
        )
        return TenantRead.model_validate(tenant)
    except (NotFoundError, ConflictError, ValidationError) as exc:
        _handle_tenant_error(exc)
        raise


@router.post(
    "/{tenant_id}/deactivate",
    response_model=TenantRead,
    dependencies=[Depends(require_perm(PERM_TENANT_LIFECYCLE))],
)
def deactivate_tenant(
    tenant_id: str,
    payload: TenantReasonRequest,
    request: Request,
    claims: Claims,
    lifecycle: Lifecycle,
) -> TenantRead:
    try:
        tenant = lifecycle.deactivate(tenant_id, payload.reason, actor_id=claims["sub"])
        set_audit_context(
            request,
            action="tenant.deactivate",
            resource=f"/api/tenants/{tenant_id}/deactivate",
            detail={"what": {"reason": payload.reason}},
        )
        return TenantRead.model_validate(tenant)
    except (NotFoundError, ConflictError, ValidationError) as exc:
        _handle_tenant_error(exc)
        raise


@router.post(
    "/{tenant_id}/archive",
    response_model=TenantRead,
    dependencies=[Depends(require_perm(PERM_TENANT_LIFECYCLE))],
)
def archive_tenant(
    tenant_id: str,
    payload: TenantReasonRequest,
    request: Request,
    claims: Claims,
    lifecycle: Lifecycle,
) -> TenantRead:
    try:
        tenant = lifecycle.archive(tenant_id, payload.reason, actor_id=claims["sub"])
        set_audit_context(
            request,
            action="tenant.archive",
            resource=f"/api/tenants/{tenant_id}/archive",
            detail={"what": {"reason": payload.reason}},
        )
        return TenantRead.model_validate(tenant)
    except (NotFoundError, ConflictError, ValidationError) as exc:
        _handle_tenant_error(exc)
        raise


@router.get(
    "/{tenant_id}/notes",
    response_model=list[TenantNoteRead],
    dependencies=[Depends(require_perm(PERM_TENANT_READ))],
)
def list_notes(tenant_id: str, service: Service) -> list[TenantNoteRead]:
    try:
        return [TenantNoteRead.model_validate(item) for item in service.list_notes(tenant_id)]
    except NotFoundError as exc:
        _handle_tenant_error(exc)
        raise


@router.post(
    "/{tenant_id}/notes",
    response_model=TenantNoteRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_TENANT_WRITE))],
)
def add_note(
    tenant_id: str,
    payload: TenantNoteCreate,
    request: Request,
    claims: Claims,
    service: Service,
) -> TenantNoteRead:
    try:
        note = service.add_note(tenant_id, payload, created_by=claims["sub"])
        set_audit_context(
            request,
            action="tenant.note.create",
            resource=f"/api/tenants/{tenant_id}/notes",
            detail={"what": {"note_id": note.id, "category": note.category}},
        )
        return TenantNoteRead.model_validate(note)
    except (NotFoundError, ValidationError) as exc:
        _handle_tenant_error(exc)
        raise


@router.put(
    "/{tenant_id}/notes/{note_id}",
    response_model=TenantNoteRead,
    dependencies=[Depends(require_perm(PERM_TENANT_WRITE))],
)
def update_note(
    tenant_id: str,
    note_id: str,
    payload: TenantNoteUpdate,
    request: Request,
    service: Service,
) -> TenantNoteRead:
    try:
        note = service.update_note(tenant_id, note_id, payload)
        set_audit_context(
            request,
            action="tenant.note.update",
            resource=f"/api/tenants/{tenant_id}/notes/{note_id}",
            detail={"what": {"fields": sorted(payload.model_dump(exclude_unset=True))}},
        )
        return TenantNoteRead.model_validate(note)
    except (NotFoundError, ValidationError) as exc:
        _handle_tenant_error(exc)
        raise


@router.delete(
    "/{tenant_id}/notes/{note_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_perm(PERM_TENANT_WRITE))],
)
def delete_note(tenant_id: str, note_id: str, request: Request, service: Service) -> Response:
    try:
        service.delete_note(tenant_id, note_id)
    except NotFoundError as exc:
        _handle_tenant_error(exc)
    set_audit_context(
        request,
        action="tenant.note.delete",
        resource=f"/api/tenants/{tenant_id}/notes/{note_id}",
        detail={"what": {"note_id": note_id}},
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)
