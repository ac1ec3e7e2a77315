from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status

from app.api.deps import get_current_claims, require_perm
from app.domain.models import (
    CustomPlanCloneRequest,
    CustomPlanCreate,
    CustomPlanListRead,
    CustomPlanRead,
    CustomPlanRejectRequest,
    CustomPlanUpdate,
    PlanTier,
)
from app.domain.permissions import PERM_BILLING_APPROVE, PERM_BILLING_READ, PERM_BILLING_WRITE
from app.domain.state_machine import CustomPlanStatus
from app.infra.audit import set_audit_context
from app.services.custom_plan_service import CustomPlanService
from app.services.errors import ConflictError, NotFoundError, ValidationError

router = APIRouter()


def get_custom_plan_service() -> CustomPlanService:
    return CustomPlanService()


Claims = Annotated[dict[str, Any], Depends(get_current_claims)]
Service = Annotated[CustomPlanService, Depends(get_custom_plan_service)]


def _handle_custom_plan_error(exc: Exception) -> None:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, ValidationError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    raise exc


def _audit_transition(request: Request, plan_id: str, action: str, row: Any) -> None:
    set_audit_context(
        request,
        action=f"billing.custom_plan.{action}",
        resource=f"/api/billing/custom-plans/{plan_id}/{action.replace('_', '-')}",
        detail={"what": {"custom_plan_id": plan_id, "status": row.status.value}},
    )


@router.get(
    "",
    response_model=CustomPlanListRead,
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def list_custom_plans(
    service: Service,
    tenant_id: str | None = None,
    status_filter: Annotated[CustomPlanStatus | None, Query(alias="status")] = None,
    tier: PlanTier | None = None,
    search: str | None = None,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
) -> CustomPlanListRead:
    rows, total, total_pages = service.list_plans(
        tenant_id=tenant_id,
        status=status_filter,
        tier=tier,
        search=search,
        page=page,
        limit=limit,
    )
    return CustomPlanListRead(
        items=[CustomPlanRead.model_validate(item) for item in rows],
        total=total,
        page=page,
        limit=limit,
        total_pages=total_pages,
    )


@router.get(
    "/tenant/{tenant_id}",
    response_model=CustomPlanRead,
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def get_active_for_tenant(tenant_id: str, service: Service) -> CustomPlanRead:
    try:
        return CustomPlanRead.model_validate(service.get_active_for_tenant(tenant_id))
    except NotFoundError as exc:
        _handle_custom_plan_error(exc)
        raise


@router.get(
    "/{plan_id}",
    response_model=CustomPlanRead,
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def get_custom_plan(plan_id: str, service: Service) -> CustomPlanRead:
    try:
        return CustomPlanRead.model_validate(service.get_plan(plan_id))
    except NotFoundError as exc:
        _handle_custom_plan_error(exc)
        raise


@router.post(
    "",
    response_model=CustomPlanRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def create_custom_plan(
    payload: CustomPlanCreate,
    request: Request,
    claims: Claims,
    service: Service,
) -> CustomPlanRead:
    try:
        row = service.create_plan(payload, created_by=claims["sub"])
        set_audit_context(
            request,
            action="billing.custom_plan.create",
            resource="/api/billing/custom-plans",
            detail={
                "what": {
                    "custom_plan_id": row.id,
                    "tenant_id": row.tenant_id,
                    "monthly_total_cents": row.monthly_total_cents,
                }
            },
        )
        return CustomPlanRead.model_validate(row)
    except (NotFoundError, ValidationError) as exc:
        _handle_custom_plan_error(exc)
        raise


@router.put(
    "/{plan_id}",
    response_model=CustomPlanRead,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def update_custom_plan(
    plan_id: str,
    payload: CustomPlanUpdate,
    request: Request,
    service: Service,
) -> CustomPlanRead:
    try:
        row = service.update_plan(plan_id, payload)
        set_audit_context(
            request,
            action="billing.custom_plan.update",
            resource=f"/api/billing/custom-plans/{plan_id}",
            detail={"what": {"fields": sorted(payload.model_dump(exclude_unset=True))}},
        )
        return CustomPlanRead.model_validate(row)
    except (NotFoundError, ValidationError) as exc:
        _handle_custom_plan_error(exc)
        raise


@router.post(
    "/{plan_id}/submit",
    response_model=CustomPlanRead,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def submit_for_approval(plan_id: str, request: Request, service: Service) -> CustomPlanRead:
    try:
        row = service.submit_for_approval(plan_id)
        _audit_transition(request, plan_id, "submit", row)
        return CustomPlanRead.model_validate(row)
    except (NotFoundError, ValidationError) as exc:
        _handle_custom_plan_error(exc)
        raise


@router.post(
    "/{plan_id}/approve",
    response_model=CustomPlanRead,
    dependencies=[Depends(require_perm(PERM_BILLING_APPROVE))],
)
def approve_custom_plan(plan_id: str, request: Request, claims: Claims, service: Service) -> CustomPlanRead:
    try:
        row = service.approve(plan_id, approved_by=claims["sub"])
        _audit_transition(request, plan_id, "approve", row)
        return CustomPlanRead.model_validate(row)
    except (NotFoundError, ValidationError) as exc:
        _handle_custom_plan_error(exc)
        raise


@router.post(
    "/{plan_id}/reject",
    response_model=CustomPlanRead,
    dependencies=[Depends(require_perm(PERM_BILLING_APPROVE))],
)
def reject_custom_plan(
    plan_id: str,
    payload: CustomPlanRejectRequest,
    request: Request,
    claims: Claims,
    service: Service,
) -> CustomPlanRead:
    try:
        row = service.reject(plan_id, payload.reason, rejected_by=claims["sub"])
        _audit_transition(request, plan_id, "reject", row)
        return CustomPlanRead.model_validate(row)
    except (NotFoundError, ValidationError) as exc:
        _handle_custom_plan_error(exc)
        raise


@router.post(
    "/{plan_id}/return-to-draft",
    response_model=CustomPlanRead,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def return_to_draft(plan_id: str, request: Request, service: Service) -> CustomPlanRead:
    try:
        row = service.return_to_draft(plan_id)
        _audit_transition(request, plan_id, "return_to_draft", row)
        return CustomPlanRead.model_validate(row)
    except (NotFoundError, ValidationError) as exc:
        _handle_custom_plan_error(exc)
        raise


@router.post(
    "/{plan_id}/activate",
    response_model=CustomPlanRead,
    dependencies=[Depends(require_perm(PERM_BILLING_APPROVE))],
)
def activate_custom_plan(plan_id: str, request: Request, claims: Claims, service: Service) -> CustomPlanRead:
    try:
        row = service.activate(plan_id, activated_by=claims["sub"])
        _audit_transition(request, plan_id, "activate", row)
        return CustomPlanRead.model_validate(row)
    except (NotFoundError, ValidationError) as exc:
        _handle_custom_plan_error(exc)
        raise


@router.delete(
    "/{plan_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def delete_custom_plan(plan_id: str, request: Request, service: Service) -> Response:
    try:
        service.delete_plan(plan_id)
        set_audit_context(
            request,
            action="billing.custom_plan.delete",
            resource=f"/api/billing/custom-plans/{plan_id}",
            detail={"what": {"custom_plan_id": plan_id}},
        )
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except (NotFoundError, ValidationError) as exc:
        _handle_custom_plan_error(exc)
        raise


@router.post(
    "/{plan_id}/clone",
    response_model=CustomPlanRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def clone_custom_plan(
    plan_id: str,
    payload: CustomPlanCloneRequest,
    request: Request,
    claims: Claims,
    service: Service,
) -> CustomPlanRead:
    try:
        row = service.clone_plan(plan_id, payload.new_tenant_id, created_by=claims["sub"])
        set_audit_context(
            request,
            action="billing.custom_plan.clone",
            resource=f"/api/billing/custom-plans/{plan_id}/clone",
            detail={"what": {"source_plan_id": plan_id, "custom_plan_id": row.id, "tenant_id": row.tenant_id}},
        )
        return CustomPlanRead.model_validate(row)
    except (NotFoundError, ValidationError) as exc:
        _handle_custom_plan_error(exc)
        raise
