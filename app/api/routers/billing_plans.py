from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, status

from app.api.deps import require_perm
from app.domain.models import (
    PlanComparisonRead,
    PlanDefaultsRead,
    PlanDefinitionCreate,
    PlanDefinitionRead,
    PlanDefinitionUpdate,
    PlanTier,
    ProrationRead,
    ProrationRequest,
    SeedResultRead,
)
from app.domain.permissions import PERM_BILLING_READ, PERM_BILLING_WRITE
from app.infra.audit import set_audit_context
from app.services.errors import ConflictError, NotFoundError, ValidationError
from app.services.plan_definition_service import (
    PlanDefinitionService,
    default_features_for_tier,
    default_limits_for_tier,
)

router = APIRouter()


def get_plan_definition_service() -> PlanDefinitionService:
    return PlanDefinitionService()


Service = Annotated[PlanDefinitionService, Depends(get_plan_definition_service)]


def _handle_plan_error(exc: Exception) -> None:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, ValidationError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    raise exc


@router.get(
    "",
    response_model=list[PlanDefinitionRead],
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def list_plans(service: Service, include_inactive: bool = False) -> list[PlanDefinitionRead]:
    rows = service.list_plans(include_inactive=include_inactive)
    return [PlanDefinitionRead.model_validate(item) for item in rows]


@router.get(
    "/public",
    response_model=list[PlanDefinitionRead],
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def list_public_plans(service: Service) -> list[PlanDefinitionRead]:
    return [PlanDefinitionRead.model_validate(item) for item in service.list_public_plans()]


@router.get(
    "/compare",
    response_model=PlanComparisonRead,
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def compare_plans(current_plan_id: str, new_plan_id: str, service: Service) -> PlanComparisonRead:
    try:
        return service.compare_plans(current_plan_id, new_plan_id)
    except NotFoundError as exc:
        _handle_plan_error(exc)
        raise


@router.post(
    "/proration",
    response_model=ProrationRead,
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def calculate_proration(payload: ProrationRequest, service: Service) -> ProrationRead:
    try:
        return service.calculate_prorated_pricing(
            payload.current_plan_id,
            payload.new_plan_id,
            current_period_end=payload.current_period_end,
            billing_cycle=payload.billing_cycle,
            new_billing_cycle=payload.new_billing_cycle,
        )
    except NotFoundError as exc:
        _handle_plan_error(exc)
        raise


@router.get(
    "/defaults/{tier}",
    response_model=PlanDefaultsRead,
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def get_tier_defaults(tier: PlanTier) -> PlanDefaultsRead:
    return PlanDefaultsRead(
        tier=tier,
        limits=default_limits_for_tier(tier),
        features=default_features_for_tier(tier),
    )


@router.post(
    "/seed",
    response_model=SeedResultRead,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def seed_default_plans(request: Request, service: Service) -> SeedResultRead:
    seeded = service.seed_default_plans()
    set_audit_context(
        request,
        action="billing.plan.seed",
        resource="/api/billing/plans/seed",
        detail={"what": {"seeded_count": seeded}},
    )
    return SeedResultRead(seeded_count=seeded)


@router.get(
    "/code/{code}",
    response_model=PlanDefinitionRead,
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def get_plan_by_code(code: str, service: Service) -> PlanDefinitionRead:
    try:
        return PlanDefinitionRead.model_validate(service.get_plan_by_code(code))
    except (NotFoundError, ValidationError) as exc:
        _handle_plan_error(exc)
        raise


@router.get(
    "/tier/{tier}",
    response_model=PlanDefinitionRead,
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def get_plan_by_tier(tier: PlanTier, service: Service) -> PlanDefinitionRead:
    try:
        return PlanDefinitionRead.model_validate(service.get_plan_by_tier(tier))
    except NotFoundError as exc:
        _handle_plan_error(exc)
        raise


@router.get(
    "/{plan_id}",
    response_model=PlanDefinitionRead,
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def get_plan(plan_id: str, service: Service) -> PlanDefinitionRead:
    try:
        return PlanDefinitionRead.model_validate(service.get_plan(plan_id))
    except NotFoundError as exc:
        _handle_plan_error(exc)
        raise


@router.post(
    "",
    response_model=PlanDefinitionRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def create_plan(payload: PlanDefinitionCreate, request: Request, service: Service) -> PlanDefinitionRead:
    try:
        row = service.create_plan(payload)
        set_audit_context(
            request,
            action="billing.plan.create",
            resource="/api/billing/plans",
            detail={"what": {"plan_id": row.id, "code": row.code, "tier": row.tier.value}},
        )
        return PlanDefinitionRead.model_validate(row)
    except (ConflictError, ValidationError) as exc:
        _handle_plan_error(exc)
        raise


@router.put(
    "/{plan_id}",
    response_model=PlanDefinitionRead,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def update_plan(
    plan_id: str,
    payload: PlanDefinitionUpdate,
    request: Request,
    service: Service,
) -> PlanDefinitionRead:
    try:
        row = service.update_plan(plan_id, payload)
        set_audit_context(
            request,
            action="billing.plan.update",
            resource=f"/api/billing/plans/{plan_id}",
            detail={"what": {"fields": sorted(payload.model_dump(exclude_unset=True))}},
        )
        return PlanDefinitionRead.model_validate(row)
    except (NotFoundError, ValidationError) as exc:
        _handle_plan_error(exc)
        raise


@router.post(
    "/{plan_id}/deprecate",
    response_model=PlanDefinitionRead,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def deprecate_plan(plan_id: str, request: Request, service: Service) -> PlanDefinitionRead:
    try:
        row = service.deprecate_plan(plan_id)
        set_audit_context(
            request,
            action="billing.plan.deprecate",
            resource=f"/api/billing/plans/{plan_id}/deprecate",
            detail={"what": {"plan_id": plan_id, "code": row.code}},
        )
        return PlanDefinitionRead.model_validate(row)
    except NotFoundError as exc:
        _handle_plan_error(exc)
        raise
