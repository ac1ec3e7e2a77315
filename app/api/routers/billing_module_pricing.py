from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, status

from app.api.deps import require_perm
from app.domain.models import (
    ModulePricingCreate,
    ModulePricingOverviewRead,
    ModulePricingRead,
    ModulePricingSeedRequest,
    ModulePricingUpdate,
    PriceComparisonRead,
    PriceComparisonRequest,
    PriceQuoteRead,
    QuickEstimateRequest,
    QuoteRequest,
    SeedResultRead,
)
from app.domain.permissions import PERM_BILLING_READ, PERM_BILLING_WRITE
from app.infra.audit import set_audit_context
from app.services.errors import ConflictError, NotFoundError, ValidationError
from app.services.module_pricing_service import ModulePricingService
from app.services.pricing_service import PricingService

router = APIRouter()
pricing_router = APIRouter()


def get_module_pricing_service() -> ModulePricingService:
    return ModulePricingService()


def get_pricing_service() -> PricingService:
    return PricingService()


Service = Annotated[ModulePricingService, Depends(get_module_pricing_service)]
Pricing = Annotated[PricingService, Depends(get_pricing_service)]


def _handle_pricing_error(exc: Exception) -> None:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, ValidationError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    raise exc


@router.get(
    "",
    response_model=list[ModulePricingRead],
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def list_active_pricing(service: Service) -> list[ModulePricingRead]:
    return [ModulePricingRead.model_validate(item) for item in service.list_active_pricing()]


@router.get(
    "/with-modules",
    response_model=list[ModulePricingOverviewRead],
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def list_pricing_with_modules(service: Service) -> list[ModulePricingOverviewRead]:
    return [
        ModulePricingOverviewRead(pricing=ModulePricingRead.model_validate(row), version_count=count)
        for row, count in service.list_pricing_with_modules()
    ]


@router.post(
    "/seed",
    response_model=SeedResultRead,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def seed_default_pricing(
    payload: ModulePricingSeedRequest,
    request: Request,
    service: Service,
) -> SeedResultRead:
    try:
        seeded = service.seed_default_pricing(payload.module_id_map)
        set_audit_context(
            request,
            action="billing.module_pricing.seed",
            resource="/api/billing/module-pricing/seed",
            detail={"what": {"seeded_count": seeded}},
        )
        return SeedResultRead(seeded_count=seeded)
    except ValidationError as exc:
        _handle_pricing_error(exc)
        raise


@router.get(
    "/code/{module_code}",
    response_model=ModulePricingRead,
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def get_pricing_by_code(module_code: str, service: Service) -> ModulePricingRead:
    try:
        return ModulePricingRead.model_validate(service.get_pricing_by_code(module_code))
    except NotFoundError as exc:
        _handle_pricing_error(exc)
        raise


@router.get(
    "/{module_id}",
    response_model=ModulePricingRead,
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def get_pricing(module_id: str, service: Service) -> ModulePricingRead:
    try:
        return ModulePricingRead.model_validate(service.get_pricing(module_id))
    except NotFoundError as exc:
        _handle_pricing_error(exc)
        raise


@router.get(
    "/{module_id}/history",
    response_model=list[ModulePricingRead],
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def get_pricing_history(module_id: str, service: Service) -> list[ModulePricingRead]:
    return [ModulePricingRead.model_validate(item) for item in service.get_pricing_history(module_id)]


@router.post(
    "",
    response_model=ModulePricingRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def set_module_pricing(payload: ModulePricingCreate, request: Request, service: Service) -> ModulePricingRead:
    try:
        row = service.set_module_pricing(payload)
        set_audit_context(
            request,
            action="billing.module_pricing.set",
            resource="/api/billing/module-pricing",
            detail={"what": {"pricing_id": row.id, "module_code": row.module_code, "version": row.version}},
        )
        return ModulePricingRead.model_validate(row)
    except (ConflictError, ValidationError) as exc:
        _handle_pricing_error(exc)
        raise


@router.put(
    "/{pricing_id}",
    response_model=ModulePricingRead,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def update_pricing(
    pricing_id: str,
    payload: ModulePricingUpdate,
    request: Request,
    service: Service,
) -> ModulePricingRead:
    try:
        row = service.update_pricing(pricing_id, payload)
        set_audit_context(
            request,
            action="billing.module_pricing.update",
            resource=f"/api/billing/module-pricing/{pricing_id}",
            detail={"what": {"fields": sorted(payload.model_dump(exclude_unset=True))}},
        )
        return ModulePricingRead.model_validate(row)
    except (NotFoundError, ValidationError) as exc:
        _handle_pricing_error(exc)
        raise


@router.post(
    "/{pricing_id}/deactivate",
    response_model=ModulePricingRead,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def deactivate_pricing(pricing_id: str, request: Request, service: Service) -> ModulePricingRead:
    try:
        row = service.deactivate_pricing(pricing_id)
        set_audit_context(
            request,
            action="billing.module_pricing.deactivate",
            resource=f"/api/billing/module-pricing/{pricing_id}/deactivate",
            detail={"what": {"module_code": row.module_code}},
        )
        return ModulePricingRead.model_validate(row)
    except NotFoundError as exc:
        _handle_pricing_error(exc)
        raise


@pricing_router.post(
    "/calculate",
    response_model=PriceQuoteRead,
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def calculate_pricing(payload: QuoteRequest, pricing: Pricing) -> PriceQuoteRead:
    return pricing.calculate_pricing(payload)


@pricing_router.post(
    "/quick-estimate",
    response_model=PriceQuoteRead,
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def quick_estimate(payload: QuickEstimateRequest, pricing: Pricing) -> PriceQuoteRead:
    return pricing.quick_estimate(payload.module_codes, payload.tier, payload.quantities)


@pricing_router.post(
    "/compare",
    response_model=PriceComparisonRead,
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def compare_pricing(payload: PriceComparisonRequest, pricing: Pricing) -> PriceComparisonRead:
    return pricing.compare_pricing(payload.first, payload.second)
