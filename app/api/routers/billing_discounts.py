from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Request, status

from app.api.deps import get_current_claims, require_perm
from app.domain.models import (
    DiscountApplyRead,
    DiscountApplyRequest,
    DiscountBulkCreateRequest,
    DiscountCodeCreate,
    DiscountCodeRead,
    DiscountCodeUpdate,
    DiscountGenerateCodeRead,
    DiscountGenerateCodeRequest,
    DiscountRedemptionListRead,
    DiscountRedemptionRead,
    DiscountStatsRead,
    DiscountValidateRequest,
    DiscountValidationRead,
)
from app.domain.permissions import PERM_BILLING_READ, PERM_BILLING_WRITE
from app.infra.audit import set_audit_context
from app.services.discount_service import DiscountService
from app.services.errors import ConflictError, NotFoundError, ValidationError

router = APIRouter()


def get_discount_service() -> DiscountService:
    return DiscountService()


Claims = Annotated[dict[str, Any], Depends(get_current_claims)]
Service = Annotated[DiscountService, Depends(get_discount_service)]


def _handle_discount_error(exc: Exception) -> None:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, ValidationError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    raise exc


@router.get(
    "",
    response_model=list[DiscountCodeRead],
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def list_codes(
    service: Service,
    is_active: bool | None = None,
    campaign_id: str | None = None,
    include_expired: bool = False,
) -> list[DiscountCodeRead]:
    rows = service.list_codes(is_active=is_active, campaign_id=campaign_id, include_expired=include_expired)
    return [DiscountCodeRead.model_validate(item) for item in rows]


@router.get(
    "/stats",
    response_model=DiscountStatsRead,
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def get_stats(service: Service) -> DiscountStatsRead:
    return service.get_stats()


@router.get(
    "/code/{code}",
    response_model=DiscountCodeRead,
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def get_code_by_code(code: str, service: Service) -> DiscountCodeRead:
    try:
        return DiscountCodeRead.model_validate(service.get_code_by_code(code))
    except NotFoundError as exc:
        _handle_discount_error(exc)
        raise


@router.post(
    "/validate",
    response_model=DiscountValidationRead,
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def validate_code(payload: DiscountValidateRequest, service: Service) -> DiscountValidationRead:
    result = service.validate_code(
        payload.code,
        payload.tenant_id,
        plan_id=payload.plan_id,
        order_amount_cents=payload.order_amount_cents,
    )
    return DiscountValidationRead(
        valid=result.valid,
        reason=result.reason,
        discount_code_id=result.code.id if result.code is not None else None,
        code=result.code.code if result.code is not None else None,
        discount_type=result.code.discount_type if result.code is not None else None,
        discount_amount_cents=result.discount_amount_cents,
        final_amount_cents=result.final_amount_cents,
    )


@router.post(
    "/apply",
    response_model=DiscountApplyRead,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def apply_code(
    payload: DiscountApplyRequest,
    request: Request,
    claims: Claims,
    service: Service,
) -> DiscountApplyRead:
    result = service.apply_discount(
        code=payload.code,
        tenant_id=payload.tenant_id,
        order_amount_cents=payload.order_amount_cents,
        plan_id=payload.plan_id,
        subscription_id=payload.subscription_id,
        invoice_id=payload.invoice_id,
        redeemed_by=claims["sub"],
    )
    set_audit_context(
        request,
        action="billing.discount.apply",
        resource="/api/billing/discounts/apply",
        detail={
            "what": {
                "code": payload.code,
                "tenant_id": payload.tenant_id,
                "applied": result.applied,
                "discount_amount_cents": result.discount_amount_cents,
            }
        },
    )
    return DiscountApplyRead(
        applied=result.applied,
        reason=result.reason,
        discount_amount_cents=result.discount_amount_cents,
        final_amount_cents=result.final_amount_cents,
        redemption=(
            DiscountRedemptionRead.model_validate(result.redemption) if result.redemption is not None else None
        ),
    )


@router.post(
    "/generate-code",
    response_model=DiscountGenerateCodeRead,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def generate_code(payload: DiscountGenerateCodeRequest, service: Service) -> DiscountGenerateCodeRead:
    try:
        return DiscountGenerateCodeRead(code=service.generate_unique_code(payload.prefix, payload.length))
    except ConflictError as exc:
        _handle_discount_error(exc)
        raise


@router.post(
    "/bulk",
    response_model=list[DiscountCodeRead],
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def bulk_create(
    payload: DiscountBulkCreateRequest,
    request: Request,
    claims: Claims,
    service: Service,
) -> list[DiscountCodeRead]:
    try:
        rows = service.bulk_create(payload.template, payload.count, prefix=payload.prefix, created_by=claims["sub"])
        set_audit_context(
            request,
            action="billing.discount.bulk_create",
            resource="/api/billing/discounts/bulk",
            detail={"what": {"count": len(rows), "prefix": payload.prefix}},
        )
        return [DiscountCodeRead.model_validate(item) for item in rows]
    except (ConflictError, ValidationError) as exc:
        _handle_discount_error(exc)
        raise


@router.get(
    "/{code_id}",
    response_model=DiscountCodeRead,
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def get_code(code_id: str, service: Service) -> DiscountCodeRead:
    try:
        return DiscountCodeRead.model_validate(service.get_code(code_id))
    except NotFoundError as exc:
        _handle_discount_error(exc)
        raise


@router.get(
    "/{code_id}/redemptions",
    response_model=DiscountRedemptionListRead,
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def list_redemptions(
    code_id: str,
    service: Service,
    limit: int = 50,
    offset: int = 0,
) -> DiscountRedemptionListRead:
    try:
        rows, total = service.list_redemptions(code_id, limit=limit, offset=offset)
        return DiscountRedemptionListRead(
            items=[DiscountRedemptionRead.model_validate(item) for item in rows],
            total=total,
        )
    except NotFoundError as exc:
        _handle_discount_error(exc)
        raise


@router.post(
    "",
    response_model=DiscountCodeRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def create_code(
    payload: DiscountCodeCreate,
    request: Request,
    claims: Claims,
    service: Service,
) -> DiscountCodeRead:
    try:
        row = service.create_code(payload, created_by=claims["sub"])
        set_audit_context(
            request,
            action="billing.discount.create",
            resource="/api/billing/discounts",
            detail={"what": {"discount_code_id": row.id, "code": row.code}},
        )
        return DiscountCodeRead.model_validate(row)
    except (ConflictError, ValidationError) as exc:
        _handle_discount_error(exc)
        raise


@router.put(
    "/{code_id}",
    response_model=DiscountCodeRead,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def update_code(
    code_id: str,
    payload: DiscountCodeUpdate,
    request: Request,
    service: Service,
) -> DiscountCodeRead:
    try:
        row = service.update_code(code_id, payload)
        set_audit_context(
            request,
            action="billing.discount.update",
            resource=f"/api/billing/discounts/{code_id}",
            detail={"what": {"fields": sorted(payload.model_dump(exclude_unset=True))}},
        )
        return DiscountCodeRead.model_validate(row)
    except (NotFoundError, ValidationError) as exc:
        _handle_discount_error(exc)
        raise


@router.post(
    "/{code_id}/deactivate",
    response_model=DiscountCodeRead,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def deactivate_code(code_id: str, request: Request, service: Service) -> DiscountCodeRead:
    try:
        row = service.deactivate_code(code_id)
        set_audit_context(
            request,
            action="billing.discount.deactivate",
            resource=f"/api/billing/discounts/{code_id}/deactivate",
            detail={"what": {"code": row.code}},
        )
        return DiscountCodeRead.model_validate(row)
    except NotFoundError as exc:
        _handle_discount_error(exc)
        raise
