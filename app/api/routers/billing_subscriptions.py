from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from app.api.deps import get_current_claims, require_perm
from app.domain.models import (
    BillingCycle,
    DiscountRedemptionRead,
    InvoiceSummaryRead,
    PlanChangeRead,
    PlanChangeRequest,
    PlanTier,
    ReminderConfigRead,
    RenewalSummaryRead,
    SubscriptionCancelRequest,
    SubscriptionCreate,
    SubscriptionExtendTrialRequest,
    SubscriptionListRead,
    SubscriptionRead,
    SubscriptionRemindersRead,
    SubscriptionStatsRead,
    SubscriptionStatus,
    SweepResultRead,
)
from app.domain.permissions import PERM_BILLING_READ, PERM_BILLING_WRITE
from app.infra.audit import set_audit_context
from app.infra.config import get_settings
from app.services.discount_service import DiscountService
from app.services.errors import ConflictError, NotFoundError, ValidationError
from app.services.plan_change_service import PlanChangeService
from app.services.renewal_service import RenewalService
from app.services.subscription_analytics_service import SubscriptionAnalyticsService
from app.services.subscription_service import SubscriptionService

router = APIRouter()


def get_subscription_service() -> SubscriptionService:
    return SubscriptionService()


def get_plan_change_service() -> PlanChangeService:
    return PlanChangeService()


def get_renewal_service() -> RenewalService:
    return RenewalService()


def get_analytics_service() -> SubscriptionAnalyticsService:
    return SubscriptionAnalyticsService()


def get_discount_service() -> DiscountService:
    return DiscountService()


Claims = Annotated[dict[str, Any], Depends(get_current_claims)]
Service = Annotated[SubscriptionService, Depends(get_subscription_service)]
PlanChanges = Annotated[PlanChangeService, Depends(get_plan_change_service)]
Renewals = Annotated[RenewalService, Depends(get_renewal_service)]
Analytics = Annotated[SubscriptionAnalyticsService, Depends(get_analytics_service)]
Discounts = Annotated[DiscountService, Depends(get_discount_service)]


def _handle_subscription_error(exc: Exception) -> None:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, ValidationError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    raise exc


@router.post(
    "",
    response_model=SubscriptionRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def create_subscription(
    payload: SubscriptionCreate,
    request: Request,
    claims: Claims,
    service: Service,
) -> SubscriptionRead:
    try:
        row = service.create_subscription(payload, created_by=claims["sub"])
        set_audit_context(
            request,
            action="billing.subscription.create",
            resource="/api/billing/subscriptions",
            detail={
                "what": {
                    "subscription_id": row.id,
                    "tenant_id": row.tenant_id,
                    "plan_tier": row.plan_tier.value,
                    "status": row.status.value,
                }
            },
        )
        return SubscriptionRead.model_validate(row)
    except (NotFoundError, ConflictError, ValidationError) as exc:
        _handle_subscription_error(exc)
        raise


@router.get(
    "",
    response_model=SubscriptionListRead,
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def list_subscriptions(
    service: Service,
    status_filter: Annotated[list[SubscriptionStatus] | None, Query(alias="status")] = None,
    tier: Annotated[list[PlanTier] | None, Query()] = None,
    billing_cycle: Annotated[list[BillingCycle] | None, Query()] = None,
    auto_renew: bool | None = None,
    search: str | None = None,
    expiring_within_days: int | None = None,
    past_due_only: bool = False,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> SubscriptionListRead:
    rows, total = service.list_subscriptions(
        statuses=status_filter,
        tiers=tier,
        cycles=billing_cycle,
        auto_renew=auto_renew,
        search=search,
        expiring_within_days=expiring_within_days,
        past_due_only=past_due_only,
        limit=limit,
        offset=offset,
    )
    return SubscriptionListRead(items=[SubscriptionRead.model_validate(item) for item in rows], total=total)


@router.get(
    "/stats",
    response_model=SubscriptionStatsRead,
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def get_stats(analytics: Analytics) -> SubscriptionStatsRead:
    return analytics.get_stats()


@router.get(
    "/reminders",
    response_model=SubscriptionRemindersRead,
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def get_reminders(renewals: Renewals) -> SubscriptionRemindersRead:
    settings = get_settings()
    candidates = renewals.get_reminder_candidates()
    return SubscriptionRemindersRead(
        upcoming_due=[SubscriptionRead.model_validate(item) for item in candidates.upcoming_due],
        past_due=[SubscriptionRead.model_validate(item) for item in candidates.past_due],
        grace_period_ending=[SubscriptionRead.model_validate(item) for item in candidates.grace_period_ending],
        config=ReminderConfigRead(
            days_before_due=settings.reminder_days_before_due,
            days_after_due=settings.reminder_days_after_due,
            grace_period_days=settings.grace_period_days,
            suspend_after_days=settings.suspend_after_days,
            cancel_after_days=settings.cancel_after_days,
        ),
    )


@router.post(
    "/change-plan",
    response_model=PlanChangeRead,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def change_plan(
    payload: PlanChangeRequest,
    request: Request,
    claims: Claims,
    plan_changes: PlanChanges,
) -> PlanChangeRead:
    try:
        result = plan_changes.change_plan(payload, changed_by=claims["sub"])
        set_audit_context(
            request,
            action="billing.subscription.change_plan",
            resource="/api/billing/subscriptions/change-plan",
            detail={
                "what": {
                    "tenant_id": payload.tenant_id,
                    "new_plan_id": payload.new_plan_id,
                    "final_amount_cents": result.final_amount_cents,
                }
            },
        )
        return PlanChangeRead(
            success=result.success,
            is_upgrade=result.is_upgrade,
            is_downgrade=result.is_downgrade,
            prorated_amount_cents=result.prorated_amount_cents,
            discount_cents=result.discount_cents,
            final_amount_cents=result.final_amount_cents,
            new_monthly_price_cents=result.new_monthly_price_cents,
            effective_date=result.effective_date,
            invoice=InvoiceSummaryRead.model_validate(result.invoice) if result.invoice is not None else None,
            warnings=result.warnings,
            message=result.message,
        )
    except (NotFoundError, ValidationError) as exc:
        _handle_subscription_error(exc)
        raise


@router.post(
    "/process-renewals",
    response_model=RenewalSummaryRead,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def process_renewals(request: Request, renewals: Renewals) -> RenewalSummaryRead:
    summary = renewals.process_renewals()
    set_audit_context(
        request,
        action="billing.subscription.process_renewals",
        resource="/api/billing/subscriptions/process-renewals",
        detail={"what": {"processed": summary.processed, "failed": summary.failed}},
    )
    return RenewalSummaryRead(processed=summary.processed, failed=summary.failed, errors=summary.errors)


@router.post(
    "/mark-past-due",
    response_model=SweepResultRead,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def mark_past_due(request: Request, renewals: Renewals) -> SweepResultRead:
    updated = renewals.mark_past_due()
    set_audit_context(
        request,
        action="billing.subscription.mark_past_due",
        resource="/api/billing/subscriptions/mark-past-due",
        detail={"what": {"updated": updated}},
    )
    return SweepResultRead(updated=updated)


@router.get(
    "/tenant/{tenant_id}",
    response_model=SubscriptionRead,
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def get_tenant_subscription(tenant_id: str, service: Service) -> SubscriptionRead:
    try:
        return SubscriptionRead.model_validate(service.get_tenant_subscription(tenant_id))
    except NotFoundError as exc:
        _handle_subscription_error(exc)
        raise


@router.get(
    "/tenant/{tenant_id}/redemptions",
    response_model=list[DiscountRedemptionRead],
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def list_tenant_redemptions(tenant_id: str, discounts: Discounts) -> list[DiscountRedemptionRead]:
    return [DiscountRedemptionRead.model_validate(item) for item in discounts.list_tenant_redemptions(tenant_id)]


@router.post(
    "/tenant/{tenant_id}/cancel",
    response_model=SubscriptionRead,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def cancel_subscription(
    tenant_id: str,
    payload: SubscriptionCancelRequest,
    request: Request,
    claims: Claims,
    service: Service,
) -> SubscriptionRead:
    try:
        row = service.cancel_subscription(
            tenant_id,
            payload.reason,
            cancelled_by=claims["sub"],
            cancel_immediately=payload.cancel_immediately,
        )
        set_audit_context(
            request,
            action="billing.subscription.cancel",
            resource=f"/api/billing/subscriptions/tenant/{tenant_id}/cancel",
            detail={"what": {"subscription_id": row.id, "cancel_immediately": payload.cancel_immediately}},
        )
        return SubscriptionRead.model_validate(row)
    except (NotFoundError, ConflictError) as exc:
        _handle_subscription_error(exc)
        raise


@router.post(
    "/tenant/{tenant_id}/reactivate",
    response_model=SubscriptionRead,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def reactivate_subscription(
    tenant_id: str,
    request: Request,
    claims: Claims,
    service: Service,
) -> SubscriptionRead:
    try:
        row = service.reactivate_subscription(tenant_id, reactivated_by=claims["sub"])
        set_audit_context(
            request,
            action="billing.subscription.reactivate",
            resource=f"/api/billing/subscriptions/tenant/{tenant_id}/reactivate",
            detail={"what": {"subscription_id": row.id}},
        )
        return SubscriptionRead.model_validate(row)
    except (NotFoundError, ValidationError) as exc:
        _handle_subscription_error(exc)
        raise


@router.post(
    "/tenant/{tenant_id}/extend-trial",
    response_model=SubscriptionRead,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def extend_trial(
    tenant_id: str,
    payload: SubscriptionExtendTrialRequest,
    request: Request,
    service: Service,
) -> SubscriptionRead:
    try:
        row = service.extend_trial(tenant_id, payload.additional_days)
        set_audit_context(
            request,
            action="billing.subscription.extend_trial",
            resource=f"/api/billing/subscriptions/tenant/{tenant_id}/extend-trial",
            detail={"what": {"additional_days": payload.additional_days}},
        )
        return SubscriptionRead.model_validate(row)
    except (NotFoundError, ValidationError) as exc:
        _handle_subscription_error(exc)
        raise


@router.get(
    "/{subscription_id}",
    response_model=SubscriptionRead,
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def get_subscription(subscription_id: str, service: Service) -> SubscriptionRead:
    try:
        return SubscriptionRead.model_validate(service.get_subscription(subscription_id))
    except NotFoundError as exc:
        _handle_subscription_error(exc)
        raise
