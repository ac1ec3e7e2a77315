from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

import structlog
from sqlmodel import Session, select

from app.domain.billing_cycles import as_utc
from app.domain.models import (
    Invoice,
    PlanChangeRequest,
    PlanDefinition,
    Subscription,
    Tenant,
    now_utc,
)
from app.infra.audit import record_audit
from app.infra.db import get_engine
from app.infra.events import SUBSCRIPTION_PLAN_CHANGED, event_bus
from app.services.discount_service import DiscountService
from app.services.errors import NotFoundError, ValidationError
from app.services.invoice_service import InvoiceLineDraft, stage_invoice
from app.services.plan_definition_service import (
    calculate_prorated_pricing,
    compare_plans,
    cycle_price_cents,
    monthly_price_cents,
)

logger = structlog.get_logger(__name__)


@dataclass
class PlanChangeResult:
    success: bool
    is_upgrade: bool
    is_downgrade: bool
    prorated_amount_cents: int
    discount_cents: int
    final_amount_cents: int
    new_monthly_price_cents: int
    effective_date: datetime
    message: str
    invoice: Invoice | None = None
    warnings: list[str] = field(default_factory=list)


class PlanChangeService:
    def __init__(self, discounts: DiscountService | None = None) -> None:
        self._discounts = discounts or DiscountService()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    @staticmethod
    def _resolve_current_plan(
        session: Session,
        subscription: Subscription,
        current_plan_id: str | None,
    ) -> PlanDefinition:
        plan_id = current_plan_id or subscription.plan_id
        if plan_id is not None:
            plan = session.get(PlanDefinition, plan_id)
            if plan is None:
                raise NotFoundError("current plan not found")
            return plan
        plan = session.exec(
            select(PlanDefinition)
            .where(PlanDefinition.tier == subscription.plan_tier)
            .where(PlanDefinition.is_active == True)  # noqa: E712
        ).first()
        if plan is None:
            raise NotFoundError(f"no active plan for tier {subscription.plan_tier.value}")
        return plan

    @staticmethod
    def _discount_ignored(warnings: list[str], payload: PlanChangeRequest, reason: str | None) -> None:
        logger.warning(
            "plan_change.discount_ignored",
            tenant_id=payload.tenant_id,
            code=payload.discount_code,
            reason=reason,
        )
        warnings.append(f"Discount code not applied: {reason}")

    def change_plan(self, payload: PlanChangeRequest, changed_by: str | None = None) -> PlanChangeResult:
        now = now_utc()
        with self._session() as session:
            subscription = session.exec(
                select(Subscription).where(Subscription.tenant_id == payload.tenant_id)
            ).first()
            if subscription is None:
                raise NotFoundError("subscription not found")

            current_plan = self._resolve_current_plan(session, subscription, payload.current_plan_id)
            new_plan = session.get(PlanDefinition, payload.new_plan_id)
            if new_plan is None:
                raise NotFoundError("new plan not found")
            if not new_plan.is_active:
                raise ValidationError("the selected plan is no longer available")

            new_cycle = payload.new_billing_cycle or subscription.billing_cycle
            if current_plan.id == new_plan.id and new_cycle == subscription.billing_cycle:
                raise ValidationError("subscription is already on this plan and billing cycle")

            comparison = compare_plans(current_plan, new_plan)
            proration = calculate_prorated_pricing(
                current_plan,
                new_plan,
                current_period_end=as_utc(subscription.current_period_end),
                billing_cycle=subscription.billing_cycle,
                new_billing_cycle=new_cycle,
                now=now,
            )
            warnings = list(comparison.warnings)

            discount_cents = 0
            discount_code: str | None = None
            if proration.prorated_amount_cents > 0 and payload.discount_code:
                validation = self._discounts.validate_in_session(
                    session,
                    code=payload.discount_code,
                    tenant_id=payload.tenant_id,
                    plan_id=new_plan.id,
                    order_amount_cents=proration.prorated_amount_cents,
                )
                if validation.valid and validation.code is not None:
                    discount_cents = validation.discount_amount_cents
                    discount_code = validation.code.code
                else:
                    self._discount_ignored(warnings, payload, validation.reason)

            final_amount = max(0, proration.prorated_amount_cents - discount_cents)
            # A redemption slot is only claimed when the change is invoiced now.
            if discount_code is not None and payload.effective_immediately and final_amount > 0:
                application = self._discounts.apply_in_session(
                    session,
                    code=discount_code,
                    tenant_id=payload.tenant_id,
                    order_amount_cents=proration.prorated_amount_cents,
                    plan_id=new_plan.id,
                    subscription_id=subscription.id,
                    redeemed_by=changed_by,
                )
                if not application.applied:
                    self._discount_ignored(warnings, payload, application.reason)
                    discount_cents = 0
                    discount_code = None
                    final_amount = proration.prorated_amount_cents
            effective_date = now if payload.effective_immediately else as_utc(subscription.current_period_end)
            new_price = cycle_price_cents(new_plan, new_cycle)

            from_plan = current_plan.name
            from_tier = subscription.plan_tier
            subscription.plan_id = new_plan.id
            subscription.plan_tier = new_plan.tier
            subscription.plan_name = new_plan.name
            subscription.billing_cycle = new_cycle
            subscription.limits = dict(new_plan.limits)
            subscription.pricing = {
                **subscription.pricing,
                "base_price_cents": new_price,
                "original_total_cents": new_price,
                "currency": subscription.currency,
            }
            subscription.updated_by = changed_by
            subscription.updated_at = now
            session.add(subscription)

            tenant = session.get(Tenant, subscription.tenant_id)
            if tenant is not None:
                tenant.tier = new_plan.tier
                tenant.plan_id = new_plan.id
                tenant.limits = dict(new_plan.limits)
                tenant.updated_at = now
                session.add(tenant)

            invoice: Invoice | None = None
            if final_amount > 0 and payload.effective_immediately:
                invoice = stage_invoice(
                    session,
                    tenant_id=subscription.tenant_id,
                    subscription_id=subscription.id,
                    currency=subscription.currency,
                    lines=[
                        InvoiceLineDraft(
                            description=f"Plan change: {from_plan} to {new_plan.name} (prorated)",
                            unit_price_cents=proration.prorated_amount_cents,
                        )
                    ],
                    discount_cents=discount_cents,
                    discount_code=discount_code,
                    period_start=now,
                    period_end=as_utc(subscription.current_period_end),
                    created_by=changed_by,
                    now=now,
                )

            record_audit(
                session,
                tenant_id=subscription.tenant_id,
                action="PLAN_CHANGE",
                entity_type="subscription",
                entity_id=subscription.id,
                actor_id=changed_by,
                changes={
                    "from_plan": from_plan,
                    "to_plan": new_plan.name,
                    "from_tier": from_tier.value,
                    "to_tier": new_plan.tier.value,
                    "prorated_amount": proration.prorated_amount_cents,
                    "effective_date": effective_date.isoformat(),
                    "is_upgrade": comparison.is_upgrade,
                    "is_downgrade": comparison.is_downgrade,
                },
            )
            session.commit()
            if invoice is not None:
                session.refresh(invoice)

        event_bus.publish_dict(
            SUBSCRIPTION_PLAN_CHANGED,
            payload.tenant_id,
            {
                "subscription_id": subscription.id,
                "from_plan": from_plan,
                "to_plan": new_plan.name,
                "final_amount_cents": final_amount,
            },
            actor_id=changed_by,
        )
        direction = "Upgraded" if comparison.is_upgrade else "Downgraded" if comparison.is_downgrade else "Changed"
        return PlanChangeResult(
            success=True,
            is_upgrade=comparison.is_upgrade,
            is_downgrade=comparison.is_downgrade,
            prorated_amount_cents=proration.prorated_amount_cents,
            discount_cents=discount_cents,
            final_amount_cents=final_amount,
            new_monthly_price_cents=monthly_price_cents(new_plan),
            effective_date=effective_date,
            message=f"{direction} from {from_plan} to {new_plan.name}",
            invoice=invoice,
            warnings=warnings,
        )
