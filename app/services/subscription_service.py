from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import func, or_
from sqlmodel import Session, col, select

from app.domain.billing_cycles import as_utc, next_period_end
from app.domain.models import (
    BillingCycle,
    PlanDefinition,
    PlanTier,
    Subscription,
    SubscriptionCreate,
    SubscriptionModuleInput,
    SubscriptionModuleItem,
    SubscriptionStatus,
    Tenant,
    now_utc,
)
from app.infra.audit import record_audit
from app.infra.db import get_engine
from app.infra.events import SUBSCRIPTION_CANCELLED, SUBSCRIPTION_CREATED, event_bus
from app.services.discount_service import DiscountService
from app.services.errors import ConflictError, NotFoundError, ValidationError

logger = structlog.get_logger(__name__)

DEFAULT_MODULE_LIMITS: dict[str, tuple[str, int]] = {
    "max_users": ("users", 5),
    "max_farms": ("farms", 1),
    "max_ponds": ("ponds", 10),
    "max_sensors": ("sensors", 10),
    "storage_gb": ("storage_gb", 5),
}


def plan_name_for_tier(tier: PlanTier) -> str:
    return f"{tier.value.title()} Plan"


def limits_from_modules(modules: list[SubscriptionModuleInput]) -> dict[str, int]:
    limits: dict[str, int] = {}
    for key, (quantity_field, default) in DEFAULT_MODULE_LIMITS.items():
        total = sum(getattr(item.quantities, quantity_field) for item in modules)
        limits[key] = total or default
    return limits


class SubscriptionService:
    def __init__(self, discounts: DiscountService | None = None) -> None:
        self._discounts = discounts or DiscountService()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _get_tenant(self, session: Session, tenant_id: str) -> Tenant:
        tenant = session.get(Tenant, tenant_id)
        if tenant is None:
            raise NotFoundError("tenant not found")
        return tenant

    @staticmethod
    def _find_by_tenant(session: Session, tenant_id: str) -> Subscription | None:
        return session.exec(select(Subscription).where(Subscription.tenant_id == tenant_id)).first()

    def _get_by_tenant(self, session: Session, tenant_id: str) -> Subscription:
        row = self._find_by_tenant(session, tenant_id)
        if row is None:
            raise NotFoundError("subscription not found")
        return row

    def create_subscription(self, payload: SubscriptionCreate, created_by: str | None = None) -> Subscription:
        now = now_utc()
        with self._session() as session:
            tenant = self._get_tenant(session, payload.tenant_id)
            if self._find_by_tenant(session, payload.tenant_id) is not None:
                raise ConflictError("Tenant already has an active subscription")

            plan: PlanDefinition | None = None
            if payload.plan_id is not None:
                plan = session.get(PlanDefinition, payload.plan_id)
                if plan is None:
                    raise NotFoundError("plan not found")

            if payload.trial_days > 0:
                status = SubscriptionStatus.TRIAL
                trial_end: datetime | None = now + timedelta(days=payload.trial_days)
                period_end = trial_end
            else:
                status = SubscriptionStatus.ACTIVE
                trial_end = None
                period_end = next_period_end(now, payload.billing_cycle)

            subscription = Subscription(
                tenant_id=payload.tenant_id,
                plan_id=payload.plan_id,
                plan_tier=payload.plan_tier,
                plan_name=plan.name if plan is not None else plan_name_for_tier(payload.plan_tier),
                status=status,
                billing_cycle=payload.billing_cycle,
                current_period_start=now,
                current_period_end=period_end,
                trial_end_date=trial_end,
                auto_renew=True,
                currency=payload.currency.upper(),
                created_by=created_by,
                updated_by=created_by,
                created_at=now,
                updated_at=now,
            )

            discount: dict[str, Any] | None = None
            discount_cents = 0
            if payload.discount_code:
                application = self._discounts.apply_in_session(
                    session,
                    code=payload.discount_code,
                    tenant_id=payload.tenant_id,
                    order_amount_cents=payload.monthly_total_cents,
                    plan_id=payload.plan_id,
                    subscription_id=subscription.id,
                    redeemed_by=created_by,
                )
                if application.applied:
                    discount_cents = application.discount_amount_cents
                    discount = {"code": payload.discount_code.upper(), "amount_cents": discount_cents}
                else:
                    logger.warning(
                        "subscription.discount_ignored",
                        tenant_id=payload.tenant_id,
                        code=payload.discount_code,
                        reason=application.reason,
                    )

            subscription.pricing = {
                "base_price_cents": max(0, payload.monthly_total_cents - discount_cents),
                "module_breakdown": [
                    {
                        "module_id": item.module_id,
                        "module_code": item.module_code,
                        "subtotal_cents": item.subtotal_cents,
                        "quantities": item.quantities.model_dump(),
                    }
                    for item in payload.modules
                ],
                "discount": discount,
                "original_total_cents": payload.monthly_total_cents,
                "currency": subscription.currency,
            }
            subscription.limits = dict(plan.limits) if plan is not None else limits_from_modules(payload.modules)
            session.add(subscription)
            session.flush()

            for item in payload.modules:
                session.add(
                    SubscriptionModuleItem(
                        subscription_id=subscription.id,
                        tenant_id=payload.tenant_id,
                        module_id=item.module_id,
                        module_code=item.module_code,
                        module_name=item.module_name,
                        quantities=item.quantities.model_dump(),
                        line_items=item.line_items,
                        subtotal_cents=item.subtotal_cents,
                    )
                )

            tenant.tier = payload.plan_tier
            tenant.plan_id = payload.plan_id or tenant.plan_id
            tenant.limits = dict(subscription.limits)
            tenant.updated_at = now
            session.add(tenant)

            record_audit(
                session,
                tenant_id=payload.tenant_id,
                action="SUBSCRIPTION_CREATED",
                entity_type="subscription",
                entity_id=subscription.id,
                actor_id=created_by,
                changes={
                    "plan_tier": payload.plan_tier.value,
                    "billing_cycle": payload.billing_cycle.value,
                    "status": status.value,
                    "monthly_total_cents": payload.monthly_total_cents,
                    "discount_cents": discount_cents,
                },
            )
            session.commit()
            session.refresh(subscription)

        logger.info("subscription.created", tenant_id=subscription.tenant_id, subscription_id=subscription.id)
        event_bus.publish_dict(
            SUBSCRIPTION_CREATED,
            subscription.tenant_id,
            {
                "subscription_id": subscription.id,
                "plan_tier": subscription.plan_tier.value,
                "status": subscription.status.value,
            },
            actor_id=created_by,
        )
        return subscription

    def list_subscriptions(
        self,
        *,
        statuses: list[SubscriptionStatus] | None = None,
        tiers: list[PlanTier] | None = None,
        cycles: list[BillingCycle] | None = None,
        auto_renew: bool | None = None,
        search: str | None = None,
        expiring_within_days: int | None = None,
        past_due_only: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Subscription], int]:
        conditions: list[Any] = []
        if statuses:
            conditions.append(col(Subscription.status).in_(statuses))
        if tiers:
            conditions.append(col(Subscription.plan_tier).in_(tiers))
        if cycles:
            conditions.append(col(Subscription.billing_cycle).in_(cycles))
        if auto_renew is not None:
            conditions.append(Subscription.auto_renew == auto_renew)
        if expiring_within_days is not None:
            conditions.append(
                col(Subscription.current_period_end) <= now_utc() + timedelta(days=expiring_within_days)
            )
        if past_due_only:
            conditions.append(Subscription.status == SubscriptionStatus.PAST_DUE)
        if search:
            pattern = f"%{search.strip().lower()}%"
            conditions.append(
                or_(
                    func.lower(col(Subscription.plan_name)).like(pattern),
                    func.lower(col(Tenant.name)).like(pattern),
                )
            )

        with self._session() as session:
            statement = select(Subscription).join(Tenant, col(Tenant.id) == col(Subscription.tenant_id))
            count_statement = (
                select(func.count())
                .select_from(Subscription)
                .join(Tenant, col(Tenant.id) == col(Subscription.tenant_id))
            )
            for condition in conditions:
                statement = statement.where(condition)
                count_statement = count_statement.where(condition)
            total = int(session.exec(count_statement).one())
            rows = session.exec(
                statement.order_by(col(Subscription.created_at).desc()).offset(offset).limit(limit)
            ).all()
            return list(rows), total

    def get_subscription(self, subscription_id: str) -> Subscription:
        with self._session() as session:
            row = session.get(Subscription, subscription_id)
            if row is None:
                raise NotFoundError("subscription not found")
            return row

    def get_tenant_subscription(self, tenant_id: str) -> Subscription:
        with self._session() as session:
            return self._get_by_tenant(session, tenant_id)

    def list_module_items(self, subscription_id: str) -> list[SubscriptionModuleItem]:
        with self._session() as session:
            rows = session.exec(
                select(SubscriptionModuleItem).where(SubscriptionModuleItem.subscription_id == subscription_id)
            ).all()
            return list(rows)

    def cancel_subscription(
        self,
        tenant_id: str,
        reason: str,
        *,
        cancelled_by: str | None = None,
        cancel_immediately: bool = False,
    ) -> Subscription:
        now = now_utc()
        with self._session() as session:
            row = self._get_by_tenant(session, tenant_id)
            if row.status == SubscriptionStatus.CANCELLED:
                raise ConflictError("subscription is already cancelled")

            effective = now if cancel_immediately else as_utc(row.current_period_end)
            if cancel_immediately:
                row.status = SubscriptionStatus.CANCELLED
            row.cancelled_at = now
            row.cancellation_reason = reason
            row.auto_renew = False
            row.end_date = effective
            row.updated_by = cancelled_by
            row.updated_at = now
            session.add(row)
            record_audit(
                session,
                tenant_id=tenant_id,
                action="SUBSCRIPTION_CANCELLED",
                entity_type="subscription",
                entity_id=row.id,
                actor_id=cancelled_by,
                changes={
                    "reason": reason,
                    "cancel_immediately": cancel_immediately,
                    "effective_date": effective.isoformat(),
                },
            )
            session.commit()
            session.refresh(row)

        event_bus.publish_dict(
            SUBSCRIPTION_CANCELLED,
            tenant_id,
            {"subscription_id": row.id, "effective_date": effective.isoformat(), "reason": reason},
            actor_id=cancelled_by,
        )
        return row

    def reactivate_subscription(self, tenant_id: str, reactivated_by: str | None = None) -> Subscription:
        now = now_utc()
        with self._session() as session:
            row = self._get_by_tenant(session, tenant_id)
            if row.status != SubscriptionStatus.CANCELLED:
                raise ValidationError("only cancelled subscriptions can be reactivated")
            row.status = SubscriptionStatus.ACTIVE
            row.cancelled_at = None
            row.cancellation_reason = None
            row.auto_renew = True
            row.end_date = None
            if as_utc(row.current_period_end) <= now:
                row.current_period_start = now
                row.current_period_end = next_period_end(now, row.billing_cycle)
            row.updated_by = reactivated_by
            row.updated_at = now
            session.add(row)
            session.commit()
            session.refresh(row)
            return row

    def extend_trial(self, tenant_id: str, additional_days: int) -> Subscription:
        if additional_days <= 0:
            raise ValidationError("additional_days must be positive")
        now = now_utc()
        with self._session() as session:
            row = self._get_by_tenant(session, tenant_id)
            if row.status != SubscriptionStatus.TRIAL:
                raise ValidationError("only trial subscriptions can be extended")
            base = as_utc(row.trial_end_date) if row.trial_end_date is not None else now
            trial_end = base + timedelta(days=additional_days)
            row.trial_end_date = trial_end
            row.current_period_end = trial_end
            row.updated_at = now
            session.add(row)
            session.commit()
            session.refresh(row)
            return row
