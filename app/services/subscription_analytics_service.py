from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import func
from sqlmodel import Session, select

from app.domain.billing_cycles import CYCLE_MONTHS, as_utc, round_cents
from app.domain.models import (
    Invoice,
    InvoiceStatus,
    Subscription,
    SubscriptionStatsRead,
    SubscriptionStatus,
    now_utc,
)
from app.infra.db import get_engine

REVENUE_STATUSES = {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIAL}


class SubscriptionAnalyticsService:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def get_stats(self, now: datetime | None = None) -> SubscriptionStatsRead:
        moment = as_utc(now or now_utc())
        with self._session() as session:
            subscriptions = list(session.exec(select(Subscription)).all())
            total_revenue = session.exec(
                select(func.coalesce(func.sum(Invoice.amount_paid_cents), 0)).where(
                    Invoice.status == InvoiceStatus.PAID
                )
            ).one()

        by_status = {status.value: 0 for status in SubscriptionStatus}
        by_tier: dict[str, int] = {}
        by_cycle: dict[str, int] = {}
        mrr = 0.0
        expiring = 0
        churned = 0
        had_trial = 0
        converted = 0
        churn_window = moment - timedelta(days=30)
        expiry_window = moment + timedelta(days=30)

        for row in subscriptions:
            by_status[row.status.value] += 1
            by_tier[row.plan_tier.value] = by_tier.get(row.plan_tier.value, 0) + 1
            by_cycle[row.billing_cycle.value] = by_cycle.get(row.billing_cycle.value, 0) + 1
            if row.status in REVENUE_STATUSES:
                mrr += int(row.pricing.get("base_price_cents", 0)) / CYCLE_MONTHS[row.billing_cycle]
            if (
                row.status == SubscriptionStatus.ACTIVE
                and not row.auto_renew
                and as_utc(row.current_period_end) <= expiry_window
            ):
                expiring += 1
            if row.cancelled_at is not None and as_utc(row.cancelled_at) >= churn_window:
                churned += 1
            if row.trial_end_date is not None:
                had_trial += 1
                if row.status == SubscriptionStatus.ACTIVE:
                    converted += 1

        total = len(subscriptions)
        mrr_cents = round_cents(mrr)
        active = by_status[SubscriptionStatus.ACTIVE.value]
        return SubscriptionStatsRead(
            total_subscriptions=total,
            by_status=by_status,
            by_tier=by_tier,
            by_cycle=by_cycle,
            mrr_cents=mrr_cents,
            arr_cents=mrr_cents * 12,
            expiring_this_month=expiring,
            past_due_count=by_status[SubscriptionStatus.PAST_DUE.value],
            total_revenue_cents=int(total_revenue),
            arpu_cents=round_cents(mrr_cents / max(active, 1)),
            churn_rate=round(churned / total * 100, 2) if total else 0.0,
            trial_conversion_rate=round(converted / had_trial * 100, 2) if had_trial else 0.0,
        )

