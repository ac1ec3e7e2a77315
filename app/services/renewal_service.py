from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from app.domain.billing_cycles import as_utc, next_period_end
from app.domain.models import (
    Invoice,
    InvoiceStatus,
    Subscription,
    SubscriptionStatus,
    now_utc,
)
from app.infra.config import get_settings
from app.infra.db import get_engine
from app.services.errors import ServiceError
from app.services.invoice_service import InvoiceLineDraft, stage_invoice

logger = structlog.get_logger(__name__)

UPCOMING_DUE_DAYS = 7
GRACE_WARNING_DAYS = 3


@dataclass
class RenewalSummary:
    processed: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class ReminderCandidates:
    upcoming_due: list[Subscription]
    past_due: list[Subscription]
    grace_period_ending: list[Subscription]


def cycle_label(subscription: Subscription) -> str:
    return subscription.billing_cycle.value.lower().replace("_", "-")


class RenewalService:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _due_for_renewal(self, moment: datetime) -> list[str]:
        with self._session() as session:
            ids = session.exec(
                select(Subscription.id)
                .where(Subscription.status == SubscriptionStatus.ACTIVE)
                .where(Subscription.auto_renew == True)  # noqa: E712
                .where(col(Subscription.current_period_end) <= moment)
                .order_by(col(Subscription.current_period_end))
            ).all()
            return list(ids)

    def _renew_one(self, subscription_id: str, moment: datetime) -> None:
        with self._session() as session:
            row = session.get(Subscription, subscription_id)
            if row is None:
                raise ServiceError("subscription disappeared during renewal")
            start = as_utc(row.current_period_end)
            end = next_period_end(start, row.billing_cycle)
            amount = int(row.pricing.get("base_price_cents", 0))

            row.current_period_start = start
            row.current_period_end = end
            row.updated_at = moment
            session.add(row)
            stage_invoice(
                session,
                tenant_id=row.tenant_id,
                subscription_id=row.id,
                currency=row.currency,
                lines=[
                    InvoiceLineDraft(
                        description=f"{row.plan_name} - {cycle_label(row)} subscription",
                        unit_price_cents=amount,
                    )
                ],
                period_start=start,
                period_end=end,
                now=moment,
            )
            session.commit()

    def process_renewals(self, now: datetime | None = None) -> RenewalSummary:
        moment = as_utc(now or now_utc())
        summary = RenewalSummary()
        for subscription_id in self._due_for_renewal(moment):
            try:
                self._renew_one(subscription_id, moment)
            except (ServiceError, SQLAlchemyError) as exc:
                summary.failed += 1
                with self._session() as session:
                    row = session.get(Subscription, subscription_id)
                    tenant_id = row.tenant_id if row is not None else subscription_id
                summary.errors.append(f"Failed to process renewal for {tenant_id}: {exc}")
                logger.error("renewal.failed", subscription_id=subscription_id, tenant_id=tenant_id, error=str(exc))
                continue
            summary.processed += 1
        logger.info("renewal.completed", processed=summary.processed, failed=summary.failed)
        return summary

    def get_reminder_candidates(self, now: datetime | None = None) -> ReminderCandidates:
        moment = as_utc(now or now_utc())
        settings = get_settings()
        grace_cutoff = moment - timedelta(days=settings.grace_period_days - GRACE_WARNING_DAYS)
        with self._session() as session:
            upcoming = session.exec(
                select(Subscription)
                .where(Subscription.status == SubscriptionStatus.ACTIVE)
                .where(Subscription.auto_renew == True)  # noqa: E712
                .where(col(Subscription.current_period_end) > moment)
                .where(col(Subscription.current_period_end) <= moment + timedelta(days=UPCOMING_DUE_DAYS))
                .order_by(col(Subscription.current_period_end))
            ).all()
            past_due = session.exec(
                select(Subscription)
                .where(Subscription.status == SubscriptionStatus.PAST_DUE)
                .order_by(col(Subscription.current_period_end))
            ).all()
            grace_ending = session.exec(
                select(Subscription)
                .where(Subscription.status == SubscriptionStatus.PAST_DUE)
                .where(col(Subscription.current_period_end) < grace_cutoff)
                .order_by(col(Subscription.current_period_end))
            ).all()
        return ReminderCandidates(
            upcoming_due=list(upcoming),
            past_due=list(past_due),
            grace_period_ending=list(grace_ending),
        )

    def mark_past_due(self, now: datetime | None = None) -> int:
        moment = as_utc(now or now_utc())
        with self._session() as session:
            overdue_subscriptions = select(Invoice.subscription_id).where(Invoice.status == InvoiceStatus.OVERDUE)
            rows = session.exec(
                select(Subscription)
                .where(Subscription.status == SubscriptionStatus.ACTIVE)
                .where(col(Subscription.id).in_(overdue_subscriptions))
            ).all()
            for row in rows:
                row.status = SubscriptionStatus.PAST_DUE
                row.updated_at = moment
                session.add(row)
            session.commit()
            if rows:
                logger.info("subscription.marked_past_due", count=len(rows))
            return len(rows)
