from __future__ import annotations

import calendar
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal

from app.domain.models import BillingCycle

CYCLE_MONTHS: dict[BillingCycle, int] = {
    BillingCycle.MONTHLY: 1,
    BillingCycle.QUARTERLY: 3,
    BillingCycle.SEMI_ANNUAL: 6,
    BillingCycle.ANNUAL: 12,
}

CYCLE_DAYS: dict[BillingCycle, int] = {
    BillingCycle.MONTHLY: 30,
    BillingCycle.QUARTERLY: 90,
    BillingCycle.SEMI_ANNUAL: 180,
    BillingCycle.ANNUAL: 365,
}

CYCLE_DISCOUNT_PERCENT: dict[BillingCycle, int] = {
    BillingCycle.MONTHLY: 0,
    BillingCycle.QUARTERLY: 5,
    BillingCycle.SEMI_ANNUAL: 10,
    BillingCycle.ANNUAL: 15,
}

CYCLE_PRICING_KEYS: dict[BillingCycle, str] = {
    BillingCycle.MONTHLY: "monthly",
    BillingCycle.QUARTERLY: "quarterly",
    BillingCycle.SEMI_ANNUAL: "semi_annual",
    BillingCycle.ANNUAL: "annual",
}


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def round_cents(value: Decimal | float | int) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def next_period_end(start: datetime, cycle: BillingCycle) -> datetime:
    return add_months(start, CYCLE_MONTHS[cycle])
