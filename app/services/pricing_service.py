from __future__ import annotations

from dataclasses import dataclass

import structlog
from sqlmodel import Session

from app.domain.billing_cycles import CYCLE_DISCOUNT_PERCENT, CYCLE_MONTHS, round_cents
from app.domain.models import (
    BillingCycle,
    ModulePriceBreakdownRead,
    ModuleQuantities,
    ModuleSelection,
    PlanTier,
    PriceComparisonRead,
    PriceQuoteRead,
    PricingLineItemRead,
    PricingMetricType,
    QuoteRequest,
    now_utc,
)
from app.infra.config import get_settings
from app.infra.db import get_engine
from app.services.discount_service import DiscountService
from app.services.module_pricing_service import ModulePricingService

logger = structlog.get_logger(__name__)

METRIC_QUANTITY_FIELDS: dict[PricingMetricType, str] = {
    PricingMetricType.PER_USER: "users",
    PricingMetricType.PER_FARM: "farms",
    PricingMetricType.PER_POND: "ponds",
    PricingMetricType.PER_SENSOR: "sensors",
    PricingMetricType.PER_DEVICE: "devices",
    PricingMetricType.PER_GB_STORAGE: "storage_gb",
    PricingMetricType.PER_API_CALL: "api_calls",
    PricingMetricType.PER_ALERT: "alerts",
    PricingMetricType.PER_REPORT: "reports",
    PricingMetricType.PER_SMS: "sms",
    PricingMetricType.PER_EMAIL: "emails",
    PricingMetricType.PER_INTEGRATION: "integrations",
}

METRIC_LABELS: dict[PricingMetricType, str] = {
    PricingMetricType.BASE_PRICE: "Base price",
    PricingMetricType.PER_USER: "Per user",
    PricingMetricType.PER_FARM: "Per farm",
    PricingMetricType.PER_POND: "Per pond",
    PricingMetricType.PER_SENSOR: "Per sensor",
    PricingMetricType.PER_DEVICE: "Per device",
    PricingMetricType.PER_GB_STORAGE: "Per GB storage",
    PricingMetricType.PER_API_CALL: "Per API call",
    PricingMetricType.PER_ALERT: "Per alert",
    PricingMetricType.PER_REPORT: "Per report",
    PricingMetricType.PER_SMS: "Per SMS",
    PricingMetricType.PER_EMAIL: "Per email",
    PricingMetricType.PER_INTEGRATION: "Per integration",
}


def quantity_for_metric(quantities: ModuleQuantities, metric: PricingMetricType) -> int:
    if metric == PricingMetricType.BASE_PRICE:
        return 1
    field_name = METRIC_QUANTITY_FIELDS.get(metric)
    if field_name is None:
        return 0
    return int(getattr(quantities, field_name))


@dataclass
class ModuleBreakdown:
    modules: list[ModulePriceBreakdownRead]
    skipped_modules: list[str]
    monthly_subtotal_cents: int
    currency: str


class PricingService:
    def __init__(
        self,
        module_pricing: ModulePricingService | None = None,
        discounts: DiscountService | None = None,
    ) -> None:
        self._module_pricing = module_pricing or ModulePricingService()
        self._discounts = discounts or DiscountService()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def price_modules_in_session(
        self,
        session: Session,
        selections: list[ModuleSelection],
        tier: PlanTier,
    ) -> ModuleBreakdown:
        modules: list[ModulePriceBreakdownRead] = []
        skipped: list[str] = []
        currency = get_settings().default_currency
        monthly_subtotal = 0

        for selection in selections:
            code = selection.module_code.strip().lower()
            pricing = self._module_pricing.active_pricing_by_code(session, code)
            if pricing is None:
                logger.warning("pricing.module_skipped", module_code=code, reason="no active pricing")
                skipped.append(code)
                continue

            currency = pricing.currency
            multiplier = pricing.tier_multiplier(tier)
            line_items: list[PricingLineItemRead] = []
            for metric in pricing.pricing_metrics:
                metric_type = PricingMetricType(metric["type"])
                quantity = quantity_for_metric(selection.quantities, metric_type)
                if quantity == 0 and metric_type != PricingMetricType.BASE_PRICE:
                    continue
                included = int(metric.get("included_quantity") or 0)
                if metric_type == PricingMetricType.BASE_PRICE:
                    billable = 1
                else:
                    billable = max(0, quantity - included)
                unit_price = int(metric["price_cents"])
                line_items.append(
                    PricingLineItemRead(
                        metric=metric_type,
                        description=metric.get("description") or METRIC_LABELS[metric_type],
                        quantity=quantity,
                        included_quantity=included,
                        billable_quantity=billable,
                        unit_price_cents=unit_price,
                        tier_multiplier=multiplier,
                        total_cents=round_cents(billable * unit_price * multiplier),
                    )
                )

            subtotal = sum(item.total_cents for item in line_items)
            monthly_subtotal += subtotal
            modules.append(
                ModulePriceBreakdownRead(
                    module_id=selection.module_id or pricing.module_id,
                    module_code=code,
                    module_name=selection.module_name or pricing.module_name,
                    quantities=selection.quantities,
                    line_items=line_items,
                    subtotal_cents=subtotal,
                )
            )

        return ModuleBreakdown(
            modules=modules,
            skipped_modules=skipped,
            monthly_subtotal_cents=monthly_subtotal,
            currency=currency,
        )

    def price_modules(self, selections: list[ModuleSelection], tier: PlanTier) -> ModuleBreakdown:
        with self._session() as session:
            return self.price_modules_in_session(session, selections, tier)

    def calculate_pricing(self, request: QuoteRequest) -> PriceQuoteRead:
        with self._session() as session:
            breakdown = self.price_modules_in_session(session, request.modules, request.tier)

            months = CYCLE_MONTHS[request.billing_cycle]
            cycle_discount_percent = CYCLE_DISCOUNT_PERCENT[request.billing_cycle]
            cycle_subtotal = breakdown.monthly_subtotal_cents * months
            cycle_discount = round_cents(cycle_subtotal * cycle_discount_percent / 100)
            after_cycle = cycle_subtotal - cycle_discount

            discount_cents = 0
            discount_reason: str | None = None
            discount_code: str | None = None
            if request.discount_code:
                validation = self._discounts.validate_in_session(
                    session,
                    code=request.discount_code,
                    tenant_id=request.tenant_id or "",
                    plan_id=request.plan_id,
                    order_amount_cents=after_cycle,
                )
                if validation.valid and validation.code is not None:
                    discount_code = validation.code.code
                    discount_cents = validation.discount_amount_cents
                else:
                    discount_reason = validation.reason

        after_discount = max(0, after_cycle - discount_cents)
        tax_cents = round_cents(after_discount * request.tax_rate / 100)
        total = after_discount + tax_cents
        monthly_equivalent = round_cents(total / months)
        return PriceQuoteRead(
            tier=request.tier,
            billing_cycle=request.billing_cycle,
            currency=breakdown.currency,
            modules=breakdown.modules,
            skipped_modules=breakdown.skipped_modules,
            monthly_subtotal_cents=breakdown.monthly_subtotal_cents,
            cycle_months=months,
            cycle_subtotal_cents=cycle_subtotal,
            cycle_discount_percent=cycle_discount_percent,
            cycle_discount_cents=cycle_discount,
            discount_code=discount_code,
            discount_reason=discount_reason,
            discount_cents=discount_cents,
            tax_rate=request.tax_rate,
            tax_cents=tax_cents,
            total_cents=total,
            monthly_equivalent_cents=monthly_equivalent,
            annual_total_cents=monthly_equivalent * 12,
            calculated_at=now_utc(),
        )

    def quick_estimate(
        self,
        module_codes: list[str],
        tier: PlanTier,
        quantities: ModuleQuantities,
    ) -> PriceQuoteRead:
        request = QuoteRequest(
            modules=[ModuleSelection(module_code=code, quantities=quantities) for code in module_codes],
            tier=tier,
            billing_cycle=BillingCycle.MONTHLY,
        )
        return self.calculate_pricing(request)

    def compare_pricing(self, first: QuoteRequest, second: QuoteRequest) -> PriceComparisonRead:
        first_quote = self.calculate_pricing(first)
        second_quote = self.calculate_pricing(second)
        first_monthly = first_quote.monthly_equivalent_cents
        second_monthly = second_quote.monthly_equivalent_cents
        difference = second_monthly - first_monthly
        percent = round(difference / first_monthly * 100, 2) if first_monthly else 0.0
        if difference < 0:
            recommendation = f"The second configuration saves {abs(difference) / 100:.2f} per month"
        elif difference > 0:
            recommendation = f"The first configuration saves {difference / 100:.2f} per month"
        else:
            recommendation = "Both configurations cost the same per month"
        return PriceComparisonRead(
            first=first_quote,
            second=second_quote,
            difference_cents=difference,
            percent_difference=percent,
            recommendation=recommendation,
        )
