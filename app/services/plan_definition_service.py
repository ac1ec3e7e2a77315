from __future__ import annotations

import math
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

import structlog
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from app.domain.billing_cycles import CYCLE_DAYS, CYCLE_PRICING_KEYS, as_utc, round_cents
from app.domain.models import (
    BillingCycle,
    PlanComparisonRead,
    PlanDefinition,
    PlanDefinitionCreate,
    PlanDefinitionRead,
    PlanDefinitionUpdate,
    PlanFeatureChange,
    PlanLimitChange,
    PlanTier,
    PlanVisibility,
    ProrationRead,
    now_utc,
)
from app.infra.db import get_engine
from app.services.errors import ConflictError, NotFoundError, ValidationError

logger = structlog.get_logger(__name__)

UNLIMITED = -1
LIMIT_KEYS = (
    "max_users",
    "max_farms",
    "max_ponds",
    "max_sensors",
    "max_modules",
    "storage_gb",
    "data_retention_days",
    "api_rate_limit",
)
FEATURE_KEYS = (
    "alerts_enabled",
    "reports_enabled",
    "custom_branding_enabled",
    "api_access_enabled",
    "custom_integrations_enabled",
    "sso_enabled",
    "audit_log_enabled",
    "priority_support",
    "dedicated_account_manager",
)

_TIER_LIMITS: dict[PlanTier, tuple[int, ...]] = {
    PlanTier.FREE: (2, 1, 5, 10, 1, 1, 30, 100),
    PlanTier.STARTER: (5, 3, 20, 50, 3, 10, 90, 500),
    PlanTier.PROFESSIONAL: (20, 10, 100, 500, UNLIMITED, 100, 365, 2000),
    PlanTier.ENTERPRISE: (UNLIMITED,) * len(LIMIT_KEYS),
    PlanTier.CUSTOM: (UNLIMITED,) * len(LIMIT_KEYS),
}

_TIER_FEATURES: dict[PlanTier, set[str]] = {
    PlanTier.FREE: {"alerts_enabled"},
    PlanTier.STARTER: {"alerts_enabled", "reports_enabled"},
    PlanTier.PROFESSIONAL: {
        "alerts_enabled",
        "reports_enabled",
        "custom_branding_enabled",
        "api_access_enabled",
        "audit_log_enabled",
        "priority_support",
    },
    PlanTier.ENTERPRISE: set(FEATURE_KEYS),
    PlanTier.CUSTOM: set(FEATURE_KEYS),
}

DEFAULT_DOWNGRADE_WARNING = "Downgrading may result in loss of features or data."


def default_limits_for_tier(tier: PlanTier) -> dict[str, int]:
    return dict(zip(LIMIT_KEYS, _TIER_LIMITS[tier], strict=True))


def default_features_for_tier(tier: PlanTier) -> dict[str, bool]:
    enabled = _TIER_FEATURES[tier]
    return {key: key in enabled for key in FEATURE_KEYS}


def cycle_price_cents(plan: PlanDefinition, cycle: BillingCycle) -> int:
    pricing = plan.pricing or {}
    entry = pricing.get(CYCLE_PRICING_KEYS[cycle]) or pricing.get("monthly") or {}
    raw = entry.get("base_price_cents", 0)
    return int(raw) if isinstance(raw, int | float) else 0


def monthly_price_cents(plan: PlanDefinition) -> int:
    return cycle_price_cents(plan, BillingCycle.MONTHLY)


def _limit_rank(value: int | None) -> float:
    if value is None:
        return 0
    if value == UNLIMITED:
        return math.inf
    return value


def compare_plans(current: PlanDefinition, new: PlanDefinition) -> PlanComparisonRead:
    price_difference = monthly_price_cents(new) - monthly_price_cents(current)

    limit_changes: list[PlanLimitChange] = []
    has_increase = False
    has_decrease = False
    for key in LIMIT_KEYS:
        current_value = current.limits.get(key)
        new_value = new.limits.get(key)
        current_rank = _limit_rank(current_value)
        new_rank = _limit_rank(new_value)
        if new_rank > current_rank:
            change = "increase"
            has_increase = True
        elif new_rank < current_rank:
            change = "decrease"
            has_decrease = True
        else:
            change = "same"
        limit_changes.append(PlanLimitChange(key=key, current=current_value, new=new_value, change=change))

    feature_changes: list[PlanFeatureChange] = []
    for key in FEATURE_KEYS:
        current_enabled = bool(current.features.get(key, False))
        new_enabled = bool(new.features.get(key, False))
        if current_enabled != new_enabled:
            feature_changes.append(PlanFeatureChange(feature=key, current=current_enabled, new=new_enabled))

    is_upgrade = price_difference > 0 or (price_difference == 0 and has_increase and not has_decrease)
    is_downgrade = price_difference < 0 or (price_difference == 0 and has_decrease and not has_increase)

    warnings: list[str] = []
    if is_downgrade:
        warnings.append(new.downgrade_warning or DEFAULT_DOWNGRADE_WARNING)
        lost = [item.feature for item in feature_changes if item.current and not item.new]
        if lost:
            warnings.append(f"The following features will be lost: {', '.join(lost)}")
        user_change = next(item for item in limit_changes if item.key == "max_users")
        if user_change.change == "decrease":
            warnings.append(
                f"User limit will decrease from {user_change.current} to {user_change.new}"
            )

    return PlanComparisonRead(
        current_plan=PlanDefinitionRead.model_validate(current),
        new_plan=PlanDefinitionRead.model_validate(new),
        price_difference_cents=price_difference,
        is_upgrade=is_upgrade,
        is_downgrade=is_downgrade,
        limit_changes=limit_changes,
        feature_changes=feature_changes,
        warnings=warnings,
    )


def calculate_prorated_pricing(
    current: PlanDefinition,
    new: PlanDefinition,
    *,
    current_period_end: datetime,
    billing_cycle: BillingCycle,
    new_billing_cycle: BillingCycle | None = None,
    now: datetime | None = None,
) -> ProrationRead:
    moment = as_utc(now or now_utc())
    remaining = as_utc(current_period_end) - moment
    days_remaining = max(0, math.ceil(remaining / timedelta(days=1)))
    # Both plans are priced on the target cycle.
    cycle = new_billing_cycle or billing_cycle
    cycle_days = CYCLE_DAYS[cycle]

    ratio = Decimal(days_remaining) / Decimal(cycle_days)
    credit = round_cents(Decimal(cycle_price_cents(current, cycle)) * ratio)
    cost = round_cents(Decimal(cycle_price_cents(new, cycle)) * ratio)
    return ProrationRead(
        current_plan_credit_cents=credit,
        new_plan_cost_cents=cost,
        prorated_amount_cents=cost - credit,
        days_remaining=days_remaining,
        cycle_days=cycle_days,
        effective_date=moment,
    )


def _cycle_entry(
    base: int,
    per_user: int,
    per_farm: int,
    per_module: int,
    *,
    months: int = 1,
    discount_percent: int = 0,
) -> dict[str, Any]:
    factor = Decimal(months) * (Decimal(100 - discount_percent) / Decimal(100))
    return {
        "base_price_cents": base,
        "per_user_price_cents": round_cents(per_user * factor),
        "per_farm_price_cents": round_cents(per_farm * factor),
        "per_module_price_cents": round_cents(per_module * factor),
        "discount_percent": discount_percent,
    }


def _default_pricing(monthly: tuple[int, int, int, int], cycle_bases: tuple[int, int, int] | None) -> dict[str, Any]:
    base, per_user, per_farm, per_module = monthly
    pricing: dict[str, Any] = {
        "monthly": _cycle_entry(base, per_user, per_farm, per_module),
        "currency": "USD",
    }
    if cycle_bases is not None:
        quarterly, semi_annual, annual = cycle_bases
        pricing["quarterly"] = _cycle_entry(quarterly, per_user, per_farm, per_module, months=3, discount_percent=10)
        pricing["semi_annual"] = _cycle_entry(
            semi_annual, per_user, per_farm, per_module, months=6, discount_percent=15
        )
        pricing["annual"] = _cycle_entry(annual, per_user, per_farm, per_module, months=12, discount_percent=20)
    return pricing


DEFAULT_PLANS: tuple[dict[str, Any], ...] = (
    {
        "code": "free_2024",
        "name": "Free",
        "description": "Get started with the essentials",
        "tier": PlanTier.FREE,
        "sort_order": 1,
        "pricing": _default_pricing((0, 0, 0, 0), None),
        "trial_days": 0,
        "grace_period_days": 0,
    },
    {
        "code": "starter_2024",
        "name": "Starter",
        "description": "For small operations getting organised",
        "tier": PlanTier.STARTER,
        "sort_order": 2,
        "pricing": _default_pricing((9900, 1000, 2500, 1500), (26700, 50500, 95000)),
        "trial_days": 14,
        "grace_period_days": 7,
    },
    {
        "code": "professional_2024",
        "name": "Professional",
        "description": "For growing teams that need automation",
        "tier": PlanTier.PROFESSIONAL,
        "sort_order": 3,
        "is_recommended": True,
        "pricing": _default_pricing((29900, 800, 2000, 1200), (80700, 152700, 287000)),
        "trial_days": 14,
        "grace_period_days": 14,
        "downgrade_warning": "Downgrading from Professional disables API access and custom branding.",
    },
    {
        "code": "enterprise_2024",
        "name": "Enterprise",
        "description": "Unlimited scale with dedicated support",
        "tier": PlanTier.ENTERPRISE,
        "sort_order": 4,
        "pricing": _default_pricing((99900, 0, 0, 0), (269700, 509500, 959000)),
        "trial_days": 30,
        "grace_period_days": 30,
        "downgrade_warning": "Downgrading from Enterprise removes SSO and your dedicated account manager.",
    },
)


class PlanDefinitionService:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    @staticmethod
    def _normalize_code(value: str) -> str:
        code = value.strip().lower()
        if not code:
            raise ValidationError("plan code cannot be empty")
        return code

    def _get_plan(self, session: Session, plan_id: str) -> PlanDefinition:
        row = session.get(PlanDefinition, plan_id)
        if row is None:
            raise NotFoundError("plan not found")
        return row

    def list_plans(self, *, include_inactive: bool = False) -> list[PlanDefinition]:
        with self._session() as session:
            statement = select(PlanDefinition)
            if not include_inactive:
                statement = statement.where(PlanDefinition.is_active == True)  # noqa: E712
            statement = statement.order_by(col(PlanDefinition.sort_order), col(PlanDefinition.created_at))
            return list(session.exec(statement).all())

    def list_public_plans(self) -> list[PlanDefinition]:
        with self._session() as session:
            statement = (
                select(PlanDefinition)
                .where(PlanDefinition.is_active == True)  # noqa: E712
                .where(PlanDefinition.visibility == PlanVisibility.PUBLIC)
                .order_by(col(PlanDefinition.sort_order))
            )
            return list(session.exec(statement).all())

    def get_plan(self, plan_id: str) -> PlanDefinition:
        with self._session() as session:
            return self._get_plan(session, plan_id)

    def get_plan_by_code(self, code: str) -> PlanDefinition:
        with self._session() as session:
            row = session.exec(
                select(PlanDefinition).where(PlanDefinition.code == self._normalize_code(code))
            ).first()
            if row is None:
                raise NotFoundError("plan not found")
            return row

    def get_plan_by_tier(self, tier: PlanTier) -> PlanDefinition:
        with self._session() as session:
            row = session.exec(
                select(PlanDefinition)
                .where(PlanDefinition.tier == tier)
                .where(PlanDefinition.is_active == True)  # noqa: E712
                .order_by(col(PlanDefinition.sort_order))
            ).first()
            if row is None:
                raise NotFoundError(f"no active plan for tier {tier.value}")
            return row

    def create_plan(self, payload: PlanDefinitionCreate) -> PlanDefinition:
        code = self._normalize_code(payload.code)
        with self._session() as session:
            existing = session.exec(select(PlanDefinition.id).where(PlanDefinition.code == code)).first()
            if existing is not None:
                raise ConflictError(f"Plan with code '{code}' already exists")

            limits = default_limits_for_tier(payload.tier)
            limits.update(payload.limits)
            features = default_features_for_tier(payload.tier)
            features.update(payload.features)
            row = PlanDefinition(
                code=code,
                name=payload.name.strip(),
                description=payload.description,
                tier=payload.tier,
                visibility=payload.visibility,
                is_active=payload.is_active,
                is_recommended=payload.is_recommended,
                sort_order=payload.sort_order,
                limits=limits,
                pricing=payload.pricing.model_dump(mode="json", exclude_none=True),
                features=features,
                trial_days=payload.trial_days,
                grace_period_days=payload.grace_period_days,
                downgrade_warning=payload.downgrade_warning,
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError(f"Plan with code '{code}' already exists") from exc
            session.refresh(row)
            return row

    def update_plan(self, plan_id: str, payload: PlanDefinitionUpdate) -> PlanDefinition:
        with self._session() as session:
            row = self._get_plan(session, plan_id)
            updates = payload.model_dump(exclude_unset=True)
            for key in ("limits", "features"):
                if key in updates:
                    merged = dict(getattr(row, key))
                    merged.update(updates.pop(key) or {})
                    setattr(row, key, merged)
            if "pricing" in updates:
                pricing = dict(row.pricing)
                for cycle_key, entry in (updates.pop("pricing") or {}).items():
                    if isinstance(entry, dict) and isinstance(pricing.get(cycle_key), dict):
                        pricing[cycle_key] = {**pricing[cycle_key], **entry}
                    else:
                        pricing[cycle_key] = entry
                row.pricing = pricing
            for key, value in updates.items():
                setattr(row, key, value)
            row.updated_at = now_utc()
            session.add(row)
            session.commit()
            session.refresh(row)
            return row

    def deprecate_plan(self, plan_id: str) -> PlanDefinition:
        with self._session() as session:
            row = self._get_plan(session, plan_id)
            row.visibility = PlanVisibility.DEPRECATED
            row.is_active = False
            row.updated_at = now_utc()
            session.add(row)
            session.commit()
            session.refresh(row)
            logger.info("plan.deprecated", plan_id=row.id, code=row.code)
            return row

    def compare_plans(self, current_plan_id: str, new_plan_id: str) -> PlanComparisonRead:
        with self._session() as session:
            current = self._get_plan(session, current_plan_id)
            new = self._get_plan(session, new_plan_id)
            return compare_plans(current, new)

    def calculate_prorated_pricing(
        self,
        current_plan_id: str,
        new_plan_id: str,
        *,
        current_period_end: datetime,
        billing_cycle: BillingCycle,
        new_billing_cycle: BillingCycle | None = None,
        now: datetime | None = None,
    ) -> ProrationRead:
        with self._session() as session:
            current = self._get_plan(session, current_plan_id)
            new = self._get_plan(session, new_plan_id)
            return calculate_prorated_pricing(
                current,
                new,
                current_period_end=current_period_end,
                billing_cycle=billing_cycle,
                new_billing_cycle=new_billing_cycle,
                now=now,
            )

    def seed_default_plans(self) -> int:
        with self._session() as session:
            if session.exec(select(PlanDefinition.id)).first() is not None:
                return 0
            for template in DEFAULT_PLANS:
                tier = template["tier"]
                session.add(
                    PlanDefinition(
                        **template,
                        limits=default_limits_for_tier(tier),
                        features=default_features_for_tier(tier),
                    )
                )
            session.commit()
            logger.info("plan.seeded", count=len(DEFAULT_PLANS))
            return len(DEFAULT_PLANS)
