from __future__ import annotations

from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import func, or_
from sqlmodel import Session, col, select

from app.domain.billing_cycles import as_utc
from app.domain.models import (
    ModulePricing,
    ModulePricingCreate,
    ModulePricingUpdate,
    PlanTier,
    PricingMetric,
    PricingMetricType,
    now_utc,
)
from app.infra.db import get_engine
from app.services.errors import NotFoundError, ValidationError

logger = structlog.get_logger(__name__)

DEFAULT_TIER_MULTIPLIERS: dict[str, float] = {
    PlanTier.FREE.value: 1.0,
    PlanTier.STARTER.value: 1.0,
    PlanTier.PROFESSIONAL.value: 0.9,
    PlanTier.ENTERPRISE.value: 0.8,
    PlanTier.CUSTOM.value: 1.0,
}

DEFAULT_MODULE_PRICING: dict[str, dict[str, Any]] = {
    "farm": {
        "module_name": "Farm Management",
        "metrics": [
            (PricingMetricType.BASE_PRICE, 2900, 0),
            (PricingMetricType.PER_FARM, 1500, 1),
            (PricingMetricType.PER_POND, 200, 5),
        ],
    },
    "sensor": {
        "module_name": "Sensor Monitoring",
        "metrics": [
            (PricingMetricType.BASE_PRICE, 1900, 0),
            (PricingMetricType.PER_SENSOR, 300, 10),
            (PricingMetricType.PER_API_CALL, 1, 10000),
        ],
    },
    "alerts": {
        "module_name": "Alerts",
        "metrics": [
            (PricingMetricType.BASE_PRICE, 900, 0),
            (PricingMetricType.PER_SMS, 5, 100),
            (PricingMetricType.PER_EMAIL, 1, 1000),
        ],
    },
    "reports": {
        "module_name": "Reporting",
        "metrics": [
            (PricingMetricType.BASE_PRICE, 1500, 0),
            (PricingMetricType.PER_REPORT, 50, 20),
        ],
    },
    "hr": {
        "module_name": "HR & Staff",
        "metrics": [
            (PricingMetricType.BASE_PRICE, 1900, 0),
            (PricingMetricType.PER_USER, 1000, 2),
        ],
    },
}


class ModulePricingService:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    @staticmethod
    def _effective_now(statement: Any, now: datetime) -> Any:
        return (
            statement.where(ModulePricing.is_active == True)  # noqa: E712
            .where(col(ModulePricing.effective_from) <= now)
            .where(or_(col(ModulePricing.effective_to).is_(None), col(ModulePricing.effective_to) > now))
        )

    @staticmethod
    def _metrics_payload(metrics: list[PricingMetric]) -> list[dict[str, Any]]:
        if not metrics:
            raise ValidationError("at least one pricing metric is required")
        seen: set[PricingMetricType] = set()
        for metric in metrics:
            if metric.type in seen:
                raise ValidationError(f"duplicate pricing metric {metric.type.value}")
            seen.add(metric.type)
        return [metric.model_dump(mode="json") for metric in metrics]

    def active_pricing_by_code(
        self,
        session: Session,
        module_code: str,
        now: datetime | None = None,
    ) -> ModulePricing | None:
        statement = self._effective_now(
            select(ModulePricing).where(ModulePricing.module_code == module_code),
            as_utc(now or now_utc()),
        )
        return session.exec(statement.order_by(col(ModulePricing.version).desc())).first()

    def list_active_pricing(self) -> list[ModulePricing]:
        with self._session() as session:
            statement = self._effective_now(select(ModulePricing), now_utc())
            return list(session.exec(statement.order_by(col(ModulePricing.module_code))).all())

    def list_pricing_with_modules(self) -> list[tuple[ModulePricing, int]]:
        with self._session() as session:
            counts = {
                module_id: int(total)
                for module_id, total in session.exec(
                    select(ModulePricing.module_id, func.count()).group_by(ModulePricing.module_id)
                ).all()
            }
            statement = self._effective_now(select(ModulePricing), now_utc())
            rows = list(session.exec(statement.order_by(col(ModulePricing.module_code))).all())
            return [(row, counts.get(row.module_id, 1)) for row in rows]

    def get_pricing(self, module_id: str) -> ModulePricing:
        with self._session() as session:
            statement = self._effective_now(
                select(ModulePricing).where(ModulePricing.module_id == module_id),
                now_utc(),
            )
            row = session.exec(statement.order_by(col(ModulePricing.version).desc())).first()
            if row is None:
                raise NotFoundError("module pricing not found")
            return row

    def get_pricing_by_code(self, module_code: str) -> ModulePricing:
        with self._session() as session:
            row = self.active_pricing_by_code(session, module_code)
            if row is None:
                raise NotFoundError("module pricing not found")
            return row

    def get_pricing_history(self, module_id: str) -> list[ModulePricing]:
        with self._session() as session:
            rows = session.exec(
                select(ModulePricing)
                .where(ModulePricing.module_id == module_id)
                .order_by(col(ModulePricing.version).desc())
            ).all()
            return list(rows)

    def set_module_pricing(self, payload: ModulePricingCreate) -> ModulePricing:
        metrics = self._metrics_payload(payload.pricing_metrics)
        effective_from = as_utc(payload.effective_from) if payload.effective_from else now_utc()
        if payload.effective_to is not None and as_utc(payload.effective_to) <= effective_from:
            raise ValidationError("effective_to must be later than effective_from")

        with self._session() as session:
            previous_rows = list(
                session.exec(select(ModulePricing).where(ModulePricing.module_id == payload.module_id)).all()
            )
            now = now_utc()
            for previous in previous_rows:
                if not previous.is_active:
                    continue
                previous.is_active = False
                if previous.effective_to is None or as_utc(previous.effective_to) > effective_from:
                    previous.effective_to = effective_from
                previous.updated_at = now
                session.add(previous)

            version = max((item.version for item in previous_rows), default=0) + 1
            row = ModulePricing(
                module_id=payload.module_id,
                module_code=payload.module_code.strip().lower(),
                module_name=payload.module_name,
                pricing_metrics=metrics,
                tier_multipliers={tier.value: value for tier, value in payload.tier_multipliers.items()},
                currency=payload.currency.upper(),
                effective_from=effective_from,
                effective_to=as_utc(payload.effective_to) if payload.effective_to else None,
                notes=payload.notes,
                version=version,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            logger.info("module_pricing.set", module_id=row.module_id, version=row.version)
            return row

    def update_pricing(self, pricing_id: str, payload: ModulePricingUpdate) -> ModulePricing:
        with self._session() as session:
            row = session.get(ModulePricing, pricing_id)
            if row is None:
                raise NotFoundError("module pricing not found")
            if payload.pricing_metrics is not None:
                row.pricing_metrics = self._metrics_payload(payload.pricing_metrics)
            if payload.tier_multipliers is not None:
                row.tier_multipliers = {tier.value: value for tier, value in payload.tier_multipliers.items()}
            if payload.effective_to is not None:
                effective_to = as_utc(payload.effective_to)
                if effective_to <= as_utc(row.effective_from):
                    raise ValidationError("effective_to must be later than effective_from")
                row.effective_to = effective_to
            if payload.module_name is not None:
                row.module_name = payload.module_name
            if payload.notes is not None:
                row.notes = payload.notes
            row.updated_at = now_utc()
            session.add(row)
            session.commit()
            session.refresh(row)
            return row

    def deactivate_pricing(self, pricing_id: str) -> ModulePricing:
        with self._session() as session:
            row = session.get(ModulePricing, pricing_id)
            if row is None:
                raise NotFoundError("module pricing not found")
            row.is_active = False
            row.updated_at = now_utc()
            session.add(row)
            session.commit()
            session.refresh(row)
            return row

    def seed_default_pricing(self, module_id_map: dict[str, str]) -> int:
        seeded = 0
        for module_code, module_id in module_id_map.items():
            template = DEFAULT_MODULE_PRICING.get(module_code.lower())
            if template is None:
                logger.warning("module_pricing.no_default", module_code=module_code)
                continue
            with self._session() as session:
                existing = session.exec(
                    select(ModulePricing.id).where(ModulePricing.module_id == module_id)
                ).first()
            if existing is not None:
                continue
            self.set_module_pricing(
                ModulePricingCreate(
                    module_id=module_id,
                    module_code=module_code,
                    module_name=template["module_name"],
                    pricing_metrics=[
                        PricingMetric(type=metric, price_cents=price, included_quantity=included)
                        for metric, price, included in template["metrics"]
                    ],
                    tier_multipliers={PlanTier(key): value for key, value in DEFAULT_TIER_MULTIPLIERS.items()},
                )
            )
            seeded += 1
        return seeded
