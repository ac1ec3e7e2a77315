from __future__ import annotations

import math
from typing import Any

import structlog
from sqlalchemy import func, or_
from sqlmodel import Session, col, select

from app.domain.billing_cycles import round_cents
from app.domain.models import (
    CustomPlan,
    CustomPlanCreate,
    CustomPlanUpdate,
    ModuleQuantities,
    ModuleSelection,
    PlanTier,
    SubscriptionCreate,
    SubscriptionModuleInput,
    Tenant,
    now_utc,
)
from app.domain.state_machine import CustomPlanStatus, can_custom_plan_transition, can_modify_custom_plan
from app.infra.db import get_engine
from app.services.errors import NotFoundError, ServiceError, ValidationError
from app.services.pricing_service import PricingService
from app.services.subscription_service import SubscriptionService

logger = structlog.get_logger(__name__)


def monthly_total_cents(subtotal_cents: int, discount_percent: float, discount_amount_cents: int) -> int:
    percent_off = round_cents(subtotal_cents * discount_percent / 100)
    return max(0, subtotal_cents - percent_off - discount_amount_cents)


class CustomPlanService:
    def __init__(
        self,
        pricing: PricingService | None = None,
        subscriptions: SubscriptionService | None = None,
    ) -> None:
        self._pricing = pricing or PricingService()
        self._subscriptions = subscriptions or SubscriptionService()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _get_plan(self, session: Session, plan_id: str) -> CustomPlan:
        row = session.get(CustomPlan, plan_id)
        if row is None:
            raise NotFoundError("custom plan not found")
        return row

    @staticmethod
    def _ensure_tenant(session: Session, tenant_id: str) -> None:
        if session.get(Tenant, tenant_id) is None:
            raise NotFoundError("tenant not found")

    @staticmethod
    def _transition(row: CustomPlan, target: CustomPlanStatus) -> None:
        if not can_custom_plan_transition(row.status, target):
            raise ValidationError(f"cannot move custom plan from {row.status.value} to {target.value}")
        row.status = target

    def _price(
        self,
        session: Session,
        modules: list[ModuleSelection],
        tier: PlanTier,
    ) -> tuple[list[dict[str, Any]], int]:
        breakdown = self._pricing.price_modules_in_session(session, modules, tier)
        if breakdown.skipped_modules:
            logger.warning("custom_plan.modules_unpriced", module_codes=breakdown.skipped_modules)
        priced = [
            {
                "module_code": item.module_code,
                "module_id": item.module_id,
                "module_name": item.module_name,
                "quantities": item.quantities.model_dump(),
                "line_items": [line.model_dump(mode="json") for line in item.line_items],
                "subtotal_cents": item.subtotal_cents,
            }
            for item in breakdown.modules
        ]
        return priced, breakdown.monthly_subtotal_cents

    def create_plan(self, payload: CustomPlanCreate, created_by: str | None = None) -> CustomPlan:
        with self._session() as session:
            self._ensure_tenant(session, payload.tenant_id)
            modules, subtotal = self._price(session, payload.modules, payload.tier)
            row = CustomPlan(
                tenant_id=payload.tenant_id,
                name=payload.name,
                description=payload.description,
                tier=payload.tier,
                billing_cycle=payload.billing_cycle,
                status=CustomPlanStatus.DRAFT,
                modules=modules,
                monthly_subtotal_cents=subtotal,
                discount_percent=payload.discount_percent,
                discount_amount_cents=payload.discount_amount_cents,
                monthly_total_cents=monthly_total_cents(
                    subtotal, payload.discount_percent, payload.discount_amount_cents
                ),
                currency=payload.currency.upper(),
                notes=payload.notes,
                created_by=created_by,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return row

    def get_plan(self, plan_id: str) -> CustomPlan:
        with self._session() as session:
            return self._get_plan(session, plan_id)

    def get_active_for_tenant(self, tenant_id: str) -> CustomPlan:
        with self._session() as session:
            row = session.exec(
                select(CustomPlan)
                .where(CustomPlan.tenant_id == tenant_id)
                .where(CustomPlan.status == CustomPlanStatus.ACTIVE)
                .order_by(col(CustomPlan.activated_at).desc(), col(CustomPlan.created_at).desc())
            ).first()
            if row is None:
                raise NotFoundError("no active custom plan for tenant")
            return row

    def list_plans(
        self,
        *,
        tenant_id: str | None = None,
        status: CustomPlanStatus | None = None,
        tier: PlanTier | None = None,
        search: str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[CustomPlan], int, int]:
        conditions: list[Any] = []
        if tenant_id is not None:
            conditions.append(CustomPlan.tenant_id == tenant_id)
        if status is not None:
            conditions.append(CustomPlan.status == status)
        if tier is not None:
            conditions.append(CustomPlan.tier == tier)
        if search:
            pattern = f"%{search.strip().lower()}%"
            conditions.append(
                or_(
                    func.lower(col(CustomPlan.name)).like(pattern),
                    func.lower(col(CustomPlan.description)).like(pattern),
                )
            )
        page = max(page, 1)
        with self._session() as session:
            statement = select(CustomPlan)
            count_statement = select(func.count()).select_from(CustomPlan)
            for condition in conditions:
                statement = statement.where(condition)
                count_statement = count_statement.where(condition)
            total = int(session.exec(count_statement).one())
            rows = session.exec(
                statement.order_by(col(CustomPlan.created_at).desc()).offset((page - 1) * limit).limit(limit)
            ).all()
        total_pages = math.ceil(total / limit) if limit else 0
        return list(rows), total, total_pages

    def update_plan(self, plan_id: str, payload: CustomPlanUpdate) -> CustomPlan:
        with self._session() as session:
            row = self._get_plan(session, plan_id)
            if not can_modify_custom_plan(row.status):
                raise ValidationError(f"custom plan in {row.status.value} status cannot be modified")

            if payload.name is not None:
                row.name = payload.name
            if payload.description is not None:
                row.description = payload.description
            if payload.billing_cycle is not None:
                row.billing_cycle = payload.billing_cycle
            if payload.notes is not None:
                row.notes = payload.notes
            if payload.discount_percent is not None:
                row.discount_percent = payload.discount_percent
            if payload.discount_amount_cents is not None:
                row.discount_amount_cents = payload.discount_amount_cents

            if payload.modules is not None or payload.tier is not None:
                row.tier = payload.tier or row.tier
                selections = payload.modules
                if selections is None:
                    selections = [
                        ModuleSelection(
                            module_code=item["module_code"],
                            module_id=item.get("module_id"),
                            module_name=item.get("module_name"),
                            quantities=ModuleQuantities(**item.get("quantities", {})),
                        )
                        for item in row.modules
                    ]
                row.modules, row.monthly_subtotal_cents = self._price(session, selections, row.tier)

            row.monthly_total_cents = monthly_total_cents(
                row.monthly_subtotal_cents, row.discount_percent, row.discount_amount_cents
            )
            row.updated_at = now_utc()
            session.add(row)
            session.commit()
            session.refresh(row)
            return row

    def submit_for_approval(self, plan_id: str) -> CustomPlan:
        with self._session() as session:
            row = self._get_plan(session, plan_id)
            if row.status != CustomPlanStatus.DRAFT:
                raise ValidationError("only draft plans can be submitted for approval")
            if not row.modules:
                raise ValidationError("custom plan must include at least one module")
            self._transition(row, CustomPlanStatus.PENDING_APPROVAL)
            row.submitted_at = now_utc()
            row.updated_at = row.submitted_at
            session.add(row)
            session.commit()
            session.refresh(row)
            return row

    def approve(self, plan_id: str, approved_by: str | None = None) -> CustomPlan:
        with self._session() as session:
            row = self._get_plan(session, plan_id)
            if row.status != CustomPlanStatus.PENDING_APPROVAL:
                raise ValidationError("only plans pending approval can be approved")
            self._transition(row, CustomPlanStatus.APPROVED)
            row.approved_by = approved_by
            row.approved_at = now_utc()
            row.updated_at = row.approved_at
            session.add(row)
            session.commit()
            session.refresh(row)
            return row

    def reject(self, plan_id: str, reason: str, rejected_by: str | None = None) -> CustomPlan:
        if not reason or not reason.strip():
            raise ValidationError("a rejection reason is required")
        with self._session() as session:
            row = self._get_plan(session, plan_id)
            if row.status != CustomPlanStatus.PENDING_APPROVAL:
                raise ValidationError("only plans pending approval can be rejected")
            self._transition(row, CustomPlanStatus.REJECTED)
            row.rejected_by = rejected_by
            row.rejected_at = now_utc()
            row.rejection_reason = reason.strip()
            row.updated_at = row.rejected_at
            session.add(row)
            session.commit()
            session.refresh(row)
            return row

    def return_to_draft(self, plan_id: str) -> CustomPlan:
        with self._session() as session:
            row = self._get_plan(session, plan_id)
            self._transition(row, CustomPlanStatus.DRAFT)
            row.submitted_at = None
            row.updated_at = now_utc()
            session.add(row)
            session.commit()
            session.refresh(row)
            return row

    def activate(self, plan_id: str, activated_by: str | None = None) -> CustomPlan:
        with self._session() as session:
            row = self._get_plan(session, plan_id)
            if row.status != CustomPlanStatus.APPROVED:
                raise ValidationError("only approved plans can be activated")

        try:
            subscription = self._subscriptions.create_subscription(
                SubscriptionCreate(
                    tenant_id=row.tenant_id,
                    plan_tier=row.tier,
                    billing_cycle=row.billing_cycle,
                    modules=[
                        SubscriptionModuleInput(
                            module_id=item.get("module_id") or item["module_code"],
                            module_code=item["module_code"],
                            module_name=item.get("module_name"),
                            quantities=ModuleQuantities(**item.get("quantities", {})),
                            line_items=item.get("line_items", []),
                            subtotal_cents=item.get("subtotal_cents", 0),
                        )
                        for item in row.modules
                    ],
                    monthly_total_cents=row.monthly_total_cents,
                    currency=row.currency,
                ),
                created_by=activated_by,
            )
        except ServiceError as exc:
            logger.warning("custom_plan.activation_failed", plan_id=plan_id, error=str(exc))
            with self._session() as session:
                failed = self._get_plan(session, plan_id)
                failed.last_activation_error = str(exc)
                failed.updated_at = now_utc()
                session.add(failed)
                session.commit()
            raise ValidationError(f"Failed to activate custom plan: {exc}") from exc

        with self._session() as session:
            row = self._get_plan(session, plan_id)
            self._transition(row, CustomPlanStatus.ACTIVE)
            row.subscription_id = subscription.id
            row.activated_at = now_utc()
            row.last_activation_error = None
            row.updated_at = row.activated_at
            session.add(row)
            session.commit()
            session.refresh(row)
            logger.info("custom_plan.activated", plan_id=row.id, subscription_id=subscription.id)
            return row

    def delete_plan(self, plan_id: str) -> None:
        with self._session() as session:
            row = self._get_plan(session, plan_id)
            if row.status != CustomPlanStatus.DRAFT:
                raise ValidationError("only draft plans can be deleted")
            session.delete(row)
            session.commit()

    def clone_plan(self, plan_id: str, new_tenant_id: str, created_by: str | None = None) -> CustomPlan:
        with self._session() as session:
            source = self._get_plan(session, plan_id)
            self._ensure_tenant(session, new_tenant_id)
            clone = CustomPlan(
                tenant_id=new_tenant_id,
                name=f"{source.name} (Copy)",
                description=source.description,
                tier=source.tier,
                billing_cycle=source.billing_cycle,
                status=CustomPlanStatus.DRAFT,
                modules=[dict(item) for item in source.modules],
                monthly_subtotal_cents=source.monthly_subtotal_cents,
                discount_percent=source.discount_percent,
                discount_amount_cents=source.discount_amount_cents,
                monthly_total_cents=source.monthly_total_cents,
                currency=source.currency,
                notes=source.notes,
                created_by=created_by,
            )
            session.add(clone)
            session.commit()
            session.refresh(clone)
            return clone
