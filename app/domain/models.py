from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict
from pydantic import Field as PydanticField
from sqlalchemy import JSON, Column, Index, UniqueConstraint
from sqlmodel import Field, SQLModel

from app.domain.state_machine import (
    CustomPlanStatus,
    TenantLifecycle,
    TenantStatus,
    resolve_lifecycle,
)


def now_utc() -> datetime:
    return datetime.now(UTC)


class PlanTier(StrEnum):
    FREE = "FREE"
    STARTER = "STARTER"
    PROFESSIONAL = "PROFESSIONAL"
    ENTERPRISE = "ENTERPRISE"
    CUSTOM = "CUSTOM"


class BillingCycle(StrEnum):
    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"
    SEMI_ANNUAL = "SEMI_ANNUAL"
    ANNUAL = "ANNUAL"


class PlanVisibility(StrEnum):
    PUBLIC = "PUBLIC"
    PRIVATE = "PRIVATE"
    DEPRECATED = "DEPRECATED"


class SubscriptionStatus(StrEnum):
    TRIAL = "TRIAL"
    ACTIVE = "ACTIVE"
    PAST_DUE = "PAST_DUE"
    CANCELLED = "CANCELLED"
    SUSPENDED = "SUSPENDED"
    EXPIRED = "EXPIRED"


class DiscountType(StrEnum):
    PERCENTAGE = "PERCENTAGE"
    FIXED_AMOUNT = "FIXED_AMOUNT"
    FREE_MONTHS = "FREE_MONTHS"
    FREE_TRIAL_EXTENSION = "FREE_TRIAL_EXTENSION"


class DiscountAppliesTo(StrEnum):
    ALL_PLANS = "ALL_PLANS"
    SPECIFIC_PLANS = "SPECIFIC_PLANS"


class DiscountDuration(StrEnum):
    ONCE = "ONCE"
    REPEATING = "REPEATING"
    FOREVER = "FOREVER"


class InvoiceStatus(StrEnum):
    PENDING = "PENDING"
    PARTIALLY_PAID = "PARTIALLY_PAID"
    PAID = "PAID"
    OVERDUE = "OVERDUE"
    VOID = "VOID"


class PricingMetricType(StrEnum):
    BASE_PRICE = "BASE_PRICE"
    PER_USER = "PER_USER"
    PER_FARM = "PER_FARM"
    PER_POND = "PER_POND"
    PER_SENSOR = "PER_SENSOR"
    PER_DEVICE = "PER_DEVICE"
    PER_GB_STORAGE = "PER_GB_STORAGE"
    PER_API_CALL = "PER_API_CALL"
    PER_ALERT = "PER_ALERT"
    PER_REPORT = "PER_REPORT"
    PER_SMS = "PER_SMS"
    PER_EMAIL = "PER_EMAIL"
    PER_INTEGRATION = "PER_INTEGRATION"


class ProvisioningStepStatus(StrEnum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class OutboundEmailStatus(StrEnum):
    QUEUED = "QUEUED"
    SENT = "SENT"
    FAILED = "FAILED"


class EventRecord(SQLModel, table=True):
    __tablename__ = "events"

    event_id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    event_type: str = Field(index=True)
    tenant_id: str = Field(index=True)
    ts: datetime = Field(default_factory=now_utc, index=True)
    actor_id: str | None = Field(default=None, index=True)
    correlation_id: str | None = Field(default=None, index=True)
    payload: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_logs"
    __table_args__ = (Index("ix_audit_logs_entity", "entity_type", "entity_id"),)

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(index=True)
    actor_id: str | None = Field(default=None, index=True)
    action: str = Field(index=True)
    resource: str
    entity_type: str | None = None
    entity_id: str | None = None
    method: str | None = None
    status_code: int | None = None
    ts: datetime = Field(default_factory=now_utc, index=True)
    detail: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class Tenant(SQLModel, table=True):
    __tablename__ = "tenants"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    name: str = Field(index=True)
    slug: str = Field(index=True, unique=True)
    domain: str | None = Field(default=None, index=True, unique=True)
    status: TenantStatus = Field(default=TenantStatus.PENDING, index=True)
    tier: PlanTier = Field(default=PlanTier.FREE, index=True)
    plan_id: str | None = None
    limits: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    settings: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    primary_contact: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    billing_contact: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    trial_ends_at: datetime | None = Field(default=None, index=True)
    activated_at: datetime | None = None
    suspended_at: datetime | None = None
    suspension_reason: str | None = None
    suspended_by: str | None = None
    deactivated_at: datetime | None = None
    deactivation_reason: str | None = None
    deactivated_by: str | None = None
    archived_at: datetime | None = None
    archive_reason: str | None = None
    archived_by: str | None = None
    last_activity_at: datetime | None = None
    created_by: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)

    @property
    def lifecycle_state(self) -> TenantLifecycle:
        return resolve_lifecycle(self.status, self.archived_at)


class TenantNote(SQLModel, table=True):
    __tablename__ = "tenant_notes"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True)
    category: str = Field(default="GENERAL", max_length=50)
    content: str
    is_pinned: bool = False
    created_by: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class TenantRole(SQLModel, table=True):
    __tablename__ = "tenant_roles"
    __table_args__ = (UniqueConstraint("tenant_id", "name", name="uq_tenant_roles_tenant_name"),)

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True)
    name: str = Field(index=True)
    description: str | None = None
    permissions: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    is_system: bool = True
    created_at: datetime = Field(default_factory=now_utc)


class TenantConfig(SQLModel, table=True):
    __tablename__ = "tenant_configs"
    __table_args__ = (UniqueConstraint("tenant_id", "section", name="uq_tenant_configs_section"),)

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True)
    section: str
    value: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=now_utc)
    updated_at: datetime = Field(default_factory=now_utc)


class TenantUser(SQLModel, table=True):
    __tablename__ = "tenant_users"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True)
    email: str = Field(index=True, unique=True)
    first_name: str
    last_name: str
    role: str = "TENANT_ADMIN"
    is_active: bool = False
    invitation_token: str | None = Field(default=None, index=True)
    invitation_expires_at: datetime | None = None
    invited_at: datetime | None = None
    created_at: datetime = Field(default_factory=now_utc)


class TenantModule(SQLModel, table=True):
    __tablename__ = "tenant_modules"
    __table_args__ = (UniqueConstraint("tenant_id", "module_id", name="uq_tenant_modules_module"),)

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True)
    module_id: str = Field(index=True)
    is_active: bool = True
    assigned_by: str | None = None
    assigned_at: datetime = Field(default_factory=now_utc)


class TenantSchema(SQLModel, table=True):
    __tablename__ = "tenant_schemas"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True, unique=True)
    schema_name: str = Field(unique=True)
    modules: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    tables: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=now_utc)
    dropped_at: datetime | None = None


class OutboundEmail(SQLModel, table=True):
    __tablename__ = "outbound_emails"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(index=True)
    recipient: str = Field(index=True)
    template: str
    subject: str
    payload: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    status: OutboundEmailStatus = Field(default=OutboundEmailStatus.QUEUED, index=True)
    error: str | None = None
    created_at: datetime = Field(default_factory=now_utc)
    sent_at: datetime | None = None


class PlanDefinition(SQLModel, table=True):
    __tablename__ = "plan_definitions"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    code: str = Field(index=True, unique=True, max_length=50)
    name: str = Field(max_length=100)
    description: str | None = None
    tier: PlanTier = Field(index=True)
    visibility: PlanVisibility = Field(default=PlanVisibility.PUBLIC, index=True)
    is_active: bool = Field(default=True, index=True)
    is_recommended: bool = False
    sort_order: int = 0
    limits: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    pricing: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    features: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    trial_days: int = 0
    grace_period_days: int = 0
    downgrade_warning: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class Subscription(SQLModel, table=True):
    __tablename__ = "subscriptions"
    __table_args__ = (
        Index("ix_subscriptions_status_period_end", "status", "current_period_end"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True, unique=True)
    plan_id: str | None = Field(default=None, index=True)
    plan_tier: PlanTier = Field(index=True)
    plan_name: str
    status: SubscriptionStatus = Field(default=SubscriptionStatus.ACTIVE, index=True)
    billing_cycle: BillingCycle = Field(default=BillingCycle.MONTHLY, index=True)
    current_period_start: datetime
    current_period_end: datetime = Field(index=True)
    trial_end_date: datetime | None = None
    end_date: datetime | None = None
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None
    auto_renew: bool = True
    currency: str = "USD"
    limits: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    pricing: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    created_by: str | None = None
    updated_by: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class SubscriptionModuleItem(SQLModel, table=True):
    __tablename__ = "subscription_module_items"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    subscription_id: str = Field(foreign_key="subscriptions.id", index=True)
    tenant_id: str = Field(index=True)
    module_id: str
    module_code: str
    module_name: str | None = None
    quantities: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    line_items: list[dict[str, Any]] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    subtotal_cents: int = 0
    created_at: datetime = Field(default_factory=now_utc)


class DiscountCode(SQLModel, table=True):
    __tablename__ = "discount_codes"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    code: str = Field(index=True, unique=True, max_length=50)
    name: str = Field(max_length=100)
    description: str | None = None
    discount_type: DiscountType
    value: float
    currency: str = "USD"
    duration: DiscountDuration = DiscountDuration.ONCE
    duration_in_months: int | None = None
    applies_to: DiscountAppliesTo = DiscountAppliesTo.ALL_PLANS
    applicable_plan_ids: list[str] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    min_order_amount_cents: int | None = None
    max_redemptions: int | None = None
    max_redemptions_per_tenant: int | None = None
    current_redemptions: int = 0
    valid_from: datetime = Field(default_factory=now_utc)
    valid_until: datetime | None = None
    is_active: bool = Field(default=True, index=True)
    campaign_id: str | None = Field(default=None, index=True)
    created_by: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class DiscountRedemption(SQLModel, table=True):
    __tablename__ = "discount_redemptions"
    __table_args__ = (
        Index("ix_discount_redemptions_code_tenant", "discount_code_id", "tenant_id"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    discount_code_id: str = Field(foreign_key="discount_codes.id", index=True)
    code: str
    tenant_id: str = Field(index=True)
    subscription_id: str | None = None
    invoice_id: str | None = None
    discount_amount_cents: int
    currency: str = "USD"
    redeemed_by: str | None = None
    redeemed_at: datetime = Field(default_factory=now_utc, index=True)


class ModulePricing(SQLModel, table=True):
    __tablename__ = "module_pricing"
    __table_args__ = (
        Index("ix_module_pricing_module_active", "module_id", "is_active"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    module_id: str = Field(index=True)
    module_code: str = Field(index=True)
    module_name: str | None = None
    pricing_metrics: list[dict[str, Any]] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    tier_multipliers: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    currency: str = "USD"
    effective_from: datetime = Field(default_factory=now_utc)
    effective_to: datetime | None = None
    is_active: bool = Field(default=True, index=True)
    notes: str | None = None
    version: int = 1
    created_at: datetime = Field(default_factory=now_utc)
    updated_at: datetime = Field(default_factory=now_utc)

    def tier_multiplier(self, tier: PlanTier) -> float:
        raw = self.tier_multipliers.get(tier.value)
        if isinstance(raw, int | float) and raw > 0:
            return float(raw)
        return 1.0


class Invoice(SQLModel, table=True):
    __tablename__ = "invoices"
    __table_args__ = (Index("ix_invoices_status_due_date", "status", "due_date"),)

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    invoice_number: str = Field(index=True, unique=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True)
    subscription_id: str | None = Field(default=None, index=True)
    status: InvoiceStatus = Field(default=InvoiceStatus.PENDING, index=True)
    currency: str = "USD"
    subtotal_cents: int = 0
    discount_cents: int = 0
    discount_code: str | None = None
    tax_cents: int = 0
    total_cents: int = 0
    amount_paid_cents: int = 0
    amount_due_cents: int = 0
    period_start: datetime | None = None
    period_end: datetime | None = None
    due_date: datetime
    paid_at: datetime | None = None
    voided_at: datetime | None = None
    void_reason: str | None = None
    payment_method: str | None = None
    payment_reference: str | None = None
    notes: str | None = None
    created_by: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class InvoiceLine(SQLModel, table=True):
    __tablename__ = "invoice_lines"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    invoice_id: str = Field(foreign_key="invoices.id", index=True)
    description: str
    quantity: int = 1
    unit_price_cents: int = 0
    amount_cents: int = 0
    created_at: datetime = Field(default_factory=now_utc)


class CustomPlan(SQLModel, table=True):
    __tablename__ = "custom_plans"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True)
    name: str = Field(max_length=200)
    description: str | None = None
    tier: PlanTier = PlanTier.CUSTOM
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    status: CustomPlanStatus = Field(default=CustomPlanStatus.DRAFT, index=True)
    modules: list[dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    monthly_subtotal_cents: int = 0
    discount_percent: float = 0
    discount_amount_cents: int = 0
    monthly_total_cents: int = 0
    currency: str = "USD"
    notes: str | None = None
    created_by: str | None = None
    submitted_at: datetime | None = None
    approved_by: str | None = None
    approved_at: datetime | None = None
    rejected_by: str | None = None
    rejected_at: datetime | None = None
    rejection_reason: str | None = None
    subscription_id: str | None = None
    activated_at: datetime | None = None
    last_activation_error: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class EventEnvelope(BaseModel):
    event_id: str = PydanticField(default_factory=lambda: str(uuid4()))
    event_type: str
    tenant_id: str
    ts: datetime = PydanticField(default_factory=now_utc)
    actor_id: str | None = None
    correlation_id: str | None = None
    payload: dict[str, Any] = PydanticField(default_factory=dict)


class ORMReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# Plans


class PlanCyclePrice(BaseModel):
    base_price_cents: int = PydanticField(default=0, ge=0)
    per_user_price_cents: int = PydanticField(default=0, ge=0)
    per_farm_price_cents: int = PydanticField(default=0, ge=0)
    per_module_price_cents: int = PydanticField(default=0, ge=0)
    discount_percent: float = PydanticField(default=0, ge=0, le=100)


class PlanPricing(BaseModel):
    monthly: PlanCyclePrice
    quarterly: PlanCyclePrice | None = None
    semi_annual: PlanCyclePrice | None = None
    annual: PlanCyclePrice | None = None
    currency: str = "USD"


class PlanDefinitionCreate(BaseModel):
    code: str
    name: str
    description: str | None = None
    tier: PlanTier
    visibility: PlanVisibility = PlanVisibility.PUBLIC
    is_active: bool = True
    is_recommended: bool = False
    sort_order: int = 0
    limits: dict[str, int] = PydanticField(default_factory=dict)
    pricing: PlanPricing
    features: dict[str, Any] = PydanticField(default_factory=dict)
    trial_days: int = PydanticField(default=0, ge=0)
    grace_period_days: int = PydanticField(default=0, ge=0)
    downgrade_warning: str | None = None


class PlanDefinitionUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    visibility: PlanVisibility | None = None
    is_active: bool | None = None
    is_recommended: bool | None = None
    sort_order: int | None = None
    limits: dict[str, int] | None = None
    pricing: dict[str, Any] | None = None
    features: dict[str, Any] | None = None
    trial_days: int | None = PydanticField(default=None, ge=0)
    grace_period_days: int | None = PydanticField(default=None, ge=0)
    downgrade_warning: str | None = None


class PlanDefinitionRead(ORMReadModel):
    id: str
    code: str
    name: str
    description: str | None
    tier: PlanTier
    visibility: PlanVisibility
    is_active: bool
    is_recommended: bool
    sort_order: int
    limits: dict[str, Any]
    pricing: dict[str, Any]
    features: dict[str, Any]
    trial_days: int
    grace_period_days: int
    downgrade_warning: str | None
    created_at: datetime
    updated_at: datetime


class PlanLimitChange(BaseModel):
    key: str
    current: int | None
    new: int | None
    change: str


class PlanFeatureChange(BaseModel):
    feature: str
    current: bool
    new: bool


class PlanComparisonRead(BaseModel):
    current_plan: PlanDefinitionRead
    new_plan: PlanDefinitionRead
    price_difference_cents: int
    is_upgrade: bool
    is_downgrade: bool
    limit_changes: list[PlanLimitChange]
    feature_changes: list[PlanFeatureChange]
    warnings: list[str]


class ProrationRequest(BaseModel):
    current_plan_id: str
    new_plan_id: str
    current_period_end: datetime
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    new_billing_cycle: BillingCycle | None = None


class ProrationRead(BaseModel):
    current_plan_credit_cents: int
    new_plan_cost_cents: int
    prorated_amount_cents: int
    days_remaining: int
    cycle_days: int
    effective_date: datetime


class PlanDefaultsRead(BaseModel):
    tier: PlanTier
    limits: dict[str, int]
    features: dict[str, bool]


class SeedResultRead(BaseModel):
    seeded_count: int


# Discounts


class DiscountCodeCreate(BaseModel):
    code: str
    name: str
    description: str | None = None
    discount_type: DiscountType
    value: float
    currency: str = "USD"
    duration: DiscountDuration = DiscountDuration.ONCE
    duration_in_months: int | None = PydanticField(default=None, ge=1)
    applies_to: DiscountAppliesTo = DiscountAppliesTo.ALL_PLANS
    applicable_plan_ids: list[str] = PydanticField(default_factory=list)
    min_order_amount_cents: int | None = PydanticField(default=None, ge=0)
    max_redemptions: int | None = PydanticField(default=None, ge=1)
    max_redemptions_per_tenant: int | None = PydanticField(default=None, ge=1)
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    is_active: bool = True
    campaign_id: str | None = None


class DiscountCodeUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    value: float | None = None
    applies_to: DiscountAppliesTo | None = None
    applicable_plan_ids: list[str] | None = None
    min_order_amount_cents: int | None = PydanticField(default=None, ge=0)
    max_redemptions: int | None = PydanticField(default=None, ge=1)
    max_redemptions_per_tenant: int | None = PydanticField(default=None, ge=1)
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    is_active: bool | None = None
    campaign_id: str | None = None


class DiscountCodeRead(ORMReadModel):
    id: str
    code: str
    name: str
    description: str | None
    discount_type: DiscountType
    value: float
    currency: str
    duration: DiscountDuration
    duration_in_months: int | None
    applies_to: DiscountAppliesTo
    applicable_plan_ids: list[str]
    min_order_amount_cents: int | None
    max_redemptions: int | None
    max_redemptions_per_tenant: int | None
    current_redemptions: int
    valid_from: datetime
    valid_until: datetime | None
    is_active: bool
    campaign_id: str | None
    created_by: str | None
    created_at: datetime
    updated_at: datetime


class DiscountRedemptionRead(ORMReadModel):
    id: str
    discount_code_id: str
    code: str
    tenant_id: str
    subscription_id: str | None
    invoice_id: str | None
    discount_amount_cents: int
    currency: str
    redeemed_by: str | None
    redeemed_at: datetime


class DiscountValidateRequest(BaseModel):
    code: str
    tenant_id: str
    plan_id: str | None = None
    order_amount_cents: int = PydanticField(default=0, ge=0)


class DiscountValidationRead(BaseModel):
    valid: bool
    reason: str | None = None
    discount_code_id: str | None = None
    code: str | None = None
    discount_type: DiscountType | None = None
    discount_amount_cents: int = 0
    final_amount_cents: int = 0


class DiscountApplyRequest(BaseModel):
    code: str
    tenant_id: str
    plan_id: str | None = None
    order_amount_cents: int = PydanticField(ge=0)
    subscription_id: str | None = None
    invoice_id: str | None = None


class DiscountApplyRead(BaseModel):
    applied: bool
    reason: str | None = None
    discount_amount_cents: int = 0
    final_amount_cents: int = 0
    redemption: DiscountRedemptionRead | None = None


class DiscountTopCode(BaseModel):
    code: str
    redemptions: int
    total_discount_cents: int


class DiscountStatsRead(BaseModel):
    total_codes: int
    active_codes: int
    expired_codes: int
    total_redemptions: int
    total_discount_cents: int
    top_codes: list[DiscountTopCode]


class DiscountGenerateCodeRequest(BaseModel):
    prefix: str = ""
    length: int = PydanticField(default=8, ge=4, le=32)


class DiscountGenerateCodeRead(BaseModel):
    code: str


class DiscountBulkCreateRequest(BaseModel):
    template: DiscountCodeCreate
    count: int = PydanticField(ge=1, le=500)
    prefix: str = ""


class DiscountRedemptionListRead(BaseModel):
    items: list[DiscountRedemptionRead]
    total: int


# Module pricing and quotes


class PricingMetric(BaseModel):
    type: PricingMetricType
    price_cents: int = PydanticField(ge=0)
    included_quantity: int = PydanticField(default=0, ge=0)
    description: str | None = None


class ModulePricingCreate(BaseModel):
    module_id: str
    module_code: str
    module_name: str | None = None
    pricing_metrics: list[PricingMetric]
    tier_multipliers: dict[PlanTier, float] = PydanticField(default_factory=dict)
    currency: str = "USD"
    effective_from: datetime | None = None
    effective_to: datetime | None = None
    notes: str | None = None


class ModulePricingUpdate(BaseModel):
    module_name: str | None = None
    pricing_metrics: list[PricingMetric] | None = None
    tier_multipliers: dict[PlanTier, float] | None = None
    effective_to: datetime | None = None
    notes: str | None = None


class ModulePricingRead(ORMReadModel):
    id: str
    module_id: str
    module_code: str
    module_name: str | None
    pricing_metrics: list[dict[str, Any]]
    tier_multipliers: dict[str, Any]
    currency: str
    effective_from: datetime
    effective_to: datetime | None
    is_active: bool
    notes: str | None
    version: int
    created_at: datetime
    updated_at: datetime


class ModulePricingOverviewRead(BaseModel):
    pricing: ModulePricingRead
    version_count: int


class ModulePricingSeedRequest(BaseModel):
    module_id_map: dict[str, str]


class ModuleQuantities(BaseModel):
    users: int = PydanticField(default=0, ge=0)
    farms: int = PydanticField(default=0, ge=0)
    ponds: int = PydanticField(default=0, ge=0)
    sensors: int = PydanticField(default=0, ge=0)
    devices: int = PydanticField(default=0, ge=0)
    storage_gb: int = PydanticField(default=0, ge=0)
    api_calls: int = PydanticField(default=0, ge=0)
    alerts: int = PydanticField(default=0, ge=0)
    reports: int = PydanticField(default=0, ge=0)
    sms: int = PydanticField(default=0, ge=0)
    emails: int = PydanticField(default=0, ge=0)
    integrations: int = PydanticField(default=0, ge=0)


class ModuleSelection(BaseModel):
    module_code: str
    module_id: str | None = None
    module_name: str | None = None
    quantities: ModuleQuantities = PydanticField(default_factory=ModuleQuantities)


class QuoteRequest(BaseModel):
    modules: list[ModuleSelection]
    tier: PlanTier = PlanTier.STARTER
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    discount_code: str | None = None
    tenant_id: str | None = None
    plan_id: str | None = None
    tax_rate: float = PydanticField(default=0, ge=0, le=100)


class PricingLineItemRead(BaseModel):
    metric: PricingMetricType
    description: str
    quantity: int
    included_quantity: int
    billable_quantity: int
    unit_price_cents: int
    tier_multiplier: float
    total_cents: int


class ModulePriceBreakdownRead(BaseModel):
    module_id: str | None
    module_code: str
    module_name: str | None
    quantities: ModuleQuantities
    line_items: list[PricingLineItemRead]
    subtotal_cents: int


class PriceQuoteRead(BaseModel):
    tier: PlanTier
    billing_cycle: BillingCycle
    currency: str
    modules: list[ModulePriceBreakdownRead]
    skipped_modules: list[str]
    monthly_subtotal_cents: int
    cycle_months: int
    cycle_subtotal_cents: int
    cycle_discount_percent: int
    cycle_discount_cents: int
    discount_code: str | None
    discount_reason: str | None
    discount_cents: int
    tax_rate: float
    tax_cents: int
    total_cents: int
    monthly_equivalent_cents: int
    annual_total_cents: int
    calculated_at: datetime


class QuickEstimateRequest(BaseModel):
    module_codes: list[str]
    tier: PlanTier = PlanTier.STARTER
    quantities: ModuleQuantities = PydanticField(default_factory=ModuleQuantities)


class PriceComparisonRequest(BaseModel):
    first: QuoteRequest
    second: QuoteRequest


class PriceComparisonRead(BaseModel):
    first: PriceQuoteRead
    second: PriceQuoteRead
    difference_cents: int
    percent_difference: float
    recommendation: str


# Subscriptions


class SubscriptionModuleInput(BaseModel):
    module_id: str
    module_code: str
    module_name: str | None = None
    quantities: ModuleQuantities = PydanticField(default_factory=ModuleQuantities)
    line_items: list[dict[str, Any]] = PydanticField(default_factory=list)
    subtotal_cents: int = PydanticField(default=0, ge=0)


class SubscriptionCreate(BaseModel):
    tenant_id: str
    plan_tier: PlanTier = PlanTier.STARTER
    plan_id: str | None = None
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    modules: list[SubscriptionModuleInput] = PydanticField(default_factory=list)
    monthly_total_cents: int = PydanticField(default=0, ge=0)
    currency: str = "USD"
    trial_days: int = PydanticField(default=0, ge=0)
    discount_code: str | None = None


class SubscriptionRead(ORMReadModel):
    id: str
    tenant_id: str
    plan_id: str | None
    plan_tier: PlanTier
    plan_name: str
    status: SubscriptionStatus
    billing_cycle: BillingCycle
    current_period_start: datetime
    current_period_end: datetime
    trial_end_date: datetime | None
    end_date: datetime | None
    cancelled_at: datetime | None
    cancellation_reason: str | None
    auto_renew: bool
    currency: str
    limits: dict[str, Any]
    pricing: dict[str, Any]
    created_by: str | None
    updated_by: str | None
    created_at: datetime
    updated_at: datetime


class SubscriptionListRead(BaseModel):
    items: list[SubscriptionRead]
    total: int


class SubscriptionCancelRequest(BaseModel):
    reason: str
    cancel_immediately: bool = False


class SubscriptionExtendTrialRequest(BaseModel):
    additional_days: int = PydanticField(ge=1, le=365)


class PlanChangeRequest(BaseModel):
    tenant_id: str
    new_plan_id: str
    current_plan_id: str | None = None
    new_billing_cycle: BillingCycle | None = None
    discount_code: str | None = None
    effective_immediately: bool = True


class InvoiceSummaryRead(ORMReadModel):
    id: str
    invoice_number: str
    total_cents: int
    amount_due_cents: int
    due_date: datetime


class PlanChangeRead(BaseModel):
    success: bool
    is_upgrade: bool
    is_downgrade: bool
    prorated_amount_cents: int
    discount_cents: int
    final_amount_cents: int
    new_monthly_price_cents: int
    effective_date: datetime
    invoice: InvoiceSummaryRead | None = None
    warnings: list[str]
    message: str


class RenewalSummaryRead(BaseModel):
    processed: int
    failed: int
    errors: list[str]


class ReminderConfigRead(BaseModel):
    days_before_due: list[int]
    days_after_due: list[int]
    grace_period_days: int
    suspend_after_days: int
    cancel_after_days: int


class SubscriptionRemindersRead(BaseModel):
    upcoming_due: list[SubscriptionRead]
    past_due: list[SubscriptionRead]
    grace_period_ending: list[SubscriptionRead]
    config: ReminderConfigRead


class SubscriptionStatsRead(BaseModel):
    total_subscriptions: int
    by_status: dict[str, int]
    by_tier: dict[str, int]
    by_cycle: dict[str, int]
    mrr_cents: int
    arr_cents: int
    expiring_this_month: int
    past_due_count: int
    total_revenue_cents: int
    arpu_cents: int
    churn_rate: float
    trial_conversion_rate: float


class SweepResultRead(BaseModel):
    updated: int


# Invoices


class InvoiceLineRead(ORMReadModel):
    id: str
    description: str
    quantity: int
    unit_price_cents: int
    amount_cents: int


class InvoiceRead(ORMReadModel):
    id: str
    invoice_number: str
    tenant_id: str
    subscription_id: str | None
    status: InvoiceStatus
    currency: str
    subtotal_cents: int
    discount_cents: int
    discount_code: str | None
    tax_cents: int
    total_cents: int
    amount_paid_cents: int
    amount_due_cents: int
    period_start: datetime | None
    period_end: datetime | None
    due_date: datetime
    paid_at: datetime | None
    voided_at: datetime | None
    void_reason: str | None
    payment_method: str | None
    payment_reference: str | None
    notes: str | None
    created_at: datetime
    updated_at: datetime


class InvoiceDetailRead(InvoiceRead):
    lines: list[InvoiceLineRead]


class InvoiceListRead(BaseModel):
    items: list[InvoiceRead]
    total: int


class InvoicePaymentRequest(BaseModel):
    amount_cents: int = PydanticField(gt=0)
    payment_method: str | None = None
    payment_reference: str | None = None


class InvoiceVoidRequest(BaseModel):
    reason: str | None = None


class InvoiceStatsRead(BaseModel):
    total_invoices: int
    by_status: dict[str, int]
    total_invoiced_cents: int
    total_paid_cents: int
    total_outstanding_cents: int
    overdue_amount_cents: int


# Custom plans


class CustomPlanCreate(BaseModel):
    tenant_id: str
    name: str
    description: str | None = None
    tier: PlanTier = PlanTier.CUSTOM
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    modules: list[ModuleSelection] = PydanticField(default_factory=list)
    discount_percent: float = PydanticField(default=0, ge=0, le=100)
    discount_amount_cents: int = PydanticField(default=0, ge=0)
    currency: str = "USD"
    notes: str | None = None


class CustomPlanUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    tier: PlanTier | None = None
    billing_cycle: BillingCycle | None = None
    modules: list[ModuleSelection] | None = None
    discount_percent: float | None = PydanticField(default=None, ge=0, le=100)
    discount_amount_cents: int | None = PydanticField(default=None, ge=0)
    notes: str | None = None


class CustomPlanRejectRequest(BaseModel):
    reason: str


class CustomPlanCloneRequest(BaseModel):
    new_tenant_id: str


class CustomPlanRead(ORMReadModel):
    id: str
    tenant_id: str
    name: str
    description: str | None
    tier: PlanTier
    billing_cycle: BillingCycle
    status: CustomPlanStatus
    modules: list[dict[str, Any]]
    monthly_subtotal_cents: int
    discount_percent: float
    discount_amount_cents: int
    monthly_total_cents: int
    currency: str
    notes: str | None
    created_by: str | None
    submitted_at: datetime | None
    approved_by: str | None
    approved_at: datetime | None
    rejected_by: str | None
    rejected_at: datetime | None
    rejection_reason: str | None
    subscription_id: str | None
    activated_at: datetime | None
    last_activation_error: str | None
    created_at: datetime
    updated_at: datetime


class CustomPlanListRead(BaseModel):
    items: list[CustomPlanRead]
    total: int
    page: int
    limit: int
    total_pages: int


# Tenants


class TenantContact(BaseModel):
    name: str | None = None
    email: str | None = None
    phone: str | None = None


class TenantCreate(BaseModel):
    name: str
    slug: str
    domain: str | None = None
    tier: PlanTier = PlanTier.FREE
    plan_id: str | None = None
    trial_days: int = PydanticField(default=0, ge=0)
    limits: dict[str, int] | None = None
    settings: dict[str, Any] = PydanticField(default_factory=dict)
    primary_contact: TenantContact | None = None
    billing_contact: TenantContact | None = None
    modules: list[str] = PydanticField(default_factory=list)
    auto_provision: bool = True


class TenantUpdate(BaseModel):
    name: str | None = None
    slug: str | None = None
    domain: str | None = None
    tier: PlanTier | None = None
    limits: dict[str, int] | None = None
    settings: dict[str, Any] | None = None
    primary_contact: TenantContact | None = None
    billing_contact: TenantContact | None = None


class TenantRead(ORMReadModel):
    id: str
    name: str
    slug: str
    domain: str | None
    status: TenantStatus
    lifecycle_state: TenantLifecycle
    tier: PlanTier
    plan_id: str | None
    limits: dict[str, Any]
    settings: dict[str, Any]
    primary_contact: dict[str, Any]
    billing_contact: dict[str, Any]
    trial_ends_at: datetime | None
    activated_at: datetime | None
    suspended_at: datetime | None
    suspension_reason: str | None
    deactivated_at: datetime | None
    deactivation_reason: str | None
    archived_at: datetime | None
    archive_reason: str | None
    last_activity_at: datetime | None
    created_by: str | None
    created_at: datetime
    updated_at: datetime


class TenantListRead(BaseModel):
    items: list[TenantRead]
    total: int
    page: int
    limit: int


class TenantReasonRequest(BaseModel):
    reason: str


class TenantActivateRequest(BaseModel):
    reason: str | None = None


class TenantBulkActionRequest(BaseModel):
    tenant_ids: list[str] = PydanticField(min_length=1)
    reason: str | None = None


class TenantBulkFailure(BaseModel):
    tenant_id: str
    error: str


class TenantBulkActionRead(BaseModel):
    succeeded: list[str]
    failed: list[TenantBulkFailure]


class TenantStatsRead(BaseModel):
    total: int
    by_state: dict[str, int]
    by_tier: dict[str, int]
    created_last_30_days: int
    trials_expiring_soon: int


class TenantUsageItem(BaseModel):
    key: str
    used: int
    limit: int
    percent_used: float | None


class TenantUsageRead(BaseModel):
    tenant_id: str
    user_count: int
    module_count: int
    note_count: int
    usage: list[TenantUsageItem]


class TenantNoteCreate(BaseModel):
    content: str
    category: str = "GENERAL"
    is_pinned: bool = False


class TenantNoteUpdate(BaseModel):
    content: str | None = None
    category: str | None = None
    is_pinned: bool | None = None


class TenantNoteRead(ORMReadModel):
    id: str
    tenant_id: str
    category: str
    content: str
    is_pinned: bool
    created_by: str | None
    created_at: datetime
    updated_at: datetime


class AuditLogRead(ORMReadModel):
    id: str
    tenant_id: str
    actor_id: str | None
    action: str
    resource: str
    entity_type: str | None
    entity_id: str | None
    ts: datetime
    detail: dict[str, Any]


class ProvisionTenantRequest(BaseModel):
    create_first_admin: bool = False
    admin_email: str | None = None
    admin_first_name: str | None = None
    admin_last_name: str | None = None
    modules: list[str] = PydanticField(default_factory=list)
    skip_schema_creation: bool = False
    send_invitation: bool = True


class ProvisioningStepRead(BaseModel):
    name: str
    status: ProvisioningStepStatus
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int | None = None
    error: str | None = None


class ProvisioningReportRead(BaseModel):
    tenant_id: str
    success: bool
    steps: list[ProvisioningStepRead]
    schema_name: str | None = None
    admin_user_id: str | None = None
    invitation_sent: bool = False
    backup_path: str | None = None
    error: str | None = None


class ProvisioningStatusRead(BaseModel):
    tenant_id: str
    status: str
    lifecycle_state: TenantLifecycle | None


class TenantCreateRead(BaseModel):
    tenant: TenantRead
    provisioning: ProvisioningReportRead | None = None
