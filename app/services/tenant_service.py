from __future__ import annotations

import re
from datetime import timedelta
from typing import Any

import structlog
from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from app.domain.billing_cycles import as_utc
from app.domain.models import (
    AuditLog,
    PlanTier,
    ProvisionTenantRequest,
    Tenant,
    TenantCreate,
    TenantModule,
    TenantNote,
    TenantNoteCreate,
    TenantNoteUpdate,
    TenantStatsRead,
    TenantUpdate,
    TenantUsageItem,
    TenantUsageRead,
    TenantUser,
    now_utc,
)
from app.domain.state_machine import LIFECYCLE_TO_STATUS, TenantLifecycle, TenantStatus
from app.infra.audit import record_audit
from app.infra.db import get_engine, serializable_session
from app.infra.events import TENANT_CREATED, event_bus
from app.services.errors import ConflictError, NotFoundError, ValidationError
from app.services.plan_definition_service import UNLIMITED, default_limits_for_tier
from app.services.tenant_provisioning_service import ProvisioningReport, TenantProvisioningService

logger = structlog.get_logger(__name__)

_SLUG_INVALID = re.compile(r"[^a-z0-9-]+")
_SLUG_DASHES = re.compile(r"-{2,}")

USAGE_LIMIT_KEYS = {
    "max_users": "user_count",
    "max_modules": "module_count",
}


def normalize_slug(value: str) -> str:
    slug = _SLUG_INVALID.sub("-", value.strip().lower())
    slug = _SLUG_DASHES.sub("-", slug).strip("-")
    if not slug:
        raise ValidationError("slug must contain at least one letter or digit")
    return slug


def split_contact_name(name: str | None) -> tuple[str, str]:
    parts = (name or "").split()
    if not parts:
        return "Admin", "User"
    if len(parts) == 1:
        return parts[0], "User"
    return parts[0], " ".join(parts[1:])


class TenantService:
    def __init__(self, provisioning: TenantProvisioningService | None = None) -> None:
        self._provisioning = provisioning or TenantProvisioningService()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _get_tenant(self, session: Session, tenant_id: str) -> Tenant:
        tenant = session.get(Tenant, tenant_id)
        if tenant is None:
            raise NotFoundError("tenant not found")
        return tenant

    @staticmethod
    def _ensure_unique(
        session: Session,
        *,
        slug: str | None,
        domain: str | None,
        exclude_id: str | None = None,
    ) -> None:
        if slug is not None:
            statement = select(Tenant.id).where(Tenant.slug == slug)
            if exclude_id is not None:
                statement = statement.where(Tenant.id != exclude_id)
            if session.exec(statement).first() is not None:
                raise ConflictError(f"Tenant with slug '{slug}' already exists")
        if domain is not None:
            statement = select(Tenant.id).where(Tenant.domain == domain)
            if exclude_id is not None:
                statement = statement.where(Tenant.id != exclude_id)
            if session.exec(statement).first() is not None:
                raise ConflictError(f"Tenant with domain '{domain}' already exists")

    def create_tenant(
        self,
        payload: TenantCreate,
        created_by: str | None = None,
    ) -> tuple[Tenant, ProvisioningReport | None]:
        slug = normalize_slug(payload.slug)
        domain = payload.domain.strip().lower() if payload.domain else None
        now = now_utc()
        limits = default_limits_for_tier(payload.tier)
        if payload.limits:
            limits.update(payload.limits)

        with serializable_session() as session:
            self._ensure_unique(session, slug=slug, domain=domain)
            tenant = Tenant(
                name=payload.name.strip(),
                slug=slug,
                domain=domain,
                status=TenantStatus.PENDING,
                tier=payload.tier,
                plan_id=payload.plan_id,
                limits=limits,
                settings=dict(payload.settings),
                primary_contact=payload.primary_contact.model_dump() if payload.primary_contact else {},
                billing_contact=payload.billing_contact.model_dump() if payload.billing_contact else {},
                trial_ends_at=now + timedelta(days=payload.trial_days) if payload.trial_days > 0 else None,
                created_by=created_by,
                created_at=now,
                updated_at=now,
            )
            session.add(tenant)
            session.flush()
            record_audit(
                session,
                tenant_id=tenant.id,
                action="TENANT_CREATED",
                entity_type="tenant",
                entity_id=tenant.id,
                actor_id=created_by,
                changes={"name": tenant.name, "slug": slug, "tier": tenant.tier.value},
            )
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError(f"Tenant with slug '{slug}' already exists") from exc
            session.refresh(tenant)

        logger.info("tenant.created", tenant_id=tenant.id, slug=slug)
        event_bus.publish_dict(
            TENANT_CREATED,
            tenant.id,
            {"name": tenant.name, "slug": tenant.slug, "tier": tenant.tier.value},
            actor_id=created_by,
        )

        report: ProvisioningReport | None = None
        contact_email = tenant.primary_contact.get("email")
        if payload.auto_provision and contact_email:
            first_name, last_name = split_contact_name(tenant.primary_contact.get("name"))
            report = self._provisioning.provision_tenant(
                tenant.id,
                ProvisionTenantRequest(
                    create_first_admin=True,
                    admin_email=contact_email,
                    admin_first_name=first_name,
                    admin_last_name=last_name,
                    modules=list(payload.modules),
                ),
            )
            if not report.success:
                logger.error("tenant.auto_provision_failed", tenant_id=tenant.id, error=report.error)
            tenant = self.get_tenant(tenant.id)
        return tenant, report

    def update_tenant(self, tenant_id: str, payload: TenantUpdate) -> Tenant:
        with serializable_session() as session:
            tenant = self._get_tenant(session, tenant_id)
            slug = normalize_slug(payload.slug) if payload.slug is not None else None
            domain = payload.domain.strip().lower() if payload.domain else None
            self._ensure_unique(
                session,
                slug=slug if slug != tenant.slug else None,
                domain=domain if domain != tenant.domain else None,
                exclude_id=tenant.id,
            )
            if slug is not None:
                tenant.slug = slug
            if payload.domain is not None:
                tenant.domain = domain
            if payload.name is not None:
                tenant.name = payload.name.strip()
            if payload.tier is not None:
                tenant.tier = payload.tier
            if payload.limits is not None:
                tenant.limits = {**tenant.limits, **payload.limits}
            if payload.settings is not None:
                tenant.settings = {**tenant.settings, **payload.settings}
            if payload.primary_contact is not None:
                tenant.primary_contact = payload.primary_contact.model_dump()
            if payload.billing_contact is not None:
                tenant.billing_contact = payload.billing_contact.model_dump()
            tenant.updated_at = now_utc()
            session.add(tenant)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("tenant slug or domain already exists") from exc
            session.refresh(tenant)
            return tenant

    def get_tenant(self, tenant_id: str) -> Tenant:
        with self._session() as session:
            return self._get_tenant(session, tenant_id)

    def get_tenant_by_slug(self, slug: str) -> Tenant:
        with self._session() as session:
            tenant = session.exec(select(Tenant).where(Tenant.slug == slug.strip().lower())).first()
            if tenant is None:
                raise NotFoundError("tenant not found")
            return tenant

    @staticmethod
    def _lifecycle_condition(state: TenantLifecycle) -> Any:
        status = LIFECYCLE_TO_STATUS[state]
        if state == TenantLifecycle.DEACTIVATED:
            return (Tenant.status == status) & col(Tenant.archived_at).is_(None)
        if state == TenantLifecycle.ARCHIVED:
            return (Tenant.status == status) & col(Tenant.archived_at).is_not(None)
        return Tenant.status == status

    def list_tenants(
        self,
        *,
        state: TenantLifecycle | None = None,
        tier: PlanTier | None = None,
        search: str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[Tenant], int]:
        conditions: list[Any] = []
        if state is not None:
            conditions.append(self._lifecycle_condition(state))
        if tier is not None:
            conditions.append(Tenant.tier == tier)
        if search:
            pattern = f"%{search.strip().lower()}%"
            conditions.append(
                or_(
                    func.lower(col(Tenant.name)).like(pattern),
                    func.lower(col(Tenant.slug)).like(pattern),
                    func.lower(col(Tenant.domain)).like(pattern),
                )
            )
        page = max(page, 1)
        with self._session() as session:
            statement = select(Tenant)
            count_statement = select(func.count()).select_from(Tenant)
            for condition in conditions:
                statement = statement.where(condition)
                count_statement = count_statement.where(condition)
            total = int(session.exec(count_statement).one())
            rows = session.exec(
                statement.order_by(col(Tenant.created_at).desc()).offset((page - 1) * limit).limit(limit)
            ).all()
            return list(rows), total

    def search_tenants(self, query: str, limit: int = 10) -> list[Tenant]:
        rows, _ = self.list_tenants(search=query, limit=limit)
        return rows

    def get_stats(self) -> TenantStatsRead:
        now = now_utc()
        with self._session() as session:
            tenants = list(session.exec(select(Tenant)).all())
        by_state = {state.value: 0 for state in TenantLifecycle}
        by_tier: dict[str, int] = {}
        created_recently = 0
        trials_expiring = 0
        for tenant in tenants:
            by_state[tenant.lifecycle_state.value] += 1
            by_tier[tenant.tier.value] = by_tier.get(tenant.tier.value, 0) + 1
            if as_utc(tenant.created_at) >= now - timedelta(days=30):
                created_recently += 1
            if tenant.trial_ends_at is not None and now <= as_utc(tenant.trial_ends_at) <= now + timedelta(days=7):
                trials_expiring += 1
        return TenantStatsRead(
            total=len(tenants),
            by_state=by_state,
            by_tier=by_tier,
            created_last_30_days=created_recently,
            trials_expiring_soon=trials_expiring,
        )

    def _counters(self, session: Session, tenant_id: str) -> dict[str, int]:
        def _count(model: Any) -> int:
            return int(
                session.exec(select(func.count()).select_from(model).where(model.tenant_id == tenant_id)).one()
            )

        return {
            "user_count": _count(TenantUser),
            "module_count": _count(TenantModule),
            "note_count": _count(TenantNote),
        }

    @staticmethod
    def _usage_items(tenant: Tenant, counters: dict[str, int]) -> list[TenantUsageItem]:
        items: list[TenantUsageItem] = []
        for limit_key, counter_key in USAGE_LIMIT_KEYS.items():
            limit = int(tenant.limits.get(limit_key, UNLIMITED))
            used = counters[counter_key]
            percent = None if limit in (UNLIMITED, 0) else round(used / limit * 100, 2)
            items.append(TenantUsageItem(key=limit_key, used=used, limit=limit, percent_used=percent))
        return items

    def get_usage(self, tenant_id: str) -> TenantUsageRead:
        with self._session() as session:
            tenant = self._get_tenant(session, tenant_id)
            counters = self._counters(session, tenant_id)
        return TenantUsageRead(tenant_id=tenant_id, usage=self._usage_items(tenant, counters), **counters)

    def list_near_limits(self, threshold_percent: float = 80) -> list[TenantUsageRead]:
        results: list[TenantUsageRead] = []
        with self._session() as session:
            tenants = session.exec(
                select(Tenant).where(col(Tenant.status).in_([TenantStatus.ACTIVE, TenantStatus.PENDING]))
            ).all()
            for tenant in tenants:
                counters = self._counters(session, tenant.id)
                items = self._usage_items(tenant, counters)
                if any(item.percent_used is not None and item.percent_used >= threshold_percent for item in items):
                    results.append(TenantUsageRead(tenant_id=tenant.id, usage=items, **counters))
        return results

    def list_expiring_trials(self, days: int = 7) -> list[Tenant]:
        now = now_utc()
        with self._session() as session:
            rows = session.exec(
                select(Tenant)
                .where(col(Tenant.trial_ends_at).is_not(None))
                .where(col(Tenant.trial_ends_at) >= now)
                .where(col(Tenant.trial_ends_at) <= now + timedelta(days=days))
                .order_by(col(Tenant.trial_ends_at))
            ).all()
            return list(rows)

    def list_activities(self, tenant_id: str, limit: int = 50) -> list[AuditLog]:
        with self._session() as session:
            self._get_tenant(session, tenant_id)
            rows = session.exec(
                select(AuditLog)
                .where(AuditLog.tenant_id == tenant_id)
                .order_by(col(AuditLog.ts).desc())
                .limit(limit)
            ).all()
            return list(rows)

    def add_note(self, tenant_id: str, payload: TenantNoteCreate, created_by: str | None = None) -> TenantNote:
        if not payload.content.strip():
            raise ValidationError("note content cannot be empty")
        with self._session() as session:
            self._get_tenant(session, tenant_id)
            note = TenantNote(
                tenant_id=tenant_id,
                category=payload.category.upper(),
                content=payload.content.strip(),
                is_pinned=payload.is_pinned,
                created_by=created_by,
            )
            session.add(note)
            session.commit()
            session.refresh(note)
            return note

    def list_notes(self, tenant_id: str) -> list[TenantNote]:
        with self._session() as session:
            self._get_tenant(session, tenant_id)
            rows = session.exec(
                select(TenantNote)
                .where(TenantNote.tenant_id == tenant_id)
                .order_by(col(TenantNote.is_pinned).desc(), col(TenantNote.created_at).desc())
            ).all()
            return list(rows)

    def _get_note(self, session: Session, tenant_id: str, note_id: str) -> TenantNote:
        note = session.get(TenantNote, note_id)
        if note is None or note.tenant_id != tenant_id:
            raise NotFoundError("note not found")
        return note

    def update_note(self, tenant_id: str, note_id: str, payload: TenantNoteUpdate) -> TenantNote:
        with self._session() as session:
            note = self._get_note(session, tenant_id, note_id)
            if payload.content is not None:
                if not payload.content.strip():
                    raise ValidationError("note content cannot be empty")
                note.content = payload.content.strip()
            if payload.category is not None:
                note.category = payload.category.upper()
            if payload.is_pinned is not None:
                note.is_pinned = payload.is_pinned
            note.updated_at = now_utc()
            session.add(note)
            session.commit()
            session.refresh(note)
            return note

    def delete_note(self, tenant_id: str, note_id: str) -> None:
        with self._session() as session:
            note = self._get_note(session, tenant_id, note_id)
            session.delete(note)
            session.commit()
