from __future__ import annotations

import secrets
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from app.domain.models import (
    ProvisioningStepStatus,
    ProvisionTenantRequest,
    Tenant,
    TenantConfig,
    TenantModule,
    TenantRole,
    TenantUser,
    now_utc,
)
from app.domain.permissions import (
    PERM_BILLING_READ,
    PERM_BILLING_WRITE,
    PERM_TENANT_READ,
    PERM_TENANT_WRITE,
    PERM_WILDCARD,
)
from app.domain.state_machine import TenantLifecycle, TenantStatus
from app.infra.config import get_settings
from app.infra.db import get_engine
from app.infra.events import TENANT_DEPROVISIONED, TENANT_PROVISIONED, event_bus
from app.infra.mailer import InvitationMailer
from app.infra.tenant_schema import TenantSchemaManager
from app.services.errors import ConflictError, NotFoundError, ServiceError, ValidationError
from app.services.tenant_backup_service import TenantBackupService

logger = structlog.get_logger(__name__)

PROVISIONING_STATUS_LABELS: dict[TenantLifecycle, str] = {
    TenantLifecycle.PENDING: "pending",
    TenantLifecycle.ACTIVE: "provisioned",
    TenantLifecycle.SUSPENDED: "suspended",
    TenantLifecycle.DEACTIVATED: "deactivated",
    TenantLifecycle.ARCHIVED: "archived",
}


@dataclass
class ProvisioningStep:
    name: str
    status: ProvisioningStepStatus = ProvisioningStepStatus.PENDING
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int | None = None
    error: str | None = None

    def start(self) -> None:
        self.status = ProvisioningStepStatus.IN_PROGRESS
        self.started_at = now_utc()

    def finish(self, status: ProvisioningStepStatus, error: str | None = None) -> None:
        self.status = status
        self.error = error
        self.completed_at = now_utc()
        if self.started_at is not None:
            self.duration_ms = int((self.completed_at - self.started_at).total_seconds() * 1000)


@dataclass
class ProvisioningReport:
    tenant_id: str
    success: bool = False
    steps: list[ProvisioningStep] = field(default_factory=list)
    schema_name: str | None = None
    admin_user_id: str | None = None
    invitation_sent: bool = False
    backup_path: str | None = None
    error: str | None = None


class StepFailed(Exception):
    pass


class TenantProvisioningService:
    ROLE_TEMPLATES: tuple[dict[str, Any], ...] = (
        {
            "name": "TENANT_ADMIN",
            "description": "Full administrative access to the tenant",
            "permissions": [PERM_WILDCARD],
        },
        {
            "name": "MANAGER",
            "description": "Manage tenant users, modules and billing",
            "permissions": [PERM_TENANT_READ, PERM_TENANT_WRITE, PERM_BILLING_READ, PERM_BILLING_WRITE],
        },
        {
            "name": "OPERATOR",
            "description": "Day to day operations",
            "permissions": [PERM_TENANT_READ, PERM_BILLING_READ],
        },
        {
            "name": "VIEWER",
            "description": "Read-only access",
            "permissions": [PERM_TENANT_READ],
        },
    )
    DEFAULT_CONFIG: dict[str, dict[str, Any]] = {
        "general": {"timezone": "UTC", "locale": "en", "date_format": "YYYY-MM-DD"},
        "notifications": {"email_enabled": True, "sms_enabled": False, "digest_frequency": "daily"},
        "security": {"mfa_required": False, "session_timeout_minutes": 60, "password_min_length": 12},
        "billing": {"currency": "USD", "invoice_email_enabled": True},
    }

    def __init__(
        self,
        schema_manager: TenantSchemaManager | None = None,
        mailer: InvitationMailer | None = None,
        backups: TenantBackupService | None = None,
    ) -> None:
        self._schemas = schema_manager or TenantSchemaManager()
        self._mailer = mailer or InvitationMailer()
        self._backups = backups or TenantBackupService()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    @staticmethod
    def _run_step(
        report: ProvisioningReport,
        name: str,
        action: Callable[[], None],
        *,
        mandatory: bool = True,
    ) -> bool:
        step = ProvisioningStep(name=name)
        report.steps.append(step)
        step.start()
        try:
            action()
        except (ServiceError, SQLAlchemyError, OSError, StepFailed) as exc:
            step.finish(ProvisioningStepStatus.FAILED, str(exc))
            logger.warning("provisioning.step_failed", tenant_id=report.tenant_id, step=name, error=str(exc))
            if mandatory:
                report.error = str(exc)
                raise StepFailed(str(exc)) from exc
            return False
        step.finish(ProvisioningStepStatus.COMPLETED)
        logger.info("provisioning.step_completed", tenant_id=report.tenant_id, step=name, ms=step.duration_ms)
        return True

    @staticmethod
    def _skip_step(report: ProvisioningReport, name: str) -> None:
        step = ProvisioningStep(name=name)
        step.finish(ProvisioningStepStatus.SKIPPED)
        report.steps.append(step)

    def _load_tenant(self, tenant_id: str) -> Tenant | None:
        with self._session() as session:
            return session.get(Tenant, tenant_id)

    def _setup_default_roles(self, tenant_id: str) -> None:
        with self._session() as session:
            existing = set(session.exec(select(TenantRole.name).where(TenantRole.tenant_id == tenant_id)).all())
            for template in self.ROLE_TEMPLATES:
                if template["name"] in existing:
                    continue
                session.add(
                    TenantRole(
                        tenant_id=tenant_id,
                        name=template["name"],
                        description=template["description"],
                        permissions=list(template["permissions"]),
                    )
                )
            session.commit()

    def _create_default_config(self, tenant_id: str) -> None:
        with self._session() as session:
            existing = set(
                session.exec(select(TenantConfig.section).where(TenantConfig.tenant_id == tenant_id)).all()
            )
            for section, value in self.DEFAULT_CONFIG.items():
                if section not in existing:
                    session.add(TenantConfig(tenant_id=tenant_id, section=section, value=dict(value)))
            session.commit()

    def _create_first_admin(self, tenant: Tenant, options: ProvisionTenantRequest, report: ProvisioningReport) -> None:
        email = (options.admin_email or "").strip().lower()
        now = now_utc()
        token = secrets.token_hex(32)
        with self._session() as session:
            if session.exec(select(TenantUser.id).where(TenantUser.email == email)).first() is not None:
                raise ConflictError(f"User with email {email} already exists")
            user = TenantUser(
                tenant_id=tenant.id,
                email=email,
                first_name=options.admin_first_name or "Admin",
                last_name=options.admin_last_name or "User",
                role="TENANT_ADMIN",
                is_active=False,
                invitation_token=token,
                invitation_expires_at=now + timedelta(days=get_settings().invitation_expiry_days),
                invited_at=now,
            )
            session.add(user)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError(f"User with email {email} already exists") from exc
            report.admin_user_id = user.id

        if not options.send_invitation:
            return
        result = self._mailer.send_invitation(
            tenant_id=tenant.id,
            tenant_name=tenant.name,
            recipient=email,
            first_name=user.first_name,
            invitation_token=token,
        )
        report.invitation_sent = result.delivered
        if not result.delivered:
            logger.warning("provisioning.invitation_not_sent", tenant_id=tenant.id, error=result.error)

    def _assign_modules(self, tenant_id: str, modules: list[str]) -> None:
        for module_id in modules:
            try:
                with self._session() as session:
                    existing = session.exec(
                        select(TenantModule)
                        .where(TenantModule.tenant_id == tenant_id)
                        .where(TenantModule.module_id == module_id)
                    ).first()
                    if existing is not None:
                        continue
                    session.add(TenantModule(tenant_id=tenant_id, module_id=module_id))
                    session.commit()
            except SQLAlchemyError as exc:
                logger.warning("provisioning.module_assignment_failed", tenant_id=tenant_id, module=module_id, error=str(exc))

    def _activate(self, tenant_id: str) -> None:
        now = now_utc()
        with self._session() as session:
            tenant = session.get(Tenant, tenant_id)
            if tenant is None:
                raise NotFoundError("Tenant not found")
            tenant.status = TenantStatus.ACTIVE
            tenant.activated_at = now
            tenant.last_activity_at = now
            tenant.updated_at = now
            session.add(tenant)
            session.commit()

    def provision_tenant(self, tenant_id: str, options: ProvisionTenantRequest) -> ProvisioningReport:
        report = ProvisioningReport(tenant_id=tenant_id)
        tenant = self._load_tenant(tenant_id)
        if tenant is None:
            report.error = "Tenant not found"
            return report

        def validate() -> None:
            if tenant.status != TenantStatus.PENDING:
                raise StepFailed(f"Tenant status must be PENDING, got {tenant.status.value}")

        def create_schema() -> None:
            result = self._schemas.create_tenant_schema(tenant_id, options.modules)
            report.schema_name = result.schema_name

        try:
            self._run_step(report, "validate_tenant", validate)
            if options.skip_schema_creation:
                self._skip_step(report, "create_schema")
            else:
                self._run_step(report, "create_schema", create_schema)
            self._run_step(report, "setup_default_roles", lambda: self._setup_default_roles(tenant_id))
            self._run_step(report, "create_default_config", lambda: self._create_default_config(tenant_id))
            if options.create_first_admin and options.admin_email:
                self._run_step(
                    report,
                    "create_first_admin",
                    lambda: self._create_first_admin(tenant, options, report),
                    mandatory=False,
                )
            else:
                self._skip_step(report, "create_first_admin")
            if options.modules:
                self._run_step(
                    report,
                    "assign_modules",
                    lambda: self._assign_modules(tenant_id, options.modules),
                    mandatory=False,
                )
            else:
                self._skip_step(report, "assign_modules")
            self._run_step(report, "activate_tenant", lambda: self._activate(tenant_id))
        except StepFailed:
            logger.error("provisioning.failed", tenant_id=tenant_id, error=report.error)
            return report

        report.success = True
        event_bus.publish_dict(
            TENANT_PROVISIONED,
            tenant_id,
            {
                "schema_name": report.schema_name,
                "admin_user_id": report.admin_user_id,
                "modules": options.modules,
            },
        )
        return report

    def _remove_resources(self, tenant_id: str) -> None:
        with self._session() as session:
            for model in (TenantModule, TenantRole, TenantConfig, TenantUser):
                session.execute(delete(model).where(model.tenant_id == tenant_id))
            session.commit()

    def deprovision_tenant(self, tenant_id: str) -> ProvisioningReport:
        report = ProvisioningReport(tenant_id=tenant_id)
        tenant = self._load_tenant(tenant_id)
        if tenant is None:
            report.error = "Tenant not found"
            return report

        def validate() -> None:
            if tenant.lifecycle_state == TenantLifecycle.ACTIVE:
                raise ValidationError("Active tenants must be suspended or deactivated before deprovisioning")

        def backup() -> None:
            result = self._backups.create_backup(tenant_id, include_zip=True)
            report.backup_path = str(result.zip_path or result.manifest_path)

        def cleanup_schema() -> None:
            self._schemas.drop_tenant_schema(tenant_id)

        try:
            self._run_step(report, "validate_tenant", validate)
            self._run_step(report, "backup_data", backup)
            self._run_step(report, "remove_resources", lambda: self._remove_resources(tenant_id))
            self._run_step(report, "cleanup_schema", cleanup_schema)
        except StepFailed:
            logger.error("deprovisioning.failed", tenant_id=tenant_id, error=report.error)
            return report

        report.success = True
        event_bus.publish_dict(TENANT_DEPROVISIONED, tenant_id, {"backup_path": report.backup_path})
        return report

    def get_provisioning_status(self, tenant_id: str) -> tuple[str, TenantLifecycle | None]:
        tenant = self._load_tenant(tenant_id)
        if tenant is None:
            return "not_found", None
        state = tenant.lifecycle_state
        return PROVISIONING_STATUS_LABELS[state], state
