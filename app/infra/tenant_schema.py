from __future__ import annotations

import re
from dataclasses import dataclass, field

import structlog
from sqlalchemy import text
from sqlmodel import Session, select

from app.domain.models import TenantSchema, now_utc
from app.infra.db import get_engine

logger = structlog.get_logger(__name__)

MODULE_TABLES: dict[str, tuple[str, ...]] = {
    "farm": ("farms", "ponds", "harvests"),
    "sensor": ("sensors", "sensor_readings"),
    "alerts": ("alert_rules", "alert_events"),
    "reports": ("report_definitions", "report_runs"),
    "hr": ("employees", "shifts"),
}
BASE_TABLES = ("settings", "activity_log")

_IDENTIFIER = re.compile(r"[^a-z0-9_]")


def schema_name_for(tenant_id: str) -> str:
    return "tenant_" + _IDENTIFIER.sub("", tenant_id.lower().replace("-", "_"))


def _table_names(modules: list[str]) -> list[str]:
    names = list(BASE_TABLES)
    for module in modules:
        code = _IDENTIFIER.sub("_", module.lower())
        for table in MODULE_TABLES.get(code, (f"{code}_records",)):
            if table not in names:
                names.append(table)
    return names


@dataclass
class SchemaResult:
    schema_name: str
    tables_created: list[str] = field(default_factory=list)
    physical: bool = False


class TenantSchemaManager:
    """Creates and drops the per-tenant database schema.

    PostgreSQL gets a real schema with one table per module area. Other
    dialects have no schema namespace, so only the registry row is kept.
    """

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def create_tenant_schema(self, tenant_id: str, modules: list[str] | None = None) -> SchemaResult:
        schema_name = schema_name_for(tenant_id)
        tables = _table_names(modules or [])
        with self._session() as session:
            physical = session.get_bind().dialect.name == "postgresql"
            if physical:
                session.execute(text(f'CREATE SCHEMA IF NOT EXISTS "{schema_name}"'))
                for table in tables:
                    session.execute(
                        text(
                            f'CREATE TABLE IF NOT EXISTS "{schema_name}"."{table}" ('
                            "id uuid PRIMARY KEY, "
                            "data jsonb NOT NULL DEFAULT '{}', "
                            "created_at timestamptz NOT NULL DEFAULT now())"
                        )
                    )

            registry = session.exec(
                select(TenantSchema).where(TenantSchema.tenant_id == tenant_id)
            ).first()
            if registry is None:
                registry = TenantSchema(tenant_id=tenant_id, schema_name=schema_name)
            registry.modules = list(modules or [])
            registry.tables = tables
            registry.dropped_at = None
            session.add(registry)
            session.commit()

        logger.info("tenant_schema.created", tenant_id=tenant_id, schema=schema_name, tables=len(tables))
        return SchemaResult(schema_name=schema_name, tables_created=tables, physical=physical)

    def drop_tenant_schema(self, tenant_id: str) -> bool:
        with self._session() as session:
            registry = session.exec(
                select(TenantSchema).where(TenantSchema.tenant_id == tenant_id)
            ).first()
            if registry is None or registry.dropped_at is not None:
                return False
            if session.get_bind().dialect.name == "postgresql":
                session.execute(text(f'DROP SCHEMA IF EXISTS "{registry.schema_name}" CASCADE'))
            registry.dropped_at = now_utc()
            session.add(registry)
            session.commit()
        logger.info("tenant_schema.dropped", tenant_id=tenant_id)
        return True
