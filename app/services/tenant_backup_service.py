from __future__ import annotations

import enum
import hashlib
import json
from dataclasses import dataclass
from datetime import UTC, date, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4
from zipfile import ZIP_DEFLATED, ZipFile

import structlog
from sqlalchemy import Table, select
from sqlmodel import Session, SQLModel

from app.domain.models import Tenant
from app.infra.config import get_settings
from app.infra.db import get_engine
from app.services.errors import NotFoundError

logger = structlog.get_logger(__name__)


@dataclass
class BackupResult:
    backup_id: str
    manifest_path: Path
    zip_path: Path | None
    row_count: int


class TenantBackupWriter:
    def __init__(self, root_dir: Path | None = None) -> None:
        self.root_dir = root_dir or Path(get_settings().tenant_backup_dir)

    def prepare_backup_dir(self, tenant_id: str, backup_id: str) -> Path:
        backup_dir = self.root_dir / tenant_id / backup_id
        (backup_dir / "tables").mkdir(parents=True, exist_ok=True)
        return backup_dir

    def write_table_jsonl(self, *, backup_dir: Path, table_name: str, rows: list[dict[str, Any]]) -> dict[str, Any]:
        relative_path = Path("tables") / f"{table_name}.jsonl"
        digest = hashlib.sha256()
        with (backup_dir / relative_path).open("w", encoding="utf-8") as handle:
            for row in rows:
                line = json.dumps(row, ensure_ascii=False, sort_keys=True)
                handle.write(f"{line}\n")
                digest.update(line.encode("utf-8"))
                digest.update(b"\n")
        return {
            "table": table_name,
            "row_count": len(rows),
            "sha256": digest.hexdigest(),
            "file": relative_path.as_posix(),
        }

    def write_manifest(self, backup_dir: Path, manifest: dict[str, Any]) -> Path:
        manifest_path = backup_dir / "manifest.json"
        manifest_path.write_text(json.dumps(manifest, ensure_ascii=False, indent=2), encoding="utf-8")
        return manifest_path

    def write_zip(self, *, backup_dir: Path, backup_id: str) -> Path:
        zip_path = backup_dir / f"{backup_id}.zip"
        with ZipFile(zip_path, "w", compression=ZIP_DEFLATED) as archive:
            for file_path in backup_dir.rglob("*"):
                if file_path.is_file() and file_path != zip_path:
                    archive.write(file_path, arcname=str(file_path.relative_to(backup_dir)))
        return zip_path


def normalize_value(value: Any) -> Any:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC).isoformat()
        return value.astimezone(UTC).isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, str | int | float | bool) or value is None:
        return value
    if isinstance(value, list):
        return [normalize_value(item) for item in value]
    if isinstance(value, dict):
        return {key: normalize_value(item) for key, item in value.items()}
    return str(value)


class TenantBackupService:
    BACKUP_VERSION = "1"

    def __init__(self, writer: TenantBackupWriter | None = None) -> None:
        self._writer = writer or TenantBackupWriter()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    @staticmethod
    def _scoped_tables() -> list[Table]:
        tables = [table for table in SQLModel.metadata.sorted_tables if "tenant_id" in table.columns]
        return sorted(tables, key=lambda item: item.name)

    @staticmethod
    def _fetch_rows(session: Session, table: Table, tenant_id: str) -> list[dict[str, Any]]:
        columns = list(table.columns)
        statement = select(*columns).where(table.c.tenant_id == tenant_id)
        primary_keys = list(table.primary_key.columns)
        if primary_keys:
            statement = statement.order_by(*primary_keys)
        rows = session.execute(statement).mappings().all()
        return [{column.key: normalize_value(row[column.key]) for column in columns} for row in rows]

    def create_backup(self, tenant_id: str, *, include_zip: bool = False) -> BackupResult:
        backup_id = str(uuid4())
        with self._session() as session:
            tenant = session.get(Tenant, tenant_id)
            if tenant is None:
                raise NotFoundError("tenant not found")
            backup_dir = self._writer.prepare_backup_dir(tenant_id, backup_id)
            tables = [
                self._writer.write_table_jsonl(
                    backup_dir=backup_dir,
                    table_name=table.name,
                    rows=self._fetch_rows(session, table, tenant_id),
                )
                for table in self._scoped_tables()
            ]
            tenant_row = {
                column.key: normalize_value(getattr(tenant, column.key)) for column in Tenant.__table__.columns
            }

        manifest: dict[str, Any] = {
            "backup_id": backup_id,
            "tenant_id": tenant_id,
            "backup_version": self.BACKUP_VERSION,
            "created_at": datetime.now(UTC).isoformat(),
            "tenant": tenant_row,
            "tables": tables,
            "zip_file": None,
        }
        # The zip archive includes the manifest, so write it first.
        manifest_path = self._writer.write_manifest(backup_dir, manifest)
        zip_path: Path | None = None
        if include_zip:
            zip_path = self._writer.write_zip(backup_dir=backup_dir, backup_id=backup_id)
            manifest["zip_file"] = zip_path.name
            manifest_path = self._writer.write_manifest(backup_dir, manifest)

        row_count = sum(item["row_count"] for item in tables)
        logger.info("tenant.backup_written", tenant_id=tenant_id, backup_id=backup_id, rows=row_count)
        return BackupResult(backup_id=backup_id, manifest_path=manifest_path, zip_path=zip_path, row_count=row_count)
