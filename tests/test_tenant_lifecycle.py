from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import event
from sqlmodel import SQLModel, create_engine

from app import main as app_main
from app.domain.models import EventEnvelope
from app.infra import audit, db, events
from app.infra.auth import create_access_token
from app.infra.events import TENANT_SUSPENDED, event_bus


@pytest.fixture()
def lifecycle_client(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[TestClient, None, None]:
    db_path = tmp_path / "lifecycle_test.db"
    test_engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(test_engine, "connect")
    def _enable_foreign_keys(dbapi_connection: object, _connection_record: object) -> None:
        cursor = dbapi_connection.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    SQLModel.metadata.create_all(test_engine)
    monkeypatch.setattr(db, "engine", test_engine)
    monkeypatch.setattr(audit, "engine", test_engine)
    monkeypatch.setattr(events, "engine", test_engine)

    client = TestClient(app_main.app)
    yield client
    client.close()


def _auth_header() -> dict[str, str]:
    token = create_access_token(user_id="ops-admin", permissions=["*"])
    return {"Authorization": f"Bearer {token}"}


def _create_tenant(client: TestClient, slug: str) -> str:
    response = client.post("/api/tenants", json={"name": slug.title(), "slug": slug}, headers=_auth_header())
    assert response.status_code == 201
    return response.json()["tenant"]["id"]


def _post(client: TestClient, tenant_id: str, action: str, reason: str | None = "billing review") -> httpx.Response:
    body = {"reason": reason} if reason is not None else {}
    return client.post(f"/api/tenants/{tenant_id}/{action}", json=body, headers=_auth_header())


def test_suspend_activate_deactivate_archive(lifecycle_client: TestClient) -> None:
    tenant_id = _create_tenant(lifecycle_client, "acme")
    seen: list[str] = []

    def on_suspended(item: EventEnvelope) -> None:
        seen.append(item.tenant_id)

    event_bus.subscribe(TENANT_SUSPENDED, on_suspended)

    activated = _post(lifecycle_client, tenant_id, "activate", None)
    assert activated.status_code == 200
    assert activated.json()["lifecycle_state"] == "ACTIVE"
    assert activated.json()["activated_at"] is not None

    suspended = _post(lifecycle_client, tenant_id, "suspend", "payment failed")
    assert suspended.status_code == 200
    assert suspended.json()["status"] == "SUSPENDED"
    assert suspended.json()["suspension_reason"] == "payment failed"
    assert seen == [tenant_id]
    event_bus.unsubscribe(TENANT_SUSPENDED, on_suspended)

    again = _post(lifecycle_client, tenant_id, "suspend")
    assert again.status_code == 409
    assert again.json()["detail"] == "Tenant is already suspended"

    reactivated = _post(lifecycle_client, tenant_id, "activate", None)
    assert reactivated.json()["suspension_reason"] is None
    assert reactivated.json()["suspended_at"] is None

    archive_active = _post(lifecycle_client, tenant_id, "archive")
    assert archive_active.status_code == 400

    deactivated = _post(lifecycle_client, tenant_id, "deactivate", "contract ended")
    assert deactivated.status_code == 200
    assert deactivated.json()["status"] == "CANCELLED"
    assert deactivated.json()["lifecycle_state"] == "DEACTIVATED"
    assert deactivated.json()["deactivation_reason"] == "contract ended"

    archived = _post(lifecycle_client, tenant_id, "archive", "retention period")
    assert archived.status_code == 200
    assert archived.json()["status"] == "CANCELLED"
    assert archived.json()["lifecycle_state"] == "ARCHIVED"

    terminal = _post(lifecycle_client, tenant_id, "activate", None)
    assert terminal.status_code == 400

    archived_list = lifecycle_client.get("/api/tenants", params={"state": "ARCHIVED"}, headers=_auth_header())
    assert [item["id"] for item in archived_list.json()["items"]] == [tenant_id]
    deactivated_list = lifecycle_client.get(
        "/api/tenants",
        params={"state": "DEACTIVATED"},
        headers=_auth_header(),
    )
    assert deactivated_list.json()["total"] == 0

    unknown = _post(lifecycle_client, "missing", "suspend")
    assert unknown.status_code == 404


def test_bulk_suspend_and_activate(lifecycle_client: TestClient) -> None:
    acme = _create_tenant(lifecycle_client, "acme")
    bluewater = _create_tenant(lifecycle_client, "bluewater")
    coral = _create_tenant(lifecycle_client, "coral")
    _post(lifecycle_client, coral, "suspend")

    no_reason = lifecycle_client.post(
        "/api/tenants/bulk/suspend",
        json={"tenant_ids": [acme, bluewater]},
        headers=_auth_header(),
    )
    assert no_reason.status_code == 400

    empty = lifecycle_client.post("/api/tenants/bulk/suspend", json={"tenant_ids": []}, headers=_auth_header())
    assert empty.status_code == 422

    suspended = lifecycle_client.post(
        "/api/tenants/bulk/suspend",
        json={"tenant_ids": [acme, coral, "missing", bluewater], "reason": "fraud review"},
        headers=_auth_header(),
    )
    assert suspended.status_code == 200
    body = suspended.json()
    assert body["succeeded"] == [acme, bluewater]
    assert body["failed"] == [
        {"tenant_id": coral, "error": "Tenant is already suspended"},
        {"tenant_id": "missing", "error": "tenant not found"},
    ]

    activated = lifecycle_client.post(
        "/api/tenants/bulk/activate",
        json={"tenant_ids": [acme, bluewater, coral]},
        headers=_auth_header(),
    )
    assert activated.json()["succeeded"] == [acme, bluewater, coral]
    assert activated.json()["failed"] == []

    stats = lifecycle_client.get("/api/tenants/stats", headers=_auth_header())
    assert stats.json()["by_state"]["ACTIVE"] == 3
