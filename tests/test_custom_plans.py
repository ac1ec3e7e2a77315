from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import event
from sqlmodel import SQLModel, create_engine

from app import main as app_main
from app.infra import audit, db, events
from app.infra.auth import create_access_token


@pytest.fixture()
def custom_plan_client(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[TestClient, None, None]:
    db_path = tmp_path / "custom_plan_test.db"
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
    token = create_access_token(user_id="sales-lead", permissions=["*"])
    return {"Authorization": f"Bearer {token}"}


def _create_tenant(client: TestClient, slug: str) -> str:
    response = client.post("/api/tenants", json={"name": slug.title(), "slug": slug}, headers=_auth_header())
    assert response.status_code == 201
    return response.json()["tenant"]["id"]


def _draft(client: TestClient, tenant_id: str, **overrides: object) -> dict:
    seeded = client.post(
        "/api/billing/module-pricing/seed",
        json={"module_id_map": {"farm": "mod-farm", "sensor": "mod-sensor"}},
        headers=_auth_header(),
    )
    assert seeded.status_code == 200
    payload = {
        "tenant_id": tenant_id,
        "name": "Delta Aquaculture bundle",
        "description": "Negotiated farm package",
        "modules": [{"module_code": "farm", "quantities": {"farms": 3, "ponds": 12}}],
        "discount_percent": 10,
        "discount_amount_cents": 70,
    }
    payload.update(overrides)
    response = client.post("/api/billing/custom-plans", json=payload, headers=_auth_header())
    assert response.status_code == 201, response.text
    return response.json()


def test_custom_plan_approval_and_activation(custom_plan_client: TestClient) -> None:
    tenant_id = _create_tenant(custom_plan_client, "delta")
    plan = _draft(custom_plan_client, tenant_id)
    assert plan["status"] == "DRAFT"
    assert plan["tier"] == "CUSTOM"
    assert plan["monthly_subtotal_cents"] == 7300
    assert plan["monthly_total_cents"] == 6500
    assert plan["modules"][0]["module_id"] == "mod-farm"

    updated = custom_plan_client.put(
        f"/api/billing/custom-plans/{plan['id']}",
        json={"discount_amount_cents": 0},
        headers=_auth_header(),
    )
    assert updated.status_code == 200
    assert updated.json()["monthly_total_cents"] == 6570

    early = custom_plan_client.post(f"/api/billing/custom-plans/{plan['id']}/activate", headers=_auth_header())
    assert early.status_code == 400

    submitted = custom_plan_client.post(f"/api/billing/custom-plans/{plan['id']}/submit", headers=_auth_header())
    assert submitted.status_code == 200
    assert submitted.json()["status"] == "PENDING_APPROVAL"
    assert submitted.json()["submitted_at"] is not None

    approved = custom_plan_client.post(f"/api/billing/custom-plans/{plan['id']}/approve", headers=_auth_header())
    assert approved.status_code == 200
    assert approved.json()["status"] == "APPROVED"
    assert approved.json()["approved_by"] == "sales-lead"

    locked = custom_plan_client.put(
        f"/api/billing/custom-plans/{plan['id']}",
        json={"name": "Renamed"},
        headers=_auth_header(),
    )
    assert locked.status_code == 400

    activated = custom_plan_client.post(f"/api/billing/custom-plans/{plan['id']}/activate", headers=_auth_header())
    assert activated.status_code == 200
    body = activated.json()
    assert body["status"] == "ACTIVE"
    assert body["subscription_id"] is not None
    assert body["last_activation_error"] is None

    subscription = custom_plan_client.get(
        f"/api/billing/subscriptions/tenant/{tenant_id}",
        headers=_auth_header(),
    ).json()
    assert subscription["id"] == body["subscription_id"]
    assert subscription["plan_tier"] == "CUSTOM"
    assert subscription["plan_name"] == "Custom Plan"
    assert subscription["pricing"]["base_price_cents"] == 6570
    assert subscription["limits"]["max_farms"] == 3
    assert subscription["limits"]["max_ponds"] == 12

    active = custom_plan_client.get(f"/api/billing/custom-plans/tenant/{tenant_id}", headers=_auth_header())
    assert active.json()["id"] == plan["id"]


def test_activation_failure_is_recorded(custom_plan_client: TestClient) -> None:
    tenant_id = _create_tenant(custom_plan_client, "delta")
    existing = custom_plan_client.post(
        "/api/billing/subscriptions",
        json={"tenant_id": tenant_id, "plan_tier": "STARTER", "monthly_total_cents": 9900},
        headers=_auth_header(),
    )
    assert existing.status_code == 201

    plan = _draft(custom_plan_client, tenant_id)
    custom_plan_client.post(f"/api/billing/custom-plans/{plan['id']}/submit", headers=_auth_header())
    custom_plan_client.post(f"/api/billing/custom-plans/{plan['id']}/approve", headers=_auth_header())

    failed = custom_plan_client.post(f"/api/billing/custom-plans/{plan['id']}/activate", headers=_auth_header())
    assert failed.status_code == 400
    assert failed.json()["detail"] == (
        "Failed to activate custom plan: Tenant already has an active subscription"
    )

    stored = custom_plan_client.get(f"/api/billing/custom-plans/{plan['id']}", headers=_auth_header()).json()
    assert stored["status"] == "APPROVED"
    assert stored["last_activation_error"] == "Tenant already has an active subscription"

    no_active = custom_plan_client.get(f"/api/billing/custom-plans/tenant/{tenant_id}", headers=_auth_header())
    assert no_active.status_code == 404


def test_reject_return_to_draft_clone_and_delete(custom_plan_client: TestClient) -> None:
    delta = _create_tenant(custom_plan_client, "delta")
    echo = _create_tenant(custom_plan_client, "echo")

    empty = _draft(custom_plan_client, delta, name="Empty bundle", modules=[])
    no_modules = custom_plan_client.post(f"/api/billing/custom-plans/{empty['id']}/submit", headers=_auth_header())
    assert no_modules.status_code == 400

    plan = _draft(custom_plan_client, delta)
    custom_plan_client.post(f"/api/billing/custom-plans/{plan['id']}/submit", headers=_auth_header())

    blank_reason = custom_plan_client.post(
        f"/api/billing/custom-plans/{plan['id']}/reject",
        json={"reason": "  "},
        headers=_auth_header(),
    )
    assert blank_reason.status_code == 400

    returned = custom_plan_client.post(
        f"/api/billing/custom-plans/{plan['id']}/return-to-draft",
        headers=_auth_header(),
    )
    assert returned.status_code == 200
    assert returned.json()["status"] == "DRAFT"
    assert returned.json()["submitted_at"] is None

    draft_return = custom_plan_client.post(
        f"/api/billing/custom-plans/{plan['id']}/return-to-draft",
        headers=_auth_header(),
    )
    assert draft_return.status_code == 400

    custom_plan_client.post(f"/api/billing/custom-plans/{plan['id']}/submit", headers=_auth_header())
    rejected = custom_plan_client.post(
        f"/api/billing/custom-plans/{plan['id']}/reject",
        json={"reason": "Discount exceeds approval threshold"},
        headers=_auth_header(),
    )
    assert rejected.status_code == 200
    assert rejected.json()["status"] == "REJECTED"
    assert rejected.json()["rejection_reason"] == "Discount exceeds approval threshold"

    cannot_delete = custom_plan_client.delete(f"/api/billing/custom-plans/{plan['id']}", headers=_auth_header())
    assert cannot_delete.status_code == 400

    clone = custom_plan_client.post(
        f"/api/billing/custom-plans/{plan['id']}/clone",
        json={"new_tenant_id": echo},
        headers=_auth_header(),
    )
    assert clone.status_code == 201
    clone_body = clone.json()
    assert clone_body["name"] == "Delta Aquaculture bundle (Copy)"
    assert clone_body["status"] == "DRAFT"
    assert clone_body["tenant_id"] == echo
    assert clone_body["monthly_total_cents"] == plan["monthly_total_cents"]

    listed = custom_plan_client.get(
        "/api/billing/custom-plans",
        params={"search": "copy"},
        headers=_auth_header(),
    )
    assert listed.json()["total"] == 1

    by_status = custom_plan_client.get(
        "/api/billing/custom-plans",
        params={"status": "DRAFT", "tenant_id": delta},
        headers=_auth_header(),
    )
    assert [item["id"] for item in by_status.json()["items"]] == [empty["id"]]

    deleted = custom_plan_client.delete(f"/api/billing/custom-plans/{clone_body['id']}", headers=_auth_header())
    assert deleted.status_code == 204
    gone = custom_plan_client.get(f"/api/billing/custom-plans/{clone_body['id']}", headers=_auth_header())
    assert gone.status_code == 404
