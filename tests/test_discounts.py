from __future__ import annotations

from collections.abc import Generator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import event
from sqlmodel import SQLModel, create_engine

from app import main as app_main
from app.infra import audit, db, events
from app.infra.auth import create_access_token
from app.services.discount_service import (
    REASON_EXPIRED,
    REASON_INVALID,
    REASON_MAX_REDEMPTIONS,
    REASON_PLAN_NOT_ELIGIBLE,
    REASON_TENANT_LIMIT,
)


@pytest.fixture()
def discount_client(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[TestClient, None, None]:
    db_path = tmp_path / "discount_test.db"
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
    token = create_access_token(user_id="billing-admin", permissions=["*"])
    return {"Authorization": f"Bearer {token}"}


def _create_code(client: TestClient, **overrides: object) -> dict:
    payload = {
        "code": "spring-25",
        "name": "Spring campaign",
        "discount_type": "PERCENTAGE",
        "value": 25,
    }
    payload.update(overrides)
    response = client.post("/api/billing/discounts", json=payload, headers=_auth_header())
    assert response.status_code == 201, response.text
    return response.json()


def test_discount_code_validate_apply_and_exhaust(discount_client: TestClient) -> None:
    code = _create_code(discount_client, max_redemptions=1)
    assert code["code"] == "SPRING25"
    assert code["current_redemptions"] == 0

    validation = discount_client.post(
        "/api/billing/discounts/validate",
        json={"code": "spring25", "tenant_id": "tenant-a", "order_amount_cents": 10000},
        headers=_auth_header(),
    )
    assert validation.status_code == 200
    assert validation.json()["valid"] is True
    assert validation.json()["discount_amount_cents"] == 2500
    assert validation.json()["final_amount_cents"] == 7500

    applied = discount_client.post(
        "/api/billing/discounts/apply",
        json={"code": "SPRING25", "tenant_id": "tenant-a", "order_amount_cents": 10000},
        headers=_auth_header(),
    )
    assert applied.status_code == 200
    applied_body = applied.json()
    assert applied_body["applied"] is True
    assert applied_body["redemption"]["tenant_id"] == "tenant-a"
    assert applied_body["redemption"]["redeemed_by"] == "billing-admin"

    refreshed = discount_client.get(f"/api/billing/discounts/{code['id']}", headers=_auth_header())
    assert refreshed.json()["current_redemptions"] == 1

    exhausted = discount_client.post(
        "/api/billing/discounts/apply",
        json={"code": "SPRING25", "tenant_id": "tenant-b", "order_amount_cents": 10000},
        headers=_auth_header(),
    )
    assert exhausted.status_code == 200
    assert exhausted.json()["applied"] is False
    assert exhausted.json()["reason"] == REASON_MAX_REDEMPTIONS
    assert exhausted.json()["final_amount_cents"] == 10000

    redemptions = discount_client.get(
        f"/api/billing/discounts/{code['id']}/redemptions",
        headers=_auth_header(),
    )
    assert redemptions.status_code == 200
    assert redemptions.json()["total"] == 1


def test_discount_code_rules(discount_client: TestClient) -> None:
    _create_code(discount_client, code="ONCE-PER-TENANT", max_redemptions_per_tenant=1)
    first = discount_client.post(
        "/api/billing/discounts/apply",
        json={"code": "ONCEPERTENANT", "tenant_id": "tenant-a", "order_amount_cents": 5000},
        headers=_auth_header(),
    )
    assert first.json()["applied"] is True
    second = discount_client.post(
        "/api/billing/discounts/validate",
        json={"code": "ONCEPERTENANT", "tenant_id": "tenant-a", "order_amount_cents": 5000},
        headers=_auth_header(),
    )
    assert second.json()["valid"] is False
    assert second.json()["reason"] == REASON_TENANT_LIMIT

    _create_code(discount_client, code="PLANONLY", applies_to="SPECIFIC_PLANS", applicable_plan_ids=["plan-1"])
    wrong_plan = discount_client.post(
        "/api/billing/discounts/validate",
        json={"code": "PLANONLY", "tenant_id": "tenant-a", "plan_id": "plan-2", "order_amount_cents": 5000},
        headers=_auth_header(),
    )
    assert wrong_plan.json()["reason"] == REASON_PLAN_NOT_ELIGIBLE

    _create_code(discount_client, code="BIGORDER", min_order_amount_cents=20000)
    small = discount_client.post(
        "/api/billing/discounts/validate",
        json={"code": "BIGORDER", "tenant_id": "tenant-a", "order_amount_cents": 5000},
        headers=_auth_header(),
    )
    assert small.json()["valid"] is False
    assert small.json()["reason"] == "Minimum order amount of 200.00 USD required for this discount"

    now = datetime.now(UTC)
    _create_code(
        discount_client,
        code="OLDNEWS",
        valid_from=(now - timedelta(days=10)).isoformat(),
        valid_until=(now - timedelta(days=1)).isoformat(),
    )
    expired = discount_client.post(
        "/api/billing/discounts/validate",
        json={"code": "OLDNEWS", "tenant_id": "tenant-a", "order_amount_cents": 5000},
        headers=_auth_header(),
    )
    assert expired.json()["reason"] == REASON_EXPIRED

    unknown = discount_client.post(
        "/api/billing/discounts/validate",
        json={"code": "NOPE", "tenant_id": "tenant-a", "order_amount_cents": 5000},
        headers=_auth_header(),
    )
    assert unknown.json()["valid"] is False
    assert unknown.json()["reason"] == REASON_INVALID

    _create_code(discount_client, code="FLAT50", discount_type="FIXED_AMOUNT", value=5000)
    capped = discount_client.post(
        "/api/billing/discounts/validate",
        json={"code": "FLAT50", "tenant_id": "tenant-a", "order_amount_cents": 3000},
        headers=_auth_header(),
    )
    assert capped.json()["discount_amount_cents"] == 3000
    assert capped.json()["final_amount_cents"] == 0


def test_discount_code_creation_errors(discount_client: TestClient) -> None:
    _create_code(discount_client)
    duplicate = discount_client.post(
        "/api/billing/discounts",
        json={"code": "SPRING-25", "name": "Again", "discount_type": "PERCENTAGE", "value": 10},
        headers=_auth_header(),
    )
    assert duplicate.status_code == 409

    too_generous = discount_client.post(
        "/api/billing/discounts",
        json={"code": "HALFOFF2", "name": "Too much", "discount_type": "PERCENTAGE", "value": 150},
        headers=_auth_header(),
    )
    assert too_generous.status_code == 400

    now = datetime.now(UTC)
    inverted = discount_client.post(
        "/api/billing/discounts",
        json={
            "code": "BACKWARDS",
            "name": "Inverted window",
            "discount_type": "PERCENTAGE",
            "value": 10,
            "valid_from": now.isoformat(),
            "valid_until": (now - timedelta(days=1)).isoformat(),
        },
        headers=_auth_header(),
    )
    assert inverted.status_code == 400


def test_update_rejects_null_for_required_fields(discount_client: TestClient) -> None:
    code = _create_code(discount_client)

    cleared = discount_client.put(
        f"/api/billing/discounts/{code['id']}",
        json={"valid_from": None, "name": None},
        headers=_auth_header(),
    )
    assert cleared.status_code == 400
    assert cleared.json()["detail"] == "name, valid_from cannot be null"

    open_ended = discount_client.put(
        f"/api/billing/discounts/{code['id']}",
        json={"valid_until": None, "description": None, "value": 30},
        headers=_auth_header(),
    )
    assert open_ended.status_code == 200
    assert open_ended.json()["valid_until"] is None
    assert open_ended.json()["value"] == 30
    assert open_ended.json()["name"] == "Spring campaign"


def test_bulk_generation_stats_and_deactivation(discount_client: TestClient) -> None:
    generated = discount_client.post(
        "/api/billing/discounts/generate-code",
        json={"prefix": "vip-", "length": 6},
        headers=_auth_header(),
    )
    assert generated.status_code == 200
    assert generated.json()["code"].startswith("VIP")
    assert len(generated.json()["code"]) == 9

    bulk = discount_client.post(
        "/api/billing/discounts/bulk",
        json={
            "template": {"code": "ignored", "name": "Partner", "discount_type": "FIXED_AMOUNT", "value": 1000},
            "count": 3,
            "prefix": "PARTNER",
        },
        headers=_auth_header(),
    )
    assert bulk.status_code == 201
    codes = bulk.json()
    assert len({item["code"] for item in codes}) == 3
    assert all(item["code"].startswith("PARTNER") for item in codes)

    target = codes[0]
    applied = discount_client.post(
        "/api/billing/discounts/apply",
        json={"code": target["code"], "tenant_id": "tenant-a", "order_amount_cents": 4000},
        headers=_auth_header(),
    )
    assert applied.json()["discount_amount_cents"] == 1000

    stats = discount_client.get("/api/billing/discounts/stats", headers=_auth_header())
    assert stats.status_code == 200
    stats_body = stats.json()
    assert stats_body["total_codes"] == 3
    assert stats_body["active_codes"] == 3
    assert stats_body["total_redemptions"] == 1
    assert stats_body["total_discount_cents"] == 1000
    assert stats_body["top_codes"][0]["code"] == target["code"]

    deactivated = discount_client.post(
        f"/api/billing/discounts/{target['id']}/deactivate",
        headers=_auth_header(),
    )
    assert deactivated.status_code == 200
    assert deactivated.json()["is_active"] is False

    rejected = discount_client.post(
        "/api/billing/discounts/validate",
        json={"code": target["code"], "tenant_id": "tenant-b", "order_amount_cents": 4000},
        headers=_auth_header(),
    )
    assert rejected.json()["valid"] is False

    active_only = discount_client.get(
        "/api/billing/discounts",
        params={"is_active": True},
        headers=_auth_header(),
    )
    assert target["id"] not in {item["id"] for item in active_only.json()}
