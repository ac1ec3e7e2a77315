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


@pytest.fixture()
def plans_client(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[TestClient, None, None]:
    db_path = tmp_path / "plans_test.db"
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


def _auth_header(permissions: list[str] | None = None) -> dict[str, str]:
    token = create_access_token(user_id="admin-1", permissions=permissions or ["*"])
    return {"Authorization": f"Bearer {token}"}


def _seed(client: TestClient) -> dict[str, dict]:
    response = client.post("/api/billing/plans/seed", headers=_auth_header())
    assert response.status_code == 200
    listed = client.get("/api/billing/plans", headers=_auth_header())
    assert listed.status_code == 200
    return {item["code"]: item for item in listed.json()}


def test_seed_default_plans_is_idempotent(plans_client: TestClient) -> None:
    plans = _seed(plans_client)
    assert list(plans) == ["free_2024", "starter_2024", "professional_2024", "enterprise_2024"]
    assert plans["starter_2024"]["pricing"]["monthly"]["base_price_cents"] == 9900
    assert plans["professional_2024"]["limits"]["max_modules"] == -1
    assert plans["enterprise_2024"]["limits"]["max_users"] == -1

    again = plans_client.post("/api/billing/plans/seed", headers=_auth_header())
    assert again.status_code == 200
    assert again.json() == {"seeded_count": 0}

    by_code = plans_client.get("/api/billing/plans/code/STARTER_2024", headers=_auth_header())
    assert by_code.status_code == 200
    assert by_code.json()["tier"] == "STARTER"

    by_tier = plans_client.get("/api/billing/plans/tier/PROFESSIONAL", headers=_auth_header())
    assert by_tier.status_code == 200
    assert by_tier.json()["code"] == "professional_2024"


def test_create_plan_normalizes_code_and_rejects_duplicates(plans_client: TestClient) -> None:
    payload = {
        "code": "Growth_2026",
        "name": "Growth",
        "tier": "STARTER",
        "limits": {"max_users": 8},
        "pricing": {"monthly": {"base_price_cents": 14900}, "currency": "USD"},
    }
    created = plans_client.post("/api/billing/plans", json=payload, headers=_auth_header())
    assert created.status_code == 201
    body = created.json()
    assert body["code"] == "growth_2026"
    assert body["limits"]["max_users"] == 8
    assert body["limits"]["max_farms"] == 3
    assert body["features"]["reports_enabled"] is True

    duplicate = plans_client.post(
        "/api/billing/plans",
        json={**payload, "code": "GROWTH_2026"},
        headers=_auth_header(),
    )
    assert duplicate.status_code == 409
    assert duplicate.json()["detail"] == "Plan with code 'growth_2026' already exists"

    updated = plans_client.put(
        f"/api/billing/plans/{body['id']}",
        json={"pricing": {"monthly": {"base_price_cents": 15900}}, "is_recommended": True},
        headers=_auth_header(),
    )
    assert updated.status_code == 200
    assert updated.json()["pricing"]["monthly"]["base_price_cents"] == 15900
    assert updated.json()["is_recommended"] is True


def test_compare_plans_detects_upgrade_and_downgrade(plans_client: TestClient) -> None:
    plans = _seed(plans_client)
    starter = plans["starter_2024"]["id"]
    professional = plans["professional_2024"]["id"]
    free = plans["free_2024"]["id"]

    upgrade = plans_client.get(
        "/api/billing/plans/compare",
        params={"current_plan_id": starter, "new_plan_id": professional},
        headers=_auth_header(),
    )
    assert upgrade.status_code == 200
    upgrade_body = upgrade.json()
    assert upgrade_body["is_upgrade"] is True
    assert upgrade_body["is_downgrade"] is False
    assert upgrade_body["price_difference_cents"] == 20000
    assert upgrade_body["warnings"] == []

    downgrade = plans_client.get(
        "/api/billing/plans/compare",
        params={"current_plan_id": professional, "new_plan_id": free},
        headers=_auth_header(),
    )
    assert downgrade.status_code == 200
    downgrade_body = downgrade.json()
    assert downgrade_body["is_downgrade"] is True
    assert downgrade_body["warnings"][0].startswith("Downgrading")
    assert any("features will be lost" in item for item in downgrade_body["warnings"])
    assert "User limit will decrease from 20 to 2" in downgrade_body["warnings"]

    missing = plans_client.get(
        "/api/billing/plans/compare",
        params={"current_plan_id": starter, "new_plan_id": "missing"},
        headers=_auth_header(),
    )
    assert missing.status_code == 404


def test_proration_uses_remaining_days_of_cycle(plans_client: TestClient) -> None:
    plans = _seed(plans_client)
    period_end = datetime.now(UTC) + timedelta(days=15) - timedelta(minutes=5)
    response = plans_client.post(
        "/api/billing/plans/proration",
        json={
            "current_plan_id": plans["starter_2024"]["id"],
            "new_plan_id": plans["professional_2024"]["id"],
            "current_period_end": period_end.isoformat(),
            "billing_cycle": "MONTHLY",
        },
        headers=_auth_header(),
    )
    assert response.status_code == 200
    body = response.json()
    assert body["days_remaining"] == 15
    assert body["cycle_days"] == 30
    assert body["current_plan_credit_cents"] == 4950
    assert body["new_plan_cost_cents"] == 14950
    assert body["prorated_amount_cents"] == 10000

    annual = plans_client.post(
        "/api/billing/plans/proration",
        json={
            "current_plan_id": plans["starter_2024"]["id"],
            "new_plan_id": plans["starter_2024"]["id"],
            "current_period_end": period_end.isoformat(),
            "billing_cycle": "MONTHLY",
            "new_billing_cycle": "ANNUAL",
        },
        headers=_auth_header(),
    ).json()
    assert annual["cycle_days"] == 365
    assert annual["current_plan_credit_cents"] == annual["new_plan_cost_cents"] == 3904
    assert annual["prorated_amount_cents"] == 0

    lapsed = plans_client.post(
        "/api/billing/plans/proration",
        json={
            "current_plan_id": plans["starter_2024"]["id"],
            "new_plan_id": plans["professional_2024"]["id"],
            "current_period_end": (datetime.now(UTC) - timedelta(days=2)).isoformat(),
            "billing_cycle": "MONTHLY",
        },
        headers=_auth_header(),
    ).json()
    assert lapsed["days_remaining"] == 0
    assert lapsed["current_plan_credit_cents"] == 0
    assert lapsed["new_plan_cost_cents"] == 0
    assert lapsed["prorated_amount_cents"] == 0


def test_deprecated_plan_leaves_active_listing(plans_client: TestClient) -> None:
    plans = _seed(plans_client)
    starter_id = plans["starter_2024"]["id"]

    deprecated = plans_client.post(f"/api/billing/plans/{starter_id}/deprecate", headers=_auth_header())
    assert deprecated.status_code == 200
    assert deprecated.json()["visibility"] == "DEPRECATED"
    assert deprecated.json()["is_active"] is False

    public = plans_client.get("/api/billing/plans/public", headers=_auth_header())
    assert starter_id not in {item["id"] for item in public.json()}

    everything = plans_client.get(
        "/api/billing/plans",
        params={"include_inactive": True},
        headers=_auth_header(),
    )
    assert starter_id in {item["id"] for item in everything.json()}


def test_tier_defaults_and_permissions(plans_client: TestClient) -> None:
    defaults = plans_client.get("/api/billing/plans/defaults/FREE", headers=_auth_header())
    assert defaults.status_code == 200
    assert defaults.json()["limits"]["max_users"] == 2
    assert defaults.json()["features"]["alerts_enabled"] is True

    unauthenticated = plans_client.get("/api/billing/plans")
    assert unauthenticated.status_code == 401

    read_only = plans_client.post("/api/billing/plans/seed", headers=_auth_header(["billing.read"]))
    assert read_only.status_code == 403
