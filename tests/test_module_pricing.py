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
def pricing_client(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[TestClient, None, None]:
    db_path = tmp_path / "pricing_test.db"
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
    token = create_access_token(user_id="pricing-admin", permissions=["*"])
    return {"Authorization": f"Bearer {token}"}


def _seed_modules(client: TestClient) -> None:
    response = client.post(
        "/api/billing/module-pricing/seed",
        json={"module_id_map": {"farm": "mod-farm", "sensor": "mod-sensor", "drones": "mod-drones"}},
        headers=_auth_header(),
    )
    assert response.status_code == 200
    assert response.json() == {"seeded_count": 2}


def test_seed_and_version_module_pricing(pricing_client: TestClient) -> None:
    _seed_modules(pricing_client)

    again = pricing_client.post(
        "/api/billing/module-pricing/seed",
        json={"module_id_map": {"farm": "mod-farm"}},
        headers=_auth_header(),
    )
    assert again.json() == {"seeded_count": 0}

    by_code = pricing_client.get("/api/billing/module-pricing/code/farm", headers=_auth_header())
    assert by_code.status_code == 200
    assert by_code.json()["version"] == 1
    assert by_code.json()["tier_multipliers"]["PROFESSIONAL"] == 0.9

    created = pricing_client.post(
        "/api/billing/module-pricing",
        json={
            "module_id": "mod-farm",
            "module_code": "FARM",
            "module_name": "Farm Management",
            "pricing_metrics": [
                {"type": "BASE_PRICE", "price_cents": 3500},
                {"type": "PER_FARM", "price_cents": 1200, "included_quantity": 2},
            ],
        },
        headers=_auth_header(),
    )
    assert created.status_code == 201
    assert created.json()["version"] == 2
    assert created.json()["module_code"] == "farm"

    current = pricing_client.get("/api/billing/module-pricing/mod-farm", headers=_auth_header())
    assert current.json()["id"] == created.json()["id"]

    history = pricing_client.get("/api/billing/module-pricing/mod-farm/history", headers=_auth_header())
    assert [item["version"] for item in history.json()] == [2, 1]
    assert history.json()[1]["is_active"] is False
    assert history.json()[1]["effective_to"] is not None

    overview = pricing_client.get("/api/billing/module-pricing/with-modules", headers=_auth_header())
    counts = {item["pricing"]["module_id"]: item["version_count"] for item in overview.json()}
    assert counts == {"mod-farm": 2, "mod-sensor": 1}


def test_module_pricing_validation(pricing_client: TestClient) -> None:
    duplicate_metric = pricing_client.post(
        "/api/billing/module-pricing",
        json={
            "module_id": "mod-hr",
            "module_code": "hr",
            "pricing_metrics": [
                {"type": "PER_USER", "price_cents": 100},
                {"type": "PER_USER", "price_cents": 200},
            ],
        },
        headers=_auth_header(),
    )
    assert duplicate_metric.status_code == 400

    empty = pricing_client.post(
        "/api/billing/module-pricing",
        json={"module_id": "mod-hr", "module_code": "hr", "pricing_metrics": []},
        headers=_auth_header(),
    )
    assert empty.status_code == 400

    missing = pricing_client.get("/api/billing/module-pricing/code/hr", headers=_auth_header())
    assert missing.status_code == 404


def test_quote_applies_cycle_discount_code_and_tax(pricing_client: TestClient) -> None:
    _seed_modules(pricing_client)
    discount = pricing_client.post(
        "/api/billing/discounts",
        json={"code": "LAUNCH10", "name": "Launch", "discount_type": "PERCENTAGE", "value": 10},
        headers=_auth_header(),
    )
    assert discount.status_code == 201

    quote = pricing_client.post(
        "/api/billing/pricing/calculate",
        json={
            "modules": [
                {"module_code": "farm", "quantities": {"farms": 3, "ponds": 12}},
                {"module_code": "sensor", "quantities": {"sensors": 3}},
                {"module_code": "drones"},
            ],
            "tier": "STARTER",
            "billing_cycle": "QUARTERLY",
            "tax_rate": 10,
        },
        headers=_auth_header(),
    )
    assert quote.status_code == 200
    body = quote.json()
    farm = body["modules"][0]
    assert [line["total_cents"] for line in farm["line_items"]] == [2900, 3000, 1400]
    assert farm["line_items"][1]["billable_quantity"] == 2
    assert body["modules"][1]["subtotal_cents"] == 1900
    assert body["skipped_modules"] == ["drones"]
    assert body["monthly_subtotal_cents"] == 9200
    assert body["cycle_subtotal_cents"] == 27600
    assert body["cycle_discount_percent"] == 5
    assert body["cycle_discount_cents"] == 1380
    assert body["tax_cents"] == 2622
    assert body["total_cents"] == 28842
    assert body["monthly_equivalent_cents"] == 9614
    assert body["annual_total_cents"] == 9614 * 12

    discounted = pricing_client.post(
        "/api/billing/pricing/calculate",
        json={
            "modules": [{"module_code": "farm", "quantities": {"farms": 1}}],
            "tier": "STARTER",
            "discount_code": "launch10",
            "tenant_id": "tenant-a",
        },
        headers=_auth_header(),
    )
    discounted_body = discounted.json()
    assert discounted_body["monthly_subtotal_cents"] == 2900
    assert discounted_body["discount_code"] == "LAUNCH10"
    assert discounted_body["discount_cents"] == 290
    assert discounted_body["total_cents"] == 2610

    rejected = pricing_client.post(
        "/api/billing/pricing/calculate",
        json={"modules": [{"module_code": "farm"}], "discount_code": "UNKNOWN"},
        headers=_auth_header(),
    )
    assert rejected.json()["discount_cents"] == 0
    assert rejected.json()["discount_reason"] == "Invalid discount code"


def test_quick_estimate_and_comparison(pricing_client: TestClient) -> None:
    _seed_modules(pricing_client)

    estimate = pricing_client.post(
        "/api/billing/pricing/quick-estimate",
        json={"module_codes": ["farm", "sensor"], "tier": "PROFESSIONAL", "quantities": {"farms": 3}},
        headers=_auth_header(),
    )
    assert estimate.status_code == 200
    estimate_body = estimate.json()
    assert estimate_body["billing_cycle"] == "MONTHLY"
    assert estimate_body["monthly_subtotal_cents"] == 2610 + 2700 + 1710

    farm_quote = {"modules": [{"module_code": "farm", "quantities": {"farms": 3, "ponds": 12}}]}
    comparison = pricing_client.post(
        "/api/billing/pricing/compare",
        json={
            "first": {**farm_quote, "tier": "STARTER"},
            "second": {**farm_quote, "tier": "PROFESSIONAL"},
        },
        headers=_auth_header(),
    )
    assert comparison.status_code == 200
    body = comparison.json()
    assert body["first"]["monthly_equivalent_cents"] == 7300
    assert body["second"]["monthly_equivalent_cents"] == 6570
    assert body["difference_cents"] == -730
    assert body["percent_difference"] == -10.0
    assert body["recommendation"] == "The second configuration saves 7.30 per month"
