from __future__ import annotations

from collections.abc import Generator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import event
from sqlmodel import Session, SQLModel, create_engine, select

from app import main as app_main
from app.domain.models import Subscription
from app.infra import audit, db, events
from app.infra.auth import create_access_token


@pytest.fixture()
def plan_change_client(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[TestClient, None, None]:
    db_path = tmp_path / "plan_change_test.db"
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


def _prepare(client: TestClient) -> tuple[str, dict[str, str]]:
    assert client.post("/api/billing/plans/seed", headers=_auth_header()).status_code == 200
    plans = {item["code"]: item["id"] for item in client.get("/api/billing/plans", headers=_auth_header()).json()}
    tenant = client.post("/api/tenants", json={"name": "Acme Farms", "slug": "acme"}, headers=_auth_header())
    assert tenant.status_code == 201
    tenant_id = tenant.json()["tenant"]["id"]
    created = client.post(
        "/api/billing/subscriptions",
        json={
            "tenant_id": tenant_id,
            "plan_tier": "STARTER",
            "plan_id": plans["starter_2024"],
            "monthly_total_cents": 9900,
        },
        headers=_auth_header(),
    )
    assert created.status_code == 201
    _set_period_end(tenant_id, datetime.now(UTC) + timedelta(days=15) - timedelta(minutes=5))
    return tenant_id, plans


def _set_period_end(tenant_id: str, period_end: datetime) -> None:
    with Session(db.engine) as session:
        row = session.exec(select(Subscription).where(Subscription.tenant_id == tenant_id)).one()
        row.current_period_end = period_end
        session.add(row)
        session.commit()


def test_upgrade_bills_prorated_difference_with_discount(plan_change_client: TestClient) -> None:
    tenant_id, plans = _prepare(plan_change_client)
    code = plan_change_client.post(
        "/api/billing/discounts",
        json={"code": "UPGRADE10", "name": "Upgrade", "discount_type": "PERCENTAGE", "value": 10},
        headers=_auth_header(),
    )
    assert code.status_code == 201

    response = plan_change_client.post(
        "/api/billing/subscriptions/change-plan",
        json={
            "tenant_id": tenant_id,
            "new_plan_id": plans["professional_2024"],
            "discount_code": "upgrade10",
        },
        headers=_auth_header(),
    )
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["is_upgrade"] is True
    assert body["prorated_amount_cents"] == 10000
    assert body["discount_cents"] == 1000
    assert body["final_amount_cents"] == 9000
    assert body["new_monthly_price_cents"] == 29900
    assert body["message"] == "Upgraded from Starter to Professional"
    assert body["warnings"] == []
    assert body["invoice"]["total_cents"] == 9000

    invoice = plan_change_client.get(f"/api/billing/invoices/{body['invoice']['id']}", headers=_auth_header())
    assert invoice.status_code == 200
    invoice_body = invoice.json()
    assert invoice_body["subtotal_cents"] == 10000
    assert invoice_body["discount_code"] == "UPGRADE10"
    assert invoice_body["status"] == "PENDING"
    assert [line["description"] for line in invoice_body["lines"]] == [
        "Plan change: Starter to Professional (prorated)"
    ]

    subscription = plan_change_client.get(
        f"/api/billing/subscriptions/tenant/{tenant_id}",
        headers=_auth_header(),
    ).json()
    assert subscription["plan_tier"] == "PROFESSIONAL"
    assert subscription["plan_name"] == "Professional"
    assert subscription["pricing"]["base_price_cents"] == 29900
    assert subscription["limits"]["max_users"] == 20

    tenant = plan_change_client.get(f"/api/tenants/{tenant_id}", headers=_auth_header()).json()
    assert tenant["tier"] == "PROFESSIONAL"
    assert tenant["plan_id"] == plans["professional_2024"]


def test_downgrade_reports_warnings_without_invoice(plan_change_client: TestClient) -> None:
    tenant_id, plans = _prepare(plan_change_client)

    response = plan_change_client.post(
        "/api/billing/subscriptions/change-plan",
        json={"tenant_id": tenant_id, "new_plan_id": plans["free_2024"]},
        headers=_auth_header(),
    )
    assert response.status_code == 200
    body = response.json()
    assert body["is_downgrade"] is True
    assert body["prorated_amount_cents"] == -4950
    assert body["final_amount_cents"] == 0
    assert body["invoice"] is None
    assert body["message"] == "Downgraded from Starter to Free"
    assert "User limit will decrease from 5 to 2" in body["warnings"]

    invoices = plan_change_client.get(f"/api/billing/invoices/tenant/{tenant_id}", headers=_auth_header())
    assert invoices.json() == []


def test_scheduled_change_takes_effect_at_period_end(plan_change_client: TestClient) -> None:
    tenant_id, plans = _prepare(plan_change_client)
    period_end = plan_change_client.get(
        f"/api/billing/subscriptions/tenant/{tenant_id}",
        headers=_auth_header(),
    ).json()["current_period_end"]
    code = plan_change_client.post(
        "/api/billing/discounts",
        json={
            "code": "ONEOFF",
            "name": "Single use",
            "discount_type": "PERCENTAGE",
            "value": 10,
            "max_redemptions": 1,
        },
        headers=_auth_header(),
    )
    assert code.status_code == 201

    response = plan_change_client.post(
        "/api/billing/subscriptions/change-plan",
        json={
            "tenant_id": tenant_id,
            "new_plan_id": plans["professional_2024"],
            "effective_immediately": False,
            "discount_code": "ONEOFF",
        },
        headers=_auth_header(),
    )
    assert response.status_code == 200
    body = response.json()
    assert body["discount_cents"] == 1000
    assert body["final_amount_cents"] == 9000
    assert body["invoice"] is None
    effective = datetime.fromisoformat(body["effective_date"]).replace(tzinfo=None)
    assert effective == datetime.fromisoformat(period_end).replace(tzinfo=None)

    stored = plan_change_client.get(f"/api/billing/discounts/{code.json()['id']}", headers=_auth_header())
    assert stored.json()["current_redemptions"] == 0
    redemptions = plan_change_client.get(
        f"/api/billing/discounts/{code.json()['id']}/redemptions",
        headers=_auth_header(),
    )
    assert redemptions.json()["total"] == 0


def test_upgrade_with_cycle_change_prorates_on_new_cycle(plan_change_client: TestClient) -> None:
    tenant_id, plans = _prepare(plan_change_client)

    response = plan_change_client.post(
        "/api/billing/subscriptions/change-plan",
        json={
            "tenant_id": tenant_id,
            "new_plan_id": plans["professional_2024"],
            "new_billing_cycle": "ANNUAL",
        },
        headers=_auth_header(),
    )
    assert response.status_code == 200
    body = response.json()
    # 15 of 365 days: 287000 -> 11795, 95000 -> 3904.
    assert body["prorated_amount_cents"] == 11795 - 3904
    assert body["final_amount_cents"] == 7891
    assert body["invoice"]["total_cents"] == 7891


def test_plan_change_rejections(plan_change_client: TestClient) -> None:
    tenant_id, plans = _prepare(plan_change_client)

    same = plan_change_client.post(
        "/api/billing/subscriptions/change-plan",
        json={"tenant_id": tenant_id, "new_plan_id": plans["starter_2024"]},
        headers=_auth_header(),
    )
    assert same.status_code == 400

    cycle_only = plan_change_client.post(
        "/api/billing/subscriptions/change-plan",
        json={
            "tenant_id": tenant_id,
            "new_plan_id": plans["starter_2024"],
            "new_billing_cycle": "ANNUAL",
        },
        headers=_auth_header(),
    )
    assert cycle_only.status_code == 200
    cycle_body = cycle_only.json()
    assert cycle_body["message"] == "Changed from Starter to Starter"
    assert cycle_body["prorated_amount_cents"] == 0
    assert cycle_body["final_amount_cents"] == 0
    assert cycle_body["invoice"] is None
    annual = plan_change_client.get(f"/api/billing/subscriptions/tenant/{tenant_id}", headers=_auth_header()).json()
    assert annual["billing_cycle"] == "ANNUAL"
    assert annual["pricing"]["base_price_cents"] == 95000

    retired = plan_change_client.post(
        f"/api/billing/plans/{plans['enterprise_2024']}/deprecate",
        headers=_auth_header(),
    )
    assert retired.status_code == 200
    inactive = plan_change_client.post(
        "/api/billing/subscriptions/change-plan",
        json={"tenant_id": tenant_id, "new_plan_id": plans["enterprise_2024"]},
        headers=_auth_header(),
    )
    assert inactive.status_code == 400

    unknown_tenant = plan_change_client.post(
        "/api/billing/subscriptions/change-plan",
        json={"tenant_id": "missing", "new_plan_id": plans["professional_2024"]},
        headers=_auth_header(),
    )
    assert unknown_tenant.status_code == 404
