from __future__ import annotations

from collections.abc import Generator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import event
from sqlmodel import Session, SQLModel, create_engine, select

from app import main as app_main
from app.domain.models import Invoice, InvoiceLine, InvoiceStatus, Subscription
from app.infra import audit, db, events
from app.infra.auth import create_access_token
from app.services import renewal_service
from app.services.errors import ServiceError
from app.services.invoice_service import InvoiceService, stage_invoice
from app.services.renewal_service import RenewalService


@pytest.fixture()
def subscription_client(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[TestClient, None, None]:
    db_path = tmp_path / "subscription_test.db"
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


def _create_tenant(client: TestClient, name: str, slug: str) -> str:
    response = client.post("/api/tenants", json={"name": name, "slug": slug}, headers=_auth_header())
    assert response.status_code == 201
    return response.json()["tenant"]["id"]


def _seed_plans(client: TestClient) -> dict[str, str]:
    assert client.post("/api/billing/plans/seed", headers=_auth_header()).status_code == 200
    listed = client.get("/api/billing/plans", headers=_auth_header())
    return {item["code"]: item["id"] for item in listed.json()}


def _subscribe(client: TestClient, payload: dict) -> dict:
    response = client.post("/api/billing/subscriptions", json=payload, headers=_auth_header())
    assert response.status_code == 201, response.text
    return response.json()


def _parse(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def test_subscription_create_list_and_stats(subscription_client: TestClient) -> None:
    plans = _seed_plans(subscription_client)
    acme = _create_tenant(subscription_client, "Acme Farms", "acme")
    blue = _create_tenant(subscription_client, "Bluewater", "bluewater")
    coral = _create_tenant(subscription_client, "Coral Bay", "coral")

    discount = subscription_client.post(
        "/api/billing/discounts",
        json={"code": "WELCOME20", "name": "Welcome", "discount_type": "PERCENTAGE", "value": 20},
        headers=_auth_header(),
    )
    assert discount.status_code == 201

    active = _subscribe(
        subscription_client,
        {
            "tenant_id": acme,
            "plan_tier": "STARTER",
            "plan_id": plans["starter_2024"],
            "monthly_total_cents": 9900,
        },
    )
    assert active["status"] == "ACTIVE"
    assert active["plan_name"] == "Starter"
    assert active["limits"]["max_users"] == 5
    assert active["pricing"]["base_price_cents"] == 9900
    period = _parse(active["current_period_end"]) - _parse(active["current_period_start"])
    assert timedelta(days=28) <= period <= timedelta(days=31)

    tenant = subscription_client.get(f"/api/tenants/{acme}", headers=_auth_header())
    assert tenant.json()["tier"] == "STARTER"
    assert tenant.json()["plan_id"] == plans["starter_2024"]

    trial = _subscribe(
        subscription_client,
        {"tenant_id": blue, "plan_tier": "PROFESSIONAL", "monthly_total_cents": 29900, "trial_days": 14},
    )
    assert trial["status"] == "TRIAL"
    assert trial["plan_name"] == "Professional Plan"
    assert _parse(trial["trial_end_date"]) == _parse(trial["current_period_end"])

    discounted = _subscribe(
        subscription_client,
        {
            "tenant_id": coral,
            "plan_tier": "STARTER",
            "monthly_total_cents": 10000,
            "discount_code": "welcome20",
            "modules": [
                {
                    "module_id": "mod-farm",
                    "module_code": "farm",
                    "quantities": {"users": 7, "farms": 2},
                    "subtotal_cents": 10000,
                }
            ],
        },
    )
    assert discounted["pricing"]["base_price_cents"] == 8000
    assert discounted["pricing"]["original_total_cents"] == 10000
    assert discounted["pricing"]["discount"]["amount_cents"] == 2000
    assert discounted["limits"]["max_users"] == 7
    assert discounted["limits"]["max_ponds"] == 10

    redemptions = subscription_client.get(
        f"/api/billing/subscriptions/tenant/{coral}/redemptions",
        headers=_auth_header(),
    )
    assert [item["subscription_id"] for item in redemptions.json()] == [discounted["id"]]

    duplicate = subscription_client.post(
        "/api/billing/subscriptions",
        json={"tenant_id": acme, "plan_tier": "FREE"},
        headers=_auth_header(),
    )
    assert duplicate.status_code == 409

    missing_tenant = subscription_client.post(
        "/api/billing/subscriptions",
        json={"tenant_id": "missing", "plan_tier": "FREE"},
        headers=_auth_header(),
    )
    assert missing_tenant.status_code == 404

    trials = subscription_client.get(
        "/api/billing/subscriptions",
        params={"status": "TRIAL"},
        headers=_auth_header(),
    )
    assert [item["tenant_id"] for item in trials.json()["items"]] == [blue]

    by_search = subscription_client.get(
        "/api/billing/subscriptions",
        params={"search": "acme"},
        headers=_auth_header(),
    )
    assert by_search.json()["total"] == 1
    assert by_search.json()["items"][0]["tenant_id"] == acme

    by_tier = subscription_client.get(
        "/api/billing/subscriptions",
        params=[("tier", "STARTER"), ("tier", "FREE")],
        headers=_auth_header(),
    )
    assert by_tier.json()["total"] == 2

    stats = subscription_client.get("/api/billing/subscriptions/stats", headers=_auth_header())
    assert stats.status_code == 200
    stats_body = stats.json()
    assert stats_body["total_subscriptions"] == 3
    assert stats_body["by_status"]["ACTIVE"] == 2
    assert stats_body["by_status"]["TRIAL"] == 1
    assert stats_body["mrr_cents"] == 9900 + 29900 + 8000
    assert stats_body["arr_cents"] == (9900 + 29900 + 8000) * 12
    assert stats_body["arpu_cents"] == (9900 + 29900 + 8000) // 2
    assert stats_body["churn_rate"] == 0.0

    fetched = subscription_client.get(f"/api/billing/subscriptions/{active['id']}", headers=_auth_header())
    assert fetched.status_code == 200
    assert fetched.json()["tenant_id"] == acme


def test_cancel_reactivate_and_extend_trial(subscription_client: TestClient) -> None:
    acme = _create_tenant(subscription_client, "Acme Farms", "acme")
    blue = _create_tenant(subscription_client, "Bluewater", "bluewater")
    active = _subscribe(subscription_client, {"tenant_id": acme, "plan_tier": "STARTER", "monthly_total_cents": 9900})
    trial = _subscribe(subscription_client, {"tenant_id": blue, "plan_tier": "STARTER", "trial_days": 7})

    at_period_end = subscription_client.post(
        f"/api/billing/subscriptions/tenant/{acme}/cancel",
        json={"reason": "budget"},
        headers=_auth_header(),
    )
    assert at_period_end.status_code == 200
    scheduled = at_period_end.json()
    assert scheduled["status"] == "ACTIVE"
    assert scheduled["auto_renew"] is False
    assert scheduled["cancellation_reason"] == "budget"
    assert _parse(scheduled["end_date"]) == _parse(active["current_period_end"])

    immediate = subscription_client.post(
        f"/api/billing/subscriptions/tenant/{acme}/cancel",
        json={"reason": "closing down", "cancel_immediately": True},
        headers=_auth_header(),
    )
    assert immediate.json()["status"] == "CANCELLED"

    again = subscription_client.post(
        f"/api/billing/subscriptions/tenant/{acme}/cancel",
        json={"reason": "twice"},
        headers=_auth_header(),
    )
    assert again.status_code == 409

    reactivated = subscription_client.post(
        f"/api/billing/subscriptions/tenant/{acme}/reactivate",
        headers=_auth_header(),
    )
    assert reactivated.status_code == 200
    assert reactivated.json()["status"] == "ACTIVE"
    assert reactivated.json()["auto_renew"] is True
    assert reactivated.json()["cancelled_at"] is None

    not_cancelled = subscription_client.post(
        f"/api/billing/subscriptions/tenant/{acme}/reactivate",
        headers=_auth_header(),
    )
    assert not_cancelled.status_code == 400

    extended = subscription_client.post(
        f"/api/billing/subscriptions/tenant/{blue}/extend-trial",
        json={"additional_days": 5},
        headers=_auth_header(),
    )
    assert extended.status_code == 200
    gained = _parse(extended.json()["trial_end_date"]) - _parse(trial["trial_end_date"])
    assert gained == timedelta(days=5)

    not_trial = subscription_client.post(
        f"/api/billing/subscriptions/tenant/{acme}/extend-trial",
        json={"additional_days": 5},
        headers=_auth_header(),
    )
    assert not_trial.status_code == 400

    no_subscription = subscription_client.get(
        "/api/billing/subscriptions/tenant/unknown",
        headers=_auth_header(),
    )
    assert no_subscription.status_code == 404


def test_renewal_overdue_and_past_due_sweeps(subscription_client: TestClient) -> None:
    plans = _seed_plans(subscription_client)
    acme = _create_tenant(subscription_client, "Acme Farms", "acme")
    blue = _create_tenant(subscription_client, "Bluewater", "bluewater")
    coral = _create_tenant(subscription_client, "Coral Bay", "coral")
    renewing = _subscribe(
        subscription_client,
        {"tenant_id": acme, "plan_tier": "STARTER", "plan_id": plans["starter_2024"], "monthly_total_cents": 9900},
    )
    _subscribe(subscription_client, {"tenant_id": blue, "plan_tier": "STARTER", "trial_days": 14})
    _subscribe(subscription_client, {"tenant_id": coral, "plan_tier": "STARTER", "monthly_total_cents": 4900})
    subscription_client.post(
        f"/api/billing/subscriptions/tenant/{coral}/cancel",
        json={"reason": "not renewing"},
        headers=_auth_header(),
    )

    nothing_due = subscription_client.post("/api/billing/subscriptions/process-renewals", headers=_auth_header())
    assert nothing_due.json() == {"processed": 0, "failed": 0, "errors": []}

    later = datetime.now(UTC) + timedelta(days=32)
    summary = RenewalService().process_renewals(now=later)
    assert summary.processed == 1
    assert summary.failed == 0

    renewed = subscription_client.get(f"/api/billing/subscriptions/tenant/{acme}", headers=_auth_header())
    assert _parse(renewed.json()["current_period_start"]) == _parse(renewing["current_period_end"])

    with Session(db.engine) as session:
        invoice = session.exec(select(Invoice).where(Invoice.tenant_id == acme)).one()
        line = session.exec(select(InvoiceLine).where(InvoiceLine.invoice_id == invoice.id)).one()
    assert invoice.status == InvoiceStatus.PENDING
    assert invoice.total_cents == 9900
    assert invoice.invoice_number.startswith("INV-")
    assert line.description == "Starter - monthly subscription"

    assert InvoiceService().update_overdue(now=later + timedelta(days=8)) == 1

    swept = subscription_client.post("/api/billing/subscriptions/mark-past-due", headers=_auth_header())
    assert swept.json() == {"updated": 1}

    reminders = subscription_client.get("/api/billing/subscriptions/reminders", headers=_auth_header())
    assert reminders.status_code == 200
    reminder_body = reminders.json()
    assert [item["tenant_id"] for item in reminder_body["past_due"]] == [acme]
    assert reminder_body["config"]["days_before_due"] == [7, 3, 1]
    assert reminder_body["config"]["grace_period_days"] == 14

    past_due = subscription_client.get(
        "/api/billing/subscriptions",
        params={"past_due_only": True},
        headers=_auth_header(),
    )
    assert [item["tenant_id"] for item in past_due.json()["items"]] == [acme]

    stats = subscription_client.get("/api/billing/subscriptions/stats", headers=_auth_header())
    assert stats.json()["past_due_count"] == 1


def test_failed_renewal_is_collected_without_aborting_batch(
    subscription_client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    plans = _seed_plans(subscription_client)
    acme = _create_tenant(subscription_client, "Acme Farms", "acme")
    blue = _create_tenant(subscription_client, "Bluewater", "bluewater")
    for tenant_id in (acme, blue):
        _subscribe(
            subscription_client,
            {
                "tenant_id": tenant_id,
                "plan_tier": "STARTER",
                "plan_id": plans["starter_2024"],
                "monthly_total_cents": 9900,
            },
        )
    with Session(db.engine) as session:
        blue_period_end = session.exec(
            select(Subscription.current_period_end).where(Subscription.tenant_id == blue)
        ).one()

    def failing_stage_invoice(session: Session, **kwargs: object) -> Invoice:
        if kwargs["tenant_id"] == blue:
            raise ServiceError("card declined")
        return stage_invoice(session, **kwargs)  # type: ignore[arg-type]

    monkeypatch.setattr(renewal_service, "stage_invoice", failing_stage_invoice)

    summary = RenewalService().process_renewals(now=datetime.now(UTC) + timedelta(days=32))
    assert summary.processed == 1
    assert summary.failed == 1
    assert summary.errors == [f"Failed to process renewal for {blue}: card declined"]

    with Session(db.engine) as session:
        invoices = session.exec(select(Invoice.tenant_id)).all()
        blue_after = session.exec(
            select(Subscription.current_period_end).where(Subscription.tenant_id == blue)
        ).one()
    assert invoices == [acme]
    assert blue_after == blue_period_end
