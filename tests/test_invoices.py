from __future__ import annotations

from collections.abc import Generator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import event
from sqlmodel import Session, SQLModel, create_engine

from app import main as app_main
from app.infra import audit, db, events
from app.infra.auth import create_access_token
from app.services.invoice_service import InvoiceLineDraft, stage_invoice


@pytest.fixture()
def invoice_client(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[TestClient, None, None]:
    db_path = tmp_path / "invoice_test.db"
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


def _create_tenant(client: TestClient, slug: str) -> str:
    response = client.post("/api/tenants", json={"name": slug.title(), "slug": slug}, headers=_auth_header())
    assert response.status_code == 201
    return response.json()["tenant"]["id"]


def _stage(tenant_id: str, lines: list[InvoiceLineDraft], now: datetime | None = None) -> str:
    with Session(db.engine, expire_on_commit=False) as session:
        invoice = stage_invoice(session, tenant_id=tenant_id, lines=lines, now=now)
        session.commit()
        return invoice.id


def test_invoice_detail_and_listing(invoice_client: TestClient) -> None:
    acme = _create_tenant(invoice_client, "acme")
    coral = _create_tenant(invoice_client, "coral")
    invoice_id = _stage(
        acme,
        [
            InvoiceLineDraft(description="Farm module", unit_price_cents=2900),
            InvoiceLineDraft(description="Extra farms", unit_price_cents=1500, quantity=2),
        ],
    )
    _stage(coral, [InvoiceLineDraft(description="Sensor module", unit_price_cents=1900)])

    detail = invoice_client.get(f"/api/billing/invoices/{invoice_id}", headers=_auth_header())
    assert detail.status_code == 200
    body = detail.json()
    assert body["invoice_number"].startswith("INV-")
    assert body["status"] == "PENDING"
    assert body["subtotal_cents"] == 5900
    assert body["total_cents"] == 5900
    assert body["amount_due_cents"] == 5900
    assert sorted(line["amount_cents"] for line in body["lines"]) == [2900, 3000]

    everything = invoice_client.get("/api/billing/invoices", headers=_auth_header())
    assert everything.json()["total"] == 2

    by_tenant = invoice_client.get("/api/billing/invoices", params={"tenant_id": coral}, headers=_auth_header())
    assert by_tenant.json()["total"] == 1
    assert by_tenant.json()["items"][0]["subtotal_cents"] == 1900

    tenant_invoices = invoice_client.get(f"/api/billing/invoices/tenant/{acme}", headers=_auth_header())
    assert [item["id"] for item in tenant_invoices.json()] == [invoice_id]

    missing = invoice_client.get("/api/billing/invoices/missing", headers=_auth_header())
    assert missing.status_code == 404


def test_partial_then_full_payment(invoice_client: TestClient) -> None:
    acme = _create_tenant(invoice_client, "acme")
    invoice_id = _stage(acme, [InvoiceLineDraft(description="Starter", unit_price_cents=10000)])

    partial = invoice_client.post(
        f"/api/billing/invoices/{invoice_id}/mark-paid",
        json={"amount_cents": 4000, "payment_method": "card"},
        headers=_auth_header(),
    )
    assert partial.status_code == 200
    assert partial.json()["status"] == "PARTIALLY_PAID"
    assert partial.json()["amount_due_cents"] == 6000
    assert partial.json()["paid_at"] is None

    full = invoice_client.post(
        f"/api/billing/invoices/{invoice_id}/mark-paid",
        json={"amount_cents": 6000, "payment_reference": "txn-42"},
        headers=_auth_header(),
    )
    assert full.status_code == 200
    full_body = full.json()
    assert full_body["status"] == "PAID"
    assert full_body["amount_paid_cents"] == 10000
    assert full_body["amount_due_cents"] == 0
    assert full_body["paid_at"] is not None
    assert full_body["payment_method"] == "card"
    assert full_body["payment_reference"] == "txn-42"

    again = invoice_client.post(
        f"/api/billing/invoices/{invoice_id}/mark-paid",
        json={"amount_cents": 100},
        headers=_auth_header(),
    )
    assert again.status_code == 400

    cannot_void = invoice_client.post(
        f"/api/billing/invoices/{invoice_id}/void",
        json={"reason": "mistake"},
        headers=_auth_header(),
    )
    assert cannot_void.status_code == 400


def test_void_overdue_and_stats(invoice_client: TestClient) -> None:
    acme = _create_tenant(invoice_client, "acme")
    voided_id = _stage(acme, [InvoiceLineDraft(description="Duplicate", unit_price_cents=5000)])
    late_id = _stage(
        acme,
        [InvoiceLineDraft(description="Starter", unit_price_cents=9900)],
        now=datetime.now(UTC) - timedelta(days=10),
    )
    paid_id = _stage(acme, [InvoiceLineDraft(description="Reports", unit_price_cents=1500)])

    voided = invoice_client.post(
        f"/api/billing/invoices/{voided_id}/void",
        json={"reason": "duplicate charge"},
        headers=_auth_header(),
    )
    assert voided.status_code == 200
    assert voided.json()["status"] == "VOID"
    assert voided.json()["void_reason"] == "duplicate charge"
    assert voided.json()["voided_at"] is not None

    twice = invoice_client.post(f"/api/billing/invoices/{voided_id}/void", json={}, headers=_auth_header())
    assert twice.status_code == 409

    swept = invoice_client.post("/api/billing/invoices/update-overdue", headers=_auth_header())
    assert swept.json() == {"updated": 1}

    overdue = invoice_client.get("/api/billing/invoices/overdue", headers=_auth_header())
    assert [item["id"] for item in overdue.json()] == [late_id]

    by_status = invoice_client.get(
        "/api/billing/invoices",
        params={"status": "OVERDUE"},
        headers=_auth_header(),
    )
    assert by_status.json()["total"] == 1

    paid = invoice_client.post(
        f"/api/billing/invoices/{paid_id}/mark-paid",
        json={"amount_cents": 1500},
        headers=_auth_header(),
    )
    assert paid.json()["status"] == "PAID"

    stats = invoice_client.get("/api/billing/invoices/stats", headers=_auth_header())
    assert stats.status_code == 200
    body = stats.json()
    assert body["total_invoices"] == 3
    assert body["by_status"]["VOID"] == 1
    assert body["by_status"]["OVERDUE"] == 1
    assert body["by_status"]["PAID"] == 1
    assert body["total_invoiced_cents"] == 9900 + 1500
    assert body["total_paid_cents"] == 1500
    assert body["total_outstanding_cents"] == 9900
    assert body["overdue_amount_cents"] == 9900

    settle_overdue = invoice_client.post(
        f"/api/billing/invoices/{late_id}/mark-paid",
        json={"amount_cents": 9900},
        headers=_auth_header(),
    )
    assert settle_overdue.json()["status"] == "PAID"
