from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import func
from sqlmodel import Session, col, select

from app.domain.billing_cycles import as_utc
from app.domain.models import (
    Invoice,
    InvoiceLine,
    InvoiceStatsRead,
    InvoiceStatus,
    now_utc,
)
from app.infra.config import get_settings
from app.infra.db import get_engine
from app.services.errors import ConflictError, NotFoundError, ValidationError

logger = structlog.get_logger(__name__)

PAYABLE_STATUSES = {InvoiceStatus.PENDING, InvoiceStatus.PARTIALLY_PAID, InvoiceStatus.OVERDUE}
OPEN_STATUSES = {InvoiceStatus.PENDING, InvoiceStatus.PARTIALLY_PAID}


@dataclass
class InvoiceLineDraft:
    description: str
    unit_price_cents: int
    quantity: int = 1

    @property
    def amount_cents(self) -> int:
        return self.unit_price_cents * self.quantity


def generate_invoice_number(now: datetime | None = None) -> str:
    moment = as_utc(now or now_utc())
    return f"INV-{moment:%Y%m%d}-{secrets.token_hex(4).upper()}"


def stage_invoice(
    session: Session,
    *,
    tenant_id: str,
    lines: list[InvoiceLineDraft],
    subscription_id: str | None = None,
    currency: str = "USD",
    discount_cents: int = 0,
    discount_code: str | None = None,
    tax_cents: int = 0,
    period_start: datetime | None = None,
    period_end: datetime | None = None,
    created_by: str | None = None,
    notes: str | None = None,
    now: datetime | None = None,
) -> Invoice:
    """Add a PENDING invoice and its lines to the caller's transaction."""
    moment = as_utc(now or now_utc())
    subtotal = sum(line.amount_cents for line in lines)
    total = max(0, subtotal - discount_cents) + tax_cents
    invoice = Invoice(
        invoice_number=generate_invoice_number(moment),
        tenant_id=tenant_id,
        subscription_id=subscription_id,
        status=InvoiceStatus.PENDING,
        currency=currency,
        subtotal_cents=subtotal,
        discount_cents=discount_cents,
        discount_code=discount_code,
        tax_cents=tax_cents,
        total_cents=total,
        amount_paid_cents=0,
        amount_due_cents=total,
        period_start=period_start,
        period_end=period_end,
        due_date=moment + timedelta(days=get_settings().invoice_due_days),
        notes=notes,
        created_by=created_by,
        created_at=moment,
        updated_at=moment,
    )
    session.add(invoice)
    session.flush()
    for line in lines:
        session.add(
            InvoiceLine(
                invoice_id=invoice.id,
                description=line.description,
                quantity=line.quantity,
                unit_price_cents=line.unit_price_cents,
                amount_cents=line.amount_cents,
            )
        )
    return invoice


class InvoiceService:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _get_invoice(self, session: Session, invoice_id: str) -> Invoice:
        row = session.get(Invoice, invoice_id)
        if row is None:
            raise NotFoundError("invoice not found")
        return row

    def list_invoices(
        self,
        *,
        tenant_id: str | None = None,
        status: InvoiceStatus | None = None,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Invoice], int]:
        conditions: list[Any] = []
        if tenant_id is not None:
            conditions.append(Invoice.tenant_id == tenant_id)
        if status is not None:
            conditions.append(Invoice.status == status)
        if date_from is not None:
            conditions.append(col(Invoice.created_at) >= as_utc(date_from))
        if date_to is not None:
            conditions.append(col(Invoice.created_at) <= as_utc(date_to))

        with self._session() as session:
            statement = select(Invoice)
            count_statement = select(func.count()).select_from(Invoice)
            for condition in conditions:
                statement = statement.where(condition)
                count_statement = count_statement.where(condition)
            total = int(session.exec(count_statement).one())
            rows = session.exec(statement.order_by(col(Invoice.created_at).desc()).offset(offset).limit(limit)).all()
            return list(rows), total

    def get_invoice(self, invoice_id: str) -> tuple[Invoice, list[InvoiceLine]]:
        with self._session() as session:
            invoice = self._get_invoice(session, invoice_id)
            lines = session.exec(
                select(InvoiceLine).where(InvoiceLine.invoice_id == invoice_id).order_by(col(InvoiceLine.created_at))
            ).all()
            return invoice, list(lines)

    def list_tenant_invoices(self, tenant_id: str) -> list[Invoice]:
        with self._session() as session:
            rows = session.exec(
                select(Invoice).where(Invoice.tenant_id == tenant_id).order_by(col(Invoice.created_at).desc())
            ).all()
            return list(rows)

    def list_overdue(self) -> list[Invoice]:
        with self._session() as session:
            rows = session.exec(
                select(Invoice).where(Invoice.status == InvoiceStatus.OVERDUE).order_by(col(Invoice.due_date))
            ).all()
            return list(rows)

    def mark_paid(
        self,
        invoice_id: str,
        amount_cents: int,
        *,
        payment_method: str | None = None,
        payment_reference: str | None = None,
    ) -> Invoice:
        if amount_cents <= 0:
            raise ValidationError("payment amount must be greater than zero")
        now = now_utc()
        with self._session() as session:
            row = self._get_invoice(session, invoice_id)
            if row.status not in PAYABLE_STATUSES:
                raise ValidationError(f"cannot record payment on a {row.status.value} invoice")
            row.amount_paid_cents = min(row.total_cents, row.amount_paid_cents + amount_cents)
            row.amount_due_cents = row.total_cents - row.amount_paid_cents
            if row.amount_due_cents == 0:
                row.status = InvoiceStatus.PAID
                row.paid_at = now
            else:
                row.status = InvoiceStatus.PARTIALLY_PAID
            row.payment_method = payment_method or row.payment_method
            row.payment_reference = payment_reference or row.payment_reference
            row.updated_at = now
            session.add(row)
            session.commit()
            session.refresh(row)
            logger.info(
                "invoice.payment_recorded",
                invoice_id=row.id,
                amount_cents=amount_cents,
                status=row.status.value,
            )
            return row

    def void_invoice(self, invoice_id: str, reason: str | None = None) -> Invoice:
        now = now_utc()
        with self._session() as session:
            row = self._get_invoice(session, invoice_id)
            if row.status == InvoiceStatus.VOID:
                raise ConflictError("invoice is already void")
            if row.status == InvoiceStatus.PAID:
                raise ValidationError("paid invoices cannot be voided")
            row.status = InvoiceStatus.VOID
            row.voided_at = now
            row.void_reason = reason
            row.updated_at = now
            session.add(row)
            session.commit()
            session.refresh(row)
            return row

    def update_overdue(self, now: datetime | None = None) -> int:
        moment = as_utc(now or now_utc())
        with self._session() as session:
            rows = session.exec(
                select(Invoice)
                .where(col(Invoice.status).in_(OPEN_STATUSES))
                .where(col(Invoice.due_date) < moment)
            ).all()
            for row in rows:
                row.status = InvoiceStatus.OVERDUE
                row.updated_at = moment
                session.add(row)
            session.commit()
            if rows:
                logger.info("invoice.marked_overdue", count=len(rows))
            return len(rows)

    def get_stats(self) -> InvoiceStatsRead:
        with self._session() as session:
            rows = session.exec(
                select(
                    Invoice.status,
                    func.count(),
                    func.coalesce(func.sum(Invoice.total_cents), 0),
                    func.coalesce(func.sum(Invoice.amount_paid_cents), 0),
                    func.coalesce(func.sum(Invoice.amount_due_cents), 0),
                ).group_by(Invoice.status)
            ).all()

        by_status = {item.value: 0 for item in InvoiceStatus}
        invoiced = paid = outstanding = overdue = 0
        for status, count, total, amount_paid, amount_due in rows:
            status = InvoiceStatus(status)
            by_status[status.value] = int(count)
            if status == InvoiceStatus.VOID:
                continue
            invoiced += int(total)
            paid += int(amount_paid)
            outstanding += int(amount_due)
            if status == InvoiceStatus.OVERDUE:
                overdue += int(amount_due)
        return InvoiceStatsRead(
            total_invoices=sum(by_status.values()),
            by_status=by_status,
            total_invoiced_cents=invoiced,
            total_paid_cents=paid,
            total_outstanding_cents=outstanding,
            overdue_amount_cents=overdue,
        )
