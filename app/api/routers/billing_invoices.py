from __future__ import annotations

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from app.api.deps import require_perm
from app.domain.models import (
    InvoiceDetailRead,
    InvoiceLineRead,
    InvoiceListRead,
    InvoicePaymentRequest,
    InvoiceRead,
    InvoiceStatsRead,
    InvoiceStatus,
    InvoiceVoidRequest,
    SweepResultRead,
)
from app.domain.permissions import PERM_BILLING_READ, PERM_BILLING_WRITE
from app.infra.audit import set_audit_context
from app.services.errors import ConflictError, NotFoundError, ValidationError
from app.services.invoice_service import InvoiceService

router = APIRouter()


def get_invoice_service() -> InvoiceService:
    return InvoiceService()


Service = Annotated[InvoiceService, Depends(get_invoice_service)]


def _handle_invoice_error(exc: Exception) -> None:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, ValidationError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    raise exc


@router.get(
    "",
    response_model=InvoiceListRead,
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def list_invoices(
    service: Service,
    tenant_id: str | None = None,
    status_filter: Annotated[InvoiceStatus | None, Query(alias="status")] = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> InvoiceListRead:
    rows, total = service.list_invoices(
        tenant_id=tenant_id,
        status=status_filter,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
        offset=offset,
    )
    return InvoiceListRead(items=[InvoiceRead.model_validate(item) for item in rows], total=total)


@router.get(
    "/stats",
    response_model=InvoiceStatsRead,
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def get_stats(service: Service) -> InvoiceStatsRead:
    return service.get_stats()


@router.get(
    "/overdue",
    response_model=list[InvoiceRead],
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def list_overdue(service: Service) -> list[InvoiceRead]:
    return [InvoiceRead.model_validate(item) for item in service.list_overdue()]


@router.post(
    "/update-overdue",
    response_model=SweepResultRead,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def update_overdue(request: Request, service: Service) -> SweepResultRead:
    updated = service.update_overdue()
    set_audit_context(
        request,
        action="billing.invoice.update_overdue",
        resource="/api/billing/invoices/update-overdue",
        detail={"what": {"updated": updated}},
    )
    return SweepResultRead(updated=updated)


@router.get(
    "/tenant/{tenant_id}",
    response_model=list[InvoiceRead],
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def list_tenant_invoices(tenant_id: str, service: Service) -> list[InvoiceRead]:
    return [InvoiceRead.model_validate(item) for item in service.list_tenant_invoices(tenant_id)]


@router.get(
    "/{invoice_id}",
    response_model=InvoiceDetailRead,
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def get_invoice(invoice_id: str, service: Service) -> InvoiceDetailRead:
    try:
        invoice, lines = service.get_invoice(invoice_id)
        return InvoiceDetailRead(
            **InvoiceRead.model_validate(invoice).model_dump(),
            lines=[InvoiceLineRead.model_validate(item) for item in lines],
        )
    except NotFoundError as exc:
        _handle_invoice_error(exc)
        raise


@router.post(
    "/{invoice_id}/mark-paid",
    response_model=InvoiceRead,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def mark_paid(
    invoice_id: str,
    payload: InvoicePaymentRequest,
    request: Request,
    service: Service,
) -> InvoiceRead:
    try:
        row = service.mark_paid(
            invoice_id,
            payload.amount_cents,
            payment_method=payload.payment_method,
            payment_reference=payload.payment_reference,
        )
        set_audit_context(
            request,
            action="billing.invoice.mark_paid",
            resource=f"/api/billing/invoices/{invoice_id}/mark-paid",
            detail={
                "what": {
                    "invoice_number": row.invoice_number,
                    "amount_cents": payload.amount_cents,
                    "status": row.status.value,
                }
            },
        )
        return InvoiceRead.model_validate(row)
    except (NotFoundError, ValidationError) as exc:
        _handle_invoice_error(exc)
        raise


@router.post(
    "/{invoice_id}/void",
    response_model=InvoiceRead,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def void_invoice(
    invoice_id: str,
    payload: InvoiceVoidRequest,
    request: Request,
    service: Service,
) -> InvoiceRead:
    try:
        row = service.void_invoice(invoice_id, payload.reason)
        set_audit_context(
            request,
            action="billing.invoice.void",
            resource=f"/api/billing/invoices/{invoice_id}/void",
            detail={"what": {"invoice_number": row.invoice_number, "reason": payload.reason}},
        )
        return InvoiceRead.model_validate(row)
    except (NotFoundError, ConflictError, ValidationError) as exc:
        _handle_invoice_error(exc)
        raise
