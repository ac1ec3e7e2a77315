from __future__ import annotations

import uvicorn
from fastapi import FastAPI, HTTPException

from app.api.routers import (
    billing_custom_plans,
    billing_discounts,
    billing_invoices,
    billing_module_pricing,
    billing_plans,
    billing_subscriptions,
    tenant_provisioning,
    tenants,
)
from app.infra.audit import AuditMiddleware
from app.infra.config import get_settings
from app.infra.db import check_db_ready
from app.infra.errors import register_exception_handlers
from app.infra.logging import configure_logging

configure_logging()

app = FastAPI(
    title="tenant-billing-admin",
    description="Multi-tenant subscription billing and tenant administration.",
    version="0.1.0",
)

app.add_middleware(AuditMiddleware)
register_exception_handlers(app)

app.include_router(billing_plans.router, prefix="/api/billing/plans", tags=["billing-plans"])
app.include_router(billing_discounts.router, prefix="/api/billing/discounts", tags=["billing-discounts"])
app.include_router(
    billing_subscriptions.router,
    prefix="/api/billing/subscriptions",
    tags=["billing-subscriptions"],
)
app.include_router(
    billing_module_pricing.router,
    prefix="/api/billing/module-pricing",
    tags=["billing-module-pricing"],
)
app.include_router(billing_module_pricing.pricing_router, prefix="/api/billing/pricing", tags=["billing-pricing"])
app.include_router(
    billing_custom_plans.router,
    prefix="/api/billing/custom-plans",
    tags=["billing-custom-plans"],
)
app.include_router(billing_invoices.router, prefix="/api/billing/invoices", tags=["billing-invoices"])
app.include_router(tenants.router, prefix="/api/tenants", tags=["tenants"])
app.include_router(tenant_provisioning.router, prefix="/api/tenants", tags=["tenant-provisioning"])


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/readyz")
def readyz() -> dict[str, object]:
    db_ok = check_db_ready()
    checks = {"db": "ok" if db_ok else "fail"}
    if not db_ok:
        raise HTTPException(
            status_code=503,
            detail={"status": "not_ready", "checks": checks},
        )
    return {"status": "ready", "checks": checks}


def run() -> None:
    settings = get_settings()
    uvicorn.run("app.main:app", host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    run()
