from __future__ import annotations

from typing import Any

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from app.domain.models import AuditLog, now_utc
from app.infra.db import engine
from app.infra.tenant import get_actor_id

WRITE_METHODS = {"POST", "PUT", "PATCH", "DELETE"}
AUDIT_CONTEXT_STATE_KEY = "_audit_context"
SKIPPED_PATHS = {"/healthz", "/readyz"}

logger = structlog.get_logger(__name__)


def _split_resource(resource: str) -> tuple[str | None, str | None]:
    entity_type, _, entity_id = resource.partition("/")
    if not entity_id or "/" in entity_id:
        return None, None
    return entity_type, entity_id


def write_audit_log(
    *,
    tenant_id: str,
    actor_id: str | None,
    action: str,
    resource: str,
    method: str,
    status_code: int,
    detail: dict[str, Any] | None = None,
) -> None:
    entity_type, entity_id = _split_resource(resource)
    log = AuditLog(
        tenant_id=tenant_id,
        actor_id=actor_id,
        action=action,
        resource=resource,
        entity_type=entity_type,
        entity_id=entity_id,
        method=method,
        status_code=status_code,
        detail=detail or {},
    )
    with Session(engine) as session:
        session.add(log)
        session.commit()


def record_audit(
    session: Session,
    *,
    tenant_id: str,
    action: str,
    entity_type: str,
    entity_id: str,
    actor_id: str | None = None,
    changes: dict[str, Any] | None = None,
) -> AuditLog:
    """Stage an audit row inside the caller's transaction.

    Domain commands use this so the audit row commits or rolls back together
    with the change it describes.
    """
    log = AuditLog(
        tenant_id=tenant_id,
        actor_id=actor_id or get_actor_id(),
        action=action,
        resource=f"{entity_type}/{entity_id}",
        entity_type=entity_type,
        entity_id=entity_id,
        detail={"changes": changes or {}},
    )
    session.add(log)
    return log


def _deep_merge(base: dict[str, Any], extra: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in extra.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
            continue
        merged[key] = value
    return merged


def _status_outcome(status_code: int) -> str:
    if status_code >= 500:
        return "error"
    if status_code in {401, 403, 404}:
        return "denied"
    if status_code >= 400:
        return "rejected"
    return "success"


def set_audit_context(
    request: Request,
    *,
    action: str | None = None,
    resource: str | None = None,
    detail: dict[str, Any] | None = None,
) -> None:
    context_raw = getattr(request.state, AUDIT_CONTEXT_STATE_KEY, {})
    context = dict(context_raw) if isinstance(context_raw, dict) else {}

    if action is not None:
        context["action"] = action
    if resource is not None:
        context["resource"] = resource

    if detail:
        previous_detail = context.get("detail")
        if isinstance(previous_detail, dict):
            context["detail"] = _deep_merge(previous_detail, detail)
        else:
            context["detail"] = detail

    setattr(request.state, AUDIT_CONTEXT_STATE_KEY, context)


def _target_tenant_id(request: Request, claims: dict[str, Any]) -> str:
    # Rows land on the tenant named in the path, not the caller's own tenant.
    target = request.path_params.get("tenant_id")
    if isinstance(target, str) and target:
        return target
    return claims.get("tenant_id", "system")


def _request_detail(
    request: Request,
    response: Response,
    *,
    tenant_id: str,
    actor_id: str | None,
    action: str,
    resource: str,
) -> dict[str, Any]:
    route = request.scope.get("route")
    return {
        "who": {"tenant_id": tenant_id, "actor_id": actor_id},
        "when": {"request_ts": now_utc().isoformat()},
        "where": {
            "path": request.url.path,
            "route": getattr(route, "path", request.url.path),
            "query": request.url.query,
            "client_ip": request.client.host if request.client is not None else None,
        },
        "what": {"action": action, "resource": resource, "method": request.method},
        "result": {
            "status_code": response.status_code,
            "outcome": _status_outcome(response.status_code),
        },
    }


class AuditMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)
        path = request.url.path
        method = request.method
        if path in SKIPPED_PATHS:
            return response
        context_raw = getattr(request.state, AUDIT_CONTEXT_STATE_KEY, {})
        context = context_raw if isinstance(context_raw, dict) else {}
        if method not in WRITE_METHODS and not context:
            return response

        claims = getattr(request.state, "claims", {})
        tenant_id = _target_tenant_id(request, claims)
        actor_id = claims.get("sub")
        raw_action = context.get("action")
        raw_resource = context.get("resource")
        action: str = raw_action if isinstance(raw_action, str) else f"{method}:{path}"
        resource: str = raw_resource if isinstance(raw_resource, str) else path

        detail = _request_detail(
            request,
            response,
            tenant_id=tenant_id,
            actor_id=actor_id,
            action=action,
            resource=resource,
        )
        context_detail = context.get("detail")
        if isinstance(context_detail, dict):
            detail = _deep_merge(detail, context_detail)

        try:
            write_audit_log(
                tenant_id=tenant_id,
                actor_id=actor_id,
                action=action,
                resource=resource,
                method=method,
                status_code=response.status_code,
                detail=detail,
            )
        except SQLAlchemyError:
            logger.exception("audit.write_failed", action=action, resource=resource)
        return response
