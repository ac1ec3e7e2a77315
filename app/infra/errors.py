from __future__ import annotations

import structlog
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError

from app.infra.config import get_settings

PG_UNIQUE_VIOLATION = "23505"
PG_FOREIGN_KEY_VIOLATION = "23503"
PG_NOT_NULL_VIOLATION = "23502"

_SQLSTATE_MAP: dict[str, tuple[int, str]] = {
    PG_UNIQUE_VIOLATION: (status.HTTP_409_CONFLICT, "Resource already exists"),
    PG_FOREIGN_KEY_VIOLATION: (status.HTTP_400_BAD_REQUEST, "Referenced resource does not exist"),
    PG_NOT_NULL_VIOLATION: (status.HTTP_400_BAD_REQUEST, "Required field is missing"),
}

_SQLITE_MESSAGE_MAP: tuple[tuple[str, str], ...] = (
    ("UNIQUE constraint failed", PG_UNIQUE_VIOLATION),
    ("FOREIGN KEY constraint failed", PG_FOREIGN_KEY_VIOLATION),
    ("NOT NULL constraint failed", PG_NOT_NULL_VIOLATION),
)

logger = structlog.get_logger(__name__)


def _sqlstate(exc: DBAPIError) -> str | None:
    original = exc.orig
    code = getattr(original, "sqlstate", None) or getattr(original, "pgcode", None)
    if isinstance(code, str):
        return code
    message = str(original)
    for needle, mapped in _SQLITE_MESSAGE_MAP:
        if needle in message:
            return mapped
    return None


def classify_db_error(exc: SQLAlchemyError) -> tuple[int, str]:
    if isinstance(exc, DBAPIError):
        code = _sqlstate(exc)
        if code is not None and code in _SQLSTATE_MAP:
            return _SQLSTATE_MAP[code]
    return status.HTTP_500_INTERNAL_SERVER_ERROR, "Database error"


def _response(status_code: int, message: str, exc: SQLAlchemyError) -> JSONResponse:
    detail = message
    if status_code >= 500:
        detail = "Internal server error" if get_settings().is_production else f"{message}: {exc}"
    return JSONResponse(status_code=status_code, content={"detail": detail})


async def integrity_error_handler(request: Request, exc: IntegrityError) -> JSONResponse:
    status_code, message = classify_db_error(exc)
    logger.warning("db.integrity_error", path=request.url.path, status_code=status_code)
    return _response(status_code, message, exc)


async def database_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    status_code, message = classify_db_error(exc)
    logger.error("db.error", path=request.url.path, status_code=status_code, error=str(exc))
    return _response(status_code, message, exc)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(IntegrityError, integrity_error_handler)
    app.add_exception_handler(SQLAlchemyError, database_error_handler)
