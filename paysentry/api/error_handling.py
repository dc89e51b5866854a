from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from paysentry.api.schemas import Envelope, ErrorBody
from paysentry.logging import get_logger
from paysentry.service.errors import ServiceError
from paysentry.storage.errors import ConstraintViolation, StoreUnavailable

logger = get_logger(__name__)

_CODE_BY_STATUS = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    422: "validation_error",
    429: "rate_limited",
    503: "service_unavailable",
}


def _where(request: Request) -> dict:
    return {"path": request.url.path, "method": request.method}


def envelope_response(
    status_code: int,
    message: str,
    *,
    code: Optional[str] = None,
    details: Any = None,
    headers: Optional[dict] = None,
) -> JSONResponse:
    """Render an error in the shared ``{"status": "error", "error": {...}}`` envelope."""
    body = ErrorBody(
        code=code or _CODE_BY_STATUS.get(status_code, "server_error"),
        message=message,
        details=details,
    )
    return JSONResponse(
        status_code=status_code,
        content=Envelope(status="error", error=body).model_dump(mode="json"),
        headers=headers,
    )


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ConstraintViolation)
    async def on_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning("constraint_violation", message=exc.message, **_where(request))
        return envelope_response(409, exc.message, code="conflict", details=exc.detail)

    @app.exception_handler(StoreUnavailable)
    async def on_store_unavailable(request: Request, exc: StoreUnavailable):
        # Message is fixed; driver text may name hosts or tables
        logger.error("store_unavailable", message=exc.message, **_where(request))
        return envelope_response(503, "storage unavailable")

    @app.exception_handler(ServiceError)
    async def on_service_error(request: Request, exc: ServiceError):
        log = logger.error if exc.status_code >= 500 else logger.warning
        log(
            "service_error",
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            **_where(request),
        )
        headers = None
        if exc.status_code == 429 and exc.detail.get("retry_after"):
            headers = {"Retry-After": str(exc.detail["retry_after"])}
        return envelope_response(
            exc.status_code, exc.message, code=exc.error_code, details=exc.detail, headers=headers
        )

    @app.exception_handler(RequestValidationError)
    async def on_request_validation(request: Request, exc: RequestValidationError):
        problems = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
            for err in exc.errors()
        ]
        logger.warning("request_rejected", problems=len(problems), **_where(request))
        return envelope_response(400, "invalid request", details=problems)

    @app.exception_handler(HTTPException)
    async def on_http_exception(request: Request, exc: HTTPException):
        error = exc.detail.get("error") if isinstance(exc.detail, dict) else None
        if not isinstance(error, dict):
            message = exc.detail if isinstance(exc.detail, str) else "http error"
            return envelope_response(exc.status_code, message, headers=exc.headers)
        log = logger.error if exc.status_code >= 500 else logger.warning
        log(
            "http_error",
            status_code=exc.status_code,
            error_code=error.get("code"),
            **_where(request),
        )
        return envelope_response(
            exc.status_code,
            error.get("message", "http error"),
            code=error.get("code"),
            details=error.get("details"),
            headers=exc.headers,
        )

    @app.exception_handler(Exception)
    async def on_unhandled(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception", exc_info=exc, error_type=type(exc).__name__, **_where(request)
        )
        return envelope_response(500, "internal server error", code="server_error")
