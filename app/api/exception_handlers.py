# FILE: app/api/exception_handlers.py
from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.api.response import err
from app.core.errors import BillingError
from app.db.session import SessionLocal
from app.services.error_logger import format_exception, log_error

logger = logging.getLogger(__name__)


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(BillingError)
    async def billing_exception_handler(request: Request,
                                        exc: BillingError) -> JSONResponse:
        logger.info("%s %s -> %s: %s", request.method, request.url.path,
                    exc.code, exc.msg)
        return err(msg=exc.msg,
                   status_code=exc.status_code,
                   code=exc.code,
                   details=exc.details)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
            request: Request, exc: StarletteHTTPException) -> JSONResponse:
        # exc.detail can be str/dict/list
        msg = exc.detail if isinstance(exc.detail, str) else "Request failed"
        return err(msg=msg, status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
            request: Request, exc: RequestValidationError) -> JSONResponse:
        return err(msg="Validation error",
                   status_code=422,
                   code="REQUEST_INVALID",
                   details=[{
                       "loc": list(e.get("loc") or []),
                       "msg": e.get("msg"),
                       "type": e.get("type"),
                   } for e in exc.errors()])

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request,
                                          exc: Exception) -> JSONResponse:
        endpoint = f"{request.method} {request.url.path}"
        logger.exception("Unhandled error in %s", endpoint)
        log_error(
            getattr(request.app.state, "session_factory", SessionLocal),
            description=str(exc),
            endpoint=endpoint,
            module=type(exc).__module__,
            function=type(exc).__name__,
            http_status=500,
            stack_trace=format_exception(exc),
        )
        return err(msg="Internal server error", status_code=500)
