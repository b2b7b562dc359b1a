# FILE: app/api/response.py
"""
Response envelope used by every billing/IPD route and exception handler.

  success: {"ok": true,  "data": ..., "meta": {...}}
  failure: {"ok": false, "error": {"msg", "code", "details"}}
"""
from __future__ import annotations

from http import HTTPStatus
from typing import Any, Dict, Optional

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse


def _envelope(body: Dict[str, Any], status_code: int) -> JSONResponse:
    # Decimal money fields leave as strings via the serializers; the rest
    # (datetime, enums, pydantic models) is handled by jsonable_encoder
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


def _status_code_name(status_code: int) -> Optional[str]:
    try:
        return HTTPStatus(status_code).name
    except ValueError:
        return None


def ok(data: Any = None,
       *,
       meta: Optional[Dict[str, Any]] = None,
       status_code: int = 200) -> JSONResponse:
    body: Dict[str, Any] = {"ok": True, "data": data}
    if meta:
        body["meta"] = meta
    return _envelope(body, status_code)


def err(msg: str = "Something went wrong",
        *,
        status_code: int = 400,
        code: Optional[str] = None,
        details: Any = None) -> JSONResponse:
    """Failure envelope; `code` falls back to the HTTP status name (NOT_FOUND ...)."""
    error = {
        "msg": msg,
        "code": code or _status_code_name(status_code),
        "details": details,
    }
    return _envelope({"ok": False, "error": error}, status_code)
