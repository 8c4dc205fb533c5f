from __future__ import annotations
from typing import Optional
from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from ..domain.results import ActionResult, ErrorCode, Ok
from ..observability.logging import request_id_var
from ..services.rate_limit import client_ip

_STATUS_BY_CODE = {
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.EVENT_NOT_FOUND: 404,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.EMAIL_NOT_VERIFIED: 403,
    ErrorCode.RATE_LIMITED: 429,
    ErrorCode.VALIDATION_ERROR: 422,
    ErrorCode.INVALID_HEADERS: 422,
    ErrorCode.NO_ROWS: 422,
    ErrorCode.TOO_MANY_ROWS: 422,
    ErrorCode.INVALID_FILE: 422,
}


def http_status_for(code: ErrorCode) -> int:
    # lifecycle, capacity, schedule and invite conflicts
    return _STATUS_BY_CODE.get(code, 409)


def respond(result: ActionResult, *, success_status: int = 200) -> JSONResponse:
    """`{"ok": true, "data"}` or `{"ok": false, "error", "code"}` with a matching HTTP status."""
    if isinstance(result, Ok):
        return JSONResponse(status_code=success_status, content=jsonable_encoder(result.to_dict()))
    return JSONResponse(status_code=http_status_for(result.code), content=result.to_dict())


def request_context(req: Optional[Request]) -> dict:
    if req is None:
        return {}
    return {
        "ip": client_ip(req),
        "user_agent": req.headers.get("user-agent"),
        "request_id": request_id_var.get() or None,
    }
