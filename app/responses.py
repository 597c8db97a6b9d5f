from __future__ import annotations

from typing import Any

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse


def success_response(data: Any = None, message: str | None = None, status_code: int = 200) -> JSONResponse:
    body: dict[str, Any] = {'success': True}
    if data is not None:
        body['data'] = data
    if message:
        body['message'] = message
    return JSONResponse(jsonable_encoder(body), status_code=status_code)


def error_response(error: str, status_code: int = 400, code: str | None = None, **extra: Any) -> JSONResponse:
    body: dict[str, Any] = {'success': False, 'error': error}
    if code:
        body['code'] = code
    body.update(extra)
    return JSONResponse(jsonable_encoder(body), status_code=status_code)
