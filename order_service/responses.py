"""Uniform JSON envelope: ``{success, data | message, error?}``."""
from typing import Any, Optional

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse


def success(data: Any = None, message: Optional[str] = None, status_code: int = 200, **extra) -> JSONResponse:
    body = {"success": True, "data": data}
    if message:
        body["message"] = message
    body.update(extra)
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


def error(message: str, status_code: int = 500, error: Optional[str] = None, **extra) -> JSONResponse:
    body = {"success": False, "message": message}
    if error:
        body["error"] = error
    body.update(extra)
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))
