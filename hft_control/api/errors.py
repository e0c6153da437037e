#hft_control\api\errors.py
"""Translate control errors into {success: false, reason} bodies."""

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from hft_control.core.errors import ControlError

logger = logging.getLogger(__name__)

STATUS_BY_KIND = {
    "auth": 502,
    "transient_network": 502,
    "capacity": 502,
    "protocol": 502,
    "integrity": 502,
    "state": 400,
    "store": 500,
}


def install_error_handlers(app: FastAPI) -> None:

    @app.exception_handler(ControlError)
    async def control_error_handler(request: Request, exc: ControlError):
        status_code = STATUS_BY_KIND.get(exc.kind, 500)
        if status_code >= 500:
            logger.error(f"[api] {request.url.path} failed: {exc.kind}: {exc.message}", exc_info=exc)
        else:
            logger.warning(f"[api] {request.url.path} refused: {exc.message}")
        return JSONResponse(status_code=status_code, content=exc.to_response())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={
            "success": False,
            "reason": "validation",
            "details": [{"loc": list(e.get("loc", [])), "msg": e.get("msg")} for e in exc.errors()],
        })

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(status_code=400, content={
            "success": False,
            "reason": "validation",
            "message": str(exc),
        })
