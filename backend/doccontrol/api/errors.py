"""Translate core results and exceptions into HTTP responses.

Auth failures map to a fixed status and a fixed message per code; the internal
reason is logged, never returned.
"""

import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from doccontrol.config import settings
from doccontrol.core.results import AuthErrorCode, Rejected

logger = logging.getLogger(__name__)

STATUS_BY_CODE: dict[AuthErrorCode, int] = {
    AuthErrorCode.UNAUTHORIZED: 401,
    AuthErrorCode.INVALID_REFRESH_TOKEN: 401,
    AuthErrorCode.FORBIDDEN: 403,
    AuthErrorCode.RATE_LIMITED: 429,
    AuthErrorCode.CONFIGURATION: 500,
}

MESSAGE_BY_CODE: dict[AuthErrorCode, str] = {
    AuthErrorCode.UNAUTHORIZED: "Not authenticated",
    AuthErrorCode.INVALID_REFRESH_TOKEN: "Invalid or expired refresh token",
    AuthErrorCode.FORBIDDEN: "Insufficient permissions",
    AuthErrorCode.RATE_LIMITED: "Too many requests, please try again later.",
    AuthErrorCode.CONFIGURATION: "Server misconfiguration",
}


def http_exception_for(rejected: Rejected) -> HTTPException:
    headers = dict(rejected.headers)
    if rejected.code in (AuthErrorCode.UNAUTHORIZED, AuthErrorCode.INVALID_REFRESH_TOKEN):
        headers.setdefault("WWW-Authenticate", "Bearer")
    return HTTPException(
        status_code=STATUS_BY_CODE[rejected.code],
        detail=MESSAGE_BY_CODE[rejected.code],
        headers=headers or None,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {
            "field": ".".join(str(part) for part in err.get("loc", ()) if part != "body"),
            "message": err.get("msg", ""),
        }
        for err in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"error": "Validation Error", "details": details})


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s: %s", request.method, request.url.path, exc)
    content = {"error": "Internal server error"}
    if settings.debug:
        content["detail"] = f"{type(exc).__name__}: {exc}"
    return JSONResponse(status_code=500, content=content)


def install_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
