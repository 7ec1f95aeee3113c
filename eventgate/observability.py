from __future__ import annotations

import logging
import sys
import time
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.types import ASGIApp

from .errors import EventGateError, RateLimitExceeded


LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: str = "INFO") -> None:
    """Configure root logging once; repeated calls only adjust the level."""
    root = logging.getLogger()
    root.setLevel(level.upper())
    if not any(getattr(h, "_eventgate", False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        handler._eventgate = True  # type: ignore[attr-defined]
        root.addHandler(handler)

    # Silence noisy libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy").setLevel(logging.WARNING)


class RequestTimingLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware that measures request processing time and logs concise request/response info.

    Adds an 'X-Process-Time-Ms' header on responses to aid in quick diagnostics.
    """

    def __init__(self, app: ASGIApp) -> None:
        super().__init__(app)
        self.logger = logging.getLogger("request")

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint):
        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = int((time.perf_counter() - start) * 1000)
        response.headers["X-Process-Time-Ms"] = str(duration_ms)

        client_ip = request.client.host if request.client else "?"
        self.logger.info(
            "method=%s path=%s status=%s duration_ms=%s ip=%s",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            client_ip,
        )
        return response


def error_payload(
    request: Request, status: int, message: str, code: str, errors: Optional[List[Dict[str, Any]]] = None
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "success": False,
        "message": message,
        "error": {"status": status, "code": code, "path": request.url.path},
    }
    if errors:
        payload["errors"] = errors
    return payload


def _field_errors(exc: RequestValidationError) -> List[Dict[str, Any]]:
    items = []
    for err in exc.errors():
        # drop the leading "body"/"query" location marker
        loc = [str(part) for part in err.get("loc", ())[1:]]
        items.append({"field": ".".join(loc), "message": err.get("msg", "")})
    return items


def add_exception_handlers(app: FastAPI) -> None:
    """Register consistent error payload shapes for domain, HTTP and generic exceptions."""

    @app.exception_handler(EventGateError)
    async def eventgate_error_handler(request: Request, exc: EventGateError):
        headers: Dict[str, str] = {}
        if isinstance(exc, RateLimitExceeded):
            decision = exc.decision
            headers = {
                "Retry-After": str(decision.retry_after(time.time())),
                "X-RateLimit-Limit": str(decision.limit),
                "X-RateLimit-Remaining": str(decision.remaining),
                "X-RateLimit-Reset": str(int(decision.reset_at)),
            }
        if exc.status_code >= 500:
            logging.getLogger("error").error("%s: %s (%s)", exc.code, exc.message, exc.details)
        errors = exc.details if isinstance(exc.details, list) else None
        payload = error_payload(request, exc.status_code, exc.message, exc.code, errors)
        return JSONResponse(status_code=exc.status_code, content=payload, headers=headers)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        payload = error_payload(request, 400, "Invalid data", "validation_error", _field_errors(exc))
        return JSONResponse(status_code=400, content=payload)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        message = exc.detail if isinstance(exc.detail, str) else ""
        payload = error_payload(request, exc.status_code, message, "http_error")
        return JSONResponse(status_code=exc.status_code, content=payload, headers=getattr(exc, "headers", None))

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        # Do not leak internals; keep it simple.
        logging.getLogger("error").exception("Unhandled exception: %s", exc)
        payload = error_payload(request, 500, "Internal server error", "internal_error")
        return JSONResponse(status_code=500, content=payload)
