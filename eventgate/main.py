from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import get_settings
from .database import init_db
from .observability import RequestTimingLoggingMiddleware, add_exception_handlers, setup_logging
from .routers import audit_logs, checkin, dashboard, exports, health, qr, register, registrations


logger = logging.getLogger(__name__)

PUBLIC_ROUTERS = (health, register, checkin, qr)
ADMIN_ROUTERS = (registrations, dashboard, audit_logs, exports)

# TestClient used without a context manager never runs the lifespan
init_db()


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    settings = get_settings()
    logger.info(
        "eventgate ready env=%s rate_limit=%s backend=%s",
        settings.environment,
        settings.rate_limit_enabled,
        settings.rate_limit_backend,
    )
    yield


def create_app() -> FastAPI:
    settings = get_settings()
    setup_logging(settings.log_level)
    application = FastAPI(title="EventGate", version="0.1.0", lifespan=lifespan)

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.add_middleware(RequestTimingLoggingMiddleware)

    add_exception_handlers(application)

    for module in PUBLIC_ROUTERS + ADMIN_ROUTERS:
        application.include_router(module.router)

    return application


app = create_app()
