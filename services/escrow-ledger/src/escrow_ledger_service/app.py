"""Application factory: ``uvicorn escrow_ledger_service.app:create_app --factory``."""

from __future__ import annotations

from fastapi import APIRouter, FastAPI

from escrow_ledger_service.config import get_settings
from escrow_ledger_service.core.exceptions import register_exception_handlers
from escrow_ledger_service.core.lifespan import lifespan
from escrow_ledger_service.core.middleware import RequestValidationMiddleware
from escrow_ledger_service.routers import admin, health, internal, payments, tasks, wallet

ROUTERS: tuple[tuple[APIRouter, str], ...] = (
    (health.router, "Operations"),
    (internal.router, "Task mirror"),
    (payments.router, "Payments"),
    (tasks.router, "Escrow"),
    (wallet.router, "Wallet"),
    (admin.router, "Admin"),
)


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(
        title=settings.service.name,
        version=settings.service.version,
        lifespan=lifespan,
    )
    register_exception_handlers(app)
    for router, tag in ROUTERS:
        app.include_router(router, tags=[tag])
    app.add_middleware(RequestValidationMiddleware, max_body_size=settings.request.max_body_size)
    return app
