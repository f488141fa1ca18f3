"""Application lifecycle management."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from escrow_ledger_service.clients.gateway_client import GatewayClient
from escrow_ledger_service.clients.identity_client import IdentityClient
from escrow_ledger_service.config import get_settings
from escrow_ledger_service.core.scheduler import start_scheduler
from escrow_ledger_service.core.state import init_app_state
from escrow_ledger_service.logging import get_logger, setup_logging
from escrow_ledger_service.services.escrow_machine import EscrowStateMachine
from escrow_ledger_service.services.ledger_store import LedgerStore
from escrow_ledger_service.services.milestones import MilestoneManager
from escrow_ledger_service.services.reconciliation import GatewayReconciler
from escrow_ledger_service.services.settlement import SettlementScheduler
from escrow_ledger_service.services.wallet import WalletBalanceEngine
from escrow_ledger_service.services.withdrawals import WithdrawalProcessor

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from fastapi import FastAPI


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifecycle."""
    # === STARTUP ===
    settings = get_settings()

    setup_logging(settings.logging.level, settings.logging.directory)
    logger = get_logger(__name__)

    state = init_app_state()

    identity_client = IdentityClient(
        base_url=settings.identity.base_url,
        verify_path=settings.identity.verify_path,
        timeout_seconds=settings.identity.timeout_seconds,
    )
    state.identity_client = identity_client

    gateway_client = GatewayClient(
        base_url=settings.gateway.base_url,
        secret_key=settings.gateway.secret_key,
        timeout_seconds=settings.gateway.timeout_seconds,
    )
    state.gateway_client = gateway_client

    store = LedgerStore(db_path=settings.database.path)
    state.store = store

    escrow_machine = EscrowStateMachine(
        store=store,
        gateway_client=gateway_client,
        platform_fee_bps=settings.escrow.platform_fee_bps,
        redirect_url=settings.gateway.redirect_url,
    )
    state.escrow_machine = escrow_machine

    milestone_manager = MilestoneManager(
        store=store,
        gateway_client=gateway_client,
        platform_fee_bps=settings.escrow.platform_fee_bps,
        redirect_url=settings.gateway.redirect_url,
    )
    state.milestone_manager = milestone_manager

    wallet_engine = WalletBalanceEngine(
        store=store,
        default_currency=settings.escrow.default_currency,
    )
    state.wallet_engine = wallet_engine

    withdrawal_processor = WithdrawalProcessor(
        store=store,
        gateway_client=gateway_client,
        wallet_engine=wallet_engine,
        minimum_amount=settings.withdrawal.minimum_amount,
        fixed_fee=settings.withdrawal.fixed_fee,
        percentage_fee_bps=settings.withdrawal.percentage_fee_bps,
        max_fee=settings.withdrawal.max_fee,
    )
    state.withdrawal_processor = withdrawal_processor

    settlement = SettlementScheduler(
        store=store,
        escrow_machine=escrow_machine,
        gateway_client=gateway_client,
        auto_release_hours=settings.escrow.auto_release_hours,
    )
    state.settlement = settlement

    state.reconciler = GatewayReconciler(
        store=store,
        escrow_machine=escrow_machine,
        milestone_manager=milestone_manager,
        withdrawal_processor=withdrawal_processor,
        gateway_client=gateway_client,
        webhook_secret_hash=settings.gateway.webhook_secret_hash,
    )

    if settings.scheduler.enabled:
        state.scheduler = start_scheduler(settlement, settings.scheduler)

    logger.info(
        "Service starting",
        extra={
            "service": settings.service.name,
            "version": settings.service.version,
            "port": settings.server.port,
            "db_path": settings.database.path,
            "identity_base_url": settings.identity.base_url,
            "gateway_base_url": settings.gateway.base_url,
            "scheduler_enabled": settings.scheduler.enabled,
        },
    )

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Service shutting down", extra={"uptime_seconds": state.uptime_seconds})

    if state.scheduler is not None:
        state.scheduler.shutdown(wait=False)

    store.close()

    await identity_client.close()
    await gateway_client.close()
