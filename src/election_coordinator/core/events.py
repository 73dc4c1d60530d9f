"""
Application lifecycle event handlers.

Builds the coordinator and its collaborators on startup and closes the
network provider on shutdown.
"""

from typing import Callable

import structlog
from fastapi import FastAPI

from election_coordinator.core.config import settings
from election_coordinator.services.contract_binding import Web3ContractBinding
from election_coordinator.services.election_coordinator import ElectionCoordinator
from election_coordinator.services.idempotency_guard import IdempotencyGuard
from election_coordinator.services.signer_session import SignerSession
from election_coordinator.services.transaction_submitter import TransactionSubmitter

logger = structlog.get_logger(__name__)


def build_coordinator(binding: Web3ContractBinding) -> ElectionCoordinator:
    """Wire a coordinator around ``binding`` using application settings."""
    return ElectionCoordinator(
        signer=SignerSession.from_settings(binding),
        submitter=TransactionSubmitter(binding),
        binding=binding,
        guard=IdempotencyGuard(),
    )


def create_start_app_handler(app: FastAPI) -> Callable:
    """Create startup event handler."""

    async def start_app() -> None:
        logger.info("coordinator_starting", app_env=settings.APP_ENV)
        app.state.binding = None
        app.state.coordinator = None

        if not settings.is_contract_configured:
            logger.warning("contract_not_configured", detail="Set CONTRACT_ADDRESS to enable elections")
            return

        try:
            binding = Web3ContractBinding.from_settings(settings)
        except (OSError, ValueError) as e:
            logger.error("contract_binding_failed", error=str(e))
            return

        coordinator = build_coordinator(binding)
        app.state.binding = binding
        app.state.coordinator = coordinator

        if settings.PRIVATE_KEY is None:
            logger.warning("signer_not_configured", detail="Writes will fail until PRIVATE_KEY is set")
        logger.info("coordinator_started", rpc_url=settings.RPC_URL)

    return start_app


def create_stop_app_handler(app: FastAPI) -> Callable:
    """Create shutdown event handler."""

    async def stop_app() -> None:
        logger.info("coordinator_stopping")

        coordinator = getattr(app.state, "coordinator", None)
        if coordinator is not None and len(coordinator.guard):
            logger.warning("shutdown_with_pending_transactions", count=len(coordinator.guard))

        binding = getattr(app.state, "binding", None)
        if binding is not None:
            try:
                await binding.close()
            except Exception as e:
                logger.warning("provider_close_failed", error=str(e))

        logger.info("coordinator_stopped")

    return stop_app
