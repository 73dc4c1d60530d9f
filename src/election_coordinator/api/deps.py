"""
Shared dependencies for API endpoints.

Includes:
- Access to the process-wide election coordinator
- A cancellation signal tied to the client connection
"""

import asyncio
from typing import AsyncGenerator

import structlog
from fastapi import Request

from election_coordinator.core.errors import CoordinatorUnavailableError
from election_coordinator.services.election_coordinator import ElectionCoordinator

logger = structlog.get_logger(__name__)

# How often a waiting request checks whether its client went away
DISCONNECT_POLL_SECONDS = 0.5


def get_coordinator(request: Request) -> ElectionCoordinator:
    """
    Return the coordinator built at startup.

    Raises:
        CoordinatorUnavailableError: no contract is configured
    """
    coordinator = getattr(request.app.state, "coordinator", None)
    if coordinator is None:
        raise CoordinatorUnavailableError("Election contract is not configured")
    return coordinator


async def get_cancel_signal(request: Request) -> AsyncGenerator[asyncio.Event, None]:
    """
    Yield an event that is set when the client disconnects.

    Long waits (submission, confirmation polling) end as soon as the UI
    navigates away instead of leaking a dangling wait.
    """
    cancel = asyncio.Event()

    async def watch_disconnect() -> None:
        while not cancel.is_set():
            if await request.is_disconnected():
                logger.info("client_disconnected", path=request.url.path)
                cancel.set()
                return
            await asyncio.sleep(DISCONNECT_POLL_SECONDS)

    watcher = asyncio.create_task(watch_disconnect())
    try:
        yield cancel
    finally:
        watcher.cancel()
