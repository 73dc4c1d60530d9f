"""
Transaction tracking endpoints.

Lets the UI list transactions still awaiting confirmation and re-poll one
that timed out earlier.
"""

import asyncio
from typing import Annotated

from fastapi import APIRouter, Depends, Path, Query

from election_coordinator.api.deps import get_cancel_signal, get_coordinator
from election_coordinator.schemas.election import (
    ErrorResponse,
    PendingTransaction,
    TxHashResponse,
    TxStatus,
)
from election_coordinator.services.election_coordinator import ElectionCoordinator

router = APIRouter()


@router.get("", response_model=list[PendingTransaction])
async def list_pending_transactions(
    coordinator: Annotated[ElectionCoordinator, Depends(get_coordinator)],
) -> list[PendingTransaction]:
    """List registry entries that have not reached a terminal status."""
    return coordinator.pending_transactions()


@router.get(
    "/{tx_hash}",
    response_model=TxHashResponse,
    responses={
        202: {"model": ErrorResponse, "description": "Still pending"},
        404: {"model": ErrorResponse},
        422: {"model": ErrorResponse, "description": "Reverted by the contract"},
    },
)
async def await_transaction(
    coordinator: Annotated[ElectionCoordinator, Depends(get_coordinator)],
    cancel: Annotated[asyncio.Event, Depends(get_cancel_signal)],
    tx_hash: Annotated[str, Path(pattern=r"^0x[0-9a-fA-F]{64}$")],
    timeout: Annotated[float | None, Query(gt=0, le=3600)] = None,
) -> TxHashResponse:
    """Wait again for a transaction tracked by this process."""
    receipt = await coordinator.await_transaction(tx_hash, timeout=timeout, cancel=cancel)
    return TxHashResponse(
        tx_hash=receipt.tx_hash,
        status=TxStatus.CONFIRMED,
        block_number=receipt.block_number,
    )
