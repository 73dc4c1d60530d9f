"""
Election endpoints for the browser UI.

Start an election, cast a vote and read the tally. Failures are raised as
CoordinatorError and rendered as {error_kind, message} by the application's
exception handlers.
"""

import asyncio
from typing import Annotated

from fastapi import APIRouter, Depends, Path, Query

from election_coordinator.api.deps import get_cancel_signal, get_coordinator
from election_coordinator.schemas.election import (
    ErrorResponse,
    StartElectionRequest,
    TallyResponse,
    TxHashResponse,
    TxStatus,
    VoteBody,
    VoteRequest,
)
from election_coordinator.services.election_coordinator import ElectionCoordinator

router = APIRouter()

Coordinator = Annotated[ElectionCoordinator, Depends(get_coordinator)]
CancelSignal = Annotated[asyncio.Event, Depends(get_cancel_signal)]
ElectionId = Annotated[int, Path(ge=0)]
ConfirmationTimeout = Annotated[
    float | None,
    Query(gt=0, le=3600, description="Seconds to wait for confirmation"),
]

_ERROR_RESPONSES = {
    202: {"model": ErrorResponse, "description": "Submitted, confirmation still pending"},
    400: {"model": ErrorResponse},
    409: {"model": ErrorResponse, "description": "Already submitted by this session"},
    422: {"model": ErrorResponse, "description": "Reverted by the contract"},
    502: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}


@router.post("", response_model=TxHashResponse, responses=_ERROR_RESPONSES)
async def start_election(
    body: StartElectionRequest,
    coordinator: Coordinator,
    cancel: CancelSignal,
    timeout: ConfirmationTimeout = None,
) -> TxHashResponse:
    """Start an election and wait for the transaction to confirm."""
    receipt = await coordinator.start_election(body.election_id, timeout=timeout, cancel=cancel)
    return TxHashResponse(
        tx_hash=receipt.tx_hash,
        status=TxStatus.CONFIRMED,
        block_number=receipt.block_number,
    )


@router.post("/{election_id}/votes", response_model=TxHashResponse, responses=_ERROR_RESPONSES)
async def cast_vote(
    election_id: ElectionId,
    body: VoteBody,
    coordinator: Coordinator,
    cancel: CancelSignal,
    timeout: ConfirmationTimeout = None,
) -> TxHashResponse:
    """
    Cast a vote in an election.

    When the UI does not send a voter_key, it is derived from the signer's
    address and the election id.
    """
    voter_key = body.voter_key or coordinator.voter_key_for(election_id)
    request = VoteRequest(
        election_id=election_id,
        candidate_id=body.candidate_id,
        voter_key=voter_key,
    )
    receipt = await coordinator.vote(request, timeout=timeout, cancel=cancel)
    return TxHashResponse(
        tx_hash=receipt.tx_hash,
        status=TxStatus.CONFIRMED,
        block_number=receipt.block_number,
    )


@router.get("/{election_id}/result", response_model=TallyResponse, responses=_ERROR_RESPONSES)
async def get_result(
    election_id: ElectionId,
    coordinator: Coordinator,
    cancel: CancelSignal,
) -> TallyResponse:
    """Read the election's current tally from the contract."""
    result = await coordinator.get_result(election_id, cancel=cancel)
    return TallyResponse.from_result(result)
