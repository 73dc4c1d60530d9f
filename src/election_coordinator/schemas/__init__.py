"""Schemas module initialization."""

from election_coordinator.schemas.election import (
    ConfirmedReceipt,
    ElectionResult,
    ErrorResponse,
    PendingTransaction,
    StartElectionRequest,
    TallyResponse,
    TransactionReceipt,
    TxHashResponse,
    TxStatus,
    VoteBody,
    VoteRequest,
)

__all__ = [
    "ConfirmedReceipt",
    "ElectionResult",
    "ErrorResponse",
    "PendingTransaction",
    "StartElectionRequest",
    "TallyResponse",
    "TransactionReceipt",
    "TxHashResponse",
    "TxStatus",
    "VoteBody",
    "VoteRequest",
]
