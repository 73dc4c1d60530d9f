"""
Election-related Pydantic schemas.

Inputs the UI passes to the coordinator, the results it gets back, and the
normalised views of on-chain data.
"""

from collections.abc import Mapping, Sequence
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class TxStatus(str, Enum):
    """Lifecycle status of a submitted transaction."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class StartElectionRequest(BaseModel):
    """Schema for starting an election."""

    election_id: int = Field(..., ge=0)


class VoteBody(BaseModel):
    """Vote payload posted by the UI for a given election."""

    candidate_id: Optional[int] = Field(None, ge=0)
    voter_key: Optional[str] = Field(
        None,
        min_length=1,
        max_length=128,
        description="Deterministic voter fingerprint; derived from the signer when omitted",
    )


class VoteRequest(BaseModel):
    """
    A single vote as handed to the coordinator.

    voter_key is a fingerprint of (session identity, election_id), never a raw
    identity. At most one request per voter_key is submitted per process.
    """

    election_id: int = Field(..., ge=0)
    candidate_id: Optional[int] = Field(None, ge=0)
    voter_key: str = Field(..., min_length=1, max_length=128)


class TransactionReceipt(BaseModel):
    """Network receipt for an included transaction."""

    tx_hash: str
    block_number: int
    gas_used: int = 0
    status: int

    @property
    def succeeded(self) -> bool:
        return self.status == 1


class ConfirmedReceipt(TransactionReceipt):
    """Receipt of a transaction that executed successfully."""


class ElectionResult(BaseModel):
    """
    Snapshot of an election's tally.

    Fetched on demand and never cached; on-chain state can change between
    reads.
    """

    election_id: int
    tally: dict[int, int] = Field(default_factory=dict)

    @property
    def total_votes(self) -> int:
        return sum(self.tally.values())

    @classmethod
    def from_raw(cls, election_id: int, raw: Any) -> "ElectionResult":
        """
        Normalise a raw ``getResult`` return value.

        Accepts a mapping, parallel ``(candidate_ids, counts)`` arrays, a
        sequence of ``(candidate_id, count)`` pairs, a plain sequence of counts
        indexed by candidate, or a bare count reported under candidate 0.

        Raises:
            ValueError: the value has none of these shapes
        """
        if isinstance(raw, bool):
            raise ValueError(f"Unsupported result type: {type(raw).__name__}")
        if isinstance(raw, int):
            return cls(election_id=election_id, tally={0: raw})
        if isinstance(raw, Mapping):
            return cls(
                election_id=election_id,
                tally={int(k): int(v) for k, v in raw.items()},
            )
        if isinstance(raw, Sequence) and not isinstance(raw, (str, bytes)):
            items = list(raw)
            # web3 decodes struct arrays as lists of tuples and multiple
            # array outputs as lists of lists
            if all(
                isinstance(item, tuple) and len(item) == 2 and _is_int_sequence(item)
                for item in items
            ):
                return cls(
                    election_id=election_id,
                    tally={int(i): int(c) for i, c in items},
                )
            if (
                len(items) == 2
                and all(_is_int_sequence(part) for part in items)
                and len(items[0]) == len(items[1])
            ):
                ids, counts = items
                return cls(
                    election_id=election_id,
                    tally={int(i): int(c) for i, c in zip(ids, counts)},
                )
            if all(isinstance(item, int) and not isinstance(item, bool) for item in items):
                return cls(
                    election_id=election_id,
                    tally={index: int(count) for index, count in enumerate(items)},
                )
        raise ValueError(f"Unsupported result shape: {type(raw).__name__}")


def _is_int_sequence(value: Any) -> bool:
    return (
        isinstance(value, Sequence)
        and not isinstance(value, (str, bytes))
        and all(isinstance(v, int) and not isinstance(v, bool) for v in value)
    )


class TxHashResponse(BaseModel):
    """Response after a transaction reached a terminal state."""

    tx_hash: str
    status: TxStatus
    block_number: Optional[int] = None


class TallyResponse(BaseModel):
    """Election tally returned to the UI."""

    election_id: int
    tally: dict[int, int]
    total_votes: int

    @classmethod
    def from_result(cls, result: ElectionResult) -> "TallyResponse":
        return cls(
            election_id=result.election_id,
            tally=result.tally,
            total_votes=result.total_votes,
        )


class PendingTransaction(BaseModel):
    """Registry entry exposed for re-polling."""

    fingerprint: str
    method: str
    tx_hash: Optional[str] = None
    status: Optional[TxStatus] = None
    submitted_at: Optional[datetime] = None


class ErrorResponse(BaseModel):
    """Structured failure sent to the UI."""

    error_kind: str
    message: str
    tx_hash: Optional[str] = None
    status: Optional[str] = None
    reason: Optional[str] = None
