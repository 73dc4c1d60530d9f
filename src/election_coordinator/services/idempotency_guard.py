"""
Idempotency Guard

Client-side duplicate prevention for contract submissions.

Each logical request has a fingerprint (``start:<election>``,
``vote:<election>:<voter_key>``). The guard owns the pending registry that
maps fingerprints to in-flight transactions, plus a record of confirmed
fingerprints kept for the process lifetime.

This is a convenience for one client process: it cannot stop another client
instance from voting twice. Duplicate-vote prevention proper belongs to the
contract.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog

from election_coordinator.core.errors import CoordinatorError, GuardStateError
from election_coordinator.schemas.election import TxStatus
from election_coordinator.services.transaction_submitter import TransactionHandle

logger = structlog.get_logger(__name__)


@dataclass
class PendingEntry:
    """Registry slot for one fingerprint, from admission to terminal status."""

    fingerprint: str
    method: str
    admitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    handle: Optional[TransactionHandle] = None
    error: Optional[CoordinatorError] = None
    settled: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def is_submitting(self) -> bool:
        return self.handle is None and self.error is None


@dataclass(frozen=True)
class Admission:
    """Outcome of ``IdempotencyGuard.admit``."""

    admitted: bool
    entry: PendingEntry


class IdempotencyGuard:
    """
    Tracks in-flight and completed fingerprints.

    Usage:
        admission = guard.admit("vote:1:abc", "vote")
        if admission.admitted:
            handle = await signer.sign_and_submit(...)
            guard.attach("vote:1:abc", handle)
        else:
            existing = admission.entry
    """

    def __init__(self):
        self._pending: dict[str, PendingEntry] = {}
        self._completed: dict[str, TransactionHandle] = {}

    def admit(self, fingerprint: str, method: str) -> Admission:
        """
        Check-and-insert ``fingerprint`` as one step.

        There is no await between the lookup and the insert, so no other
        coroutine can interleave and admit the same fingerprint.

        Returns:
            Admission(admitted=True) with a fresh entry, or
            Admission(admitted=False) with the entry already holding it
        """
        completed = self._completed.get(fingerprint)
        if completed is not None:
            entry = PendingEntry(fingerprint=fingerprint, method=completed.method, handle=completed)
            entry.settled.set()
            logger.info("admission_rejected", fingerprint=fingerprint, reason="completed")
            return Admission(admitted=False, entry=entry)

        existing = self._pending.get(fingerprint)
        if existing is not None:
            logger.info(
                "admission_rejected",
                fingerprint=fingerprint,
                reason="in_flight",
                tx_hash=existing.handle.tx_hash if existing.handle else None,
            )
            return Admission(admitted=False, entry=existing)

        entry = PendingEntry(fingerprint=fingerprint, method=method)
        self._pending[fingerprint] = entry
        logger.debug("admission_granted", fingerprint=fingerprint, method=method)
        return Admission(admitted=True, entry=entry)

    def attach(self, fingerprint: str, handle: TransactionHandle) -> None:
        """Record the handle of an admitted submission (Submitting -> Pending)."""
        entry = self._require(fingerprint)
        if entry.handle is not None:
            self._report(f"{fingerprint} already has transaction {entry.handle.tx_hash}")
        entry.handle = handle
        entry.settled.set()

    def abandon(self, fingerprint: str, error: CoordinatorError) -> None:
        """
        Drop an admitted submission that never produced a transaction.

        Waiters on the entry observe ``error``; the fingerprint becomes
        admissible again.
        """
        entry = self._require(fingerprint)
        if entry.handle is not None:
            self._report(f"{fingerprint} reached the network and cannot be abandoned")
        entry.error = error
        del self._pending[fingerprint]
        entry.settled.set()
        logger.info("admission_abandoned", fingerprint=fingerprint, error_kind=error.error_kind)

    def release(self, fingerprint: str) -> Optional[TransactionHandle]:
        """
        Remove a terminal entry.

        Confirmed fingerprints are remembered so later identical requests are
        still rejected; failed ones become admissible again.

        Raises:
            GuardStateError: the entry is unknown or still pending
        """
        entry = self._require(fingerprint)
        if entry.handle is None or not entry.handle.is_terminal:
            self._report(f"{fingerprint} is still pending and cannot be released")

        handle = entry.handle
        del self._pending[fingerprint]
        if handle.status is TxStatus.CONFIRMED:
            self._completed[fingerprint] = handle
        logger.debug("admission_released", fingerprint=fingerprint, status=handle.status.value)
        return handle

    def expire_stale(self, max_age_seconds: float) -> list[str]:
        """
        Expire Pending entries older than ``max_age_seconds``.

        Entries still submitting are never expired.

        Returns:
            Fingerprints that were removed
        """
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=max_age_seconds)
        stale = [
            fp
            for fp, entry in self._pending.items()
            if entry.handle is not None
            and not entry.handle.is_terminal
            and entry.handle.submitted_at < cutoff
        ]
        for fp in stale:
            del self._pending[fp]
        if stale:
            logger.warning("pending_entries_expired", count=len(stale), fingerprints=stale)
        return stale

    def lookup(self, fingerprint: str) -> Optional[PendingEntry]:
        return self._pending.get(fingerprint)

    def find_by_tx_hash(self, tx_hash: str) -> Optional[PendingEntry]:
        """Find a registry entry (pending or completed) by transaction hash."""
        wanted = tx_hash.lower()
        for entry in self._pending.values():
            if entry.handle is not None and entry.handle.tx_hash.lower() == wanted:
                return entry
        for fp, handle in self._completed.items():
            if handle.tx_hash.lower() == wanted:
                entry = PendingEntry(fingerprint=fp, method=handle.method, handle=handle)
                entry.settled.set()
                return entry
        return None

    def pending(self) -> list[PendingEntry]:
        return list(self._pending.values())

    def completed(self) -> dict[str, TransactionHandle]:
        return dict(self._completed)

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, fingerprint: str) -> bool:
        return fingerprint in self._pending

    def _require(self, fingerprint: str) -> PendingEntry:
        entry = self._pending.get(fingerprint)
        if entry is None:
            self._report(f"{fingerprint} is not admitted")
        return entry

    @staticmethod
    def _report(message: str) -> None:
        logger.error("idempotency_guard_misuse", detail=message)
        raise GuardStateError(message)
