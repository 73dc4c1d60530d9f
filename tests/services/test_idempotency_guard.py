"""
Tests for the Idempotency Guard.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from election_coordinator.core.errors import GuardStateError, NetworkError, RevertedError
from election_coordinator.schemas.election import ConfirmedReceipt, TxStatus
from election_coordinator.services.idempotency_guard import IdempotencyGuard
from election_coordinator.services.transaction_submitter import TransactionHandle

FINGERPRINT = "vote:1:A"


def make_handle(tx_hash: str = "0x" + "aa" * 32, method: str = "vote") -> TransactionHandle:
    return TransactionHandle(tx_hash=tx_hash, method=method)


def confirm(handle: TransactionHandle) -> None:
    handle.mark_confirmed(
        ConfirmedReceipt(tx_hash=handle.tx_hash, block_number=1, gas_used=1, status=1)
    )


class TestAdmission:
    """Tests for admit()."""

    def test_first_admit_is_granted(self, guard):
        admission = guard.admit(FINGERPRINT, "vote")

        assert admission.admitted is True
        assert admission.entry.fingerprint == FINGERPRINT
        assert admission.entry.is_submitting
        assert FINGERPRINT in guard

    def test_second_admit_is_rejected_with_existing_entry(self, guard):
        first = guard.admit(FINGERPRINT, "vote")
        second = guard.admit(FINGERPRINT, "vote")

        assert second.admitted is False
        assert second.entry is first.entry
        assert len(guard) == 1

    def test_distinct_fingerprints_are_independent(self, guard):
        assert guard.admit("vote:1:A", "vote").admitted
        assert guard.admit("vote:1:B", "vote").admitted
        assert guard.admit("start:1", "startElection").admitted
        assert len(guard) == 3

    @pytest.mark.asyncio
    async def test_concurrent_admits_grant_exactly_one(self, guard):
        """Many coroutines racing for one fingerprint: one wins."""

        async def try_admit():
            await asyncio.sleep(0)
            return guard.admit(FINGERPRINT, "vote").admitted

        results = await asyncio.gather(*(try_admit() for _ in range(50)))

        assert results.count(True) == 1


class TestLifecycle:
    """Tests for attach/abandon/release."""

    def test_attach_settles_entry(self, guard):
        entry = guard.admit(FINGERPRINT, "vote").entry
        handle = make_handle()

        guard.attach(FINGERPRINT, handle)

        assert entry.handle is handle
        assert entry.settled.is_set()
        assert not entry.is_submitting

    def test_attach_unknown_fingerprint_raises(self, guard):
        with pytest.raises(GuardStateError):
            guard.attach(FINGERPRINT, make_handle())

    def test_attach_twice_raises(self, guard):
        guard.admit(FINGERPRINT, "vote")
        guard.attach(FINGERPRINT, make_handle())

        with pytest.raises(GuardStateError):
            guard.attach(FINGERPRINT, make_handle("0x" + "bb" * 32))

    def test_abandon_frees_fingerprint(self, guard):
        entry = guard.admit(FINGERPRINT, "vote").entry
        error = NetworkError("down")

        guard.abandon(FINGERPRINT, error)

        assert entry.error is error
        assert entry.settled.is_set()
        assert FINGERPRINT not in guard
        assert guard.admit(FINGERPRINT, "vote").admitted

    def test_abandon_after_broadcast_raises(self, guard):
        guard.admit(FINGERPRINT, "vote")
        guard.attach(FINGERPRINT, make_handle())

        with pytest.raises(GuardStateError):
            guard.abandon(FINGERPRINT, NetworkError("down"))

    def test_release_pending_is_an_error(self, guard):
        """Releasing a still-pending fingerprint is reported, not ignored."""
        guard.admit(FINGERPRINT, "vote")
        guard.attach(FINGERPRINT, make_handle())

        with pytest.raises(GuardStateError):
            guard.release(FINGERPRINT)

        assert FINGERPRINT in guard

    def test_release_submitting_is_an_error(self, guard):
        guard.admit(FINGERPRINT, "vote")

        with pytest.raises(GuardStateError):
            guard.release(FINGERPRINT)

    def test_release_confirmed_keeps_it_completed(self, guard):
        handle = make_handle()
        guard.admit(FINGERPRINT, "vote")
        guard.attach(FINGERPRINT, handle)
        confirm(handle)

        released = guard.release(FINGERPRINT)

        assert released is handle
        assert FINGERPRINT not in guard
        assert guard.completed() == {FINGERPRINT: handle}

        again = guard.admit(FINGERPRINT, "vote")
        assert again.admitted is False
        assert again.entry.handle is handle
        assert again.entry.handle.status is TxStatus.CONFIRMED

    def test_release_failed_allows_new_admission(self, guard):
        handle = make_handle()
        guard.admit(FINGERPRINT, "vote")
        guard.attach(FINGERPRINT, handle)
        handle.mark_failed(RevertedError("nope", tx_hash=handle.tx_hash))

        guard.release(FINGERPRINT)

        assert guard.completed() == {}
        assert guard.admit(FINGERPRINT, "vote").admitted


class TestExpiryAndLookup:
    """Tests for expire_stale() and lookups."""

    def test_expire_stale_removes_old_pending(self, guard):
        old = make_handle("0x" + "01" * 32)
        old.submitted_at = datetime.now(timezone.utc) - timedelta(hours=1)
        fresh = make_handle("0x" + "02" * 32)

        guard.admit("vote:1:old", "vote")
        guard.attach("vote:1:old", old)
        guard.admit("vote:1:fresh", "vote")
        guard.attach("vote:1:fresh", fresh)

        expired = guard.expire_stale(max_age_seconds=600)

        assert expired == ["vote:1:old"]
        assert "vote:1:old" not in guard
        assert "vote:1:fresh" in guard

    def test_expire_stale_skips_submitting(self, guard):
        entry = guard.admit(FINGERPRINT, "vote").entry
        entry.admitted_at = datetime.now(timezone.utc) - timedelta(days=1)

        assert guard.expire_stale(max_age_seconds=1) == []
        assert FINGERPRINT in guard

    def test_find_by_tx_hash_pending_and_completed(self, guard):
        pending = make_handle("0x" + "0A" * 32)
        done = make_handle("0x" + "0b" * 32)
        guard.admit("vote:1:A", "vote")
        guard.attach("vote:1:A", pending)
        guard.admit("vote:1:B", "vote")
        guard.attach("vote:1:B", done)
        confirm(done)
        guard.release("vote:1:B")

        assert guard.find_by_tx_hash("0x" + "0a" * 32).handle is pending
        assert guard.find_by_tx_hash("0x" + "0B" * 32).fingerprint == "vote:1:B"
        assert guard.find_by_tx_hash("0x" + "ff" * 32) is None

    def test_pending_lists_entries(self):
        guard = IdempotencyGuard()
        guard.admit("start:1", "startElection")
        guard.admit("vote:1:A", "vote")

        assert sorted(e.fingerprint for e in guard.pending()) == ["start:1", "vote:1:A"]
