"""
Election Coordinator

Turns UI intents into contract transactions and reports their outcome.

Every write operation runs the same state machine:

    Idle -> Admitting -> Submitting -> Pending -> Confirmed | Failed

- Admitting: the idempotency guard admits the request fingerprint or hands
  back the entry that already holds it
- Submitting: the signer session broadcasts the transaction; NetworkError is
  retried with exponential backoff, re-checking the guard before each retry
- Pending: the transaction submitter waits for the receipt
- Confirmed/Failed: the fingerprint is released and the result reported

Reads (get_result) bypass the guard and submitter entirely.
"""

import asyncio
import copy
import functools
from typing import Any, Optional

import structlog

from election_coordinator.core.cancellation import sleep_cancellable, wait_cancellable
from election_coordinator.core.config import settings
from election_coordinator.core.errors import (
    CoordinatorError,
    DuplicateSubmissionError,
    InvalidRequestError,
    NetworkError,
    OperationCancelledError,
    QueryError,
    RevertedError,
    UnknownTransactionError,
)
from election_coordinator.core.security import (
    derive_voter_key,
    start_election_fingerprint,
    vote_fingerprint,
)
from election_coordinator.schemas.election import (
    ConfirmedReceipt,
    ElectionResult,
    PendingTransaction,
    VoteRequest,
)
from election_coordinator.services.contract_binding import (
    GET_RESULT,
    START_ELECTION,
    VOTE,
    ContractBinding,
)
from election_coordinator.services.idempotency_guard import IdempotencyGuard, PendingEntry
from election_coordinator.services.signer_session import SignerSession
from election_coordinator.services.transaction_submitter import (
    TransactionHandle,
    TransactionSubmitter,
)

logger = structlog.get_logger(__name__)


class ElectionCoordinator:
    """
    Orchestrates start election, vote and result queries.

    Collaborators are injected; the coordinator owns the idempotency guard
    and therefore the pending registry.
    """

    def __init__(
        self,
        signer: SignerSession,
        submitter: TransactionSubmitter,
        binding: ContractBinding,
        guard: Optional[IdempotencyGuard] = None,
        *,
        max_attempts: Optional[int] = None,
        backoff_base: Optional[float] = None,
        backoff_max: Optional[float] = None,
        confirmation_timeout: Optional[float] = None,
        pending_expiry: Optional[float] = None,
    ):
        self._signer = signer
        self._submitter = submitter
        self._binding = binding
        self._guard = guard if guard is not None else IdempotencyGuard()
        self._max_attempts = max_attempts if max_attempts is not None else settings.TX_MAX_ATTEMPTS
        self._backoff_base = (
            backoff_base if backoff_base is not None else settings.TX_BACKOFF_BASE_SECONDS
        )
        self._backoff_max = (
            backoff_max if backoff_max is not None else settings.TX_BACKOFF_MAX_SECONDS
        )
        self._confirmation_timeout = (
            confirmation_timeout
            if confirmation_timeout is not None
            else settings.CONFIRMATION_TIMEOUT_SECONDS
        )
        self._pending_expiry = (
            pending_expiry if pending_expiry is not None else settings.PENDING_EXPIRY_SECONDS
        )

    @property
    def guard(self) -> IdempotencyGuard:
        return self._guard

    # =========================================================================
    # Operations
    # =========================================================================

    async def start_election(
        self,
        election_id: int,
        *,
        timeout: Optional[float] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> ConfirmedReceipt:
        """
        Start an election on-chain.

        Returns:
            Receipt of the confirmed startElection transaction

        Raises:
            DuplicateSubmissionError: this election was already started by this session
            ConfirmationTimeoutError: submitted but not yet confirmed
            SigningError, NetworkError, RevertedError, OperationCancelledError
        """
        if election_id < 0:
            raise InvalidRequestError("election_id must be non-negative")

        return await self._transact(
            start_election_fingerprint(election_id),
            START_ELECTION,
            [election_id],
            timeout=timeout,
            cancel=cancel,
        )

    async def vote(
        self,
        request: VoteRequest,
        *,
        timeout: Optional[float] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> ConfirmedReceipt:
        """
        Cast a vote.

        A second request with the same (election_id, voter_key) never reaches
        the network: it raises DuplicateSubmissionError carrying the first
        request's handle and current status.
        """
        args = self._vote_args(request)
        return await self._transact(
            vote_fingerprint(request.election_id, request.voter_key),
            VOTE,
            args,
            timeout=timeout,
            cancel=cancel,
        )

    async def get_result(
        self,
        election_id: int,
        *,
        cancel: Optional[asyncio.Event] = None,
    ) -> ElectionResult:
        """Read the current tally. Never cached."""
        try:
            raw = await wait_cancellable(self._binding.call(GET_RESULT, [election_id]), cancel)
        except OperationCancelledError:
            raise
        except CoordinatorError as e:
            logger.warning(
                "result_query_failed",
                election_id=election_id,
                error_kind=e.error_kind,
                error=e.message,
            )
            raise QueryError(
                f"Could not read result of election {election_id}: {e.message}"
            ) from e

        try:
            return ElectionResult.from_raw(election_id, raw)
        except ValueError as e:
            raise QueryError(f"Unexpected result for election {election_id}: {e}") from e

    async def await_transaction(
        self,
        tx_hash: str,
        *,
        timeout: Optional[float] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> ConfirmedReceipt:
        """Keep waiting on a transaction left Pending by an earlier timeout."""
        entry = self._guard.find_by_tx_hash(tx_hash)
        if entry is None or entry.handle is None:
            raise UnknownTransactionError(f"Transaction {tx_hash} is not tracked")
        return await self._confirm(entry.fingerprint, entry.handle, timeout, cancel)

    def voter_key_for(self, election_id: int) -> str:
        """Voter key of this session's signer for ``election_id``."""
        return derive_voter_key(self._signer.address, election_id)

    def pending_transactions(self) -> list[PendingTransaction]:
        return [
            PendingTransaction(
                fingerprint=entry.fingerprint,
                method=entry.method,
                tx_hash=entry.handle.tx_hash if entry.handle else None,
                status=entry.handle.status if entry.handle else None,
                submitted_at=entry.handle.submitted_at if entry.handle else None,
            )
            for entry in self._guard.pending()
        ]

    # =========================================================================
    # State machine
    # =========================================================================

    async def _transact(
        self,
        fingerprint: str,
        method: str,
        args: list[Any],
        *,
        timeout: Optional[float],
        cancel: Optional[asyncio.Event],
    ) -> ConfirmedReceipt:
        self._guard.expire_stale(self._pending_expiry)

        admission = self._guard.admit(fingerprint, method)
        if not admission.admitted:
            return await self._observe_existing(admission.entry, cancel)
        entry = admission.entry

        attempt = 0
        # Hash of a broadcast that failed with NetworkError and may have landed
        in_doubt: Optional[str] = None
        while True:
            attempt += 1
            try:
                handle = None
                if in_doubt is not None:
                    handle = await self._recover(fingerprint, method, in_doubt, cancel)
                if handle is None:
                    handle = await self._submit(fingerprint, method, args, in_doubt, cancel)
                break
            except OperationCancelledError:
                raise
            except NetworkError as e:
                if e.tx_hash is not None:
                    in_doubt = e.tx_hash
                if attempt >= self._max_attempts:
                    if in_doubt is not None:
                        try:
                            handle = await self._recover(fingerprint, method, in_doubt, cancel)
                        except NetworkError:
                            handle = None
                        else:
                            if handle is None:
                                in_doubt = None
                        if handle is not None:
                            break
                    self._withdraw(fingerprint, method, in_doubt, e)
                    logger.warning(
                        "submission_failed",
                        fingerprint=fingerprint,
                        attempts=attempt,
                        in_doubt=in_doubt,
                        error=e.message,
                    )
                    if in_doubt is not None:
                        e.tx_hash = in_doubt
                    raise

                delay = self._backoff_delay(attempt)
                logger.warning(
                    "submission_retry_scheduled",
                    fingerprint=fingerprint,
                    attempt=attempt,
                    delay=delay,
                    error=e.message,
                )
                try:
                    await sleep_cancellable(delay, cancel)
                except OperationCancelledError as cancelled:
                    self._withdraw(fingerprint, method, in_doubt, cancelled)
                    raise
                except asyncio.CancelledError:
                    self._withdraw(
                        fingerprint, method, in_doubt, OperationCancelledError("Submission cancelled")
                    )
                    raise

                # Re-check admission before the next attempt
                if self._guard.lookup(fingerprint) is not entry:
                    admission = self._guard.admit(fingerprint, method)
                    if not admission.admitted:
                        return await self._observe_existing(admission.entry, cancel)
                    entry = admission.entry
            except CoordinatorError as e:
                self._withdraw(fingerprint, method, in_doubt, e)
                logger.warning(
                    "submission_failed",
                    fingerprint=fingerprint,
                    attempts=attempt,
                    error_kind=e.error_kind,
                    error=e.message,
                )
                raise
            except Exception as e:
                logger.exception("submission_crashed", fingerprint=fingerprint)
                error = CoordinatorError(f"Unexpected failure submitting {method}")
                self._withdraw(fingerprint, method, in_doubt, error)
                raise error from e

        self._guard.attach(fingerprint, handle)
        return await self._confirm(fingerprint, handle, timeout, cancel)

    async def _submit(
        self,
        fingerprint: str,
        method: str,
        args: list[Any],
        in_doubt: Optional[str],
        cancel: Optional[asyncio.Event],
    ) -> TransactionHandle:
        if cancel is not None and cancel.is_set():
            error = OperationCancelledError("Operation cancelled before submission")
            self._withdraw(fingerprint, method, in_doubt, error)
            raise error

        # A cancelled caller stops waiting; the broadcast itself runs to completion
        task = asyncio.ensure_future(self._signer.sign_and_submit(method, args))
        try:
            return await wait_cancellable(asyncio.shield(task), cancel)
        except (OperationCancelledError, asyncio.CancelledError):
            task.add_done_callback(
                functools.partial(self._settle_orphan, fingerprint, method, in_doubt)
            )
            raise

    async def _recover(
        self,
        fingerprint: str,
        method: str,
        tx_hash: str,
        cancel: Optional[asyncio.Event],
    ) -> Optional[TransactionHandle]:
        """Look up a broadcast whose outcome is unknown before signing again."""
        try:
            return await wait_cancellable(self._signer.recover_broadcast(tx_hash, method), cancel)
        except OperationCancelledError as e:
            self._withdraw(fingerprint, method, tx_hash, e)
            raise
        except asyncio.CancelledError:
            self._withdraw(fingerprint, method, tx_hash, OperationCancelledError("Submission cancelled"))
            raise

    def _withdraw(
        self,
        fingerprint: str,
        method: str,
        in_doubt: Optional[str],
        error: CoordinatorError,
    ) -> None:
        """Settle an admitted entry that has no confirmed broadcast."""
        if in_doubt is None:
            self._guard.abandon(fingerprint, error)
            return

        # An earlier broadcast may still be mined; the fingerprint stays reserved
        # until it confirms or the entry expires
        self._guard.attach(fingerprint, TransactionHandle(tx_hash=in_doubt, method=method))
        logger.warning("submission_in_doubt", fingerprint=fingerprint, tx_hash=in_doubt)

    def _settle_orphan(
        self,
        fingerprint: str,
        method: str,
        in_doubt: Optional[str],
        task: "asyncio.Future[TransactionHandle]",
    ) -> None:
        """Record the outcome of a submission whose caller went away."""
        if task.cancelled():
            self._withdraw(
                fingerprint, method, in_doubt, OperationCancelledError("Submission cancelled")
            )
            return

        error = task.exception()
        if error is None:
            handle = task.result()
            self._guard.attach(fingerprint, handle)
            logger.info("orphaned_submission_recorded", fingerprint=fingerprint, tx_hash=handle.tx_hash)
        elif isinstance(error, NetworkError) and error.tx_hash:
            self._withdraw(fingerprint, method, error.tx_hash, error)
        elif isinstance(error, CoordinatorError):
            self._withdraw(fingerprint, method, in_doubt, error)
        else:
            self._withdraw(
                fingerprint, method, in_doubt, CoordinatorError(f"Unexpected failure: {error}")
            )

    async def _confirm(
        self,
        fingerprint: str,
        handle: TransactionHandle,
        timeout: Optional[float],
        cancel: Optional[asyncio.Event],
    ) -> ConfirmedReceipt:
        wait = timeout if timeout is not None else self._confirmation_timeout
        try:
            receipt = await self._submitter.await_confirmation(handle, wait, cancel)
        except RevertedError:
            self._release(fingerprint, handle)
            raise

        self._release(fingerprint, handle)
        return receipt

    def _release(self, fingerprint: str, handle: TransactionHandle) -> None:
        entry = self._guard.lookup(fingerprint)
        if entry is not None and entry.handle is handle:
            self._guard.release(fingerprint)

    async def _observe_existing(
        self, entry: PendingEntry, cancel: Optional[asyncio.Event]
    ) -> ConfirmedReceipt:
        """Report the request already holding the fingerprint instead of submitting."""
        if entry.is_submitting:
            await wait_cancellable(entry.settled.wait(), cancel)

        if entry.error is not None:
            # Each observer gets its own instance; the original stays the cause
            raise copy.copy(entry.error) from entry.error

        raise DuplicateSubmissionError(
            f"{entry.fingerprint} was already submitted as {entry.handle.tx_hash}",
            handle=entry.handle,
        )

    def _backoff_delay(self, attempt: int) -> float:
        return min(self._backoff_base * 2 ** (attempt - 1), self._backoff_max)

    def _vote_args(self, request: VoteRequest) -> list[Any]:
        arity = self._binding.arity(VOTE)
        if arity == 1:
            if request.candidate_id is not None:
                logger.warning(
                    "candidate_not_in_contract_abi",
                    election_id=request.election_id,
                )
            return [request.election_id]
        if arity == 2:
            if request.candidate_id is None:
                raise InvalidRequestError("candidate_id is required by this contract")
            return [request.election_id, request.candidate_id]
        raise InvalidRequestError(f"Unsupported vote signature with {arity} inputs")
