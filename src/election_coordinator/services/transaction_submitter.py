"""
Transaction Submitter

Tracks a broadcast transaction until the network reports its outcome.

The terminal outcome is memoized on the TransactionHandle, so awaiting the
same handle again returns the same receipt (or raises the same revert)
without another round trip. A confirmation timeout leaves the handle
Pending; the caller decides whether to keep waiting.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

import structlog

from election_coordinator.core.cancellation import sleep_cancellable, wait_cancellable
from election_coordinator.core.config import settings
from election_coordinator.core.errors import (
    ConfirmationTimeoutError,
    NetworkError,
    OperationCancelledError,
    RevertedError,
)
from election_coordinator.schemas.election import ConfirmedReceipt, TxStatus

if TYPE_CHECKING:
    from election_coordinator.services.contract_binding import ContractBinding

logger = structlog.get_logger(__name__)


@dataclass
class TransactionHandle:
    """A transaction accepted by the network, shared by submitter and coordinator."""

    tx_hash: str
    method: str
    submitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    status: TxStatus = TxStatus.PENDING
    receipt: Optional[ConfirmedReceipt] = None
    failure: Optional[RevertedError] = None

    @property
    def is_terminal(self) -> bool:
        return self.status is not TxStatus.PENDING

    def mark_confirmed(self, receipt: ConfirmedReceipt) -> None:
        self.status = TxStatus.CONFIRMED
        self.receipt = receipt

    def mark_failed(self, failure: RevertedError) -> None:
        self.status = TxStatus.FAILED
        self.failure = failure


class TransactionSubmitter:
    """
    Awaits final status for submitted transactions.

    Usage:
        receipt = await submitter.await_confirmation(handle, timeout=60)
    """

    def __init__(
        self,
        binding: "ContractBinding",
        poll_interval: Optional[float] = None,
    ):
        self._binding = binding
        self._poll_interval = (
            poll_interval
            if poll_interval is not None
            else settings.CONFIRMATION_POLL_INTERVAL_SECONDS
        )

    async def await_confirmation(
        self,
        handle: TransactionHandle,
        timeout: float,
        cancel: Optional[asyncio.Event] = None,
    ) -> ConfirmedReceipt:
        """
        Wait for the transaction to be included.

        Args:
            handle: Handle returned by the signer session
            timeout: Wall-clock seconds to wait before giving up locally
            cancel: Optional signal that abandons the wait

        Returns:
            The receipt of the successful transaction

        Raises:
            RevertedError: the receipt carries a failed status
            ConfirmationTimeoutError: no receipt within ``timeout``; handle stays Pending
            OperationCancelledError: ``cancel`` was set
        """
        if handle.status is TxStatus.CONFIRMED and handle.receipt is not None:
            return handle.receipt
        if handle.status is TxStatus.FAILED and handle.failure is not None:
            raise handle.failure

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            try:
                receipt = await wait_cancellable(
                    self._binding.get_receipt(handle.tx_hash), cancel
                )
            except OperationCancelledError as e:
                e.handle = handle
                raise
            except NetworkError as e:
                # Transient while polling; the transaction itself is unaffected
                logger.warning(
                    "receipt_poll_failed",
                    tx_hash=handle.tx_hash,
                    error=e.message,
                )
                receipt = None

            # Another waiter may have resolved the handle meanwhile
            if handle.is_terminal:
                return await self.await_confirmation(handle, timeout, cancel)

            if receipt is not None:
                if receipt.succeeded:
                    confirmed = ConfirmedReceipt(**receipt.model_dump())
                    handle.mark_confirmed(confirmed)
                    logger.info(
                        "transaction_confirmed",
                        tx_hash=handle.tx_hash,
                        method=handle.method,
                        block_number=confirmed.block_number,
                    )
                    return confirmed

                reason = await self._revert_reason(handle, receipt.block_number)
                if handle.is_terminal:
                    return await self.await_confirmation(handle, timeout, cancel)
                failure = RevertedError(reason=reason, tx_hash=handle.tx_hash)
                handle.mark_failed(failure)
                logger.warning(
                    "transaction_reverted",
                    tx_hash=handle.tx_hash,
                    method=handle.method,
                    reason=reason,
                )
                raise failure

            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.info(
                    "confirmation_timeout",
                    tx_hash=handle.tx_hash,
                    method=handle.method,
                    timeout=timeout,
                )
                raise ConfirmationTimeoutError(
                    f"Transaction {handle.tx_hash} not confirmed within {timeout:g}s",
                    handle=handle,
                )

            try:
                await sleep_cancellable(min(self._poll_interval, remaining), cancel)
            except OperationCancelledError as e:
                e.handle = handle
                raise

    async def _revert_reason(self, handle: TransactionHandle, block_number: int) -> Optional[str]:
        try:
            return await self._binding.get_revert_reason(handle.tx_hash, block_number)
        except NetworkError as e:
            logger.warning(
                "revert_reason_unavailable",
                tx_hash=handle.tx_hash,
                error=e.message,
            )
            return None
