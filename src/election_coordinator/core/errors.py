"""
Typed errors for the election transaction lifecycle.

Every failure that can reach the UI is one of these classes. Each carries a
stable ``error_kind`` string, a human-readable message and the HTTP status
the API layer answers with. Raw web3/network exceptions are translated into
these kinds by the contract binding and never cross into the coordinator's
callers.
"""

from typing import TYPE_CHECKING, Any, ClassVar, Optional

if TYPE_CHECKING:
    from election_coordinator.services.transaction_submitter import TransactionHandle


class CoordinatorError(Exception):
    """Base exception for coordinator operations."""

    error_kind: ClassVar[str] = "CoordinatorError"
    http_status: ClassVar[int] = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_payload(self) -> dict[str, Any]:
        """Structured body sent to the UI."""
        return {"error_kind": self.error_kind, "message": self.message}


class SigningError(CoordinatorError):
    """Signing credential is missing, malformed or rejected."""

    error_kind = "SigningError"
    http_status = 503


class NetworkError(CoordinatorError):
    """
    The network provider could not be reached (connection refused, timeout).

    When raised by a broadcast, ``tx_hash`` is the hash of the signed
    transaction: the node may have accepted it before the connection dropped.
    """

    error_kind = "NetworkError"
    http_status = 502

    def __init__(self, message: str, tx_hash: Optional[str] = None):
        super().__init__(message)
        self.tx_hash = tx_hash

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        if self.tx_hash:
            payload["tx_hash"] = self.tx_hash
        return payload


class QueryError(CoordinatorError):
    """A read-only contract query failed."""

    error_kind = "QueryError"
    http_status = 502


class InvalidRequestError(CoordinatorError):
    """Unknown contract method, wrong arity or missing input."""

    error_kind = "InvalidRequest"
    http_status = 400


class CoordinatorUnavailableError(CoordinatorError):
    """No contract is configured for this process."""

    error_kind = "ServiceUnavailable"
    http_status = 503


class GuardStateError(CoordinatorError):
    """Idempotency guard used out of order (programming error)."""

    error_kind = "GuardStateError"
    http_status = 500


class UnknownTransactionError(CoordinatorError):
    """Transaction hash is not tracked by this process."""

    error_kind = "NotFound"
    http_status = 404


class RevertedError(CoordinatorError):
    """The contract rejected the call."""

    error_kind = "RevertedError"
    http_status = 422

    def __init__(self, reason: Optional[str] = None, tx_hash: Optional[str] = None):
        message = f"Transaction reverted: {reason}" if reason else "Transaction reverted"
        super().__init__(message)
        self.reason = reason
        self.tx_hash = tx_hash

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        payload["reason"] = self.reason
        if self.tx_hash:
            payload["tx_hash"] = self.tx_hash
        return payload


class _HandleError(CoordinatorError):
    """Error that reports an existing transaction handle back to the caller."""

    def __init__(self, message: str, handle: Optional["TransactionHandle"] = None):
        super().__init__(message)
        self.handle = handle

    @property
    def tx_hash(self) -> Optional[str]:
        return self.handle.tx_hash if self.handle else None

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        if self.handle is not None:
            payload["tx_hash"] = self.handle.tx_hash
            payload["status"] = self.handle.status.value
        return payload


class ConfirmationTimeoutError(_HandleError):
    """Confirmation was not observed in time; the transaction is still pending."""

    error_kind = "TimeoutError"
    http_status = 202


class DuplicateSubmissionError(_HandleError):
    """An identical request was already submitted by this session."""

    error_kind = "DuplicateSubmissionError"
    http_status = 409


class OperationCancelledError(_HandleError):
    """The caller withdrew before the operation finished."""

    error_kind = "Cancelled"
    http_status = 499
