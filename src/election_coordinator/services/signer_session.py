"""
Signer Session

Holds the process's single signing credential and turns a contract method
call into one broadcast transaction.

Nonce handling:
- nonce allocation, signing and broadcast happen under one lock, so two
  concurrent submissions never share a nonce
- the nonce advances only after the node accepts the transaction
- a broadcast that fails with NetworkError may still have reached the node,
  so its nonce stays pinned: a re-signed transaction reuses it and at most
  one of the two can ever be mined
- any other failure discards the cached nonce; the next call re-reads the
  pending transaction count
"""

import asyncio
from typing import Any, Optional, Sequence

import structlog
from eth_account import Account
from eth_account.signers.local import LocalAccount
from pydantic import SecretStr

from election_coordinator.core.config import settings
from election_coordinator.core.errors import InvalidRequestError, NetworkError, SigningError
from election_coordinator.services.contract_binding import ContractBinding
from election_coordinator.services.transaction_submitter import TransactionHandle

logger = structlog.get_logger(__name__)


class SignerSession:
    """
    Signs and submits election contract transactions.

    The session makes exactly one submission attempt per call and never
    retries; retries belong to the coordinator, which re-checks idempotency
    between attempts.
    """

    def __init__(
        self,
        binding: ContractBinding,
        private_key: Optional[SecretStr] = None,
        gas_limit: Optional[int] = None,
    ):
        self._binding = binding
        self._private_key = private_key
        self._gas_limit = gas_limit
        self._account: Optional[LocalAccount] = None
        self._next_nonce: Optional[int] = None
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, binding: ContractBinding) -> "SignerSession":
        return cls(binding, private_key=settings.PRIVATE_KEY, gas_limit=settings.TX_GAS_LIMIT)

    @property
    def account(self) -> LocalAccount:
        """The signing account; raises SigningError if the credential is unusable."""
        if self._account is None:
            if self._private_key is None or not self._private_key.get_secret_value():
                raise SigningError("No signing credential is configured")
            try:
                self._account = Account.from_key(self._private_key.get_secret_value())
            except (ValueError, TypeError) as e:
                # The key itself must never end up in the message
                raise SigningError("Signing credential is malformed") from e
        return self._account

    @property
    def address(self) -> str:
        """Session identity (checksummed account address)."""
        return self.account.address

    @property
    def is_available(self) -> bool:
        try:
            self.account
        except SigningError:
            return False
        return True

    async def sign_and_submit(self, method: str, args: Sequence[Any]) -> TransactionHandle:
        """
        Sign ``method(*args)`` and broadcast it.

        Args:
            method: Contract method from the election method set
            args: Positional arguments matching the method's ABI arity

        Returns:
            A Pending TransactionHandle

        Raises:
            SigningError: credential absent, malformed or rejected by the node
            NetworkError: the node could not be reached; when the broadcast itself
                failed, ``tx_hash`` on the error is the hash it would have had
            RevertedError: the call reverts during gas estimation
            InvalidRequestError: unknown method or wrong arity
        """
        expected = self._binding.arity(method)
        if len(args) != expected:
            raise InvalidRequestError(f"{method} takes {expected} argument(s), got {len(args)}")

        account = self.account

        async with self._lock:
            pinned = False
            try:
                nonce = self._next_nonce
                if nonce is None:
                    nonce = await self._binding.get_transaction_count(account.address)

                tx_params: dict[str, Any] = {"from": account.address, "nonce": nonce}
                if self._gas_limit is not None:
                    tx_params["gas"] = self._gas_limit
                tx = await self._binding.build_transaction(method, list(args), tx_params)

                try:
                    signed = account.sign_transaction(tx)
                except (ValueError, TypeError) as e:
                    raise SigningError(f"Could not sign {method} transaction: {e}") from e

                try:
                    tx_hash = await self._binding.send_raw_transaction(signed.raw_transaction)
                except NetworkError as e:
                    e.tx_hash = "0x" + bytes(signed.hash).hex()
                    pinned = True
                    raise
                except asyncio.CancelledError:
                    pinned = True
                    raise
            except BaseException:
                self._next_nonce = nonce if pinned else None
                raise

            self._next_nonce = nonce + 1

        logger.info(
            "transaction_submitted",
            method=method,
            tx_hash=tx_hash,
            nonce=nonce,
            sender=account.address,
        )
        return TransactionHandle(tx_hash=tx_hash, method=method)

    async def recover_broadcast(self, tx_hash: str, method: str) -> Optional[TransactionHandle]:
        """
        Check whether an earlier broadcast that failed with NetworkError landed.

        Returns:
            A Pending handle for ``tx_hash`` if the node knows it, else None
            (the pinned nonce stays in place for the re-signed attempt)

        Raises:
            NetworkError: the node still cannot be reached
        """
        async with self._lock:
            if not await self._binding.transaction_exists(tx_hash):
                return None
            # The pending count now includes it
            self._next_nonce = None

        logger.info("broadcast_recovered", method=method, tx_hash=tx_hash)
        return TransactionHandle(tx_hash=tx_hash, method=method)
