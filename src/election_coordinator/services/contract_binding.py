"""
Contract Binding

ABI-typed access to the deployed election contract over a JSON-RPC provider.

This is the only module that talks to web3 directly. Every library, socket
or RPC exception is translated here into the coordinator's error taxonomy:
- unreachable provider, HTTP failures, timeouts -> NetworkError
- contract revert (including during gas estimation) -> RevertedError
- ABI/argument mismatch -> InvalidRequestError
- node refusing the request -> caller-chosen kind (SigningError for writes,
  QueryError for reads)
"""

import asyncio
import json
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncGenerator, Optional, Protocol, Sequence

import aiohttp
import structlog
from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import (
    ContractLogicError,
    MismatchedABI,
    ProviderConnectionError,
    TransactionNotFound,
    Web3Exception,
    Web3ValidationError,
)
from web3.middleware import ExtraDataToPOAMiddleware

from election_coordinator.core.config import Settings
from election_coordinator.core.errors import (
    CoordinatorError,
    InvalidRequestError,
    NetworkError,
    QueryError,
    RevertedError,
    SigningError,
)
from election_coordinator.schemas.election import TransactionReceipt

logger = structlog.get_logger(__name__)

# Contract methods the coordinator is allowed to touch
START_ELECTION = "startElection"
VOTE = "vote"
GET_RESULT = "getResult"
ELECTION_METHODS = frozenset({START_ELECTION, VOTE, GET_RESULT})


class ContractBinding(Protocol):
    """Read/write access to the election contract."""

    def arity(self, method: str) -> int:
        """Number of ABI inputs of ``method``; raises InvalidRequestError if unknown."""
        ...

    async def call(self, method: str, args: Sequence[Any]) -> Any:
        """Run a read-only contract call."""
        ...

    async def build_transaction(
        self, method: str, args: Sequence[Any], tx_params: dict[str, Any]
    ) -> dict[str, Any]:
        """Build an unsigned transaction dict for a state-changing method."""
        ...

    async def send_raw_transaction(self, raw_transaction: bytes) -> str:
        """Broadcast a signed transaction and return its 0x-prefixed hash."""
        ...

    async def get_transaction_count(self, address: str) -> int:
        """Next nonce for ``address``, counting pending transactions."""
        ...

    async def transaction_exists(self, tx_hash: str) -> bool:
        """Whether the node knows ``tx_hash``, mined or still in its pool."""
        ...

    async def get_receipt(self, tx_hash: str) -> Optional[TransactionReceipt]:
        """Receipt of ``tx_hash`` or None while it is not yet included."""
        ...

    async def get_revert_reason(self, tx_hash: str, block_number: int) -> Optional[str]:
        """Best-effort revert reason of a failed transaction."""
        ...

    async def close(self) -> None:
        ...


def load_contract_abi(path: str | Path) -> list[dict[str, Any]]:
    """
    Load a contract ABI from disk.

    Accepts either a compiler artifact (``{"abi": [...], ...}``) or a bare
    ABI list.
    """
    with open(path, encoding="utf-8") as f:
        data = json.load(f)

    if isinstance(data, dict) and isinstance(data.get("abi"), list):
        return data["abi"]
    if isinstance(data, list):
        return data
    raise ValueError(f"{path} does not contain a contract ABI")


def abi_arities(abi: Sequence[dict[str, Any]]) -> dict[str, int]:
    """Map each known election method present in ``abi`` to its input count."""
    return {
        entry["name"]: len(entry.get("inputs", []))
        for entry in abi
        if entry.get("type") == "function" and entry.get("name") in ELECTION_METHODS
    }


class Web3ContractBinding:
    """
    ContractBinding backed by web3's async JSON-RPC client.

    Usage:
        binding = Web3ContractBinding.from_settings(settings)
        tally = await binding.call("getResult", [1])
    """

    def __init__(self, w3: AsyncWeb3, address: str, abi: list[dict[str, Any]]):
        self._w3 = w3
        self._contract = w3.eth.contract(address=AsyncWeb3.to_checksum_address(address), abi=abi)
        self._arities = abi_arities(abi)

        missing = ELECTION_METHODS - self._arities.keys()
        if missing:
            logger.warning("contract_abi_missing_methods", methods=sorted(missing))

    @classmethod
    def from_settings(cls, settings: Settings) -> "Web3ContractBinding":
        """Create a binding from application settings."""
        if not settings.CONTRACT_ADDRESS:
            raise ValueError("CONTRACT_ADDRESS is not configured")

        provider = AsyncHTTPProvider(
            settings.RPC_URL,
            request_kwargs={
                "timeout": aiohttp.ClientTimeout(total=settings.RPC_REQUEST_TIMEOUT_SECONDS)
            },
        )
        w3 = AsyncWeb3(provider)
        if settings.RPC_POA_MIDDLEWARE:
            w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)

        abi = load_contract_abi(settings.CONTRACT_ABI_PATH)
        logger.info(
            "contract_binding_created",
            rpc_url=settings.RPC_URL,
            contract_address=settings.CONTRACT_ADDRESS,
        )
        return cls(w3, settings.CONTRACT_ADDRESS, abi)

    def arity(self, method: str) -> int:
        if method not in ELECTION_METHODS:
            raise InvalidRequestError(f"Unsupported contract method: {method}")
        try:
            return self._arities[method]
        except KeyError:
            raise InvalidRequestError(f"Contract ABI does not define {method}") from None

    def _function(self, method: str, args: Sequence[Any]) -> Any:
        expected = self.arity(method)
        if len(args) != expected:
            raise InvalidRequestError(
                f"{method} takes {expected} argument(s), got {len(args)}"
            )
        return getattr(self._contract.functions, method)(*args)

    async def call(self, method: str, args: Sequence[Any]) -> Any:
        async with self._translate_errors(f"call {method}", rejected=QueryError):
            return await self._function(method, args).call()

    async def build_transaction(
        self, method: str, args: Sequence[Any], tx_params: dict[str, Any]
    ) -> dict[str, Any]:
        async with self._translate_errors(f"build {method}", rejected=SigningError):
            return await self._function(method, args).build_transaction(tx_params)

    async def send_raw_transaction(self, raw_transaction: bytes) -> str:
        async with self._translate_errors("send_raw_transaction", rejected=SigningError):
            tx_hash = await self._w3.eth.send_raw_transaction(raw_transaction)
        return self._w3.to_hex(tx_hash)

    async def get_transaction_count(self, address: str) -> int:
        async with self._translate_errors("get_transaction_count", rejected=NetworkError):
            return await self._w3.eth.get_transaction_count(address, "pending")

    async def transaction_exists(self, tx_hash: str) -> bool:
        async with self._translate_errors("get_transaction", rejected=NetworkError):
            try:
                await self._w3.eth.get_transaction(tx_hash)
            except TransactionNotFound:
                return False
        return True

    async def get_receipt(self, tx_hash: str) -> Optional[TransactionReceipt]:
        async with self._translate_errors("get_transaction_receipt", rejected=NetworkError):
            try:
                receipt = await self._w3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound:
                return None

        return TransactionReceipt(
            tx_hash=self._w3.to_hex(receipt["transactionHash"]),
            block_number=receipt["blockNumber"],
            gas_used=receipt.get("gasUsed", 0),
            status=receipt.get("status", 1),
        )

    async def get_revert_reason(self, tx_hash: str, block_number: int) -> Optional[str]:
        """Replay the failed transaction at its block to recover the revert message."""
        async with self._translate_errors("get_transaction", rejected=NetworkError):
            tx = await self._w3.eth.get_transaction(tx_hash)

        replay = {
            "to": tx["to"],
            "from": tx["from"],
            "data": tx["input"],
            "value": tx.get("value", 0),
        }
        try:
            async with self._translate_errors("replay_call", rejected=NetworkError):
                await self._w3.eth.call(replay, block_identifier=block_number)
        except RevertedError as e:
            return e.reason
        return None

    async def close(self) -> None:
        """Close the provider's HTTP session."""
        disconnect = getattr(self._w3.provider, "disconnect", None)
        if disconnect is not None:
            await disconnect()

    @asynccontextmanager
    async def _translate_errors(
        self, action: str, rejected: type[CoordinatorError]
    ) -> AsyncGenerator[None, None]:
        try:
            yield
        except CoordinatorError:
            raise
        except ContractLogicError as e:
            reason = getattr(e, "message", None) or str(e)
            raise RevertedError(reason=reason) from e
        except (ProviderConnectionError, aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
            logger.warning("rpc_unreachable", action=action, error=str(e))
            raise NetworkError(f"Network provider unreachable during {action}") from e
        except (Web3ValidationError, MismatchedABI) as e:
            raise InvalidRequestError(f"Invalid arguments for {action}: {e}") from e
        except Web3Exception as e:
            logger.warning("rpc_rejected", action=action, error=str(e))
            raise rejected(f"{action} rejected by node: {e}") from e
