"""
Pytest fixtures for election coordinator tests.
"""

import asyncio
import json
import os
from collections.abc import AsyncGenerator
from typing import Any, Optional

import pytest
from httpx import ASGITransport, AsyncClient
from pydantic import SecretStr
from web3 import Web3

# Set test environment variables before importing app
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DEBUG", "false")

from election_coordinator.core.errors import CoordinatorError, InvalidRequestError  # noqa: E402
from election_coordinator.schemas.election import TransactionReceipt  # noqa: E402
from election_coordinator.services.election_coordinator import ElectionCoordinator  # noqa: E402
from election_coordinator.services.idempotency_guard import IdempotencyGuard  # noqa: E402
from election_coordinator.services.signer_session import SignerSession  # noqa: E402
from election_coordinator.services.transaction_submitter import TransactionSubmitter  # noqa: E402

# Example key from the eth-account documentation; holds no funds anywhere
TEST_PRIVATE_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
CONTRACT_ADDRESS = "0x1234567890123456789012345678901234567890"


class FakeElectionContract:
    """
    In-memory stand-in for the election contract and its network.

    Accepted transactions are mined immediately unless ``auto_mine`` is off.
    Queue errors in ``send_failures`` / ``receipt_failures`` / ``lookup_failures``
    to make the next calls fail. Errors queued in ``drop_after_send`` are raised
    after the transaction was accepted, as when the connection drops before the
    node answers. Set ``reverts[method]`` to make a method revert.
    """

    def __init__(self, vote_arity: int = 1):
        self.arities = {"startElection": 1, "vote": vote_arity, "getResult": 1}
        self.nonce = 0
        self.auto_mine = True
        self.built: list[dict[str, Any]] = []
        self.sent: list[tuple[str, list[Any]]] = []
        self.send_failures: list[CoordinatorError] = []
        self.drop_after_send: list[CoordinatorError] = []
        self.lookup_failures: list[CoordinatorError] = []
        self.hashes: list[str] = []
        self.receipt_failures: list[CoordinatorError] = []
        self.send_gate: Optional[asyncio.Event] = None
        self.reverts: dict[str, str] = {}
        self.call_error: Optional[CoordinatorError] = None
        self.call_result: Any = None
        self.receipt_calls = 0
        self.closed = False
        self.tallies: dict[int, dict[int, int]] = {}
        self._pending: dict[str, tuple[str, list[Any]]] = {}
        self._receipts: dict[str, TransactionReceipt] = {}
        self._revert_reasons: dict[str, str] = {}
        self._last_built: Optional[tuple[str, list[Any]]] = None
        self._block = 100

    def arity(self, method: str) -> int:
        if method not in self.arities:
            raise InvalidRequestError(f"Unsupported contract method: {method}")
        return self.arities[method]

    async def call(self, method: str, args: list[Any]) -> Any:
        await asyncio.sleep(0)
        if self.call_error is not None:
            raise self.call_error
        if self.call_result is not None:
            return self.call_result
        return dict(self.tallies.get(args[0], {}))

    async def build_transaction(
        self, method: str, args: list[Any], tx_params: dict[str, Any]
    ) -> dict[str, Any]:
        await asyncio.sleep(0)
        tx = {
            "to": CONTRACT_ADDRESS,
            "value": 0,
            "gas": tx_params.get("gas", 200_000),
            "gasPrice": 1_000_000_000,
            "nonce": tx_params["nonce"],
            "chainId": 44787,
            "data": "0x" + json.dumps([method, args]).encode().hex(),
        }
        self.built.append(tx)
        self._last_built = (method, list(args))
        return tx

    async def send_raw_transaction(self, raw_transaction: bytes) -> str:
        if self.send_gate is not None:
            await self.send_gate.wait()
        await asyncio.sleep(0)
        if self.send_failures:
            raise self.send_failures.pop(0)

        method, args = self._last_built
        tx_hash = Web3.to_hex(Web3.keccak(bytes(raw_transaction)))
        self.nonce += 1
        self.sent.append((method, args))
        self.hashes.append(tx_hash)
        self._pending[tx_hash] = (method, args)
        if self.auto_mine:
            self.mine(tx_hash)
        if self.drop_after_send:
            raise self.drop_after_send.pop(0)
        return tx_hash

    async def transaction_exists(self, tx_hash: str) -> bool:
        await asyncio.sleep(0)
        if self.lookup_failures:
            raise self.lookup_failures.pop(0)
        return tx_hash in self._pending or tx_hash in self._receipts

    def mine(self, tx_hash: str) -> None:
        method, args = self._pending.pop(tx_hash)
        self._block += 1
        reason = self.reverts.get(method)
        if reason is None and method == "vote":
            candidate = args[1] if len(args) > 1 else 0
            tally = self.tallies.setdefault(args[0], {})
            tally[candidate] = tally.get(candidate, 0) + 1
        elif reason is not None:
            self._revert_reasons[tx_hash] = reason
        self._receipts[tx_hash] = TransactionReceipt(
            tx_hash=tx_hash,
            block_number=self._block,
            gas_used=21_000,
            status=0 if reason else 1,
        )

    async def get_transaction_count(self, address: str) -> int:
        await asyncio.sleep(0)
        return self.nonce

    async def get_receipt(self, tx_hash: str) -> Optional[TransactionReceipt]:
        await asyncio.sleep(0)
        self.receipt_calls += 1
        if self.receipt_failures:
            raise self.receipt_failures.pop(0)
        return self._receipts.get(tx_hash)

    async def get_revert_reason(self, tx_hash: str, block_number: int) -> Optional[str]:
        await asyncio.sleep(0)
        return self._revert_reasons.get(tx_hash)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_contract() -> FakeElectionContract:
    """Fresh in-memory election contract."""
    return FakeElectionContract()


@pytest.fixture
def private_key() -> SecretStr:
    return SecretStr(TEST_PRIVATE_KEY)


@pytest.fixture
def signer(fake_contract: FakeElectionContract, private_key: SecretStr) -> SignerSession:
    """Signer session holding the test key."""
    return SignerSession(fake_contract, private_key=private_key)


@pytest.fixture
def submitter(fake_contract: FakeElectionContract) -> TransactionSubmitter:
    """Submitter polling fast enough for tests."""
    return TransactionSubmitter(fake_contract, poll_interval=0.01)


@pytest.fixture
def guard() -> IdempotencyGuard:
    return IdempotencyGuard()


@pytest.fixture
def coordinator(
    signer: SignerSession,
    submitter: TransactionSubmitter,
    fake_contract: FakeElectionContract,
    guard: IdempotencyGuard,
) -> ElectionCoordinator:
    """Coordinator with no retry backoff and a short confirmation timeout."""
    return ElectionCoordinator(
        signer=signer,
        submitter=submitter,
        binding=fake_contract,
        guard=guard,
        max_attempts=3,
        backoff_base=0,
        backoff_max=0,
        confirmation_timeout=1.0,
        pending_expiry=900,
    )


@pytest.fixture
async def app(coordinator: ElectionCoordinator) -> AsyncGenerator[Any, None]:
    """FastAPI application wired to the in-memory coordinator."""
    from election_coordinator.api.deps import get_coordinator
    from election_coordinator.main import app as fastapi_app

    fastapi_app.dependency_overrides[get_coordinator] = lambda: coordinator
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
async def client(app: Any) -> AsyncGenerator[AsyncClient, None]:
    """Create async test client."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
