"""
Tests for API dependencies.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import ASGITransport, AsyncClient

from election_coordinator.api import deps
from election_coordinator.core.errors import CoordinatorUnavailableError


def _request(disconnected: bool, coordinator=None) -> MagicMock:
    request = MagicMock()
    request.is_disconnected = AsyncMock(return_value=disconnected)
    request.url.path = "/api/v1/elections"
    request.app.state.coordinator = coordinator
    return request


@pytest.mark.unit
class TestGetCoordinator:
    """Tests for get_coordinator."""

    def test_returns_configured_coordinator(self, coordinator) -> None:
        assert deps.get_coordinator(_request(False, coordinator)) is coordinator

    def test_unconfigured(self) -> None:
        with pytest.raises(CoordinatorUnavailableError):
            deps.get_coordinator(_request(False))

    async def test_unconfigured_endpoint_returns_503(self) -> None:
        """Without a configured contract every election endpoint answers 503."""
        from election_coordinator.main import app

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            response = await ac.get("/api/v1/elections/1/result")

        assert response.status_code == 503
        assert response.json()["error_kind"] == "ServiceUnavailable"


@pytest.mark.unit
class TestCancelSignal:
    """Tests for get_cancel_signal."""

    async def test_set_when_client_disconnects(self) -> None:
        signal = deps.get_cancel_signal(_request(True))
        cancel = await signal.__anext__()

        await asyncio.wait_for(cancel.wait(), timeout=1)
        await signal.aclose()

        assert cancel.is_set()

    async def test_not_set_while_connected(self, monkeypatch) -> None:
        monkeypatch.setattr(deps, "DISCONNECT_POLL_SECONDS", 0.01)
        request = _request(False)
        signal = deps.get_cancel_signal(request)
        cancel = await signal.__anext__()

        await asyncio.sleep(0.05)
        await signal.aclose()

        assert not cancel.is_set()
        assert request.is_disconnected.await_count >= 2
