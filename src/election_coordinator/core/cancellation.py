"""
Cancellable waits.

Callers hand an ``asyncio.Event`` to long-running operations; setting it ends
the local wait with ``OperationCancelledError``. Only the wait is abandoned:
awaitables passed here should be shielded by the caller when the underlying
work must run to completion.
"""

import asyncio
from typing import Awaitable, Optional, TypeVar

from election_coordinator.core.errors import OperationCancelledError

T = TypeVar("T")


async def wait_cancellable(
    awaitable: Awaitable[T],
    cancel: Optional[asyncio.Event],
    message: str = "Operation cancelled by caller",
) -> T:
    """Await ``awaitable`` unless ``cancel`` is set first."""
    if cancel is None:
        return await awaitable
    if cancel.is_set():
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise OperationCancelledError(message)

    work = asyncio.ensure_future(awaitable)
    cancelled = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({work, cancelled}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        raise
    finally:
        cancelled.cancel()

    if work.done():
        return work.result()

    work.cancel()
    raise OperationCancelledError(message)


async def sleep_cancellable(delay: float, cancel: Optional[asyncio.Event]) -> None:
    """Sleep for ``delay`` seconds, ending early with an error if cancelled."""
    if cancel is None:
        await asyncio.sleep(delay)
        return
    if cancel.is_set():
        raise OperationCancelledError("Operation cancelled by caller")
    try:
        await asyncio.wait_for(cancel.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return
    raise OperationCancelledError("Operation cancelled by caller")
