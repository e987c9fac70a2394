"""
Cooperative cancellation helpers built on a shared asyncio.Event.

Every driver, executor and collaborator call observes the same stop event.
Setting it never interrupts anything abruptly: components notice it at their
next suspension point and unwind.
"""
import asyncio
from typing import Awaitable, TypeVar

from exceptions import OperationCancelledError

T = TypeVar("T")


def raise_if_stopped(stop_event: asyncio.Event):
    """Raise OperationCancelledError if stop was requested."""
    if stop_event.is_set():
        raise OperationCancelledError()


async def sleep_or_stop(stop_event: asyncio.Event, seconds: float) -> bool:
    """
    Wait for the given delay unless stop is requested first.

    Returns:
        True if stop was requested before, during or right after the delay.
    """
    if stop_event.is_set():
        return True

    if seconds <= 0:
        return stop_event.is_set()

    try:
        await asyncio.wait_for(stop_event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return stop_event.is_set()

    return True


async def run_or_stop(awaitable: Awaitable[T], stop_event: asyncio.Event) -> T:
    """
    Await a collaborator call, abandoning it if stop is requested first.

    Raises:
        OperationCancelledError: the stop event fired before the call finished.
    """
    if stop_event.is_set():
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise OperationCancelledError()

    call = asyncio.ensure_future(awaitable)
    stopper = asyncio.ensure_future(stop_event.wait())

    try:
        done, _ = await asyncio.wait({call, stopper}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        call.cancel()
        await asyncio.gather(call, return_exceptions=True)
        raise
    finally:
        stopper.cancel()

    if call in done:
        return call.result()

    call.cancel()
    # drain the abandoned call so its exception is never left unobserved
    await asyncio.gather(call, return_exceptions=True)
    raise OperationCancelledError()
