"""Cancellation and connection lifecycle shared by the commands."""

from __future__ import annotations

import asyncio
import platform
import signal
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Optional


def install_interrupt_handler(
    stop: asyncio.Event,
    loop: Optional[asyncio.AbstractEventLoop] = None,
) -> Callable[[], None]:
    """Set ``stop`` when the process is interrupted.

    Returns a function that removes the handler again.
    """
    loop = loop or asyncio.get_running_loop()
    if platform.system() != "Windows":
        try:
            loop.add_signal_handler(signal.SIGINT, stop.set)
            return lambda: loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass

    previous = signal.getsignal(signal.SIGINT)

    def handler(signum: int, frame: Any) -> None:
        loop.call_soon_threadsafe(stop.set)

    signal.signal(signal.SIGINT, handler)
    return lambda: signal.signal(signal.SIGINT, previous)


async def wait_for_stop(stop: asyncio.Event, timeout: float) -> bool:
    """Wait up to ``timeout`` seconds for ``stop``; True if it was set."""
    if stop.is_set():
        return True
    if timeout <= 0:
        return False
    try:
        await asyncio.wait_for(stop.wait(), timeout=timeout)
    except asyncio.TimeoutError:
        return stop.is_set()
    return True


@asynccontextmanager
async def connected(client: Any) -> AsyncIterator[Any]:
    """Connect before the command runs and close afterwards, whatever happens."""
    await client.connect()
    try:
        yield client
    finally:
        await client.close()
