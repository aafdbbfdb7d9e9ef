import asyncio
import os
import signal
import time

import pytest

from zsonar.lifecycle import connected, install_interrupt_handler, wait_for_stop


class RecordingClient:
    def __init__(self):
        self.calls = []

    async def connect(self):
        self.calls.append("connect")

    async def close(self):
        self.calls.append("close")


@pytest.mark.asyncio
async def test_connected_closes_on_success():
    client = RecordingClient()
    async with connected(client) as c:
        assert c is client
        assert client.calls == ["connect"]
    assert client.calls == ["connect", "close"]


@pytest.mark.asyncio
async def test_connected_closes_on_failure():
    client = RecordingClient()
    with pytest.raises(RuntimeError):
        async with connected(client):
            raise RuntimeError("command failed")
    assert client.calls == ["connect", "close"]


@pytest.mark.asyncio
async def test_wait_for_stop():
    stop = asyncio.Event()
    start = time.monotonic()
    assert await wait_for_stop(stop, 0.05) is False
    assert time.monotonic() - start >= 0.04
    assert await wait_for_stop(stop, 0) is False

    asyncio.get_running_loop().call_later(0.02, stop.set)
    assert await wait_for_stop(stop, 5.0) is True
    assert await wait_for_stop(stop, 0) is True


@pytest.mark.asyncio
@pytest.mark.skipif(os.name == "nt", reason="SIGINT cannot be raised in-process on Windows")
async def test_interrupt_sets_stop():
    stop = asyncio.Event()
    remove = install_interrupt_handler(stop)
    try:
        os.kill(os.getpid(), signal.SIGINT)
        await asyncio.wait_for(stop.wait(), timeout=1.0)
    finally:
        remove()
    assert stop.is_set()
