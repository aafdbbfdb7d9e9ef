import asyncio
import io
import json

import pytest

from conftest import FakeClient
from zsonar.events import Event, EventType, NackCode
from zsonar.exceptions import SonarError
from zsonar.listener import Listener


def garbage_event() -> Event:
    return Event(data=b"\x93\x01\x02", mimetype="application/json", type=EventType("pong", 2, 0, 1))


async def run_listener(client, logger, out, events, settle_time=0.05):
    stop = asyncio.Event()
    listener = Listener(client, logger=logger, out=out)
    task = asyncio.ensure_future(listener.run("sonar.ping", stop))
    while client.subscription is None:
        await asyncio.sleep(0.01)
    for event in events:
        client.subscription.put(event)
    await asyncio.sleep(settle_time)
    stop.set()
    received = await asyncio.wait_for(task, timeout=1.0)
    return listener, received


@pytest.mark.asyncio
async def test_prints_and_acks_pings(sonar, logger):
    client = FakeClient(topics={"sonar.ping": "abc"})
    out = io.StringIO()
    events = [sonar.next().event() for _ in range(3)]
    listener, received = await run_listener(client, logger, out, events)

    assert received == 3
    lines = out.getvalue().splitlines()
    assert len(lines) == 3
    assert lines[0].startswith(f"{len(events[0].data)} bytes from h1 (10.0.0.5): seq=1 ttl=750ms time=")
    assert "seq=3" in lines[2]
    assert client.subscription.acks == events
    assert client.subscription.nacks == []
    assert client.subscription.topic_ids == ("abc",)
    assert all(e.acked for e in events)


@pytest.mark.asyncio
async def test_nacks_undecodable_events(sonar, logger, log_stream):
    client = FakeClient()
    out = io.StringIO()
    bad = garbage_event()
    good = sonar.next().event()
    listener, received = await run_listener(client, logger, out, [bad, good])

    assert received == 1
    assert listener.rejected == 1
    assert client.subscription.nacks == [(bad, NackCode.UNPROCESSED)]
    assert client.subscription.acks == [good]
    assert bad.nacked
    assert "seq=1" in out.getvalue()

    records = [json.loads(line) for line in log_stream.getvalue().splitlines()]
    errors = [r for r in records if r["event"] == "could not unmarshal ping"]
    assert len(errors) == 1
    assert errors[0]["type"] == "pong v2.0.1"
    assert errors[0]["mimetype"] == "application/json"


@pytest.mark.asyncio
async def test_stop_while_waiting_closes_subscription(logger):
    client = FakeClient()
    listener, received = await run_listener(client, logger, io.StringIO(), [])
    assert received == 0
    assert client.subscription.closed


@pytest.mark.asyncio
async def test_stop_before_start(logger):
    client = FakeClient()
    stop = asyncio.Event()
    stop.set()
    received = await asyncio.wait_for(Listener(client, logger=logger).run("sonar.ping", stop), timeout=1.0)
    assert received == 0
    assert client.subscription.closed
    assert client.created == ["sonar.ping"]


@pytest.mark.asyncio
async def test_settle_failures_are_logged(sonar, logger, log_stream):
    client = FakeClient()
    stop = asyncio.Event()
    listener = Listener(client, logger=logger, out=io.StringIO())
    task = asyncio.ensure_future(listener.run("sonar.ping", stop))
    while client.subscription is None:
        await asyncio.sleep(0.01)
    client.subscription.fail_settle = True
    client.subscription.put(sonar.next().event())
    client.subscription.put(garbage_event())
    client.subscription.put(sonar.next().event())
    await asyncio.sleep(0.05)
    stop.set()
    assert await asyncio.wait_for(task, timeout=1.0) == 2
    assert log_stream.getvalue().count("could not settle event") == 3


@pytest.mark.asyncio
async def test_handle_returns_decoded_ping(sonar, logger):
    client = FakeClient()
    listener = Listener(client, logger=logger, out=io.StringIO())
    ping = sonar.next()
    event = ping.event()
    event.bind(await client.subscribe("abc"))
    decoded = await listener.handle(event)
    assert decoded == ping
    assert decoded.byte_size == len(event.data)


@pytest.mark.asyncio
async def test_outbound_events_cannot_be_settled(sonar):
    event = sonar.next().event()
    with pytest.raises(SonarError):
        await event.ack()
    with pytest.raises(SonarError):
        await event.nack()
