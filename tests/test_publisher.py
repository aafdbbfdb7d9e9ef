import asyncio
import io
import json
import time

import pytest

from conftest import FakeClient
from zsonar.exceptions import BrokerError, TopicError
from zsonar.ping import decode
from zsonar.publisher import CLEAR_LINE, Publisher, resolve_topic


async def stop_later(stop: asyncio.Event, delay: float) -> None:
    await asyncio.sleep(delay)
    stop.set()


@pytest.mark.asyncio
async def test_resolve_existing_topic():
    client = FakeClient(topics={"sonar.ping": "abc"})
    assert await resolve_topic(client, "sonar.ping") == "abc"
    assert client.created == []


@pytest.mark.asyncio
async def test_resolve_creates_missing_topic():
    client = FakeClient()
    topic_id = await resolve_topic(client, "sonar.ping")
    assert topic_id == "id-sonar.ping"
    assert client.created == ["sonar.ping"]


@pytest.mark.asyncio
async def test_resolve_failure_is_topic_error(sonar, logger):
    client = FakeClient()
    client.topic_error = BrokerError("boom", "UNKNOWN_ERROR")
    with pytest.raises(TopicError):
        await resolve_topic(client, "sonar.ping")

    publisher = Publisher(client, sonar, logger=logger, out=io.StringIO())
    with pytest.raises(TopicError):
        await publisher.run("sonar.ping", 10, asyncio.Event())
    assert client.published == []


@pytest.mark.asyncio
async def test_throttled_interval(sonar, logger):
    stop = asyncio.Event()
    client = FakeClient()
    out = io.StringIO()
    publisher = Publisher(client, sonar, logger=logger, out=out)
    stopper = asyncio.ensure_future(stop_later(stop, 0.65))
    count = await publisher.run("sonar.ping", 10, stop)
    await stopper

    assert 4 <= count <= 7
    times = client.publish_times
    gaps = [b - a for a, b in zip(times, times[1:])]
    assert gaps
    assert 0.08 <= sum(gaps) / len(gaps) <= 0.13
    assert out.getvalue() == "." * count + "\n"


@pytest.mark.asyncio
async def test_unthrottled_runs_without_delay(sonar, logger):
    stop = asyncio.Event()
    client = FakeClient(stop=stop, stop_after=200)
    publisher = Publisher(client, sonar, logger=logger, out=io.StringIO())
    start = time.monotonic()
    count = await publisher.run("sonar.ping", -1, stop)
    assert count == 200
    assert time.monotonic() - start < 1.0


@pytest.mark.asyncio
async def test_zero_rate_is_unthrottled(sonar, logger, log_stream):
    stop = asyncio.Event()
    client = FakeClient(stop=stop, stop_after=10)
    await Publisher(client, sonar, logger=logger, out=io.StringIO()).run("sonar.ping", 0, stop)
    assert len(client.published) == 10
    assert "starting max rate publisher" in log_stream.getvalue()


@pytest.mark.asyncio
async def test_publish_failures_do_not_stop_the_loop(sonar, logger, log_stream):
    stop = asyncio.Event()
    client = FakeClient(stop=stop, stop_after=12, fail_every=3)
    out = io.StringIO()
    publisher = Publisher(client, sonar, logger=logger, out=out)
    count = await publisher.run("sonar.ping", -1, stop)

    assert count == 12
    assert publisher.failed == 4
    assert publisher.acked == 8
    assert out.getvalue() == "..x..x..x..x\n"
    # every ping is a new one, failed pings are not retried
    assert [decode(e.data).sequence for e in client.published] == list(range(1, 13))

    errors = [json.loads(line) for line in log_stream.getvalue().splitlines()]
    errors = [e for e in errors if e["event"] == "could not publish ping"]
    assert len(errors) == 4
    assert errors[0]["level"] == "error"


@pytest.mark.asyncio
async def test_unacked_events_print_nothing(sonar, logger):
    stop = asyncio.Event()
    client = FakeClient(stop=stop, stop_after=5, ack=False)
    out = io.StringIO()
    publisher = Publisher(client, sonar, logger=logger, out=out, wait_for_ack=False)
    await publisher.run("sonar.ping", -1, stop)
    assert out.getvalue() == "\n"
    assert publisher.acked == 0


@pytest.mark.asyncio
async def test_output_cleared_every_64_events(sonar, logger):
    stop = asyncio.Event()
    client = FakeClient(stop=stop, stop_after=130)
    out = io.StringIO()
    await Publisher(client, sonar, logger=logger, out=out).run("sonar.ping", -1, stop)
    text = out.getvalue()
    assert text.count(CLEAR_LINE) == 2
    assert text.index(CLEAR_LINE) == 63


@pytest.mark.asyncio
@pytest.mark.parametrize("rate", [10, -1])
async def test_stop_before_start(sonar, logger, rate):
    stop = asyncio.Event()
    stop.set()
    client = FakeClient()
    out = io.StringIO()
    count = await asyncio.wait_for(
        Publisher(client, sonar, logger=logger, out=out).run("sonar.ping", rate, stop),
        timeout=1.0,
    )
    assert count == 0
    assert out.getvalue() == "\n"


@pytest.mark.asyncio
async def test_stop_within_one_tick(sonar, logger):
    stop = asyncio.Event()
    client = FakeClient()
    publisher = Publisher(client, sonar, logger=logger, out=io.StringIO())
    task = asyncio.ensure_future(publisher.run("sonar.ping", 2, stop))
    await asyncio.sleep(0.1)
    stop.set()
    # the next tick would be 0.5s away, stop must not wait for it
    count = await asyncio.wait_for(task, timeout=0.2)
    assert count == 0


@pytest.mark.asyncio
async def test_published_events_are_pings(sonar, logger):
    stop = asyncio.Event()
    client = FakeClient(topics={"sonar.ping": "abc"}, stop=stop, stop_after=3)
    await Publisher(client, sonar, logger=logger, out=io.StringIO()).run("sonar.ping", -1, stop)
    for event in client.published:
        assert event.topic_id == "abc"
        assert event.type.name == "ping"
        assert decode(event.data).hostname == "h1"


@pytest.mark.asyncio
@pytest.mark.parametrize("rate", [10, -1])
async def test_stop_abandons_unanswered_publish(sonar, logger, log_stream, rate):
    stop = asyncio.Event()
    client = FakeClient(hang=True)
    out = io.StringIO()
    publisher = Publisher(client, sonar, logger=logger, out=out)
    task = asyncio.ensure_future(publisher.run("sonar.ping", rate, stop))
    await asyncio.sleep(0.2)
    assert len(client.published) == 1

    stop.set()
    count = await asyncio.wait_for(task, timeout=0.5)
    assert count == 1
    assert publisher.acked == publisher.failed == 0
    assert out.getvalue() == "\n"
    assert "abandoned in-flight publish" in log_stream.getvalue()
