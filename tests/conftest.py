"""
Shared test fixtures and fakes for zsonar tests.
"""

import asyncio
import io
import logging
from typing import List, Optional

import pytest

from zsonar.events import Event
from zsonar.exceptions import BrokerError, PublishError
from zsonar.ping import Sonar
from zsonar.utils.log import LogConfig


class FakeClient:
    """Stands in for BrokerClient; records what the loops do with it."""

    def __init__(self, topics=None, fail_every: int = 0, stop_after: int = 0,
                 stop: Optional[asyncio.Event] = None, ack: bool = True, hang: bool = False):
        self.topics = dict(topics or {})
        self.fail_every = fail_every
        self.stop_after = stop_after
        self.stop = stop
        self.ack = ack
        self.hang = hang
        self.created: List[str] = []
        self.published: List[Event] = []
        self.publish_times: List[float] = []
        self.subscription: Optional[FakeSubscription] = None
        self.topic_error: Optional[BrokerError] = None

    async def topic_exists(self, name):
        if self.topic_error is not None:
            raise self.topic_error
        return name in self.topics

    async def topic_id(self, name):
        return self.topics[name]

    async def create_topic(self, name):
        self.topics[name] = f"id-{name}"
        self.created.append(name)
        return self.topics[name]

    async def publish(self, topic_id, event, wait=True):
        self.publish_times.append(asyncio.get_running_loop().time())
        self.published.append(event)
        n = len(self.published)
        if self.stop is not None and self.stop_after and n >= self.stop_after:
            self.stop.set()
        if self.hang:
            # a broker that never replies
            await asyncio.get_running_loop().create_future()
        if self.fail_every and n % self.fail_every == 0:
            event.mark_nacked("broker unavailable")
            raise PublishError("broker unavailable")
        event.topic_id = topic_id
        if self.ack:
            event.mark_acked(f"event-{n}")

    async def subscribe(self, *topic_ids):
        self.subscription = FakeSubscription(topic_ids)
        return self.subscription


class FakeSubscription:
    """Feeds events from a queue and records how they were settled."""

    def __init__(self, topic_ids=()):
        self.topic_ids = topic_ids
        self.queue: asyncio.Queue = asyncio.Queue()
        self.acks: List[Event] = []
        self.nacks: List[tuple] = []
        self.closed = False
        self.fail_settle = False

    def put(self, event: Event) -> None:
        self.queue.put_nowait(event.bind(self))

    async def recv(self) -> Event:
        return await self.queue.get()

    async def ack(self, event):
        if self.fail_settle:
            raise BrokerError("ack failed")
        self.acks.append(event)

    async def nack(self, event, code):
        if self.fail_settle:
            raise BrokerError("nack failed")
        self.nacks.append((event, code))

    async def close(self):
        self.closed = True


@pytest.fixture
def sonar():
    return Sonar(hostname="h1", ipaddr="10.0.0.5")


@pytest.fixture
def log_stream():
    return io.StringIO()


@pytest.fixture
def logger(log_stream):
    return LogConfig(level=logging.DEBUG, stream=log_stream).get_logger("test")
