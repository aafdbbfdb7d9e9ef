from __future__ import annotations

import asyncio
import sys
from typing import Any, Optional, TextIO

from .config import CLEAR_EVERY
from .events import Event
from .exceptions import BrokerError, PublishError, TopicError
from .lifecycle import wait_for_stop
from .ping import Sonar
from .utils.log import _logger

CLEAR_LINE = "\033[2K\r"


async def resolve_topic(client: Any, name: str) -> str:
    """Return the id of topic ``name``, creating the topic if needed."""
    try:
        if await client.topic_exists(name):
            return await client.topic_id(name)
        return await client.create_topic(name)
    except TopicError:
        raise
    except BrokerError as e:
        raise TopicError(f"could not resolve topic {name!r}: {e}", e.status) from e


class Publisher:
    """Generates pings and publishes them to a topic until stopped.

    Writes ``.`` for every acked ping and ``x`` for every failed publish.
    """

    def __init__(
        self,
        client: Any,
        sonar: Optional[Sonar] = None,
        logger: Any = None,
        out: Optional[TextIO] = None,
        wait_for_ack: bool = True,
    ) -> None:
        self.client = client
        self.sonar = sonar if sonar is not None else Sonar()
        self.logger = logger if logger is not None else _logger
        self.out = out if out is not None else sys.stdout
        self.wait_for_ack = wait_for_ack
        self.count = 0
        self.acked = 0
        self.failed = 0

    async def run(self, topic: str, rate: float, stop: asyncio.Event) -> int:
        """Publish until ``stop`` is set; returns the number of attempted pings.

        A ``rate`` of zero or less publishes as fast as possible.
        """
        topic_id = await resolve_topic(self.client, topic)
        if rate > 0:
            await self._run_throttled(topic, topic_id, rate, stop)
        else:
            await self._run_max_rate(topic, topic_id, stop)
        self.out.write("\n")
        self.out.flush()
        self.logger.info("publisher stopped", topic=topic, sent=self.count, acked=self.acked, failed=self.failed)
        return self.count

    async def _run_throttled(self, topic: str, topic_id: str, rate: float, stop: asyncio.Event) -> None:
        interval = 1.0 / rate
        self.logger.info("starting rate limited publisher", topic=topic, hz=rate, interval_ms=interval * 1e3)
        loop = asyncio.get_running_loop()
        next_tick = loop.time() + interval
        while True:
            if await wait_for_stop(stop, next_tick - loop.time()):
                return
            next_tick += interval
            # a slow publish drops the ticks it missed instead of bursting
            if next_tick <= loop.time():
                next_tick = loop.time() + interval
            await self.publish_next(topic_id, stop)

    async def _run_max_rate(self, topic: str, topic_id: str, stop: asyncio.Event) -> None:
        self.logger.info("starting max rate publisher", topic=topic, wait_for_ack=self.wait_for_ack)
        while not stop.is_set():
            await self.publish_next(topic_id, stop)
            # yield so the interrupt handler can run between pings
            await asyncio.sleep(0)

    async def _publish(self, topic_id: str, event: Event, stop: Optional[asyncio.Event]) -> bool:
        """Publish ``event`` unless ``stop`` is set first; False if abandoned."""
        publishing = asyncio.ensure_future(self.client.publish(topic_id, event, wait=self.wait_for_ack))
        if stop is None:
            await publishing
            return True
        stopping = asyncio.ensure_future(stop.wait())
        try:
            await asyncio.wait({publishing, stopping}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            publishing.cancel()
            raise
        finally:
            stopping.cancel()
        if publishing.done():
            publishing.result()
            return True
        publishing.cancel()
        try:
            await publishing
        except (asyncio.CancelledError, PublishError):
            pass
        return False

    async def publish_next(self, topic_id: str, stop: Optional[asyncio.Event] = None) -> bool:
        """Generate one ping and publish it; False if the publish failed.

        An in-flight publish is abandoned as soon as ``stop`` is set.
        """
        self.count += 1
        if self.count % CLEAR_EVERY == 0:
            self.out.write(CLEAR_LINE)

        event = self.sonar.next().event()
        try:
            if not await self._publish(topic_id, event, stop):
                self.logger.debug("abandoned in-flight publish", sequence=self.sonar.sequence)
                return False
        except PublishError as e:
            self.failed += 1
            self.out.write("x")
            self.out.flush()
            self.logger.error("could not publish ping", error=str(e), status=e.status)
            return False

        if event.acked:
            self.acked += 1
            self.out.write(".")
        self.out.flush()
        return True
