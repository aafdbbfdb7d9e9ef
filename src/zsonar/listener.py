from __future__ import annotations

import asyncio
import sys
from typing import Any, Optional, TextIO

from .events import Event, NackCode
from .exceptions import BrokerError, DecodeError
from .ping import Ping, decode
from .publisher import resolve_topic
from .utils.log import _logger


class Listener:
    """Subscribes to a topic and prints every ping it receives."""

    def __init__(self, client: Any, logger: Any = None, out: Optional[TextIO] = None) -> None:
        self.client = client
        self.logger = logger if logger is not None else _logger
        self.out = out if out is not None else sys.stdout
        self.received = 0
        self.rejected = 0

    async def run(self, topic: str, stop: asyncio.Event) -> int:
        """Listen until ``stop`` is set; returns the number of pings printed."""
        topic_id = await resolve_topic(self.client, topic)
        subscription = await self.client.subscribe(topic_id)
        self.logger.info("listening for pings", topic=topic, topic_id=topic_id)
        try:
            while not stop.is_set():
                event = await self._receive(subscription, stop)
                if event is None:
                    break
                await self.handle(event)
        finally:
            await subscription.close()
        self.logger.info("listener stopped", topic=topic, received=self.received, rejected=self.rejected)
        return self.received

    async def _receive(self, subscription: Any, stop: asyncio.Event) -> Optional[Event]:
        """Wait for the next event or for ``stop``, whichever comes first."""
        receiving = asyncio.ensure_future(subscription.recv())
        stopping = asyncio.ensure_future(stop.wait())
        try:
            await asyncio.wait({receiving, stopping}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            receiving.cancel()
            raise
        finally:
            stopping.cancel()
        if receiving.done():
            return receiving.result()
        receiving.cancel()
        try:
            await receiving
        except asyncio.CancelledError:
            pass
        return None

    async def handle(self, event: Event) -> Optional[Ping]:
        """Print a decodable ping and ack it, nack anything else."""
        try:
            ping = decode(event.data)
        except DecodeError as e:
            self.rejected += 1
            self.logger.error(
                "could not unmarshal ping",
                error=str(e),
                type=str(event.type),
                mimetype=event.mimetype,
            )
            await self._settle(event, acked=False)
            return None

        self.received += 1
        self.out.write(f"{ping}\n")
        self.out.flush()
        await self._settle(event, acked=True)
        return ping

    async def _settle(self, event: Event, acked: bool) -> None:
        try:
            if acked:
                await event.ack()
            else:
                await event.nack(NackCode.UNPROCESSED)
        except BrokerError as e:
            self.logger.error("could not settle event", id=event.id, ack=acked, error=str(e))
