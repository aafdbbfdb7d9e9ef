from __future__ import annotations

import asyncio
import traceback
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import msgpack
import zmq
import zmq.asyncio
from zmq.asyncio import Socket as AsyncSocket

from ..config import DEFAULT_BROKER_URL, DEFAULT_EVENTS_URL
from ..events import Event
from ..utils.log import _logger
from ..utils.msg import (
    Command,
    Payload,
    ResponseStatus,
    create_hash_identifier,
    get_socket_addr,
    pack,
    unpack,
    _get_zsonar_version,
)

Reply = Tuple[str, Payload]
Handler = Callable[[Payload], Awaitable[Reply]]


class RequestError(Exception):
    """Raised by a handler to answer with a non-success status."""

    def __init__(self, status: str, message: str) -> None:
        super().__init__(message)
        self.status = status


def _require_str(payload: Payload, key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise RequestError(ResponseStatus.INVALID_REQUEST, f"missing {key!r}")
    return value


class Broker:
    """In-memory topic broker.

    Requests arrive on a ROUTER socket as ``[identity, request_id, command,
    payload]`` and are answered with ``[identity, request_id, status,
    payload]``. Published events fan out on a PUB socket as
    ``[topic_id, envelope]``. Events stay pending until acked; a nack
    redelivers them up to ``max_redeliveries`` times.
    """

    def __init__(
        self,
        url: str = DEFAULT_BROKER_URL,
        events_url: str = DEFAULT_EVENTS_URL,
        max_redeliveries: int = 3,
        max_pending: int = 4096,
        logger: Any = None,
    ) -> None:
        self.logger = logger if logger is not None else _logger
        self.max_redeliveries = max_redeliveries
        self.max_pending = max_pending
        self.topics: Dict[str, str] = {}
        self.pending: OrderedDict[str, Event] = OrderedDict()
        self.stats: Dict[str, int] = {"published": 0, "acked": 0, "nacked": 0, "redelivered": 0}
        context = zmq.asyncio.Context.instance()
        self.router: AsyncSocket = context.socket(zmq.ROUTER)
        self.router.setsockopt(zmq.LINGER, 0)
        self.publisher: AsyncSocket = context.socket(zmq.PUB)
        self.publisher.setsockopt(zmq.LINGER, 0)
        self.router.bind(url)
        self.publisher.bind(events_url)
        self.url, _ = get_socket_addr(self.router)
        self.events_url, _ = get_socket_addr(self.publisher)
        self._running: bool = False
        self._handlers: Dict[str, Handler] = {
            Command.STATUS: self._status,
            Command.TOPIC_EXISTS: self._topic_exists,
            Command.CREATE_TOPIC: self._create_topic,
            Command.TOPIC_ID: self._topic_id,
            Command.PUBLISH: self._publish,
            Command.ACK: self._ack,
            Command.NACK: self._nack,
        }
        self.logger.info("broker bound", url=self.url, events=self.events_url)

    async def _status(self, payload: Payload) -> Reply:
        return ResponseStatus.SUCCESS, {
            "version": _get_zsonar_version(),
            "events": self.events_url,
            "topics": len(self.topics),
            **self.stats,
        }

    async def _topic_exists(self, payload: Payload) -> Reply:
        name = _require_str(payload, "name")
        return ResponseStatus.SUCCESS, {"exists": name in self.topics}

    async def _create_topic(self, payload: Payload) -> Reply:
        name = _require_str(payload, "name")
        if name in self.topics:
            raise RequestError(ResponseStatus.ALREADY_EXISTS, f"topic {name!r} already exists")
        topic_id = create_hash_identifier()
        self.topics[name] = topic_id
        self.logger.info("topic created", topic=name, topic_id=topic_id)
        return ResponseStatus.SUCCESS, {"id": topic_id}

    async def _topic_id(self, payload: Payload) -> Reply:
        name = _require_str(payload, "name")
        if name not in self.topics:
            raise RequestError(ResponseStatus.NOT_FOUND, f"topic {name!r} not found")
        return ResponseStatus.SUCCESS, {"id": self.topics[name]}

    async def _publish(self, payload: Payload) -> Reply:
        topic_id = _require_str(payload, "topic_id")
        if topic_id not in self.topics.values():
            raise RequestError(ResponseStatus.NOT_FOUND, f"topic id {topic_id!r} not found")
        try:
            event = Event.from_wire(payload["event"])
        except (KeyError, TypeError, ValueError) as e:
            raise RequestError(ResponseStatus.INVALID_REQUEST, f"malformed event: {e}") from e
        event.id = create_hash_identifier()
        event.topic_id = topic_id
        event.committed = datetime.now(timezone.utc)
        event.redeliveries = 0
        await self._fanout(event)
        self._remember(event)
        self.stats["published"] += 1
        return ResponseStatus.SUCCESS, {"id": event.id, "committed": event.committed}

    async def _ack(self, payload: Payload) -> Reply:
        event_id = _require_str(payload, "id")
        # other subscribers may have acked the same event already
        if self.pending.pop(event_id, None) is not None:
            self.stats["acked"] += 1
        return ResponseStatus.SUCCESS, {}

    async def _nack(self, payload: Payload) -> Reply:
        event_id = _require_str(payload, "id")
        code = payload.get("code", "")
        self.stats["nacked"] += 1
        event = self.pending.get(event_id)
        if event is None:
            return ResponseStatus.SUCCESS, {"redelivered": False}
        if event.redeliveries >= self.max_redeliveries:
            self.pending.pop(event_id)
            self.logger.warning("dropping event after redeliveries", id=event_id, code=code, redeliveries=event.redeliveries)
            return ResponseStatus.SUCCESS, {"redelivered": False}
        event.redeliveries += 1
        await self._fanout(event)
        self.stats["redelivered"] += 1
        self.logger.debug("event redelivered", id=event_id, code=code, redeliveries=event.redeliveries)
        return ResponseStatus.SUCCESS, {"redelivered": True}

    def _remember(self, event: Event) -> None:
        self.pending[event.id] = event
        while len(self.pending) > self.max_pending:
            self.pending.popitem(last=False)

    async def _fanout(self, event: Event) -> None:
        await self.publisher.send_multipart([event.topic_id.encode(), pack(event.to_wire())])

    async def handle(self, command: str, request: bytes) -> Tuple[str, bytes]:
        """Handle a single request and return (status, packed result)."""
        handler = self._handlers.get(command)
        if handler is None:
            self.logger.error("unknown command", command=command)
            return ResponseStatus.UNKNOWN_COMMAND, pack({"error": f"unknown command {command!r}"})
        try:
            payload = unpack(request) if request else {}
            if not isinstance(payload, dict):
                raise RequestError(ResponseStatus.INVALID_REQUEST, "request must be a map")
            status, result = await handler(payload)
        except RequestError as e:
            self.logger.debug("request failed", command=command, status=e.status, error=str(e))
            return e.status, pack({"error": str(e)})
        except (msgpack.UnpackException, ValueError) as e:
            self.logger.error("message unpacking error", command=command, error=str(e))
            return ResponseStatus.INVALID_REQUEST, pack({"error": str(e)})
        return status, pack(result)

    async def serve(self, stop: Optional[asyncio.Event] = None) -> None:
        """Answer requests until ``stop`` is set or the task is cancelled."""
        self._running = True
        self.logger.info("broker serving", url=self.url)
        while self._running and not (stop is not None and stop.is_set()):
            try:
                if not await self.router.poll(timeout=100):
                    continue
                frames: List[bytes] = await self.router.recv_multipart()
                if len(frames) != 4:
                    self.logger.warning("dropping malformed request", frames=len(frames))
                    continue
                identity, request_id, command, request = frames
                status, result = await self.handle(command.decode(errors="replace"), request)
                await self.router.send_multipart([identity, request_id, status.encode(), result])
            except asyncio.CancelledError:
                break
            except zmq.ZMQError as e:
                if not self._running:
                    break
                self.logger.error("broker loop error", error=str(e))
                traceback.print_exc()
        self._running = False
        self.logger.info("broker loop has been stopped")

    def close(self) -> None:
        """Stop serving and close both sockets."""
        self._running = False
        self.router.close()
        self.publisher.close()
        self.logger.info("broker has been closed")
