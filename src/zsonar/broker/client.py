"""Client side of the broker protocol: requests, publishing and subscriptions."""

from __future__ import annotations

import asyncio
import itertools
import traceback
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple, Type

import msgpack
import zmq
import zmq.asyncio
from zmq.asyncio import Socket as AsyncSocket

from ..config import DEFAULT_BROKER_URL, DEFAULT_CONNECT_TIMEOUT, DEFAULT_REQUEST_TIMEOUT
from ..events import Event, NackCode
from ..exceptions import BrokerConnectionError, BrokerError, PublishError
from ..utils.log import _logger
from ..utils.msg import Command, Payload, ResponseStatus, pack, resolve_endpoint, unpack

Response = Tuple[str, bytes]


class Subscription:
    """Receives events for a set of topic ids from the broker's PUB socket."""

    def __init__(self, client: BrokerClient, endpoint: str, topic_ids: Tuple[str, ...]) -> None:
        self.client = client
        self.topic_ids = topic_ids
        self.logger = client.logger
        self._socket: AsyncSocket = zmq.asyncio.Context.instance().socket(zmq.SUB)
        self._socket.setsockopt(zmq.LINGER, 0)
        for topic_id in topic_ids:
            self._socket.setsockopt(zmq.SUBSCRIBE, topic_id.encode())
        self._socket.connect(endpoint)
        self.closed = False
        self.logger.info("subscription connected", endpoint=endpoint, topics=list(topic_ids))

    async def recv(self) -> Event:
        """Block until the next well-formed event arrives."""
        while True:
            frames = await self._socket.recv_multipart()
            if len(frames) != 2:
                self.logger.warning("dropping malformed event", frames=len(frames))
                continue
            try:
                envelope = unpack(frames[1])
                if not isinstance(envelope, dict):
                    raise TypeError("envelope must be a map")
                event = Event.from_wire(envelope)
            except (msgpack.UnpackException, KeyError, TypeError, ValueError) as e:
                self.logger.error("could not unpack event envelope", error=str(e))
                continue
            return event.bind(self)

    async def ack(self, event: Event) -> None:
        await self.client.request(Command.ACK, {"id": event.id})

    async def nack(self, event: Event, code: str = NackCode.UNPROCESSED) -> None:
        await self.client.request(Command.NACK, {"id": event.id, "code": code})

    def __aiter__(self) -> AsyncIterator[Event]:
        return self

    async def __anext__(self) -> Event:
        if self.closed:
            raise StopAsyncIteration
        return await self.recv()

    async def close(self) -> None:
        """Release the subscription socket."""
        if self.closed:
            return
        self.closed = True
        self._socket.close()
        self.logger.info("subscription has been closed", topics=list(self.topic_ids))


class BrokerClient:
    """Connection to a zsonar broker.

    All requests share one DEALER socket; a dispatcher task matches replies to
    the waiting futures by request id. A DEALER never notices a lost peer, so
    every request is bounded by ``request_timeout``.
    """

    def __init__(
        self,
        url: str = DEFAULT_BROKER_URL,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        logger: Any = None,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> None:
        self.url = url
        self.connect_timeout = connect_timeout
        self.request_timeout = request_timeout
        self.logger = logger if logger is not None else _logger
        self.events_url: Optional[str] = None
        self._socket: Optional[AsyncSocket] = None
        self._dispatcher: Optional[asyncio.Task] = None
        self._pending: Dict[bytes, asyncio.Future] = {}
        self._ids = itertools.count(1)
        self._subscriptions: List[Subscription] = []

    @property
    def connected(self) -> bool:
        return self._socket is not None

    async def connect(self) -> None:
        """Open the request socket and wait for the broker to answer."""
        if self._socket is not None:
            return
        self._socket = zmq.asyncio.Context.instance().socket(zmq.DEALER)
        self._socket.setsockopt(zmq.LINGER, 0)
        try:
            self._socket.connect(self.url)
        except zmq.ZMQError as e:
            await self.close()
            raise BrokerConnectionError(f"invalid broker url {self.url!r}: {e}") from e
        self._dispatcher = asyncio.ensure_future(self._dispatch_loop())
        try:
            status = await self.request(
                Command.STATUS, {}, timeout=self.connect_timeout, error_class=BrokerConnectionError
            )
        except BrokerError:
            await self.close()
            raise
        self.events_url = resolve_endpoint(str(status.get("events", "")), self.url)
        self.logger.debug("connected to broker", url=self.url, events=self.events_url, version=status.get("version"))

    async def close(self) -> None:
        """Close subscriptions and the request socket, failing pending requests."""
        for subscription in self._subscriptions:
            await subscription.close()
        self._subscriptions.clear()
        if self._dispatcher is not None:
            self._dispatcher.cancel()
            try:
                await self._dispatcher
            except asyncio.CancelledError:
                pass
            self._dispatcher = None
        self._fail_pending("connection closed")
        if self._socket is not None:
            self._socket.close()
            self._socket = None
            self.logger.debug("disconnected from broker", url=self.url)

    def _fail_pending(self, reason: str) -> None:
        for future in list(self._pending.values()):
            if not future.done():
                future.set_exception(BrokerConnectionError(reason))
        self._pending.clear()

    async def _dispatch_loop(self) -> None:
        """Route replies from the broker to the futures waiting for them."""
        assert self._socket is not None
        try:
            while True:
                try:
                    frames = await self._socket.recv_multipart()
                except zmq.ZMQError as e:
                    self.logger.error("error receiving from broker", error=str(e))
                    traceback.print_exc()
                    break
                if len(frames) != 3:
                    self.logger.warning("dropping malformed reply", frames=len(frames))
                    continue
                request_id, status, payload = frames
                future = self._pending.pop(request_id, None)
                if future is not None and not future.done():
                    future.set_result((status.decode(errors="replace"), payload))
        finally:
            # nothing will answer the requests still in flight
            self._fail_pending("no longer receiving from broker")

    async def _send(self, command: str, payload: Payload) -> asyncio.Future:
        if self._socket is None:
            raise BrokerConnectionError("client is not connected")
        if self._dispatcher is None or self._dispatcher.done():
            raise BrokerConnectionError("no longer receiving from broker")
        request_id = str(next(self._ids)).encode()
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        # a timed out or cancelled request must not stay pending
        future.add_done_callback(lambda _: self._pending.pop(request_id, None))
        try:
            await self._socket.send_multipart([request_id, command.encode(), pack(payload)])
        except zmq.ZMQError as e:
            future.cancel()
            raise BrokerError(f"could not send {command} request: {e}") from e
        except asyncio.CancelledError:
            future.cancel()
            raise
        return future

    @staticmethod
    def _result(
        command: str,
        response: Response,
        error_class: Type[BrokerError] = BrokerError,
    ) -> Payload:
        status, payload = response
        try:
            result = unpack(payload) if payload else {}
        except (msgpack.UnpackException, ValueError) as e:
            raise error_class(f"invalid {command} response: {e}", ResponseStatus.UNKNOWN_ERROR) from e
        if not isinstance(result, dict):
            raise error_class(f"invalid {command} response", ResponseStatus.UNKNOWN_ERROR)
        if ResponseStatus.is_error(status):
            raise error_class(str(result.get("error", status)), status)
        return result

    async def _roundtrip(self, command: str, payload: Payload, timeout: float) -> Response:
        async def roundtrip() -> Response:
            future = await self._send(command, payload)
            return await future

        try:
            return await asyncio.wait_for(roundtrip(), timeout=timeout)
        except asyncio.TimeoutError:
            raise BrokerConnectionError(
                f"broker at {self.url} did not answer {command} within {timeout}s"
            ) from None

    async def request(
        self,
        command: str,
        payload: Payload,
        timeout: Optional[float] = None,
        error_class: Type[BrokerError] = BrokerError,
    ) -> Payload:
        """Send a request and wait for its result.

        Raises ``error_class`` when the broker answers with an error status,
        does not answer within ``timeout`` (``request_timeout`` by default) or
        the connection is lost.
        """
        timeout = self.request_timeout if timeout is None else timeout
        try:
            response = await self._roundtrip(command, payload, timeout)
        except BrokerError as e:
            if isinstance(e, error_class):
                raise
            raise error_class(str(e), e.status) from e
        return self._result(command, response, error_class)

    async def topic_exists(self, name: str) -> bool:
        result = await self.request(Command.TOPIC_EXISTS, {"name": name})
        return bool(result.get("exists"))

    async def create_topic(self, name: str) -> str:
        result = await self.request(Command.CREATE_TOPIC, {"name": name})
        return str(result["id"])

    async def topic_id(self, name: str) -> str:
        result = await self.request(Command.TOPIC_ID, {"name": name})
        return str(result["id"])

    async def publish(self, topic_id: str, event: Event, wait: bool = True) -> None:
        """Publish an event to a topic.

        With ``wait`` the call returns once the broker has acked the event.
        Without it the call returns as soon as the request is sent and the
        event is settled whenever the reply arrives, or nacked once
        ``request_timeout`` passes without one.
        """
        event.topic_id = topic_id
        request = {"topic_id": topic_id, "event": event.to_wire()}
        if not wait:
            try:
                future = await asyncio.wait_for(self._send(Command.PUBLISH, request), timeout=self.request_timeout)
            except asyncio.TimeoutError:
                event.mark_nacked("timed out sending publish request")
                raise PublishError(f"could not send publish request within {self.request_timeout}s") from None
            except BrokerError as e:
                event.mark_nacked(str(e))
                raise PublishError(str(e), e.status) from e
            future.add_done_callback(lambda f: self._settle(event, f))
            asyncio.get_running_loop().call_later(self.request_timeout, future.cancel)
            return

        try:
            result = await self.request(Command.PUBLISH, request, error_class=PublishError)
        except PublishError as e:
            event.mark_nacked(str(e))
            raise
        event.mark_acked(str(result.get("id", "")), result.get("committed"))

    def _settle(self, event: Event, future: asyncio.Future) -> None:
        if future.cancelled():
            event.mark_nacked("no publish reply from broker")
            return
        if future.exception() is not None:
            event.mark_nacked(str(future.exception()))
            return
        try:
            result = self._result(Command.PUBLISH, future.result(), PublishError)
        except PublishError as e:
            event.mark_nacked(str(e))
            self.logger.error("event was not acked", error=str(e))
            return
        event.mark_acked(str(result.get("id", "")), result.get("committed"))

    async def subscribe(self, *topic_ids: str) -> Subscription:
        """Subscribe to events published on the given topic ids."""
        if self._socket is None or self.events_url is None:
            raise BrokerConnectionError("client is not connected")
        subscription = Subscription(self, self.events_url, topic_ids)
        self._subscriptions.append(subscription)
        return subscription

    async def __aenter__(self) -> BrokerClient:
        await self.connect()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()
