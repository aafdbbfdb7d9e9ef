"""Ping payload, its msgpack codec and the sequence generator."""

from __future__ import annotations

import socket
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterator, Optional

import msgpack

from .config import DEFAULT_TTL, MIMETYPE, SCHEMA_NAME
from .events import Event, EventType
from .exceptions import DecodeError
from .utils.log import _logger
from .utils.msg import _parse_version, pack

_ONE_MICROSECOND = timedelta(microseconds=1)

PING_EVENT_TYPE = EventType(SCHEMA_NAME, *_parse_version())


@dataclass
class Ping:
    """One probe. ``received_at`` and ``byte_size`` only exist on the receiver."""

    sequence: int
    hostname: str
    ipaddr: str
    ttl: timedelta
    timestamp: datetime
    received_at: Optional[datetime] = field(default=None, compare=False)
    byte_size: Optional[int] = field(default=None, compare=False)

    def size(self) -> int:
        """Number of bytes of the encoded ping."""
        if self.byte_size is None:
            self.byte_size = len(encode(self))
        return self.byte_size

    def latency(self) -> timedelta:
        """Time between creation by the sender and receipt."""
        if self.received_at is None:
            self.received_at = datetime.now(timezone.utc)
        return self.received_at - self.timestamp

    def sender(self) -> str:
        if self.hostname and self.ipaddr:
            return f"{self.hostname} ({self.ipaddr})"
        if self.hostname:
            return self.hostname
        if self.ipaddr:
            return self.ipaddr
        return "unknown"

    def event(self) -> Event:
        """Wrap the encoded ping into an outbound event."""
        return Event(
            data=encode(self),
            mimetype=MIMETYPE,
            type=PING_EVENT_TYPE,
            created=datetime.now(timezone.utc),
        )

    def __str__(self) -> str:
        return (
            f"{self.size()} bytes from {self.sender()}: seq={self.sequence} "
            f"ttl={format_duration(self.ttl)} time={format_duration(self.latency())}"
        )


def _fraction(whole: int, part: int, width: int) -> str:
    digits = f"{part:0{width}d}".rstrip("0")
    return f"{whole}.{digits}" if digits else str(whole)


def format_duration(delta: timedelta) -> str:
    """Render a duration at full precision, e.g. 750ms, 1.234ms or 1m30.5s."""
    micros = (delta.days * 86_400 + delta.seconds) * 1_000_000 + delta.microseconds
    sign = "-" if micros < 0 else ""
    micros = abs(micros)
    if micros == 0:
        return "0s"
    if micros < 1_000:
        return f"{sign}{micros}µs"
    if micros < 1_000_000:
        return f"{sign}{_fraction(micros // 1_000, micros % 1_000, 3)}ms"

    seconds, micros = divmod(micros, 1_000_000)
    minutes, seconds = divmod(seconds, 60)
    hours, minutes = divmod(minutes, 60)
    text = f"{_fraction(seconds, micros, 6)}s"
    if hours:
        return f"{sign}{hours}h{minutes}m{text}"
    if minutes:
        return f"{sign}{minutes}m{text}"
    return sign + text


def _ttl_to_nanos(ttl: timedelta) -> int:
    return (ttl.days * 86_400 + ttl.seconds) * 1_000_000_000 + ttl.microseconds * 1_000


def encode(ping: Ping) -> bytes:
    """Serialize the wire fields of a ping as a msgpack map."""
    return pack(
        {
            "sequence": ping.sequence,
            "hostname": ping.hostname,
            "ipaddr": ping.ipaddr,
            "ttl": _ttl_to_nanos(ping.ttl),
            "timestamp": ping.timestamp,
        }
    )


def _field(obj: Dict[Any, Any], key: str, kind: type, default: Any) -> Any:
    value = obj.get(key, default)
    if not isinstance(value, kind) or isinstance(value, bool):
        raise DecodeError(f"field {key!r} must be {kind.__name__}, not {type(value).__name__}")
    return value


def decode(data: bytes) -> Ping:
    """Deserialize a ping, stamping the receiver-only fields.

    Unknown keys are ignored. Raises DecodeError for malformed input.
    """
    received_at = datetime.now(timezone.utc)
    try:
        obj = msgpack.unpackb(data, raw=False, timestamp=3, strict_map_key=False)
    except (msgpack.UnpackException, ValueError, TypeError) as e:
        raise DecodeError(f"could not unpack ping: {e}") from e

    if not isinstance(obj, dict):
        raise DecodeError(f"ping must be a map, not {type(obj).__name__}")
    if "timestamp" not in obj:
        raise DecodeError("ping has no timestamp")

    sequence = _field(obj, "sequence", int, 0)
    if sequence < 0:
        raise DecodeError(f"invalid sequence {sequence}")
    timestamp = obj["timestamp"]
    if not isinstance(timestamp, datetime):
        raise DecodeError(f"field 'timestamp' must be a timestamp, not {type(timestamp).__name__}")

    return Ping(
        sequence=sequence,
        hostname=_field(obj, "hostname", str, ""),
        ipaddr=_field(obj, "ipaddr", str, ""),
        ttl=timedelta(microseconds=_field(obj, "ttl", int, 0) // 1_000),
        timestamp=timestamp,
        received_at=received_at,
        byte_size=len(data),
    )


def get_hostname() -> str:
    try:
        return socket.gethostname()
    except OSError:
        return ""


def get_outbound_ip(target: str = "8.8.8.8", port: int = 80) -> str:
    """Preferred outbound IP of this machine, or "" if there is no route.

    Connecting a UDP socket sends nothing, it only asks the kernel for a route.
    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.connect((target, port))
        return sock.getsockname()[0]
    except OSError as e:
        _logger.debug("could not determine outbound ip", error=str(e))
        return ""
    finally:
        sock.close()


class Sonar:
    """Produces successive pings sharing one sender identity.

    Not safe for concurrent use: ``next`` mutates the sequence counter, so
    concurrent publishers would have to serialize their calls.
    """

    def __init__(
        self,
        hostname: Optional[str] = None,
        ipaddr: Optional[str] = None,
        ttl: timedelta = DEFAULT_TTL,
    ) -> None:
        self.hostname = get_hostname() if hostname is None else hostname
        self.ipaddr = get_outbound_ip() if ipaddr is None else ipaddr
        self.ttl = ttl
        self.sequence = 0
        self._last: Optional[datetime] = None

    def _now(self) -> datetime:
        now = datetime.now(timezone.utc)
        if self._last is not None and now <= self._last:
            now = self._last + _ONE_MICROSECOND
        self._last = now
        return now

    def next(self) -> Ping:
        self.sequence += 1
        return Ping(
            sequence=self.sequence,
            hostname=self.hostname,
            ipaddr=self.ipaddr,
            ttl=self.ttl,
            timestamp=self._now(),
        )

    def __iter__(self) -> Iterator[Ping]:
        return self

    def __next__(self) -> Ping:
        return self.next()
