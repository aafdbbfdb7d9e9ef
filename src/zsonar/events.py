"""Event envelope exchanged with the broker."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Protocol, Tuple

from .exceptions import SonarError
from .utils.msg import Payload


class Settler(Protocol):
    """Anything that can acknowledge received events (a subscription)."""

    async def ack(self, event: Event) -> None: ...

    async def nack(self, event: Event, code: str) -> None: ...


class NackCode:
    """Reasons a subscriber can give when it rejects an event."""

    UNPROCESSED = "UNPROCESSED"
    UNKNOWN_TYPE = "UNKNOWN_TYPE"
    TIMEOUT = "TIMEOUT"


@dataclass(frozen=True)
class EventType:
    """Schema name and semantic version of an event payload."""

    name: str
    major: int = 0
    minor: int = 0
    patch: int = 0

    def semver(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"

    def __str__(self) -> str:
        return f"{self.name} v{self.semver()}"

    def to_wire(self) -> Tuple[str, int, int, int]:
        return (self.name, self.major, self.minor, self.patch)

    @classmethod
    def from_wire(cls, value: Any) -> EventType:
        name, major, minor, patch = value
        return cls(str(name), int(major), int(minor), int(patch))


@dataclass
class Event:
    """A payload plus the metadata the broker needs to route it.

    Outbound events are settled by the broker's reply to ``publish``; inbound
    events are settled by the subscriber calling :meth:`ack` or :meth:`nack`.
    """

    data: bytes
    mimetype: str
    type: EventType
    created: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    id: str = ""
    topic_id: str = ""
    committed: Optional[datetime] = None
    redeliveries: int = 0
    error: Optional[str] = None
    _state: Optional[bool] = field(default=None, repr=False, compare=False)
    _settler: Optional[Settler] = field(default=None, repr=False, compare=False)

    @property
    def acked(self) -> bool:
        return self._state is True

    @property
    def nacked(self) -> bool:
        return self._state is False

    def mark_acked(self, event_id: str = "", committed: Optional[datetime] = None) -> None:
        self._state = True
        if event_id:
            self.id = event_id
        if committed is not None:
            self.committed = committed

    def mark_nacked(self, error: str) -> None:
        self._state = False
        self.error = error

    def bind(self, settler: Settler) -> Event:
        """Attach the subscription that delivered this event."""
        self._settler = settler
        return self

    async def ack(self) -> None:
        """Tell the broker the event was processed."""
        if self._settler is None:
            raise SonarError("cannot ack an event that was not received from a subscription")
        await self._settler.ack(self)
        self._state = True

    async def nack(self, code: str = NackCode.UNPROCESSED) -> None:
        """Tell the broker the event was not processed and may be redelivered."""
        if self._settler is None:
            raise SonarError("cannot nack an event that was not received from a subscription")
        await self._settler.nack(self, code)
        self._state = False

    def to_wire(self) -> Payload:
        return {
            "id": self.id,
            "topic_id": self.topic_id,
            "type": list(self.type.to_wire()),
            "mimetype": self.mimetype,
            "data": self.data,
            "created": self.created,
            "committed": self.committed,
            "redeliveries": self.redeliveries,
        }

    @classmethod
    def from_wire(cls, payload: Payload) -> Event:
        """Build an event from an unpacked envelope.

        Raises KeyError, TypeError or ValueError for malformed envelopes.
        """
        data = payload["data"]
        if not isinstance(data, bytes):
            raise TypeError(f"event data must be bytes, not {type(data).__name__}")
        created = payload.get("created")
        if not isinstance(created, datetime):
            raise TypeError("event created timestamp is missing")
        committed = payload.get("committed")
        return cls(
            data=data,
            mimetype=str(payload["mimetype"]),
            type=EventType.from_wire(payload["type"]),
            created=created,
            id=str(payload.get("id") or ""),
            topic_id=str(payload.get("topic_id") or ""),
            committed=committed if isinstance(committed, datetime) else None,
            redeliveries=int(payload.get("redeliveries") or 0),
        )
