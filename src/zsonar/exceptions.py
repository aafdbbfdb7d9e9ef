"""
Custom exceptions for zsonar.

All exceptions inherit from SonarError so callers can catch
everything with a single except clause if needed.
"""

from typing import Optional


class SonarError(Exception):
    """Base exception for all zsonar errors."""


class DecodeError(SonarError):
    """Raised when a ping payload cannot be decoded.

    Example::

        try:
            ping = decode(event.data)
        except DecodeError as e:
            print(f"Malformed ping: {e}")
    """


class BrokerError(SonarError):
    """Raised when the broker rejects a request or cannot be reached."""

    def __init__(self, message: str, status: Optional[str] = None) -> None:
        super().__init__(message)
        self.status = status


class BrokerConnectionError(BrokerError):
    """Raised when the broker does not answer the connection handshake.

    Example::

        try:
            await client.connect()
        except BrokerConnectionError as e:
            print(f"Cannot connect: {e}")
    """


class TopicError(BrokerError):
    """Raised when a topic cannot be looked up or created."""


class PublishError(BrokerError):
    """Raised when an event could not be delivered to the broker."""
