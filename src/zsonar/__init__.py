"""
zsonar: ping events over a ZeroMQ pub/sub broker.

This package provides the ping payload and its codec, a rate controlled
publisher, a listener that reports round-trip latency, and a small broker
to run them against.
"""
from __future__ import annotations
import asyncio
import platform
from typing import List

from .utils.msg import _get_zsonar_version
from .exceptions import (
    SonarError,
    DecodeError,
    BrokerError,
    BrokerConnectionError,
    TopicError,
    PublishError,
)
from .events import Event, EventType, NackCode
from .ping import Ping, Sonar, encode, decode


# Fix for Windows event loop to avoid ZMQ warnings
if platform.system() == "Windows":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())  # type: ignore

__version__ = _get_zsonar_version()

__all__: List[str] = [
    "Ping",
    "Sonar",
    "encode",
    "decode",
    "Event",
    "EventType",
    "NackCode",
    "SonarError",
    "DecodeError",
    "BrokerError",
    "BrokerConnectionError",
    "TopicError",
    "PublishError",
]
