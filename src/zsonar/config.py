"""Constants and environment-driven settings for zsonar."""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import timedelta
from typing import Mapping, Optional

from dotenv import find_dotenv, load_dotenv

DEFAULT_TOPIC = "sonar.ping"
DEFAULT_RATE = 30.0
DEFAULT_TTL = timedelta(milliseconds=750)
DEFAULT_BROKER_URL = "tcp://127.0.0.1:7777"
DEFAULT_EVENTS_URL = "tcp://127.0.0.1:7778"
DEFAULT_CONNECT_TIMEOUT = 2.0
# longest wait for any broker reply once connected
DEFAULT_REQUEST_TIMEOUT = 5.0
DEFAULT_LOG_LEVEL = "info"

MIMETYPE = "application/msgpack"
SCHEMA_NAME = "ping"

# every N published events the progress line is cleared
CLEAR_EVERY = 64

ENV_PREFIX = "ZSONAR_"

_TRUTHY = ("1", "true", "t", "yes", "y", "on")


def _get_bool(value: Optional[str], default: bool) -> bool:
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in _TRUTHY


def _get_float(value: Optional[str], default: float, name: str) -> float:
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"invalid value {value!r} for {name}") from None


@dataclass
class Settings:
    """Process settings, overridable from the environment."""

    topic: str = DEFAULT_TOPIC
    log_level: str = DEFAULT_LOG_LEVEL
    console_log: bool = False
    broker_url: str = DEFAULT_BROKER_URL
    events_url: str = DEFAULT_EVENTS_URL
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> Settings:
        env = os.environ if environ is None else environ
        return cls(
            topic=env.get(ENV_PREFIX + "TOPIC") or DEFAULT_TOPIC,
            log_level=env.get(ENV_PREFIX + "LOG_LEVEL") or DEFAULT_LOG_LEVEL,
            console_log=_get_bool(env.get(ENV_PREFIX + "CONSOLE_LOG"), False),
            broker_url=env.get(ENV_PREFIX + "BROKER_URL") or DEFAULT_BROKER_URL,
            events_url=env.get(ENV_PREFIX + "EVENTS_URL") or DEFAULT_EVENTS_URL,
            connect_timeout=_get_float(
                env.get(ENV_PREFIX + "CONNECT_TIMEOUT"),
                DEFAULT_CONNECT_TIMEOUT,
                ENV_PREFIX + "CONNECT_TIMEOUT",
            ),
        )


def load_settings(dotenv_path: Optional[str] = None) -> Settings:
    """Load a local .env file if one exists, then read the environment.

    Variables already present in the environment take precedence over the file.
    """
    load_dotenv(dotenv_path=dotenv_path or find_dotenv(usecwd=True), override=False)
    return Settings.from_env()
