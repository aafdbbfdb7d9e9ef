import uuid
from typing import Any, Dict, Final, Tuple, Union
from typing_extensions import TypeAlias
from urllib.parse import urlsplit

import zmq
import zmq.asyncio
import msgpack


Payload: TypeAlias = Dict[str, Any]


def _get_zsonar_version() -> str:
    """Get zsonar version from package metadata."""
    import importlib.metadata

    try:
        version_str = importlib.metadata.version("zsonar")
    except importlib.metadata.PackageNotFoundError:
        version_str = "unknown"
    return version_str


def _parse_version() -> Tuple[int, int, int]:
    """Parse a version string like '1.2.3' into a tuple (1, 2, 3).

    Handles unknown/invalid versions by returning (0, 0, 0).
    """
    version_str = _get_zsonar_version()
    if version_str == "unknown":
        return (0, 0, 0)
    try:
        parts = version_str.split(".")
        major = int(parts[0]) if len(parts) > 0 else 0
        minor = int(parts[1]) if len(parts) > 1 else 0
        patch = int(parts[2].split("-")[0].split("+")[0]) if len(parts) > 2 else 0
        return (major, minor, patch)
    except (ValueError, IndexError):
        return (0, 0, 0)


class ResponseStatus:
    """Namespace for broker response status strings."""

    SUCCESS: Final[str] = "SUCCESS"
    NOT_FOUND: Final[str] = "NOT_FOUND"
    ALREADY_EXISTS: Final[str] = "ALREADY_EXISTS"
    INVALID_REQUEST: Final[str] = "INVALID_REQUEST"
    UNKNOWN_COMMAND: Final[str] = "UNKNOWN_COMMAND"
    UNKNOWN_ERROR: Final[str] = "UNKNOWN_ERROR"

    @staticmethod
    def is_error(status: str) -> bool:
        """Helper to validate incoming status strings."""
        return status != ResponseStatus.SUCCESS


class Command:
    """Namespace for the commands understood by the broker."""

    STATUS: Final[str] = "status"
    TOPIC_EXISTS: Final[str] = "topic_exists"
    CREATE_TOPIC: Final[str] = "create_topic"
    TOPIC_ID: Final[str] = "topic_id"
    PUBLISH: Final[str] = "publish"
    ACK: Final[str] = "ack"
    NACK: Final[str] = "nack"


def pack(payload: Any) -> bytes:
    """Pack a payload with msgpack, datetimes as timestamp extensions."""
    result = msgpack.packb(payload, use_bin_type=True, datetime=True)
    if result is None:
        raise ValueError("Failed to pack message")
    return result


def unpack(data: bytes) -> Any:
    """Unpack a msgpack payload, timestamp extensions as aware datetimes."""
    return msgpack.unpackb(data, raw=False, timestamp=3)


def create_hash_identifier() -> str:
    """
    Generate a unique hash identifier.
    This function creates a new UUID (Universally Unique Identifier).
    Returns:
        str: A unique hash identifier in string format.
        The hash identifier is 36 characters long.
    """

    return str(uuid.uuid4())


def get_socket_addr(
    zmq_socket: Union[zmq.Socket, zmq.asyncio.Socket],
) -> Tuple[str, int]:
    """Get the address and port of a ZMQ socket."""
    endpoint: bytes = zmq_socket.getsockopt(zmq.LAST_ENDPOINT)  # type: ignore
    return endpoint.decode(), int(endpoint.decode().split(":")[-1])


def resolve_endpoint(advertised: str, reference: str) -> str:
    """Make an advertised endpoint connectable from the client side.

    A broker bound to every interface advertises ``tcp://0.0.0.0:port``; the
    wildcard host is replaced by the host of the ``reference`` url.
    """
    parts = urlsplit(advertised)
    if parts.hostname not in ("0.0.0.0", "*", "::", None):
        return advertised
    host = urlsplit(reference).hostname or "127.0.0.1"
    return f"{parts.scheme}://{host}:{parts.port}"
