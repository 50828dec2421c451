"""
LWES (Light Weight Event System) emitter.

The default sink for access-log records. Each ``{"type", "attributes"}``
event is serialized into the LWES binary event layout and sent as a single
UDP datagram, unicast or multicast:

    event name        uint8 length + bytes
    attribute count   uint16
    per attribute     uint8 name length + name, uint8 type token, value

String values are a uint16 length followed by UTF-8 bytes. An ``enc``
attribute announcing UTF-8 is written first, as LWES emitters do.

Sending is fire-and-forget: socket errors are logged here and never raised
to the caller.
"""

import ipaddress
import logging
import socket
import struct
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, Field

from request_logger.core.exceptions import EmitterError, EventTooLargeError

logger = logging.getLogger(__name__)

DEFAULT_EVENT_TYPE = "MorganLWES::Logger"

# Largest UDP payload an IPv4 datagram can carry
MAX_DATAGRAM_SIZE = 65507

# ─── LWES Type Tokens ─────────────────────────────────────────

TYPE_INT_16 = 0x02
TYPE_STRING = 0x05
TYPE_INT_64 = 0x07
TYPE_BOOLEAN = 0x09

ENCODING_ATTRIBUTE = "enc"
ENCODING_UTF8 = 1


class LWESOptions(BaseModel):
    """Where and how the emitter sends events."""

    address: str = "127.0.0.1"
    port: int = Field(default=1111, gt=0, lt=65536)
    ttl: int = Field(default=3, ge=0, le=255)
    type: str = DEFAULT_EVENT_TYPE


# ─── Serialization ────────────────────────────────────────────


def _short_string(value: str, what: str) -> bytes:
    encoded = value.encode("utf-8")
    if len(encoded) > 255:
        raise EmitterError(f"{what} longer than 255 bytes: {value[:32]!r}...")
    return struct.pack("!B", len(encoded)) + encoded


def _attribute_value(value: Any) -> bytes:
    # bool before int: bool is an int subclass
    if isinstance(value, bool):
        return struct.pack("!BB", TYPE_BOOLEAN, int(value))
    if isinstance(value, int):
        return struct.pack("!Bq", TYPE_INT_64, value)
    encoded = str(value).encode("utf-8")
    if len(encoded) > 0xFFFF:
        raise EmitterError(f"String attribute longer than 65535 bytes ({len(encoded)})")
    return struct.pack("!BH", TYPE_STRING, len(encoded)) + encoded


def serialize_event(event_type: str, attributes: Mapping[str, Any]) -> bytes:
    """
    Serialize an event into the LWES wire layout.

    Args:
        event_type: LWES event name (e.g. ``MorganLWES::Logger``).
        attributes: Flat mapping of attribute name to value. Strings are
                    written as STRING, ints as INT_64, bools as BOOLEAN;
                    anything else is converted with ``str()``.

    Returns:
        The datagram payload.

    Raises:
        EmitterError: A name or value does not fit its length prefix.
        EventTooLargeError: The event exceeds a single UDP datagram.
    """
    parts = [
        _short_string(event_type, "Event name"),
        struct.pack("!H", len(attributes) + 1),
        _short_string(ENCODING_ATTRIBUTE, "Attribute name"),
        struct.pack("!Bh", TYPE_INT_16, ENCODING_UTF8),
    ]
    for name, value in attributes.items():
        parts.append(_short_string(name, "Attribute name"))
        parts.append(_attribute_value(value))

    payload = b"".join(parts)
    if len(payload) > MAX_DATAGRAM_SIZE:
        raise EventTooLargeError(size=len(payload), limit=MAX_DATAGRAM_SIZE)
    return payload


def deserialize_event(payload: bytes) -> tuple[str, dict[str, Any]]:
    """Decode a payload produced by ``serialize_event``.

    Used by collectors and tests; only the type tokens the emitter writes
    are understood.
    """
    offset = 0

    def read_short_string() -> str:
        nonlocal offset
        (length,) = struct.unpack_from("!B", payload, offset)
        offset += 1
        value = payload[offset : offset + length].decode("utf-8")
        offset += length
        return value

    event_type = read_short_string()
    (count,) = struct.unpack_from("!H", payload, offset)
    offset += 2

    attributes: dict[str, Any] = {}
    for _ in range(count):
        name = read_short_string()
        (token,) = struct.unpack_from("!B", payload, offset)
        offset += 1
        if token == TYPE_STRING:
            (length,) = struct.unpack_from("!H", payload, offset)
            offset += 2
            attributes[name] = payload[offset : offset + length].decode("utf-8")
            offset += length
        elif token == TYPE_INT_16:
            (attributes[name],) = struct.unpack_from("!h", payload, offset)
            offset += 2
        elif token == TYPE_INT_64:
            (attributes[name],) = struct.unpack_from("!q", payload, offset)
            offset += 8
        elif token == TYPE_BOOLEAN:
            (flag,) = struct.unpack_from("!B", payload, offset)
            attributes[name] = bool(flag)
            offset += 1
        else:
            raise EmitterError(f"Unsupported LWES type token 0x{token:02x}")
    return event_type, attributes


# ─── Emitter ──────────────────────────────────────────────────


class LWESEmitter:
    """
    UDP emitter for LWES events.

    The socket is opened lazily on the first ``emit`` so building a
    middleware never touches the network. Multicast destinations get
    ``IP_MULTICAST_TTL`` set from ``options.ttl``.

    Usage:
        emitter = LWESEmitter(LWESOptions(address="224.1.1.11", port=9191))
        emitter.emit({"type": "MorganLWES::Logger", "attributes": {...}})
    """

    def __init__(self, options: LWESOptions | None = None):
        self.options = options or LWESOptions()
        self.sent = 0
        self.dropped = 0
        self._sock: socket.socket | None = None

    @property
    def is_multicast(self) -> bool:
        try:
            return ipaddress.ip_address(self.options.address).is_multicast
        except ValueError:
            # Hostname, resolved by sendto
            return False

    def _socket(self) -> socket.socket:
        if self._sock is None:
            sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            sock.setblocking(False)
            if self.is_multicast:
                sock.setsockopt(
                    socket.IPPROTO_IP,
                    socket.IP_MULTICAST_TTL,
                    struct.pack("B", self.options.ttl),
                )
            self._sock = sock
            logger.debug(
                "LWES emitter opened for %s:%d (ttl=%d)",
                self.options.address,
                self.options.port,
                self.options.ttl,
            )
        return self._sock

    def emit(self, event: Mapping[str, Any]) -> None:
        """Serialize and send one event. Never raises on transport failure."""
        event_type = event.get("type") or self.options.type
        try:
            payload = serialize_event(event_type, event.get("attributes") or {})
        except EmitterError as e:
            self.dropped += 1
            logger.warning("Dropping LWES event %s: %s", event_type, e.message)
            return

        try:
            self._socket().sendto(payload, (self.options.address, self.options.port))
        except OSError as e:
            self.dropped += 1
            logger.warning(
                "LWES send to %s:%d failed: %s",
                self.options.address,
                self.options.port,
                e,
            )
            return

        self.sent += 1

    def close(self) -> None:
        """Close the socket, if one was opened."""
        if self._sock is not None:
            self._sock.close()
            self._sock = None
            logger.debug("LWES emitter closed (sent=%d, dropped=%d)", self.sent, self.dropped)
