"""
ticketflow Wire Format

One frame per direction on each connection: a 4-byte big-endian length
prefix followed by a UTF-8 JSON document.

Every document carries ``version`` and ``kind``:

    envelope    {"tickets": [{"purpose", "layers", "present", "fields"}]}
    error       {"code", "error", "reason"}       negative acknowledgement
    public_key  {"role", "public_key"}            bootstrap announcement

The bootstrap key travels back as an envelope whose single ticket is
sealed under the announced public key.

Ticket fields always travel as six strings in fixed order; ``present``
marks which are populated, so an absent field and an empty string stay
distinguishable.
"""

from __future__ import annotations

import json
import struct
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

import attrs

from ticketflow.core.exceptions import (
    KeyNotFound,
    MalformedEnvelope,
    TicketFlowError,
    TransportFailure,
)
from ticketflow.kerberos.tickets import FIELD_NAMES, Envelope, Purpose, Ticket

WIRE_VERSION = 1
MAX_FRAME_SIZE = 1024 * 1024
LENGTH_PREFIX = struct.Struct(">I")


class FrameKind(Enum):
    ENVELOPE = "envelope"
    ERROR = "error"
    PUBLIC_KEY = "public_key"


# =============================================================================
# NON-ENVELOPE MESSAGES
# =============================================================================


@attrs.define(frozen=True, slots=True)
class ErrorReply:
    """Negative acknowledgement sent in place of a reply envelope."""

    error: str
    reason: str
    code: Optional[int] = None

    @classmethod
    def from_exception(cls, error: TicketFlowError) -> ErrorReply:
        return cls(error=type(error).__name__, reason=error.message, code=error.code)

    def to_exception(self) -> TransportFailure:
        return TransportFailure(
            f"Peer rejected the request: {self.error}: {self.reason}",
            code=self.code,
            remote_error=self.error,
        )


@attrs.define(frozen=True, slots=True)
class PublicKeyAnnouncement:
    """Bootstrap: a role's name and PEM public key."""

    role: str
    public_pem: bytes


Message = Union[Envelope, ErrorReply, PublicKeyAnnouncement]


def reply_for_failure(error: TicketFlowError) -> Optional[ErrorReply]:
    """
    What a role sends back when it rejects a request.

    A missing key aborts the request without any response; every other
    rejection is answered with an error frame.
    """
    if isinstance(error, KeyNotFound):
        return None
    return ErrorReply.from_exception(error)


# =============================================================================
# ENCODING
# =============================================================================


def _encode_ticket(ticket: Ticket) -> Dict[str, Any]:
    values = [getattr(ticket, name) for name in FIELD_NAMES]
    return {
        "purpose": ticket.purpose.value,
        "layers": ticket.layers,
        "present": [value is not None for value in values],
        "fields": [value if value is not None else "" for value in values],
    }


def encode_message(message: Message) -> bytes:
    """Serialize a message to its JSON document (without length prefix)."""
    document: Dict[str, Any] = {"version": WIRE_VERSION}
    if isinstance(message, Envelope):
        document["kind"] = FrameKind.ENVELOPE.value
        document["tickets"] = [_encode_ticket(ticket) for ticket in message]
    elif isinstance(message, ErrorReply):
        document["kind"] = FrameKind.ERROR.value
        document.update(code=message.code, error=message.error, reason=message.reason)
    elif isinstance(message, PublicKeyAnnouncement):
        document["kind"] = FrameKind.PUBLIC_KEY.value
        document.update(role=message.role, public_key=message.public_pem.decode("ascii"))
    else:
        raise TypeError(f"Cannot encode {type(message).__name__}")
    return json.dumps(document, separators=(",", ":")).encode("utf-8")


def frame(payload: bytes) -> bytes:
    """Prefix a payload with its length."""
    if len(payload) > MAX_FRAME_SIZE:
        raise MalformedEnvelope(f"Frame too large: {len(payload)} bytes")
    return LENGTH_PREFIX.pack(len(payload)) + payload


# =============================================================================
# DECODING
# =============================================================================


def _require(document: Dict[str, Any], name: str, kind: type) -> Any:
    value = document.get(name)
    if not isinstance(value, kind) or (kind is int and isinstance(value, bool)):
        raise MalformedEnvelope(f"Field {name!r} missing or not {kind.__name__}")
    return value


def _decode_ticket(entry: Any) -> Ticket:
    if not isinstance(entry, dict):
        raise MalformedEnvelope("Ticket entry is not an object")
    try:
        purpose = Purpose(_require(entry, "purpose", str))
    except ValueError:
        raise MalformedEnvelope(f"Unknown ticket purpose: {entry.get('purpose')!r}") from None
    layers = _require(entry, "layers", int)
    if layers < 0:
        raise MalformedEnvelope(f"Negative layer count on {purpose.value}")
    present: List[Any] = _require(entry, "present", list)
    fields: List[Any] = _require(entry, "fields", list)
    if len(present) != len(FIELD_NAMES) or len(fields) != len(FIELD_NAMES):
        raise MalformedEnvelope(f"{purpose.value} must carry {len(FIELD_NAMES)} fields")
    if not all(isinstance(flag, bool) for flag in present):
        raise MalformedEnvelope(f"{purpose.value} presence flags must be booleans")
    if not all(isinstance(value, str) for value in fields):
        raise MalformedEnvelope(f"{purpose.value} fields must be strings")

    values = {
        name: (value if flag else None)
        for name, flag, value in zip(FIELD_NAMES, present, fields)
    }
    return Ticket(purpose=purpose, layers=layers, **values)


def decode_message(payload: bytes) -> Message:
    """
    Parse a JSON document into a message.

    Raises:
        MalformedEnvelope: On bad JSON, unknown version or kind, or missing
            content
    """
    try:
        document = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise MalformedEnvelope(f"Frame is not valid JSON: {e}") from e
    except RecursionError:
        raise MalformedEnvelope("Frame nests too deeply") from None
    if not isinstance(document, dict):
        raise MalformedEnvelope("Frame is not a JSON object")

    version = document.get("version")
    if version != WIRE_VERSION or isinstance(version, bool):
        raise MalformedEnvelope(f"Unsupported wire version: {version!r}")

    try:
        kind = FrameKind(document.get("kind"))
    except ValueError:
        raise MalformedEnvelope(f"Unknown frame kind: {document.get('kind')!r}") from None

    if kind is FrameKind.ENVELOPE:
        return Envelope.of(*(_decode_ticket(entry) for entry in _require(document, "tickets", list)))
    if kind is FrameKind.ERROR:
        code = document.get("code")
        if code is not None and (not isinstance(code, int) or isinstance(code, bool)):
            raise MalformedEnvelope("Error code must be an integer or null")
        return ErrorReply(
            error=_require(document, "error", str),
            reason=_require(document, "reason", str),
            code=code,
        )
    return PublicKeyAnnouncement(
        role=_require(document, "role", str),
        public_pem=_require(document, "public_key", str).encode("ascii", "replace"),
    )


def read_frame(recv_exact: Callable[[int], bytes]) -> bytes:
    """
    Read one length-prefixed frame.

    Args:
        recv_exact: Returns exactly n bytes or raises

    Raises:
        MalformedEnvelope: If the announced length exceeds the limit
    """
    (length,) = LENGTH_PREFIX.unpack(recv_exact(LENGTH_PREFIX.size))
    if length > MAX_FRAME_SIZE:
        raise MalformedEnvelope(f"Frame too large: {length} bytes")
    return recv_exact(length)
