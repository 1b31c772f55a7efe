"""
ticketflow Transport Module

Length-prefixed JSON frames over TCP, one request and one reply per
connection.

Components:
- wire: Frame codec
- connection: Client-side connections and the Transport interface
- server: Threaded accept loop for a role handler
- local: In-process transport for tests and demos
"""

from ticketflow.transport.wire import (
    MAX_FRAME_SIZE,
    WIRE_VERSION,
    ErrorReply,
    FrameKind,
    PublicKeyAnnouncement,
    decode_message,
    encode_message,
)
from ticketflow.transport.connection import RoleConnection, SocketTransport, Transport
from ticketflow.transport.server import RoleHandler, RoleServer
from ticketflow.transport.local import LocalTransport

__all__ = [
    # Wire
    "MAX_FRAME_SIZE",
    "WIRE_VERSION",
    "ErrorReply",
    "FrameKind",
    "PublicKeyAnnouncement",
    "decode_message",
    "encode_message",
    # Connections
    "RoleConnection",
    "SocketTransport",
    "Transport",
    "LocalTransport",
    # Server
    "RoleHandler",
    "RoleServer",
]
