"""
ticketflow Connections

Client side of the wire: one connection per request, one frame each way.

- RoleConnection: a TCP connection to one role endpoint
- Transport: how the Client orchestrator reaches a role
- SocketTransport: Transport over real TCP connections
"""

from __future__ import annotations

import socket
from abc import ABC, abstractmethod
from typing import Any, Optional

import attrs
import structlog

from ticketflow.core.config import Endpoint
from ticketflow.core.exceptions import MalformedEnvelope, TransportFailure
from ticketflow.kerberos.tickets import Envelope
from ticketflow.transport.wire import (
    ErrorReply,
    Message,
    decode_message,
    encode_message,
    frame,
    read_frame,
)

logger = structlog.get_logger()


# =============================================================================
# SOCKET HELPERS
# =============================================================================


def recv_exact(sock: socket.socket, length: int) -> bytes:
    """
    Receive exactly length bytes.

    Raises:
        TransportFailure: If the peer closes the connection first
    """
    data = b""
    while len(data) < length:
        chunk = sock.recv(length - len(data))
        if not chunk:
            raise TransportFailure("Connection closed by peer")
        data += chunk
    return data


def send_message(sock: socket.socket, message: Message) -> None:
    sock.sendall(frame(encode_message(message)))


def receive_message(sock: socket.socket) -> Message:
    """
    Raises:
        TransportFailure: If the connection closes before a full frame
        MalformedEnvelope: If the frame cannot be decoded
    """
    return decode_message(read_frame(lambda length: recv_exact(sock, length)))


# =============================================================================
# ROLE CONNECTION
# =============================================================================


@attrs.define
class RoleConnection:
    """
    Connection to one role endpoint.

    Example:
        with RoleConnection(host="localhost", port=1121) as conn:
            reply = conn.exchange(envelope)
    """

    host: str
    port: int
    timeout: Optional[float] = 10.0

    _socket: Optional[socket.socket] = None
    _logger: Any = attrs.Factory(lambda: structlog.get_logger())

    def connect(self) -> None:
        if self._socket:
            return

        try:
            self._socket = socket.create_connection((self.host, self.port), timeout=self.timeout)
        except OSError as e:
            self._logger.error(
                "role_connect_failed",
                host=self.host,
                port=self.port,
                error=str(e),
            )
            raise TransportFailure(f"Failed to connect to {self.host}:{self.port}: {e}") from e

        self._logger.debug("role_connected", host=self.host, port=self.port)

    def close(self) -> None:
        if self._socket:
            self._socket.close()
            self._socket = None
            self._logger.debug("role_connection_closed", host=self.host, port=self.port)

    def send(self, message: Message) -> None:
        if not self._socket:
            self.connect()
        try:
            send_message(self._socket, message)
        except OSError as e:
            raise TransportFailure(f"Send to {self.host}:{self.port} failed: {e}") from e

    def receive(self) -> Message:
        if not self._socket:
            raise TransportFailure("Not connected")
        try:
            return receive_message(self._socket)
        except socket.timeout:
            raise TransportFailure(f"Timeout waiting for {self.host}:{self.port}") from None
        except OSError as e:
            raise TransportFailure(f"Receive from {self.host}:{self.port} failed: {e}") from e

    def exchange(self, message: Message) -> Message:
        """Send one frame and wait for the single reply frame."""
        self.send(message)
        reply = self.receive()
        self._logger.debug(
            "role_exchange_completed",
            host=self.host,
            port=self.port,
            reply=type(reply).__name__,
        )
        return reply

    def __enter__(self) -> RoleConnection:
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


# =============================================================================
# TRANSPORT
# =============================================================================


def expect_envelope(reply: Message) -> Envelope:
    """
    Unwrap a role's reply.

    Raises:
        TransportFailure: If the peer answered with an error frame
        MalformedEnvelope: If the reply is some other kind of frame
    """
    if isinstance(reply, ErrorReply):
        raise reply.to_exception()
    if not isinstance(reply, Envelope):
        raise MalformedEnvelope(f"Expected an envelope, got {type(reply).__name__}")
    return reply


class Transport(ABC):
    """Delivery of one envelope to a role and its reply back."""

    @abstractmethod
    def exchange(self, endpoint: Endpoint, envelope: Envelope) -> Envelope:
        """
        Raises:
            TransportFailure: Connection failure, early close or error frame
            MalformedEnvelope: Undecodable reply
        """
        ...


@attrs.define
class SocketTransport(Transport):
    """A fresh TCP connection per exchange."""

    timeout: Optional[float] = 10.0

    def exchange(self, endpoint: Endpoint, envelope: Envelope) -> Envelope:
        with RoleConnection(host=endpoint.host, port=endpoint.port, timeout=self.timeout) as conn:
            return expect_envelope(conn.exchange(envelope))
