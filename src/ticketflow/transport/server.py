"""
ticketflow Role Server

Accept loop that puts a role handler on the network. The listener is bound
once; every accepted connection is served on its own worker thread, reads
one envelope, and gets one reply frame (or none when a key is missing).
A failed request never stops the loop.
"""

from __future__ import annotations

import socket
import threading
from typing import Any, List, Optional, Protocol, Tuple

import attrs
import structlog
from returns.result import Failure, Result

from ticketflow.core.exceptions import MalformedEnvelope, TicketFlowError, TransportFailure
from ticketflow.kerberos.tickets import Envelope
from ticketflow.transport.connection import receive_message, send_message
from ticketflow.transport.wire import ErrorReply, reply_for_failure

logger = structlog.get_logger()


class RoleHandler(Protocol):
    """Anything with the role ``handle`` signature."""

    def handle(self, envelope: Envelope, peer_address: str) -> Result[Envelope, TicketFlowError]:
        ...


@attrs.define
class RoleServer:
    """
    Threaded accept loop for one role.

    Example:
        server = RoleServer(handler=AuthenticationService(key_store=store), port=1121)
        server.start()
        ...
        server.stop()

    Port 0 binds an ephemeral port; read it back from ``address``.
    """

    handler: RoleHandler
    host: str = "localhost"
    port: int = 0
    timeout: Optional[float] = 10.0
    name: str = "role"
    backlog: int = 16
    poll_interval: float = 0.2

    _listener: Optional[socket.socket] = None
    _accept_thread: Optional[threading.Thread] = None
    _workers: List[threading.Thread] = attrs.Factory(list)
    _workers_lock: threading.Lock = attrs.Factory(threading.Lock)
    _stop_event: threading.Event = attrs.Factory(threading.Event)
    _logger: Any = attrs.Factory(lambda: structlog.get_logger())

    @property
    def is_running(self) -> bool:
        return self._accept_thread is not None and self._accept_thread.is_alive()

    @property
    def address(self) -> Tuple[str, int]:
        """Bound (host, port)."""
        if self._listener is None:
            raise TransportFailure(f"{self.name} server is not bound")
        host, port = self._listener.getsockname()[:2]
        return host, port

    def bind(self) -> None:
        """Bind and listen without starting the accept loop."""
        if self._listener is not None:
            return
        listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            listener.bind((self.host, self.port))
            listener.listen(self.backlog)
            listener.settimeout(self.poll_interval)
        except OSError as e:
            listener.close()
            raise TransportFailure(f"Cannot listen on {self.host}:{self.port}: {e}") from e
        self._listener = listener

    def start(self) -> None:
        if self.is_running:
            self._logger.warning("role_server_already_running", role=self.name)
            return

        self.bind()
        self._stop_event.clear()
        self._accept_thread = threading.Thread(
            target=self._accept_loop,
            name=f"RoleServer-{self.name}",
            daemon=True,
        )
        self._accept_thread.start()

        host, port = self.address
        self._logger.info("role_server_started", role=self.name, host=host, port=port)

    def stop(self, timeout: float = 5.0) -> None:
        """Close the listener and wait for the accept loop and workers."""
        self._stop_event.set()
        if self._accept_thread is not None:
            self._accept_thread.join(timeout=timeout)
            self._accept_thread = None

        if self._listener is not None:
            self._listener.close()
            self._listener = None

        with self._workers_lock:
            workers, self._workers = self._workers, []
        for worker in workers:
            worker.join(timeout=timeout)

        self._logger.info("role_server_stopped", role=self.name)

    def _accept_loop(self) -> None:
        listener = self._listener
        while not self._stop_event.is_set():
            try:
                conn, peer = listener.accept()
            except socket.timeout:
                continue
            except OSError as e:
                if self._stop_event.is_set():
                    break
                self._logger.error("role_server_accept_failed", role=self.name, error=str(e))
                continue

            worker = threading.Thread(
                target=self._serve_connection,
                args=(conn, peer[0]),
                name=f"RoleServer-{self.name}-{peer[0]}:{peer[1]}",
                daemon=True,
            )
            with self._workers_lock:
                self._workers = [w for w in self._workers if w.is_alive()]
                self._workers.append(worker)
            worker.start()

    def _serve_connection(self, conn: socket.socket, peer_address: str) -> None:
        with conn:
            conn.settimeout(self.timeout)
            try:
                self.serve_one(conn, peer_address)
            except (TransportFailure, OSError) as e:
                self._logger.warning(
                    "role_connection_failed",
                    role=self.name,
                    peer=peer_address,
                    error=str(e),
                )
            except Exception:
                self._logger.exception("role_handler_crashed", role=self.name, peer=peer_address)

    def serve_one(self, conn: socket.socket, peer_address: str) -> None:
        """Read one request from a connected socket and answer it."""
        try:
            request = receive_message(conn)
            if not isinstance(request, Envelope):
                raise MalformedEnvelope(f"Expected an envelope, got {type(request).__name__}")
        except MalformedEnvelope as e:
            self._logger.warning(
                "role_request_malformed", role=self.name, peer=peer_address, reason=e.message
            )
            send_message(conn, ErrorReply.from_exception(e))
            return

        result = self.handler.handle(request, peer_address)
        if isinstance(result, Failure):
            reply = reply_for_failure(result.failure())
            if reply is None:
                self._logger.info(
                    "role_request_aborted",
                    role=self.name,
                    peer=peer_address,
                    reason=result.failure().message,
                )
                return
            send_message(conn, reply)
            return

        send_message(conn, result.unwrap())
