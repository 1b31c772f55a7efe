"""
ticketflow Bootstrap Key Exchange

Establishes the long-term symmetric keys the protocol runs on, one per
adjacent role pair (Client<->AS, TGS<->AS, Server<->TGS).

Protocol Flow:
1. Initiator -> Responder: public_key(role, PEM public key)
2. Responder -> Initiator: envelope{responseToClient(subject=responder,
   fresh symmetric key)}, every field sealed under the announced public key

Both ends then hold the same key, stored from their own perspective:
the initiator under (initiator, responder), the responder under
(responder, initiator). Received public keys are not certified; the
exchange trusts whoever connects first.
"""

from __future__ import annotations

import socket
import threading
from typing import Dict, List, Optional, Tuple

import attrs
import structlog
from returns.result import Failure, Result, Success

from ticketflow.core.config import Endpoint
from ticketflow.core.crypto import CryptoProvider, DefaultCryptoProvider
from ticketflow.core.exceptions import (
    IdentityMismatch,
    MalformedEnvelope,
    TicketFlowError,
    TransportFailure,
)
from ticketflow.core.types import KeyPair, SymmetricKey
from ticketflow.kerberos.tickets import Envelope, Purpose, build_key_delivery
from ticketflow.storage.keystore import KeyStore
from ticketflow.transport.connection import RoleConnection, receive_message, send_message
from ticketflow.transport.wire import ErrorReply, PublicKeyAnnouncement

logger = structlog.get_logger()


def received_key_label(peer_role: str) -> str:
    """Key store label of a public key received from ``peer_role``."""
    return f"{peer_role}Received"


def provision_key_pair(
    role: str,
    key_store: KeyStore,
    provider: Optional[CryptoProvider] = None,
) -> KeyPair:
    """Generate and store a role's asymmetric key pair."""
    provider = provider or DefaultCryptoProvider()
    pair = provider.generate_key_pair()
    key_store.put_key_pair(role, pair)
    logger.info("key_pair_provisioned", role=role)
    return pair


# =============================================================================
# INITIATOR
# =============================================================================


def public_sender_secret_receiver(
    endpoint: Endpoint,
    self_role: str,
    peer_role: str,
    key_store: KeyStore,
    provider: Optional[CryptoProvider] = None,
    timeout: Optional[float] = 10.0,
) -> Result[SymmetricKey, TicketFlowError]:
    """
    Send our public key to a responder and receive the shared secret.

    Returns:
        Success(key) once the key is stored under (self_role, peer_role)
        Failure(error) on a missing key pair, I/O failure, rejection or
            undecryptable secret
    """
    provider = provider or DefaultCryptoProvider()
    try:
        pair = key_store.get_key_pair(self_role)
        with RoleConnection(host=endpoint.host, port=endpoint.port, timeout=timeout) as conn:
            reply = conn.exchange(PublicKeyAnnouncement(role=self_role, public_pem=pair.public_pem))

        if isinstance(reply, ErrorReply):
            raise reply.to_exception()
        if not isinstance(reply, Envelope):
            raise MalformedEnvelope(f"Expected a key delivery, got {type(reply).__name__}")

        reply.decrypt_with(Purpose.RESPONSE_TO_CLIENT, pair.private_pem, provider)
        delivery = reply.get(Purpose.RESPONSE_TO_CLIENT)
        if delivery.subject_id != peer_role:
            raise IdentityMismatch(
                f"Key delivered by {delivery.subject_id!r}, expected {peer_role!r}"
            )
        key = delivery.session_key()
        key_store.put_symmetric_key(self_role, peer_role, key)
    except TicketFlowError as e:
        logger.error(
            "bootstrap_initiator_failed",
            role=self_role,
            peer=peer_role,
            endpoint=str(endpoint),
            error=type(e).__name__,
            reason=e.message,
        )
        return Failure(e)

    logger.info(
        "bootstrap_key_received",
        role=self_role,
        peer=peer_role,
        fingerprint=key.fingerprint(),
    )
    return Success(key)


# =============================================================================
# RESPONDER
# =============================================================================


def receiver(
    connection: socket.socket,
    self_role: str,
    key_store: KeyStore,
    provider: Optional[CryptoProvider] = None,
    expected_peer: Optional[str] = None,
) -> Result[str, TicketFlowError]:
    """
    Answer one bootstrap exchange on an accepted connection.

    Returns:
        Success(peer_role) once the key is stored and sent
        Failure(error) if the exchange was rejected or broke off
    """
    provider = provider or DefaultCryptoProvider()
    try:
        announcement = receive_message(connection)
        if not isinstance(announcement, PublicKeyAnnouncement):
            raise MalformedEnvelope(
                f"Expected a public key, got {type(announcement).__name__}"
            )
        peer_role = announcement.role
        if expected_peer is not None and peer_role != expected_peer:
            raise IdentityMismatch(
                f"Expected bootstrap from {expected_peer!r}, got {peer_role!r}",
                code=IdentityMismatch.NOT_US,
            )

        key_store.put_public_key(received_key_label(peer_role), announcement.public_pem)
        key = provider.generate_symmetric_key()
        reply = Envelope.of(build_key_delivery(self_role, key))
        reply.encrypt_for(Purpose.RESPONSE_TO_CLIENT, announcement.public_pem, provider)
        key_store.put_symmetric_key(self_role, peer_role, key)
        send_message(connection, reply)
    except TicketFlowError as e:
        logger.error(
            "bootstrap_responder_failed",
            role=self_role,
            expected_peer=expected_peer,
            error=type(e).__name__,
            reason=e.message,
        )
        _send_rejection(connection, e)
        return Failure(e)
    except OSError as e:
        logger.error("bootstrap_responder_io_failed", role=self_role, error=str(e))
        return Failure(TransportFailure(f"Bootstrap connection failed: {e}"))

    logger.info(
        "bootstrap_key_sent",
        role=self_role,
        peer=peer_role,
        fingerprint=key.fingerprint(),
    )
    return Success(peer_role)


def _send_rejection(connection: socket.socket, error: TicketFlowError) -> None:
    if isinstance(error, TransportFailure):
        return
    try:
        send_message(connection, ErrorReply.from_exception(error))
    except OSError as e:
        logger.debug("bootstrap_rejection_not_sent", error=str(e))


@attrs.define
class BootstrapResponder:
    """
    Listening side of the bootstrap for one role.

    Accepts one connection per expected peer, in order (the AS expects the
    Client and the TGS; the TGS expects the Server).

    Example:
        responder = BootstrapResponder(
            role="AS", key_store=store, expected_peers=["Client", "TGS"], port=5521
        )
        responder.start()
        ...
        results = responder.wait()
    """

    role: str
    key_store: KeyStore
    expected_peers: List[str]
    host: str = "localhost"
    port: int = 0
    provider: CryptoProvider = attrs.Factory(DefaultCryptoProvider)
    timeout: Optional[float] = 10.0
    accept_timeout: Optional[float] = None

    _listener: Optional[socket.socket] = None
    _thread: Optional[threading.Thread] = None
    _results: Dict[str, Result[str, TicketFlowError]] = attrs.Factory(dict)
    _logger: structlog.BoundLogger = attrs.Factory(lambda: structlog.get_logger())

    @property
    def address(self) -> Tuple[str, int]:
        if self._listener is None:
            raise TransportFailure(f"{self.role} bootstrap responder is not bound")
        return self._listener.getsockname()[:2]

    def bind(self) -> None:
        if self._listener is not None:
            return
        listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            listener.bind((self.host, self.port))
            listener.listen(len(self.expected_peers) or 1)
            listener.settimeout(self.accept_timeout)
        except OSError as e:
            listener.close()
            raise TransportFailure(f"Cannot listen on {self.host}:{self.port}: {e}") from e
        self._listener = listener

    def serve(self) -> Dict[str, Result[str, TicketFlowError]]:
        """
        Run the exchanges in the calling thread.

        Returns:
            Result per expected peer
        """
        self.bind()
        try:
            for peer in self.expected_peers:
                self._results[peer] = self._serve_peer(peer)
        finally:
            self._listener.close()
            self._listener = None
        return dict(self._results)

    def _serve_peer(self, peer: str) -> Result[str, TicketFlowError]:
        try:
            conn, address = self._listener.accept()
        except OSError as e:
            self._logger.error("bootstrap_accept_failed", role=self.role, peer=peer, error=str(e))
            return Failure(TransportFailure(f"No bootstrap connection from {peer}: {e}"))

        self._logger.debug("bootstrap_connection_accepted", role=self.role, address=address[0])
        with conn:
            conn.settimeout(self.timeout)
            return receiver(conn, self.role, self.key_store, self.provider, expected_peer=peer)

    def start(self) -> None:
        """Bind now and run the exchanges on a background thread."""
        self.bind()
        self._thread = threading.Thread(
            target=self.serve,
            name=f"BootstrapResponder-{self.role}",
            daemon=True,
        )
        self._thread.start()

    def wait(self, timeout: Optional[float] = None) -> Dict[str, Result[str, TicketFlowError]]:
        """Join the background thread and return the results so far."""
        if self._thread is not None:
            self._thread.join(timeout=timeout)
        return dict(self._results)
