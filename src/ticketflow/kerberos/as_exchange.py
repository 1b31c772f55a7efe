"""
ticketflow AS Exchange

Authentication role: issues a granting ticket and the Client<->TGS session
key in answer to a plaintext request.

Protocol Flow:
1. Client -> AS: {request(subject=client, target=TGS, lifetime_end)}
2. AS -> Client: {responseToClient, grantingTicket}

responseToClient is sealed with the AS<->client long-term key and
grantingTicket with the AS<->TGS long-term key, so the Client can read its
copy of the session key but only forwards the granting ticket.
"""

from __future__ import annotations

import attrs
import structlog
from returns.result import Failure, Result, Success

from ticketflow.core.config import ProtocolConfig
from ticketflow.core.crypto import CryptoProvider, DefaultCryptoProvider
from ticketflow.core.exceptions import MalformedEnvelope, TicketFlowError
from ticketflow.core.types import Clock, utc_now
from ticketflow.kerberos.tickets import (
    Envelope,
    Purpose,
    build_forwarded_ticket,
    build_response_to_client,
    seal_ticket,
)
from ticketflow.kerberos.validation import check_target
from ticketflow.storage.keystore import KeyStore

logger = structlog.get_logger()


@attrs.define
class AuthenticationService:
    """
    Request handler of the Authentication role.

    Example:
        service = AuthenticationService(key_store=store, config=config)
        result = service.handle(envelope, peer_address="127.0.0.1")
        if isinstance(result, Success):
            reply = result.unwrap()
    """

    key_store: KeyStore
    config: ProtocolConfig = attrs.Factory(ProtocolConfig)
    provider: CryptoProvider = attrs.Factory(DefaultCryptoProvider)
    clock: Clock = utc_now

    _logger: structlog.BoundLogger = attrs.field(
        factory=lambda: structlog.get_logger(), alias="_logger"
    )

    @property
    def role_id(self) -> str:
        return self.config.as_id

    def handle(self, envelope: Envelope, peer_address: str) -> Result[Envelope, TicketFlowError]:
        """
        Answer one request.

        Args:
            envelope: Envelope holding a plaintext ``request`` ticket
            peer_address: Network address the request came from; bound
                into the granting ticket

        Returns:
            Success(Envelope) with responseToClient and grantingTicket
            Failure(error) if the request is rejected
        """
        try:
            reply = self._issue(envelope, peer_address)
        except TicketFlowError as e:
            self._logger.warning(
                "as_request_rejected",
                peer=peer_address,
                error=type(e).__name__,
                reason=e.message,
            )
            return Failure(e)
        return Success(reply)

    def _issue(self, envelope: Envelope, peer_address: str) -> Envelope:
        tgs_id = self.config.tgs_id
        request = envelope.get(Purpose.REQUEST)
        if request.is_sealed:
            raise MalformedEnvelope("request must be sent in plaintext")
        if not request.subject_id:
            raise MalformedEnvelope("request names no subject")
        check_target(request, tgs_id)

        client_id = request.subject_id
        client_key = self.key_store.get_symmetric_key(self.role_id, client_id)
        tgs_key = self.key_store.get_symmetric_key(self.role_id, tgs_id)

        now = self.clock()
        lifetime_end = now + self.config.grant_window

        session_key = self.provider.generate_symmetric_key()
        self.key_store.put_symmetric_key(client_id, tgs_id, session_key)

        response = build_response_to_client(tgs_id, now, lifetime_end, session_key)
        granting = build_forwarded_ticket(
            Purpose.GRANTING_TICKET,
            subject_id=client_id,
            target_id=tgs_id,
            address=peer_address,
            issued_at=now,
            lifetime_end=lifetime_end,
            session_key=session_key,
        )

        response = seal_ticket(response, client_key, self.provider)
        granting = seal_ticket(granting, tgs_key, self.provider)
        if self.config.wrap_forwarded_tickets:
            granting = seal_ticket(granting, client_key, self.provider)

        self._logger.info(
            "as_request_processed",
            client=client_id,
            peer=peer_address,
            lifetime_end=lifetime_end.isoformat(),
            session_key=session_key.fingerprint(),
        )
        return Envelope.of(response, granting)

