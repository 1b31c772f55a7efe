"""
ticketflow TGS Exchange

Ticket-Granting role: trades a granting ticket plus a fresh authenticator
for a service ticket and the Client<->service session key.

Protocol Flow:
1. Client -> TGS: {grantingTicket, request4NextHop(target), authenticator}
2. TGS -> Client: {responseToClient, serviceTicket}

Validation:
- grantingTicket opens with the TGS<->AS long-term key, is unexpired and
  was issued for this TGS
- authenticator opens with the session key inside the granting ticket,
  names the same subject and address, and has not been seen before
"""

from __future__ import annotations

from typing import Optional

import attrs
import structlog
from returns.result import Failure, Result, Success

from ticketflow.core.config import ProtocolConfig
from ticketflow.core.crypto import CryptoProvider, DefaultCryptoProvider
from ticketflow.core.exceptions import MalformedEnvelope, TicketFlowError
from ticketflow.core.types import Clock, utc_now
from ticketflow.kerberos.replay_cache import AuthenticatorCache
from ticketflow.kerberos.tickets import (
    Envelope,
    Purpose,
    build_forwarded_ticket,
    build_response_to_client,
    seal_ticket,
    unseal_ticket,
)
from ticketflow.kerberos.validation import (
    check_binding,
    check_fresh,
    check_lifetime,
    check_target,
)
from ticketflow.storage.keystore import KeyStore

logger = structlog.get_logger()


@attrs.define
class TicketGrantingService:
    """
    Request handler of the Ticket-Granting role.

    The replay cache is created from the config unless one is passed in;
    ``replay_cache_enabled=False`` turns replay checks off.
    """

    key_store: KeyStore
    config: ProtocolConfig = attrs.Factory(ProtocolConfig)
    provider: CryptoProvider = attrs.Factory(DefaultCryptoProvider)
    clock: Clock = utc_now
    replay_cache: Optional[AuthenticatorCache] = None

    _logger: structlog.BoundLogger = attrs.field(
        factory=lambda: structlog.get_logger(), alias="_logger"
    )

    def __attrs_post_init__(self) -> None:
        if self.replay_cache is None and self.config.replay_cache_enabled:
            self.replay_cache = AuthenticatorCache(
                window=self.config.grant_window, clock=self.clock
            )

    @property
    def role_id(self) -> str:
        return self.config.tgs_id

    def handle(self, envelope: Envelope, peer_address: str) -> Result[Envelope, TicketFlowError]:
        """
        Answer one service ticket request.

        Returns:
            Success(Envelope) with responseToClient and serviceTicket
            Failure(error) if any check fails
        """
        try:
            reply = self._issue(envelope, peer_address)
        except TicketFlowError as e:
            self._logger.warning(
                "tgs_request_rejected",
                peer=peer_address,
                error=type(e).__name__,
                reason=e.message,
            )
            return Failure(e)
        return Success(reply)

    def _issue(self, envelope: Envelope, peer_address: str) -> Envelope:
        sealed_granting = envelope.get(Purpose.GRANTING_TICKET)
        next_hop = envelope.get(Purpose.REQUEST_FOR_NEXT_HOP)
        sealed_authenticator = envelope.get(Purpose.AUTHENTICATOR)

        if next_hop.is_sealed or not next_hop.target_id:
            raise MalformedEnvelope("request4NextHop must name a target in plaintext")
        target = next_hop.target_id

        as_key = self.key_store.get_symmetric_key(self.role_id, self.config.as_id)
        granting = unseal_ticket(sealed_granting, as_key, self.provider)

        now = self.clock()
        granting_end = check_lifetime(granting, now)
        check_target(granting, self.role_id)
        tgs_session_key = granting.session_key()

        authenticator = unseal_ticket(sealed_authenticator, tgs_session_key, self.provider)
        check_binding(authenticator, granting)

        service_key = self.key_store.get_symmetric_key(self.role_id, target)
        check_fresh(authenticator, self.replay_cache)

        client_id = granting.subject_id
        lifetime_end = min(now + self.config.grant_window, granting_end)

        session_key = self.provider.generate_symmetric_key()
        self.key_store.put_symmetric_key(client_id, target, session_key)

        response = build_response_to_client(target, now, lifetime_end, session_key)
        service_ticket = build_forwarded_ticket(
            Purpose.SERVICE_TICKET,
            subject_id=client_id,
            target_id=target,
            address=granting.address,
            issued_at=now,
            lifetime_end=lifetime_end,
            session_key=session_key,
        )

        response = seal_ticket(response, tgs_session_key, self.provider)
        service_ticket = seal_ticket(service_ticket, service_key, self.provider)
        if self.config.wrap_forwarded_tickets:
            service_ticket = seal_ticket(service_ticket, tgs_session_key, self.provider)

        self._logger.info(
            "tgs_request_processed",
            client=client_id,
            service=target,
            peer=peer_address,
            lifetime_end=lifetime_end.isoformat(),
            session_key=session_key.fingerprint(),
        )
        return Envelope.of(response, service_ticket)
