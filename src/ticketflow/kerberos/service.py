"""
ticketflow Service Role

Protected service: validates a service ticket plus authenticator and answers
with a sealed approval.

Protocol Flow:
1. Client -> Server: {serviceTicket, authenticator}
2. Server -> Client: {authenticator(subject="ServiceAuth", address=server)}
   sealed with the Client<->service session key

Each request runs through its own state machine
(READY -> PROCESSING -> AUTHENTICATED | REJECTED) so concurrent connections
never share protocol state; recent traces are kept for inspection.
"""

from __future__ import annotations

import threading
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Tuple

import attrs
import structlog
from returns.result import Failure, Result, Success

from ticketflow.core.config import ProtocolConfig
from ticketflow.core.crypto import CryptoProvider, DefaultCryptoProvider
from ticketflow.core.exceptions import TicketFlowError
from ticketflow.core.state_machine import StateMachineBase, TransitionEntry
from ticketflow.core.types import Clock, SymmetricKey, utc_now
from ticketflow.kerberos.replay_cache import AuthenticatorCache
from ticketflow.kerberos.tickets import (
    Envelope,
    Purpose,
    build_authenticator,
    seal_ticket,
    unseal_ticket,
)
from ticketflow.kerberos.types import (
    RequestReceived,
    RequestRejected,
    RequestValidated,
    ServiceContext,
    ServiceState,
)
from ticketflow.kerberos.validation import (
    check_binding,
    check_fresh,
    check_lifetime,
    check_target,
)
from ticketflow.storage.keystore import KeyStore

logger = structlog.get_logger()

# Subject of the approval a service sends back
APPROVAL_SUBJECT = "ServiceAuth"


# =============================================================================
# SERVICE STATE MACHINE
# =============================================================================


@attrs.define
class ServiceStateMachine(StateMachineBase[ServiceState, Any, ServiceContext]):
    """
    Service-side state machine for one request.

    States:
    - READY: Waiting for a request
    - PROCESSING: Validating ticket and authenticator
    - AUTHENTICATED: Client approved
    - REJECTED: A check failed
    """

    def initial_state(self) -> ServiceState:
        return ServiceState.READY

    def transition_table(self) -> Dict[Tuple[ServiceState, type], TransitionEntry]:
        return {
            (ServiceState.READY, RequestReceived): (
                ServiceState.PROCESSING,
                self._handle_request_received,
            ),
            (ServiceState.PROCESSING, RequestValidated): (
                ServiceState.AUTHENTICATED,
                self._handle_request_validated,
            ),
            (ServiceState.PROCESSING, RequestRejected): (
                ServiceState.REJECTED,
                self._handle_request_rejected,
            ),
        }

    @staticmethod
    def _handle_request_received(event: RequestReceived, ctx: ServiceContext) -> ServiceContext:
        return attrs.evolve(ctx, peer_address=event.peer_address)

    @staticmethod
    def _handle_request_validated(
        event: RequestValidated, ctx: ServiceContext
    ) -> ServiceContext:
        return attrs.evolve(
            ctx,
            current_client=event.client_id,
            session_key=event.session_key,
            error_code=None,
            error_message="",
        )

    @staticmethod
    def _handle_request_rejected(event: RequestRejected, ctx: ServiceContext) -> ServiceContext:
        return attrs.evolve(
            ctx,
            error_code=event.error_code,
            error_message=event.reason,
            session_key=None,
        )


def _authenticated_has_key(state: ServiceState, ctx: ServiceContext) -> bool:
    return state != ServiceState.AUTHENTICATED or (
        ctx.session_key is not None and ctx.current_client is not None
    )


# =============================================================================
# SERVICE ROLE
# =============================================================================


@attrs.define
class ServiceRole:
    """
    Request handler of a protected service.

    Example:
        server = ServiceRole(service_id="Server", key_store=store, config=config)
        result = server.handle(envelope, peer_address="127.0.0.1")
        print(server.last_session.state)
    """

    service_id: str
    key_store: KeyStore
    config: ProtocolConfig = attrs.Factory(ProtocolConfig)
    provider: CryptoProvider = attrs.Factory(DefaultCryptoProvider)
    clock: Clock = utc_now
    replay_cache: Optional[AuthenticatorCache] = None
    history_size: int = 32

    _sessions: Deque[ServiceStateMachine] = attrs.field(init=False, factory=deque)
    _lock: threading.Lock = attrs.field(factory=threading.Lock, alias="_lock")
    _logger: structlog.BoundLogger = attrs.field(
        factory=lambda: structlog.get_logger(), alias="_logger"
    )

    def __attrs_post_init__(self) -> None:
        self._sessions = deque(maxlen=self.history_size)
        if self.replay_cache is None and self.config.replay_cache_enabled:
            self.replay_cache = AuthenticatorCache(
                window=self.config.grant_window, clock=self.clock
            )

    @property
    def role_id(self) -> str:
        return self.service_id

    @property
    def last_session(self) -> Optional[ServiceStateMachine]:
        with self._lock:
            return self._sessions[-1] if self._sessions else None

    @property
    def state(self) -> ServiceState:
        """State of the most recent request (READY before any request)."""
        session = self.last_session
        return session.state if session is not None else ServiceState.READY

    def handle(self, envelope: Envelope, peer_address: str) -> Result[Envelope, TicketFlowError]:
        """
        Validate a service request.

        Steps:
        1. Open serviceTicket with the service<->TGS long-term key
        2. Reject if its lifetime has elapsed
        3. Open the authenticator with the session key from the ticket
        4. Check ticket target, subject and address binding, replay
        5. Seal an approval with the session key

        Returns:
            Success(Envelope) holding the sealed approval
            Failure(error) if validation fails
        """
        session = self._new_session()
        session.process_event(RequestReceived(peer_address=peer_address))

        try:
            client_id, session_key = self._validate(envelope)
            now = self.clock()
            approval = seal_ticket(
                build_authenticator(APPROVAL_SUBJECT, self.service_id, now),
                session_key,
                self.provider,
            )
        except TicketFlowError as e:
            session.process_event(
                RequestRejected(error_type=type(e).__name__, reason=e.message, error_code=e.code)
            )
            self._logger.warning(
                "service_request_rejected",
                service=self.service_id,
                peer=peer_address,
                error=type(e).__name__,
                reason=e.message,
            )
            return Failure(e)

        session.process_event(RequestValidated(client_id=client_id, session_key=session_key))
        self._logger.info(
            "service_request_approved",
            service=self.service_id,
            client=client_id,
            peer=peer_address,
        )
        return Success(Envelope.of(approval))

    def _validate(self, envelope: Envelope) -> Tuple[str, SymmetricKey]:
        sealed_ticket = envelope.get(Purpose.SERVICE_TICKET)
        sealed_authenticator = envelope.get(Purpose.AUTHENTICATOR)

        long_term = self.key_store.get_symmetric_key(self.service_id, self.config.tgs_id)
        ticket = unseal_ticket(sealed_ticket, long_term, self.provider)

        check_lifetime(ticket, self.clock())
        session_key = ticket.session_key()

        authenticator = unseal_ticket(sealed_authenticator, session_key, self.provider)
        check_target(ticket, self.service_id)
        check_binding(authenticator, ticket)
        check_fresh(authenticator, self.replay_cache)

        return ticket.subject_id, session_key

    def _build_session(self) -> ServiceStateMachine:
        session = ServiceStateMachine(
            _state=ServiceState.READY,
            _context=ServiceContext(service_id=self.service_id),
            _clock=self.clock,
        )
        session.add_invariant("authenticated_has_key", _authenticated_has_key)
        return session

    def _new_session(self) -> ServiceStateMachine:
        session = self._build_session()
        with self._lock:
            self._sessions.append(session)
        return session

    def get_trace(self) -> List[Dict[str, Any]]:
        """Transitions of the most recent request."""
        session = self.last_session
        return [t.to_dict() for t in session.get_trace()] if session is not None else []

    def export_trace_json(self) -> str:
        session = self.last_session
        if session is None:
            return self._build_session().export_trace_json()
        return session.export_trace_json()

    def clear_replay_cache(self) -> int:
        """Clear the replay cache. Returns number of entries cleared."""
        return self.replay_cache.clear() if self.replay_cache is not None else 0
