"""
ticketflow Kerberos Client

Client orchestrator: drives the AS, TGS and Service exchanges in order and
records its progress in a state machine.

Protocol Flow:
1. request_granting_ticket(): AS exchange, yields the granting ticket and
   the Client<->TGS session key
2. request_service_ticket(service): TGS exchange, yields the service
   ticket and the Client<->service session key
3. access_service(service): Service exchange, yields the approval

Forwarded tickets are passed on unopened. Everything runs sequentially
inside one run; the first failure ends it.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import attrs
import structlog
from returns.result import Failure, Result, Success

from ticketflow.core.config import Endpoint, ProtocolConfig
from ticketflow.core.crypto import CryptoProvider, DefaultCryptoProvider
from ticketflow.core.exceptions import (
    IdentityMismatch,
    StateError,
    TicketFlowError,
    TransportFailure,
)
from ticketflow.core.state_machine import StateMachineBase, TransitionEntry
from ticketflow.core.types import Clock, SymmetricKey, utc_now
from ticketflow.kerberos.service import APPROVAL_SUBJECT
from ticketflow.kerberos.tickets import (
    Envelope,
    Purpose,
    Ticket,
    build_authenticator,
    build_next_hop_request,
    build_request,
    seal_ticket,
    unseal_ticket,
)
from ticketflow.kerberos.types import (
    APReplyReceived,
    APRequestSent,
    ASReplyReceived,
    ASRequestSent,
    ErrorOccurred,
    KerberosContext,
    KerberosState,
    SessionOutcome,
    TGSReplyReceived,
    TGSRequestSent,
)
from ticketflow.storage.keystore import KeyStore, open_key_store
from ticketflow.transport.connection import SocketTransport, Transport

logger = structlog.get_logger()


# =============================================================================
# KERBEROS CLIENT STATE MACHINE
# =============================================================================


@attrs.define
class KerberosClientStateMachine(StateMachineBase[KerberosState, Any, KerberosContext]):
    """
    Client state machine.

    States:
    - INITIAL: Nothing obtained yet
    - AS_REQ_SENT: Waiting for the AS reply
    - HAS_TGT: Holding a granting ticket
    - TGS_REQ_SENT: Waiting for the TGS reply
    - HAS_SERVICE_TICKET: Holding a service ticket
    - AP_REQ_SENT: Waiting for the service approval
    - AUTHENTICATED: Service approved the Client
    - ERROR: An exchange failed
    """

    def initial_state(self) -> KerberosState:
        return KerberosState.INITIAL

    def transition_table(self) -> Dict[Tuple[KerberosState, type], TransitionEntry]:
        table: Dict[Tuple[KerberosState, type], TransitionEntry] = {
            # AS Exchange
            (KerberosState.INITIAL, ASRequestSent): (
                KerberosState.AS_REQ_SENT,
                self._handle_as_request,
            ),
            (KerberosState.AS_REQ_SENT, ASReplyReceived): (
                KerberosState.HAS_TGT,
                self._handle_as_reply,
            ),
            # TGS Exchange
            (KerberosState.HAS_TGT, TGSRequestSent): (
                KerberosState.TGS_REQ_SENT,
                self._handle_tgs_request,
            ),
            (KerberosState.TGS_REQ_SENT, TGSReplyReceived): (
                KerberosState.HAS_SERVICE_TICKET,
                self._handle_tgs_reply,
            ),
            # Service Exchange
            (KerberosState.HAS_SERVICE_TICKET, APRequestSent): (
                KerberosState.AP_REQ_SENT,
                self._handle_ap_request,
            ),
            (KerberosState.AP_REQ_SENT, APReplyReceived): (
                KerberosState.AUTHENTICATED,
                self._handle_ap_reply,
            ),
        }

        # Re-authentication, including after a failed leg
        for state in (
            KerberosState.HAS_TGT,
            KerberosState.HAS_SERVICE_TICKET,
            KerberosState.AUTHENTICATED,
            KerberosState.ERROR,
        ):
            table[(state, ASRequestSent)] = (KerberosState.AS_REQ_SENT, self._handle_as_request)

        # Another service ticket, or a restarted TGS leg
        for state in (
            KerberosState.HAS_SERVICE_TICKET,
            KerberosState.AUTHENTICATED,
            KerberosState.ERROR,
        ):
            table[(state, TGSRequestSent)] = (KerberosState.TGS_REQ_SENT, self._handle_tgs_request)

        # Presenting a held service ticket again
        for state in (KerberosState.AUTHENTICATED, KerberosState.ERROR):
            table[(state, APRequestSent)] = (KerberosState.AP_REQ_SENT, self._handle_ap_request)

        for state in KerberosState:
            if state is not KerberosState.ERROR:
                table[(state, ErrorOccurred)] = (KerberosState.ERROR, self._handle_error)

        return table

    @staticmethod
    def _handle_as_request(event: ASRequestSent, ctx: KerberosContext) -> KerberosContext:
        return attrs.evolve(
            ctx,
            granting_ticket=None,
            tgs_session_key=None,
            granting_lifetime_end=None,
            error_code=None,
            error_message="",
        )

    @staticmethod
    def _handle_as_reply(event: ASReplyReceived, ctx: KerberosContext) -> KerberosContext:
        return attrs.evolve(
            ctx,
            granting_ticket=event.granting_ticket,
            tgs_session_key=event.session_key,
            granting_lifetime_end=event.lifetime_end,
        )

    @staticmethod
    def _handle_tgs_request(event: TGSRequestSent, ctx: KerberosContext) -> KerberosContext:
        return attrs.evolve(
            ctx,
            target_service=event.service,
            service_ticket=None,
            service_session_key=None,
            service_lifetime_end=None,
            approved_at=None,
            error_code=None,
            error_message="",
        )

    @staticmethod
    def _handle_tgs_reply(event: TGSReplyReceived, ctx: KerberosContext) -> KerberosContext:
        return attrs.evolve(
            ctx,
            service_ticket=event.service_ticket,
            service_session_key=event.session_key,
            service_lifetime_end=event.lifetime_end,
        )

    @staticmethod
    def _handle_ap_request(event: APRequestSent, ctx: KerberosContext) -> KerberosContext:
        return attrs.evolve(ctx, approved_at=None, error_code=None, error_message="")

    @staticmethod
    def _handle_ap_reply(event: APReplyReceived, ctx: KerberosContext) -> KerberosContext:
        return attrs.evolve(ctx, approved_at=event.approved_at)

    @staticmethod
    def _handle_error(event: ErrorOccurred, ctx: KerberosContext) -> KerberosContext:
        return attrs.evolve(
            ctx,
            error_code=event.error_code,
            error_message=f"{event.error_type}: {event.reason}",
        )


def _tgt_held(state: KerberosState, ctx: KerberosContext) -> bool:
    if state in (KerberosState.HAS_TGT, KerberosState.TGS_REQ_SENT):
        return ctx.has_tgt()
    return True


def _service_ticket_requires_tgt(state: KerberosState, ctx: KerberosContext) -> bool:
    if state == KerberosState.HAS_SERVICE_TICKET:
        return ctx.granting_ticket is not None
    return True


def _authenticated_has_service_key(state: KerberosState, ctx: KerberosContext) -> bool:
    if state == KerberosState.AUTHENTICATED:
        return ctx.service_session_key is not None
    return True


# =============================================================================
# KERBEROS CLIENT
# =============================================================================


@attrs.define
class KerberosClient:
    """
    Client orchestrator.

    Example:
        client = KerberosClient(key_store=store, config=config, transport=transport)

        outcome = client.run("Server")
        if outcome.success:
            print(f"Approved at {outcome.approved_at}")

        # Or step by step
        client.request_granting_ticket()
        client.request_service_ticket("Server")
        client.access_service("Server")
    """

    key_store: KeyStore
    config: ProtocolConfig = attrs.Factory(ProtocolConfig)
    transport: Transport = attrs.Factory(SocketTransport)
    provider: CryptoProvider = attrs.Factory(DefaultCryptoProvider)
    clock: Clock = utc_now

    _state_machine: KerberosClientStateMachine = attrs.field(
        alias="_state_machine",
        default=None,
    )
    _logger: structlog.BoundLogger = attrs.field(
        factory=lambda: structlog.get_logger(), alias="_logger"
    )

    def __attrs_post_init__(self) -> None:
        if self._state_machine is None:
            self._state_machine = KerberosClientStateMachine(
                _state=KerberosState.INITIAL,
                _context=KerberosContext(client_id=self.config.client_id),
                _clock=self.clock,
            )
            self._state_machine.add_invariant("tgt_held", _tgt_held)
            self._state_machine.add_invariant(
                "service_ticket_requires_tgt", _service_ticket_requires_tgt
            )
            self._state_machine.add_invariant(
                "authenticated_has_service_key", _authenticated_has_service_key
            )

    @property
    def state(self) -> KerberosState:
        return self._state_machine.state

    @property
    def context(self) -> KerberosContext:
        return self._state_machine.context

    # -------------------------------------------------------------------------
    # AS exchange
    # -------------------------------------------------------------------------

    def request_granting_ticket(self) -> Result[Ticket, TicketFlowError]:
        """
        Obtain a granting ticket from the AS.

        Returns:
            Success(granting ticket) as it will be forwarded to the TGS
            Failure(error) on the first failed step
        """
        cfg = self.config
        started = self._begin(ASRequestSent(client_id=cfg.client_id, tgs_id=cfg.tgs_id))
        if isinstance(started, Failure):
            return started

        try:
            client_key = self.key_store.get_symmetric_key(cfg.client_id, cfg.as_id)
            now = self.clock()
            request = build_request(cfg.client_id, cfg.tgs_id, now + cfg.grant_window)
            reply = self.transport.exchange(cfg.as_endpoint, Envelope.of(request))

            session_key, lifetime_end = self._open_response(reply, client_key, cfg.tgs_id)
            granting = reply.get(Purpose.GRANTING_TICKET)
            if cfg.wrap_forwarded_tickets:
                granting = unseal_ticket(granting, client_key, self.provider)

            self.key_store.put_symmetric_key(cfg.client_id, cfg.tgs_id, session_key)
        except TicketFlowError as e:
            return self._fail("as_exchange_failed", e)

        self._state_machine.process_event(
            ASReplyReceived(
                granting_ticket=granting,
                session_key=session_key,
                lifetime_end=lifetime_end,
            )
        )
        self._logger.info(
            "granting_ticket_obtained",
            client=cfg.client_id,
            lifetime_end=lifetime_end.isoformat(),
        )
        return Success(granting)

    # -------------------------------------------------------------------------
    # TGS exchange
    # -------------------------------------------------------------------------

    def request_service_ticket(self, service: str) -> Result[Ticket, TicketFlowError]:
        """
        Trade the granting ticket for a service ticket.

        Returns:
            Success(service ticket) as it will be forwarded to the service
            Failure(error) on the first failed step
        """
        cfg = self.config
        ctx = self.context
        if not ctx.has_tgt():
            return Failure(StateError("No granting ticket; run the AS exchange first"))

        started = self._begin(TGSRequestSent(service=service))
        if isinstance(started, Failure):
            return started

        try:
            authenticator = self._authenticator(ctx.tgs_session_key)
            request = Envelope.of(
                ctx.granting_ticket,
                build_next_hop_request(service),
                authenticator,
            )
            reply = self.transport.exchange(cfg.tgs_endpoint, request)

            session_key, lifetime_end = self._open_response(reply, ctx.tgs_session_key, service)
            service_ticket = reply.get(Purpose.SERVICE_TICKET)
            if cfg.wrap_forwarded_tickets:
                service_ticket = unseal_ticket(service_ticket, ctx.tgs_session_key, self.provider)

            self.key_store.put_symmetric_key(cfg.client_id, service, session_key)
        except TicketFlowError as e:
            return self._fail("tgs_exchange_failed", e, service=service)

        self._state_machine.process_event(
            TGSReplyReceived(
                service=service,
                service_ticket=service_ticket,
                session_key=session_key,
                lifetime_end=lifetime_end,
            )
        )
        self._logger.info(
            "service_ticket_obtained",
            client=cfg.client_id,
            service=service,
            lifetime_end=lifetime_end.isoformat(),
        )
        return Success(service_ticket)

    # -------------------------------------------------------------------------
    # Service exchange
    # -------------------------------------------------------------------------

    def access_service(self, service: str) -> Result[datetime, TicketFlowError]:
        """
        Present the service ticket and verify the approval.

        Returns:
            Success(approval time reported by the service)
            Failure(error) if the service rejected the Client or the
            approval does not verify
        """
        ctx = self.context
        if not ctx.has_service_ticket(service):
            return Failure(StateError(f"No service ticket for {service}"))

        started = self._begin(APRequestSent(service=service))
        if isinstance(started, Failure):
            return started

        try:
            endpoint = self._service_endpoint(service)
            authenticator = self._authenticator(ctx.service_session_key)
            reply = self.transport.exchange(endpoint, Envelope.of(ctx.service_ticket, authenticator))

            approval = unseal_ticket(
                reply.get(Purpose.AUTHENTICATOR), ctx.service_session_key, self.provider
            )
            if approval.subject_id != APPROVAL_SUBJECT or approval.address != service:
                raise IdentityMismatch(
                    f"Approval names {approval.address!r}, expected {service!r}",
                    code=IdentityMismatch.BAD_MATCH,
                )
            approved_at = approval.time_field("issued_at")
        except TicketFlowError as e:
            return self._fail("service_exchange_failed", e, service=service)

        self._state_machine.process_event(APReplyReceived(service=service, approved_at=approved_at))
        self._logger.info("service_access_granted", client=self.config.client_id, service=service)
        return Success(approved_at)

    # -------------------------------------------------------------------------
    # Full run
    # -------------------------------------------------------------------------

    def run(self, service: str) -> SessionOutcome:
        """Perform all three exchanges, stopping at the first failure."""
        result = (
            self.request_granting_ticket()
            .bind(lambda _: self.request_service_ticket(service))
            .bind(lambda _: self.access_service(service))
        )

        if isinstance(result, Success):
            return SessionOutcome(
                success=True,
                client_id=self.config.client_id,
                service=service,
                final_state=self.state,
                approved_at=result.unwrap(),
            )

        error = result.failure()
        error_type = type(error).__name__
        if isinstance(error, TransportFailure) and error.remote_error:
            error_type = error.remote_error
        return SessionOutcome(
            success=False,
            client_id=self.config.client_id,
            service=service,
            final_state=self.state,
            error_type=error_type,
            error_code=error.code,
            error_message=error.message or error_type,
        )

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _begin(self, event: Any) -> Result[KerberosState, TicketFlowError]:
        started = self._state_machine.process_event(event)
        if isinstance(started, Failure):
            return Failure(StateError(started.failure()))
        return started

    def _fail(self, log_event: str, error: TicketFlowError, **context: Any) -> Failure:
        self._state_machine.process_event(
            ErrorOccurred(
                error_type=type(error).__name__,
                reason=error.message,
                error_code=error.code,
            )
        )
        self._logger.warning(
            log_event,
            client=self.config.client_id,
            error=type(error).__name__,
            reason=error.message,
            **context,
        )
        return Failure(error)

    def _open_response(
        self, reply: Envelope, key: SymmetricKey, expected_subject: str
    ) -> Tuple[SymmetricKey, datetime]:
        """Decrypt responseToClient and read the session key and lifetime."""
        response = unseal_ticket(reply.get(Purpose.RESPONSE_TO_CLIENT), key, self.provider)
        if response.subject_id != expected_subject:
            raise IdentityMismatch(
                f"Response is for {response.subject_id!r}, expected {expected_subject!r}",
                code=IdentityMismatch.NOT_US,
            )
        return response.session_key(), response.time_field("lifetime_end")

    def _authenticator(self, key: SymmetricKey) -> Ticket:
        ticket = build_authenticator(self.config.client_id, self.config.client_address, self.clock())
        return seal_ticket(ticket, key, self.provider)

    def _service_endpoint(self, service: str) -> Endpoint:
        try:
            return self.config.service_endpoint(service)
        except KeyError:
            raise TransportFailure(f"No endpoint configured for service {service!r}") from None

    def get_trace(self) -> List[Dict[str, Any]]:
        return [t.to_dict() for t in self._state_machine.get_trace()]

    def export_trace_json(self) -> str:
        """Export the run as a JSON audit trace."""
        return self._state_machine.export_trace_json()

    def reset(self) -> None:
        """Forget all tickets and return to INITIAL."""
        self._state_machine.reset()
        self._state_machine._context = KerberosContext(client_id=self.config.client_id)


# =============================================================================
# FACTORY FUNCTIONS
# =============================================================================


def create_kerberos_client(
    config: Optional[ProtocolConfig] = None,
    key_store: Optional[KeyStore] = None,
    transport: Optional[Transport] = None,
) -> KerberosClient:
    """
    Create a Client wired for the network.

    Args:
        config: Topology and protocol settings (environment if omitted)
        key_store: Key store (opened from ``config.keystore_path`` if omitted)
        transport: Transport (TCP with the configured timeout if omitted)
    """
    config = config or ProtocolConfig.from_env()
    return KerberosClient(
        key_store=key_store or open_key_store(config.keystore_path),
        config=config,
        transport=transport or SocketTransport(timeout=config.socket_timeout),
    )
