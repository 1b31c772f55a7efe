"""
ticketflow Kerberos Types

Protocol states, session contexts and state machine events for the Client
orchestrator and the Service role.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum, auto
from typing import Optional

import attrs
from attrs import field

from ticketflow.core.types import SymmetricKey
from ticketflow.kerberos.tickets import Ticket


# =============================================================================
# CLIENT STATE MACHINE
# =============================================================================


class KerberosState(Enum):
    """Client progress through the three exchanges."""

    INITIAL = auto()
    AS_REQ_SENT = auto()
    HAS_TGT = auto()
    TGS_REQ_SENT = auto()
    HAS_SERVICE_TICKET = auto()
    AP_REQ_SENT = auto()
    AUTHENTICATED = auto()
    ERROR = auto()


@attrs.define
class KerberosContext:
    """
    Client session context.

    Forwarded tickets are held exactly as received: the Client cannot read
    them and only passes them on.
    """

    client_id: str

    # Granting ticket and the Client<->TGS session key
    granting_ticket: Optional[Ticket] = field(default=None, repr=False)
    tgs_session_key: Optional[SymmetricKey] = field(default=None, repr=False)
    granting_lifetime_end: Optional[datetime] = None

    # Service ticket and the Client<->service session key
    target_service: Optional[str] = None
    service_ticket: Optional[Ticket] = field(default=None, repr=False)
    service_session_key: Optional[SymmetricKey] = field(default=None, repr=False)
    service_lifetime_end: Optional[datetime] = None

    # Last approval from a service
    approved_at: Optional[datetime] = None

    # Error state
    error_code: Optional[int] = None
    error_message: str = ""

    def has_tgt(self) -> bool:
        return self.granting_ticket is not None and self.tgs_session_key is not None

    def has_service_ticket(self, service: str) -> bool:
        return (
            self.target_service == service
            and self.service_ticket is not None
            and self.service_session_key is not None
        )


# =============================================================================
# CLIENT EVENTS
# =============================================================================


@attrs.define(frozen=True, slots=True)
class ASRequestSent:
    """Event: Client sent a request to the AS."""

    client_id: str
    tgs_id: str


@attrs.define(frozen=True, slots=True)
class ASReplyReceived:
    """Event: Client opened the AS reply."""

    granting_ticket: Ticket = field(repr=False)
    session_key: SymmetricKey = field(repr=False)
    lifetime_end: datetime


@attrs.define(frozen=True, slots=True)
class TGSRequestSent:
    """Event: Client asked the TGS for a service ticket."""

    service: str


@attrs.define(frozen=True, slots=True)
class TGSReplyReceived:
    """Event: Client opened the TGS reply."""

    service: str
    service_ticket: Ticket = field(repr=False)
    session_key: SymmetricKey = field(repr=False)
    lifetime_end: datetime


@attrs.define(frozen=True, slots=True)
class APRequestSent:
    """Event: Client presented its service ticket."""

    service: str


@attrs.define(frozen=True, slots=True)
class APReplyReceived:
    """Event: Service approval verified."""

    service: str
    approved_at: datetime


@attrs.define(frozen=True, slots=True)
class ErrorOccurred:
    """Event: an exchange failed."""

    error_type: str
    reason: str
    error_code: Optional[int] = None


# =============================================================================
# SESSION OUTCOME
# =============================================================================


@attrs.define(frozen=True, slots=True)
class SessionOutcome:
    """
    Result of a complete Client run.

    Attributes:
        success: Whether the service approved the Client
        client_id: Identity the Client presented
        service: Service the Client tried to reach
        final_state: State the Client ended in
        approved_at: Approval time reported by the service (if success)
        error_type: Name of the first error (if failure)
        error_code: Its numeric code, when it has one
        error_message: Human-readable reason (if failure)
    """

    success: bool
    client_id: str
    service: str
    final_state: KerberosState
    approved_at: Optional[datetime] = None
    error_type: Optional[str] = None
    error_code: Optional[int] = None
    error_message: str = ""

    def __attrs_post_init__(self) -> None:
        if self.success:
            if self.approved_at is None:
                raise ValueError("Successful session must have an approval time")
        else:
            if not self.error_message:
                raise ValueError("Failed session must have error_message")


# =============================================================================
# SERVICE STATE MACHINE
# =============================================================================


class ServiceState(Enum):
    """Service role progress on one request."""

    READY = auto()
    PROCESSING = auto()
    AUTHENTICATED = auto()
    REJECTED = auto()


@attrs.define
class ServiceContext:
    """Service role context for one request."""

    service_id: str
    peer_address: Optional[str] = None
    current_client: Optional[str] = None
    session_key: Optional[SymmetricKey] = field(default=None, repr=False)
    error_code: Optional[int] = None
    error_message: str = ""


@attrs.define(frozen=True, slots=True)
class RequestReceived:
    """Event: Service received a service ticket and authenticator."""

    peer_address: str


@attrs.define(frozen=True, slots=True)
class RequestValidated:
    """Event: every check passed."""

    client_id: str
    session_key: SymmetricKey = field(repr=False)


@attrs.define(frozen=True, slots=True)
class RequestRejected:
    """Event: a check failed."""

    error_type: str
    reason: str
    error_code: Optional[int] = None
