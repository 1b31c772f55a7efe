"""
ticketflow Core Module

Foundational types and abstractions shared by every role.

Components:
- types: Key value types (SymmetricKey, KeyPair) and time helpers
- crypto: Crypto provider interface and the default AES/RSA provider
- state_machine: Base state machine with invariant checking
- config: Topology and protocol configuration
- exceptions: Error taxonomy
"""

from ticketflow.core.types import (
    EncryptionType,
    SymmetricKey,
    KeyPair,
    Clock,
    pair_name,
    utc_now,
    format_time,
    parse_time,
)
from ticketflow.core.crypto import CryptoProvider, DefaultCryptoProvider
from ticketflow.core.state_machine import StateMachineBase, Transition
from ticketflow.core.config import Endpoint, ProtocolConfig
from ticketflow.core.exceptions import (
    TicketFlowError,
    AuthenticationError,
    ProtocolError,
    CryptoError,
    StateError,
    InvariantViolation,
    KeyNotFound,
    DecryptionFailure,
    ExpiredTicket,
    ReplayDetected,
    IdentityMismatch,
    MalformedEnvelope,
    TransportFailure,
)

__all__ = [
    # Types
    "EncryptionType",
    "SymmetricKey",
    "KeyPair",
    "Clock",
    "pair_name",
    "utc_now",
    "format_time",
    "parse_time",
    # Crypto
    "CryptoProvider",
    "DefaultCryptoProvider",
    # State Machine
    "StateMachineBase",
    "Transition",
    # Config
    "Endpoint",
    "ProtocolConfig",
    # Exceptions
    "TicketFlowError",
    "AuthenticationError",
    "ProtocolError",
    "CryptoError",
    "StateError",
    "InvariantViolation",
    "KeyNotFound",
    "DecryptionFailure",
    "ExpiredTicket",
    "ReplayDetected",
    "IdentityMismatch",
    "MalformedEnvelope",
    "TransportFailure",
]
