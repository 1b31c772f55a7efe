"""
ticketflow Exception Types

Error taxonomy for the ticket protocol. Handlers raise these internally and
return them wrapped in ``returns.result.Failure`` at operation boundaries.
"""

from typing import Optional


class TicketFlowError(Exception):
    """Base exception for all ticketflow errors."""

    def __init__(self, message: str, code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code


class AuthenticationError(TicketFlowError):
    """
    Authentication rejected.

    The request was well formed but the presented credentials did not
    satisfy a protocol check.
    """

    pass


class ProtocolError(TicketFlowError):
    """
    Protocol-level error.

    Malformed messages, unexpected responses or transport problems.
    """

    pass


class CryptoError(TicketFlowError):
    """
    Cryptographic operation failed.

    Encryption, decryption or key decoding could not be completed.
    """

    pass


class StateError(TicketFlowError):
    """Operation not valid in the current protocol state."""

    pass


class InvariantViolation(TicketFlowError):
    """
    A protocol invariant was violated.

    Raised by the state machine when a transition would leave the
    context in a state its registered invariants forbid.
    """

    pass


class KeyNotFound(TicketFlowError):
    """
    A required key is absent from the key store.

    The request is aborted and no response is sent.
    """

    def __init__(self, name: str) -> None:
        super().__init__(f"Key not found: {name}")
        self.name = name


class DecryptionFailure(CryptoError):
    """
    Ticket could not be decrypted.

    Covers the wrong key, corrupted ciphertext and plaintext that fails to
    parse after decryption. Callers treat all three the same way.
    """

    def __init__(self, message: str = "Decryption failed") -> None:
        super().__init__(message, code=31)  # KRB_AP_ERR_BAD_INTEGRITY


class ExpiredTicket(AuthenticationError):
    """
    Ticket lifetime has elapsed.

    The caller must restart the leg that issued the ticket.
    """

    def __init__(self, message: str = "Ticket has expired") -> None:
        super().__init__(message, code=32)  # KRB_AP_ERR_TKT_EXPIRED


class ReplayDetected(AuthenticationError):
    """An authenticator was presented more than once."""

    def __init__(self, message: str = "Replay attack detected") -> None:
        super().__init__(message, code=34)  # KRB_AP_ERR_REPEAT


class IdentityMismatch(AuthenticationError):
    """
    Identity binding failed.

    Subject, target or address disagree between an authenticator and the
    ticket it accompanies.
    """

    NOT_US = 35
    BAD_MATCH = 36
    BAD_ADDRESS = 38

    def __init__(self, message: str, code: int = BAD_MATCH) -> None:
        super().__init__(message, code=code)


class MalformedEnvelope(ProtocolError):
    """Envelope or wire frame is missing required content or cannot be parsed."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code=40)  # KRB_AP_ERR_MSG_TYPE


class TransportFailure(ProtocolError):
    """
    Connection refused, reset or closed early, or the peer answered with
    a negative acknowledgement.

    When the peer rejected the request, ``remote_error`` holds the name of
    the error it reported and ``code`` its numeric code.
    """

    def __init__(
        self,
        message: str,
        code: Optional[int] = None,
        remote_error: Optional[str] = None,
    ) -> None:
        super().__init__(message, code)
        self.remote_error = remote_error

