"""
ticketflow Bootstrap Module

One-time exchange of long-term symmetric keys between adjacent roles.
"""

from ticketflow.bootstrap.key_exchange import (
    BootstrapResponder,
    provision_key_pair,
    public_sender_secret_receiver,
    receiver,
    received_key_label,
)

__all__ = [
    "BootstrapResponder",
    "provision_key_pair",
    "public_sender_secret_receiver",
    "receiver",
    "received_key_label",
]
