"""
ticketflow - Ticket-Based Three-Party Authentication

Four roles cooperate to let a Client prove its identity to a protected
service without ever sending a long-term secret:

- AS (Authentication role): issues a granting ticket
- TGS (Ticket-Granting role): trades it for a service ticket
- Server: validates the service ticket and approves the Client
- Client: drives the three exchanges in order

A bootstrap exchange first gives every adjacent role pair a shared
long-term key.

Example Usage:
    from ticketflow import KerberosClient, ProtocolConfig

    config = ProtocolConfig.from_env()
    client = KerberosClient(key_store=store, config=config)

    outcome = client.run("Server")
    if outcome.success:
        print(f"Approved at {outcome.approved_at}")

        # Export the run as an audit trace
        trace = client.export_trace_json()
"""

from ticketflow.core.config import Endpoint, ProtocolConfig
from ticketflow.core.crypto import CryptoProvider, DefaultCryptoProvider
from ticketflow.core.exceptions import TicketFlowError
from ticketflow.storage.keystore import FileKeyStore, InMemoryKeyStore, KeyStore
from ticketflow.kerberos import (
    AuthenticationService,
    Envelope,
    Purpose,
    ServiceRole,
    SessionOutcome,
    Ticket,
    TicketGrantingService,
)
from ticketflow.transport import LocalTransport, RoleServer, SocketTransport
from ticketflow.kerberos.client import KerberosClient, create_kerberos_client
from ticketflow.bootstrap import (
    BootstrapResponder,
    provision_key_pair,
    public_sender_secret_receiver,
    receiver,
)

__version__ = "0.1.0"

__all__ = [
    # Main API
    "KerberosClient",
    "create_kerberos_client",
    "AuthenticationService",
    "TicketGrantingService",
    "ServiceRole",
    "RoleServer",
    "SessionOutcome",
    # Configuration
    "Endpoint",
    "ProtocolConfig",
    # Tickets
    "Envelope",
    "Purpose",
    "Ticket",
    # Collaborators
    "CryptoProvider",
    "DefaultCryptoProvider",
    "KeyStore",
    "InMemoryKeyStore",
    "FileKeyStore",
    "LocalTransport",
    "SocketTransport",
    # Bootstrap
    "BootstrapResponder",
    "provision_key_pair",
    "public_sender_secret_receiver",
    "receiver",
    # Errors
    "TicketFlowError",
    # Metadata
    "__version__",
]
