"""
ticketflow Configuration

Topology and protocol settings injected into every role at construction.
"""

from __future__ import annotations

import os
from datetime import timedelta
from typing import Mapping, Optional, Tuple

import attrs


DEFAULT_HOST = "localhost"

# Default ports
BOOTSTRAP_AS_PORT = 5521
BOOTSTRAP_TGS_PORT = 5501
AS_PORT = 1121
TGS_PORT = 1202
SERVER_PORT = 1203


@attrs.define(frozen=True)
class Endpoint:
    """Host and port of one listening role."""

    host: str = DEFAULT_HOST
    port: int = 0

    @property
    def address(self) -> Tuple[str, int]:
        return (self.host, self.port)

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


@attrs.define(frozen=True)
class ProtocolConfig:
    """
    Protocol configuration.

    Attributes:
        client_id: Identity the Client presents
        as_id: Identity of the Authentication role
        tgs_id: Identity of the Ticket-Granting role
        client_address: Address the Client puts in its authenticators
        as_endpoint, tgs_endpoint: Protocol endpoints of AS and TGS
        service_endpoints: Protocol endpoint per service name
        bootstrap_as_endpoint, bootstrap_tgs_endpoint: Bootstrap receivers
        grant_window: Lifetime of every issued ticket
        wrap_forwarded_tickets: Also seal forwarded tickets with the
            client's key as an outer layer
        replay_cache_enabled: Reject repeated authenticators
        socket_timeout: Per-connection timeout in seconds (None = blocking)
        keystore_path: Directory of a file-backed key store
    """

    client_id: str = "Client"
    as_id: str = "AS"
    tgs_id: str = "TGS"
    client_address: str = "127.0.0.1"
    as_endpoint: Endpoint = Endpoint(port=AS_PORT)
    tgs_endpoint: Endpoint = Endpoint(port=TGS_PORT)
    service_endpoints: Mapping[str, Endpoint] = attrs.Factory(
        lambda: {"Server": Endpoint(port=SERVER_PORT)}
    )
    bootstrap_as_endpoint: Endpoint = Endpoint(port=BOOTSTRAP_AS_PORT)
    bootstrap_tgs_endpoint: Endpoint = Endpoint(port=BOOTSTRAP_TGS_PORT)
    grant_window: timedelta = timedelta(minutes=5)
    wrap_forwarded_tickets: bool = False
    replay_cache_enabled: bool = True
    socket_timeout: Optional[float] = 10.0
    keystore_path: Optional[str] = None

    def service_endpoint(self, service_id: str) -> Endpoint:
        """
        Endpoint of a protected service.

        Raises:
            KeyError: If the service is not part of the topology
        """
        return self.service_endpoints[service_id]

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        prefix: str = "TICKETFLOW_",
    ) -> ProtocolConfig:
        """
        Build a config from environment variables.

        Recognized variables (all optional): CLIENT_ID, AS_ID, TGS_ID,
        CLIENT_ADDRESS, AS_HOST, AS_PORT, TGS_HOST, TGS_PORT,
        BOOTSTRAP_AS_PORT, BOOTSTRAP_TGS_PORT, SERVICE (name=host:port,
        comma separated), GRANT_WINDOW_SECONDS, WRAP_FORWARDED_TICKETS,
        REPLAY_CACHE, SOCKET_TIMEOUT, KEYSTORE_PATH.
        """
        env = os.environ if environ is None else environ

        def get(name: str) -> Optional[str]:
            return env.get(prefix + name)

        def flag(name: str, default: bool) -> bool:
            value = get(name)
            if value is None:
                return default
            return value.strip().lower() in ("1", "true", "yes", "on")

        defaults = cls()
        changes = {}
        for name in ("client_id", "as_id", "tgs_id", "client_address", "keystore_path"):
            value = get(name.upper())
            if value is not None:
                changes[name] = value

        changes["as_endpoint"] = Endpoint(
            host=get("AS_HOST") or defaults.as_endpoint.host,
            port=int(get("AS_PORT") or defaults.as_endpoint.port),
        )
        changes["tgs_endpoint"] = Endpoint(
            host=get("TGS_HOST") or defaults.tgs_endpoint.host,
            port=int(get("TGS_PORT") or defaults.tgs_endpoint.port),
        )
        changes["bootstrap_as_endpoint"] = Endpoint(
            host=get("AS_HOST") or defaults.bootstrap_as_endpoint.host,
            port=int(get("BOOTSTRAP_AS_PORT") or defaults.bootstrap_as_endpoint.port),
        )
        changes["bootstrap_tgs_endpoint"] = Endpoint(
            host=get("TGS_HOST") or defaults.bootstrap_tgs_endpoint.host,
            port=int(get("BOOTSTRAP_TGS_PORT") or defaults.bootstrap_tgs_endpoint.port),
        )

        services = get("SERVICE")
        if services:
            changes["service_endpoints"] = dict(
                _parse_service_entry(entry) for entry in services.split(",") if entry.strip()
            )

        window = get("GRANT_WINDOW_SECONDS")
        if window is not None:
            changes["grant_window"] = timedelta(seconds=int(window))

        timeout = get("SOCKET_TIMEOUT")
        if timeout is not None:
            changes["socket_timeout"] = float(timeout) if float(timeout) > 0 else None

        changes["wrap_forwarded_tickets"] = flag(
            "WRAP_FORWARDED_TICKETS", defaults.wrap_forwarded_tickets
        )
        changes["replay_cache_enabled"] = flag("REPLAY_CACHE", defaults.replay_cache_enabled)

        return attrs.evolve(defaults, **changes)


def _parse_service_entry(entry: str) -> Tuple[str, Endpoint]:
    """Parse ``name=host:port``."""
    name, _, location = entry.strip().partition("=")
    host, _, port = location.rpartition(":")
    if not name or not port:
        raise ValueError(f"Invalid service entry: {entry!r} (expected name=host:port)")
    return name, Endpoint(host=host or DEFAULT_HOST, port=int(port))
