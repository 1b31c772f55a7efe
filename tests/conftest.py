"""
Pytest configuration and shared fixtures for ticketflow tests.
"""

import pytest
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict

import attrs

from ticketflow.core.config import Endpoint, ProtocolConfig
from ticketflow.core.crypto import DefaultCryptoProvider
from ticketflow.core.types import SymmetricKey
from ticketflow.kerberos.as_exchange import AuthenticationService
from ticketflow.kerberos.client import KerberosClient
from ticketflow.kerberos.service import ServiceRole
from ticketflow.kerberos.tgs_exchange import TicketGrantingService
from ticketflow.storage.keystore import InMemoryKeyStore
from ticketflow.transport.local import LocalTransport


# =============================================================================
# CLOCK
# =============================================================================


@attrs.define
class FixedClock:
    """Clock callable that only moves when told to."""

    now: datetime

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


@pytest.fixture
def clock() -> FixedClock:
    """Clock fixed at 2024-01-01 12:00 UTC."""
    return FixedClock(datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc))


# =============================================================================
# CRYPTOGRAPHIC FIXTURES
# =============================================================================


@pytest.fixture(scope="session")
def provider() -> DefaultCryptoProvider:
    """Default AES/RSA provider."""
    return DefaultCryptoProvider()


@pytest.fixture
def session_key() -> SymmetricKey:
    """Random AES-256 key."""
    return SymmetricKey.generate()


# =============================================================================
# CONFIGURATION FIXTURES
# =============================================================================


@pytest.fixture
def config() -> ProtocolConfig:
    """Default topology with a single service named Server."""
    return ProtocolConfig(service_endpoints={"Server": Endpoint(port=1203)})


# =============================================================================
# KEY STORE FIXTURES
# =============================================================================


def install_long_term_keys(
    config: ProtocolConfig, services=("Server",)
) -> Dict[str, InMemoryKeyStore]:
    """
    One store per role, holding the keys the bootstrap would have produced.

    Each role stores the shared key from its own perspective.
    """
    stores = {
        config.client_id: InMemoryKeyStore(),
        config.as_id: InMemoryKeyStore(),
        config.tgs_id: InMemoryKeyStore(),
    }
    for service in services:
        stores[service] = InMemoryKeyStore()

    def share(a: str, b: str) -> None:
        key = SymmetricKey.generate()
        stores[a].put_symmetric_key(a, b, key)
        stores[b].put_symmetric_key(b, a, key)

    share(config.client_id, config.as_id)
    share(config.tgs_id, config.as_id)
    for service in services:
        share(service, config.tgs_id)
    return stores


@pytest.fixture
def stores(config: ProtocolConfig) -> Dict[str, InMemoryKeyStore]:
    return install_long_term_keys(config)


# =============================================================================
# DEPLOYMENT FIXTURES
# =============================================================================


@attrs.define
class Deployment:
    """All four roles wired through an in-process transport."""

    config: ProtocolConfig
    clock: FixedClock
    stores: Dict[str, InMemoryKeyStore]
    as_service: AuthenticationService
    tgs_service: TicketGrantingService
    services: Dict[str, ServiceRole]
    transport: LocalTransport
    client: KerberosClient

    @property
    def server(self) -> ServiceRole:
        return next(iter(self.services.values()))


def build_deployment(
    config: ProtocolConfig,
    clock: FixedClock,
    stores: Dict[str, InMemoryKeyStore],
) -> Deployment:
    provider = DefaultCryptoProvider()
    as_service = AuthenticationService(
        key_store=stores[config.as_id], config=config, provider=provider, clock=clock
    )
    tgs_service = TicketGrantingService(
        key_store=stores[config.tgs_id], config=config, provider=provider, clock=clock
    )
    services = {
        name: ServiceRole(
            service_id=name, key_store=stores[name], config=config, provider=provider, clock=clock
        )
        for name in config.service_endpoints
    }

    transport = LocalTransport(peer_address=config.client_address)
    transport.register(config.as_endpoint, as_service)
    transport.register(config.tgs_endpoint, tgs_service)
    for name, service in services.items():
        transport.register(config.service_endpoint(name), service)

    client = KerberosClient(
        key_store=stores[config.client_id],
        config=config,
        transport=transport,
        provider=provider,
        clock=clock,
    )
    return Deployment(
        config=config,
        clock=clock,
        stores=stores,
        as_service=as_service,
        tgs_service=tgs_service,
        services=services,
        transport=transport,
        client=client,
    )


@pytest.fixture
def deployment(config, clock, stores) -> Deployment:
    """Default deployment: Client, AS, TGS and one Server."""
    return build_deployment(config, clock, stores)


@pytest.fixture
def deployment_factory(clock) -> Callable[..., Deployment]:
    """Build a deployment for a custom config."""

    def factory(**overrides) -> Deployment:
        overrides.setdefault("service_endpoints", {"Server": Endpoint(port=1203)})
        config = ProtocolConfig(**overrides)
        stores = install_long_term_keys(config, services=tuple(config.service_endpoints))
        return build_deployment(config, clock, stores)

    return factory
