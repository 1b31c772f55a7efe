#!/usr/bin/env python3
"""
Local End-to-End Example

Runs all four roles on localhost (ephemeral ports) and walks through:
1. Key pair creation for every initiating role
2. Bootstrap exchanges (Client->AS, TGS->AS, Server->TGS)
3. AS, TGS and Service role servers
4. A Client run against the Server
5. State machine trace export
"""

import attrs
from returns.result import Failure

from ticketflow import (
    AuthenticationService,
    BootstrapResponder,
    Endpoint,
    InMemoryKeyStore,
    KerberosClient,
    ProtocolConfig,
    RoleServer,
    ServiceRole,
    SocketTransport,
    TicketGrantingService,
    provision_key_pair,
    public_sender_secret_receiver,
)

SERVICE = "Server"


def _endpoint(bound) -> Endpoint:
    host, port = bound.address
    return Endpoint(host=host, port=port)


def main():
    """Run the protocol end to end on localhost."""

    print("=" * 70)
    print("ticketflow - Local End-to-End Run")
    print("=" * 70)
    print()

    stores = {role: InMemoryKeyStore() for role in ("Client", "AS", "TGS", SERVICE)}

    # ==========================================================================
    # STEP 1: Key creation
    # ==========================================================================
    print("1. Key creation")
    print("-" * 40)
    for role in ("Client", "TGS", SERVICE):
        provision_key_pair(role, stores[role])
        print(f"   {role}: RSA key pair stored")
    print()

    # ==========================================================================
    # STEP 2: Bootstrap
    # ==========================================================================
    print("2. Bootstrap exchanges")
    print("-" * 40)
    as_responder = BootstrapResponder(
        role="AS", key_store=stores["AS"], expected_peers=["Client", "TGS"]
    )
    tgs_responder = BootstrapResponder(
        role="TGS", key_store=stores["TGS"], expected_peers=[SERVICE]
    )
    as_responder.start()
    tgs_responder.start()

    exchanges = [
        ("Client", "AS", _endpoint(as_responder)),
        ("TGS", "AS", _endpoint(as_responder)),
        (SERVICE, "TGS", _endpoint(tgs_responder)),
    ]
    for initiator, responder, endpoint in exchanges:
        result = public_sender_secret_receiver(endpoint, initiator, responder, stores[initiator])
        if isinstance(result, Failure):
            print(f"   {initiator} -> {responder}: FAILED ({result.failure().message})")
            return
        print(f"   {initiator} -> {responder}: key {result.unwrap().fingerprint()}")

    as_responder.wait(timeout=5.0)
    tgs_responder.wait(timeout=5.0)
    print()

    # ==========================================================================
    # STEP 3: Role servers
    # ==========================================================================
    print("3. Role servers")
    print("-" * 40)
    config = ProtocolConfig()
    as_server = RoleServer(handler=AuthenticationService(stores["AS"], config), name="AS")
    tgs_server = RoleServer(handler=TicketGrantingService(stores["TGS"], config), name="TGS")
    service_role = ServiceRole(SERVICE, stores[SERVICE], config)
    service_server = RoleServer(handler=service_role, name=SERVICE)

    servers = [as_server, tgs_server, service_server]
    for server in servers:
        server.start()
        print(f"   {server.name} listening on {_endpoint(server)}")
    print()

    config = attrs.evolve(
        config,
        as_endpoint=_endpoint(as_server),
        tgs_endpoint=_endpoint(tgs_server),
        service_endpoints={SERVICE: _endpoint(service_server)},
    )

    # ==========================================================================
    # STEP 4: Client run
    # ==========================================================================
    print("4. Client run")
    print("-" * 40)
    try:
        client = KerberosClient(
            key_store=stores["Client"],
            config=config,
            transport=SocketTransport(timeout=config.socket_timeout),
        )
        outcome = client.run(SERVICE)

        print(f"   Success: {outcome.success}")
        print(f"   Final state: {outcome.final_state.name}")
        if outcome.success:
            print(f"   Approved at: {outcome.approved_at.isoformat()}")
        else:
            print(f"   Error: {outcome.error_type}: {outcome.error_message}")
        print(f"   Service role state: {service_role.state.name}")
        print()

        # ======================================================================
        # STEP 5: Trace export
        # ======================================================================
        print("5. Client trace")
        print("-" * 40)
        for transition in client.get_trace():
            print(f"   {transition['from_state']} -> {transition['to_state']}"
                  f" ({transition['event_type']})")
    finally:
        for server in servers:
            server.stop()

    print()
    print("=" * 70)
    print("Done")
    print("=" * 70)


if __name__ == "__main__":
    main()
