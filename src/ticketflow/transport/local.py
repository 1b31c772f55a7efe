"""
ticketflow In-Process Transport

Routes envelopes straight to role handlers without sockets. Every request
and reply still goes through the wire codec, so roles never share ticket
objects and the reply policy matches RoleServer: error frames for
rejections, no answer when a key is missing.
"""

from __future__ import annotations

from typing import Dict, Tuple

import attrs
import structlog
from returns.result import Failure

from ticketflow.core.config import Endpoint
from ticketflow.core.exceptions import TransportFailure
from ticketflow.kerberos.tickets import Envelope
from ticketflow.transport.connection import Transport, expect_envelope
from ticketflow.transport.server import RoleHandler
from ticketflow.transport.wire import decode_message, encode_message, reply_for_failure

logger = structlog.get_logger()


@attrs.define
class LocalTransport(Transport):
    """
    Transport for tests and single-process demos.

    Example:
        transport = LocalTransport(peer_address="127.0.0.1")
        transport.register(config.as_endpoint, as_service)
        reply = transport.exchange(config.as_endpoint, envelope)
    """

    peer_address: str = "127.0.0.1"
    _routes: Dict[Tuple[str, int], RoleHandler] = attrs.Factory(dict)
    _logger: structlog.BoundLogger = attrs.Factory(lambda: structlog.get_logger())

    def register(self, endpoint: Endpoint, handler: RoleHandler) -> None:
        self._routes[endpoint.address] = handler

    def unregister(self, endpoint: Endpoint) -> None:
        self._routes.pop(endpoint.address, None)

    def exchange(self, endpoint: Endpoint, envelope: Envelope) -> Envelope:
        handler = self._routes.get(endpoint.address)
        if handler is None:
            raise TransportFailure(f"Failed to connect to {endpoint}: connection refused")

        request = decode_message(encode_message(envelope))
        result = handler.handle(request, self.peer_address)

        if isinstance(result, Failure):
            reply = reply_for_failure(result.failure())
            if reply is None:
                raise TransportFailure(f"Connection to {endpoint} closed without a response")
        else:
            reply = result.unwrap()

        self._logger.debug("local_exchange_completed", endpoint=str(endpoint))
        return expect_envelope(decode_message(encode_message(reply)))
