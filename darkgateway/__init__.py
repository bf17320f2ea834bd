"""
darkgateway Python Library

An asyncio client for darkwallet-style blockchain gateways, which speak JSON
requests, responses and address update pushes over one websocket.

This library provides two layers of abstraction:

1. **io**: Wire-level envelopes, request correlation, routing and transports
2. **api**: Named gateway commands and address subscriptions using io

Example usage:
    import darkgateway

    async def main():
        async with await darkgateway.GatewayClient.create("ws://localhost:8888") as gw:
            height = await gw.call("fetch_last_height")

            def on_update(update):
                print(update)

            gw.subscribe("1dice8EMZmqKvrGE4Qc9bUFf9PX3xaYDp", lambda error, result: None, on_update)
            await gw.wait_closed()
"""

# API-level client (recommended for most users)
from .api import GatewayClient

# Low-level models (used by io)
from .io import (
    GatewayConnection, PendingRequest, ErrorStrategy,
    Transport, WebSocketTransport,
    Request, Response, Update, RequestKey, TopicKey, parse_frame,
    IdAllocator, CorrelationTable, ReclaimPolicy,
)

# Configuration, exceptions
from .config import GatewayConfig
from .exceptions import (
    GatewayError, InvalidHandlerError, MalformedFrameError, UnroutableFrameError,
    GatewayTransportError, GatewayConnectionError, GatewaySendError,
    GatewayTimeoutError, GatewayResponseError, GatewayConfigurationError,
)

# Utilities
from .utils import run_with_keyboard_interrupt, setup_logging

__version__ = "0.1.0"

# Public API - these are the main classes users should import
__all__ = [
    # API-level client (recommended)
    "GatewayClient",

    # Low-level models (for advanced users)
    "GatewayConnection",
    "PendingRequest",
    "ErrorStrategy",
    "Transport",
    "WebSocketTransport",
    "Request",
    "Response",
    "Update",
    "RequestKey",
    "TopicKey",
    "parse_frame",
    "IdAllocator",
    "CorrelationTable",
    "ReclaimPolicy",

    # Configuration
    "GatewayConfig",

    # Exceptions
    "GatewayError",
    "InvalidHandlerError",
    "MalformedFrameError",
    "UnroutableFrameError",
    "GatewayTransportError",
    "GatewayConnectionError",
    "GatewaySendError",
    "GatewayTimeoutError",
    "GatewayResponseError",
    "GatewayConfigurationError",

    # Utilities
    "run_with_keyboard_interrupt",
    "setup_logging",
]
