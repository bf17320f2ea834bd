"""
API-level client.

This module contains the layer that knows the gateway's commands:
- GatewayClient (named fetch commands, address subscriptions, awaitable call)
"""

from .client import GatewayClient

__all__ = [
    "GatewayClient",
]
