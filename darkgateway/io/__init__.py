"""
Wire-level protocol implementation.

This module contains the lowest-level communication components:
- Request, Response, Update - JSON envelopes and frame parsing
- IdAllocator, CorrelationTable - Request ids and handler bookkeeping
- Transport, WebSocketTransport - The connection itself
- GatewayConnection - Dispatch and routing over a transport
"""

from .envelope import Request, Response, Update, RequestKey, TopicKey, EnvelopeConst, parse_frame
from .correlation import IdAllocator, CorrelationTable, ReclaimPolicy
from .transport import Transport, WebSocketTransport, TransportConst
from .connection import GatewayConnection, PendingRequest, ErrorStrategy

__all__ = [
    "Request",
    "Response",
    "Update",
    "RequestKey",
    "TopicKey",
    "EnvelopeConst",
    "parse_frame",
    "IdAllocator",
    "CorrelationTable",
    "ReclaimPolicy",
    "Transport",
    "WebSocketTransport",
    "TransportConst",
    "GatewayConnection",
    "PendingRequest",
    "ErrorStrategy",
]
