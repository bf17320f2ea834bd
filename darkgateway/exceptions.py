"""
darkgateway library exceptions.

This module defines all custom exceptions used throughout the library.
"""


class GatewayError(Exception):
    """Base exception for gateway client errors"""
    pass


class InvalidHandlerError(GatewayError, TypeError):
    """Raised when a callback or hook is not callable"""
    pass


class MalformedFrameError(GatewayError):
    """Raised when an inbound frame is not a valid envelope"""

    def __init__(self, message: str, data=None):
        super().__init__(message)
        self.data = data


class UnroutableFrameError(GatewayError):
    """Describes a parsed frame with no registered handler"""

    def __init__(self, key, envelope):
        super().__init__(f"No handler registered for {key}")
        self.key = key
        self.envelope = envelope


class GatewayTransportError(GatewayError):
    """Raised when the transport reports a failure"""
    pass


class GatewayConnectionError(GatewayTransportError):
    """Raised when connection to the gateway fails or is lost"""
    pass


class GatewaySendError(GatewayTransportError):
    """Raised when sending on a connection that is not open"""
    pass


class GatewayTimeoutError(GatewayError):
    """Raised when a request deadline expires"""
    pass


class GatewayResponseError(GatewayError):
    """Raised when the gateway answers a request with an error"""

    def __init__(self, command: str, error):
        super().__init__(f"{command} failed: {error}")
        self.command = command
        self.error = error


class GatewayConfigurationError(GatewayError):
    """Raised when configuration is invalid"""
    pass
