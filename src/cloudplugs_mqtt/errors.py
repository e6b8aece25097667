"""
Error hierarchy for the CloudPlugs MQTT client.

Connection-level failures surface through the connect future (and the sink's
on_connection_lost for an established session). Operation-level failures
surface only through the future returned by that operation.
"""

from __future__ import annotations

from typing import Optional


class CloudPlugsError(Exception):
    """Base class for every error raised or delivered by this package."""


class BrokerConnectionError(CloudPlugsError, ConnectionError):
    """The MQTT session could not be established or was lost."""


class AuthError(BrokerConnectionError):
    """The broker or platform rejected the supplied credentials."""


class NotConnectedError(CloudPlugsError):
    """An operation that needs a live session was issued while disconnected."""


class AlreadyConnectingError(CloudPlugsError):
    """connect() was called while a connect is already in progress."""


class AlreadyConnectedError(CloudPlugsError):
    """connect() (or a config change) was attempted on a live session."""


class RequestTimeoutError(CloudPlugsError, TimeoutError):
    """No correlated reply arrived before the request deadline."""


class ProtocolError(CloudPlugsError):
    """A reply payload was malformed or missing required fields."""


class ValidationError(CloudPlugsError, ValueError):
    """Malformed identity, topic or configuration input."""


class AlreadyEnrollingError(CloudPlugsError):
    """An enrollment for the same hardware id is already in flight."""


class PlatformError(CloudPlugsError):
    """The platform answered a request with an explicit error reply."""

    def __init__(self, message: str, code: Optional[int] = None) -> None:
        super().__init__(message)
        self.code = code
