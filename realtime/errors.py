"""Error taxonomy for the realtime gateway.

Every failure here is scoped to one connection or one relay attempt; none of
them is fatal to the process.
"""

from __future__ import annotations


class GatewayError(Exception):
    """Base class for gateway failures."""


class AuthenticationFailure(GatewayError):
    """Connect-time credential check failed. The connection is refused."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class ValidationFailure(GatewayError):
    """Malformed event payload. The connection stays open."""

    def __init__(self, code: str):
        super().__init__(code)
        self.code = code


class PersistenceFailure(GatewayError):
    """A durable write or read against the chat store failed."""


class DeliveryFailure(GatewayError):
    """A single recipient's transport write failed."""
