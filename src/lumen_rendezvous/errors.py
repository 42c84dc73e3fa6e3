"""
Rendezvous exceptions.

Every error carries a stable machine-readable ``code``. ``to_payload()``
is the only representation that may reach a client; it never includes
the message, which can name backends, files or devices.
"""

from __future__ import annotations

from typing import Any


class RendezvousError(Exception):
    """Base exception for rendezvous errors."""

    code = "internal_error"

    def __init__(self, message: str = "", *, code: str | None = None) -> None:
        super().__init__(message or self.code)
        if code is not None:
            self.code = code

    def to_payload(self) -> dict[str, Any]:
        return {"error": self.code}


class RequestValidationError(RendezvousError):
    """Raised when a request is malformed or uses an unknown enumerated value."""

    code = "invalid_request"


class VerificationError(RendezvousError):
    """Raised when an attestation backend or cryptographic check fails.

    This is an infrastructure-or-forgery signal, distinct from a
    well-formed token that is simply untrustworthy (an invalid verdict).
    """

    code = "attestation_verification_failed"

    def __init__(self, message: str = "", *, platform: str = "", reason: str = "verification_error") -> None:
        super().__init__(message)
        self.platform = platform
        self.reason = reason


class InfrastructureError(RendezvousError):
    """Raised when the endpoint directory or another store is unavailable."""

    code = "store_unavailable"


class GatewayNotFoundError(InfrastructureError):
    """Raised when a status report names a gateway that does not exist."""

    code = "gateway_not_found"


class ConfigurationError(RendezvousError):
    """Raised for fatal startup configuration problems.

    Never caught by the service; the process must not start.
    """

    code = "configuration_error"
