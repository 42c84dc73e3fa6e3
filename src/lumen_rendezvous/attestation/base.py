"""
Attester capability shared by all platform verifiers.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass

from .verdict import IntegrityTier, TrustVerdict


@dataclass(frozen=True)
class AttestationRequest:
    """One attestation to verify."""

    platform: str
    token: str | None
    device_id: str
    key_id: str | None = None


class Attester(ABC):
    """Verifies attestation tokens for one platform.

    Implementations return a ``TrustVerdict`` for every well-formed
    outcome (including untrustworthy tokens) and raise
    ``VerificationError`` only for backend or cryptographic failures.
    Adding a platform means adding an ``Attester``.
    """

    platform: str = ""

    def __init__(self, *, allow_bypass: bool = False, clock: Callable[[], float] = time.time) -> None:
        self.allow_bypass = allow_bypass
        self._clock = clock

    @abstractmethod
    async def verify(self, request: AttestationRequest) -> TrustVerdict: ...

    def _valid(self, request: AttestationRequest, integrity: IntegrityTier) -> TrustVerdict:
        return TrustVerdict.valid(self.platform, integrity, device_id=request.device_id, timestamp=self._clock())

    def _invalid(
        self,
        request: AttestationRequest,
        reason: str,
        integrity: IntegrityTier = IntegrityTier.UNKNOWN,
    ) -> TrustVerdict:
        return TrustVerdict.invalid(
            self.platform,
            reason,
            integrity=integrity,
            device_id=request.device_id,
            timestamp=self._clock(),
        )

    def _unconfigured(self, request: AttestationRequest, reason: str) -> TrustVerdict:
        """Verdict for a platform whose verification backend is not configured."""
        if self.allow_bypass:
            return self._valid(request, IntegrityTier.BYPASS)
        return self._invalid(request, reason)
