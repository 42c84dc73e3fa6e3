"""
Trust evaluation across platforms.

``TrustEvaluator`` dispatches each attestation to the ``Attester``
registered for its platform, records the outcome in the audit log, and
emits attestation metrics. Audit writes are best-effort: a storage
failure is logged and never changes the verdict.
"""

from __future__ import annotations

import base64
import logging
import secrets
import time
from collections.abc import Callable, Iterable

from ..errors import VerificationError
from ..models import AttestationRecord
from ..observability import ATTESTATION_FAILURES, ATTESTATION_TOTAL, MetricsSink, NullMetricsSink
from ..store import AttestationAuditLog
from .base import AttestationRequest, Attester
from .verdict import UNSUPPORTED_PLATFORM, TrustVerdict

logger = logging.getLogger(__name__)

CHALLENGE_BYTES = 32


def generate_challenge() -> str:
    """Random App Attest challenge, base64url without padding."""
    return base64.urlsafe_b64encode(secrets.token_bytes(CHALLENGE_BYTES)).rstrip(b"=").decode("ascii")


class TrustEvaluator:
    """Platform-polymorphic attestation front end."""

    def __init__(
        self,
        attesters: Iterable[Attester],
        *,
        audit_log: AttestationAuditLog | None = None,
        metrics: MetricsSink | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._attesters = {a.platform: a for a in attesters}
        self._audit_log = audit_log
        self._metrics = metrics or NullMetricsSink()
        self._clock = clock

    @property
    def platforms(self) -> list[str]:
        return sorted(self._attesters)

    def supports(self, platform: str) -> bool:
        return platform in self._attesters

    async def evaluate(
        self,
        platform: str,
        token: str | None,
        device_id: str,
        key_id: str | None = None,
    ) -> TrustVerdict:
        """Evaluate one attestation.

        Returns an invalid verdict for untrustworthy or unsupported
        input. Raises ``VerificationError`` when the platform backend or
        a cryptographic check fails.
        """
        attester = self._attesters.get(platform)
        if attester is None:
            self._metrics.increment(ATTESTATION_TOTAL, platform=platform or "unknown", result="invalid")
            self._metrics.increment(ATTESTATION_FAILURES, platform=platform or "unknown", reason=UNSUPPORTED_PLATFORM)
            return TrustVerdict.invalid(
                platform, UNSUPPORTED_PLATFORM, device_id=device_id, timestamp=self._clock()
            )

        request = AttestationRequest(platform=platform, token=token, device_id=device_id, key_id=key_id)
        try:
            verdict = await attester.verify(request)
        except VerificationError as e:
            self._metrics.increment(ATTESTATION_TOTAL, platform=platform, result="error")
            self._metrics.increment(ATTESTATION_FAILURES, platform=platform, reason=e.reason)
            logger.warning("Attestation verification error for %s device %s: %s", platform, device_id[:8], e)
            raise

        self._metrics.increment(
            ATTESTATION_TOTAL, platform=platform, result="valid" if verdict.is_valid else "invalid"
        )
        if not verdict.is_valid:
            self._metrics.increment(ATTESTATION_FAILURES, platform=platform, reason=verdict.reason or "unknown")
            logger.info("Attestation rejected for %s device %s: %s", platform, device_id[:8], verdict.reason)

        await self._record(request, verdict)
        return verdict

    async def _record(self, request: AttestationRequest, verdict: TrustVerdict) -> None:
        if self._audit_log is None:
            return
        record = AttestationRecord(
            device_id=request.device_id,
            platform=request.platform,
            token=request.token or "",
            verified=verdict.is_valid,
            integrity=verdict.integrity.value,
            created_at=verdict.timestamp,
        )
        try:
            await self._audit_log.record_attestation(record)
        except Exception as e:
            logger.warning("Failed to store attestation record for %s: %s", request.device_id[:8], e)
