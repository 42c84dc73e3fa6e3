"""
Trust verdicts and integrity tiers.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

# Reason codes for invalid verdicts.
UNSUPPORTED_PLATFORM = "unsupported_platform"
MISSING_ATTESTATION_CONFIG = "missing_attestation_config"
MISSING_TOKEN_PAYLOAD = "missing_token_payload"
PACKAGE_NAME_MISMATCH = "package_name_mismatch"
ATTESTATION_EXPIRED = "attestation_expired"
APP_NOT_RECOGNIZED = "app_not_recognized"
APP_NOT_LICENSED = "app_not_licensed"
DEVICE_INTEGRITY_FAILED = "device_integrity_failed"
MISSING_TOKEN_OR_KEYID = "missing_token_or_keyid"
MISSING_DCAPPATTEST_CONFIG = "missing_dcappattest_config"
INVALID_ATTESTATION_FORMAT = "invalid_attestation_format"

# Reason codes carried by VerificationError.
PLAY_INTEGRITY_API_ERROR = "play_integrity_api_error"
DCAPPATTEST_VERIFICATION_FAILED = "dcappattest_verification_failed"


class IntegrityTier(StrEnum):
    """Ranked device-trust classification.

    ``BYPASS`` marks verdicts granted because attestation was not
    configured and bypass was allowed; it ranks below ``BASIC`` so it
    can never satisfy a policy that asks for real integrity.
    """

    UNKNOWN = "unknown"
    BYPASS = "bypass"
    BASIC = "basic"
    DEVICE = "device"
    STRONG = "strong"

    @property
    def rank(self) -> int:
        return _TIER_RANK[self]

    def at_least(self, other: IntegrityTier) -> bool:
        return self.rank >= other.rank

    @classmethod
    def from_play_verdicts(cls, verdicts: list[str] | None) -> IntegrityTier:
        """Highest tier present in a Play Integrity device verdict list."""
        best = cls.UNKNOWN
        for value in verdicts or []:
            tier = _PLAY_VERDICTS.get(value)
            if tier is not None and tier.rank > best.rank:
                best = tier
        return best


_TIER_RANK: dict[IntegrityTier, int] = {
    IntegrityTier.UNKNOWN: 0,
    IntegrityTier.BYPASS: 1,
    IntegrityTier.BASIC: 2,
    IntegrityTier.DEVICE: 3,
    IntegrityTier.STRONG: 4,
}

_PLAY_VERDICTS: dict[str, IntegrityTier] = {
    "MEETS_BASIC_INTEGRITY": IntegrityTier.BASIC,
    "MEETS_DEVICE_INTEGRITY": IntegrityTier.DEVICE,
    "MEETS_STRONG_INTEGRITY": IntegrityTier.STRONG,
}


@dataclass(frozen=True)
class TrustVerdict:
    """Normalized outcome of one attestation evaluation.

    Produced fresh per request and never persisted by the pipeline.
    """

    platform: str
    is_valid: bool
    integrity: IntegrityTier = IntegrityTier.UNKNOWN
    reason: str | None = None
    device_id: str = ""
    timestamp: float = field(default_factory=time.time)

    @classmethod
    def valid(cls, platform: str, integrity: IntegrityTier, **kwargs: Any) -> TrustVerdict:
        return cls(platform=platform, is_valid=True, integrity=integrity, **kwargs)

    @classmethod
    def invalid(cls, platform: str, reason: str, **kwargs: Any) -> TrustVerdict:
        return cls(platform=platform, is_valid=False, reason=reason, **kwargs)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "platform": self.platform,
            "verified": self.is_valid,
            "integrity": self.integrity.value,
        }
        if not self.is_valid and self.reason:
            result["reason"] = self.reason
        return result


def requires_decoy(verdict: TrustVerdict | None) -> bool:
    """Whether a client must be shown decoy gateways.

    True for a missing verdict, an invalid one, or any tier below
    ``STRONG``. This is the only link between attestation outcome and
    endpoint selection.
    """
    if verdict is None or not verdict.is_valid:
        return True
    return not verdict.integrity.at_least(IntegrityTier.STRONG)
