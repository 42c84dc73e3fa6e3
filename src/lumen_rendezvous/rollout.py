"""
Deterministic percentage rollout.

Membership is a pure function of (client id, version, region): the same
inputs give the same answer in every process, so a client stays in or
out of a rollout for the life of a version.
"""

from __future__ import annotations

from collections.abc import Mapping

from .config import normalize_rollout_key

FULL_ROLLOUT = 100

_INT64_MASK = (1 << 64) - 1
_INT64_SIGN = 1 << 63


def _wrap_int64(value: int) -> int:
    value &= _INT64_MASK
    return value - (1 << 64) if value & _INT64_SIGN else value


def rollout_hash(value: str) -> int:
    """Polynomial (base 31) string hash with signed 64-bit wraparound.

    The accumulator wraps like an int64; the result is its magnitude
    mod 100, so it is always in ``[0, 100)``.
    """
    h = 0
    for char in value:
        h = _wrap_int64(h * 31 + ord(char))
    # abs() on the unbounded int, so int64 min folds to 2**63.
    return abs(h) % 100


def clamp_percentage(percent: int) -> int:
    return max(0, min(FULL_ROLLOUT, percent))


class RolloutGate:
    """Resolves rollout percentages and membership.

    ``overrides`` maps normalized keys (``<VERSION>_<REGION>``,
    ``<VERSION>``, ``<REGION>``) to percentages; see
    ``config.scan_rollout_overrides``.
    """

    def __init__(self, overrides: Mapping[str, int] | None = None, default: int | None = None) -> None:
        self._overrides = dict(overrides or {})
        self._default = default

    def percentage_for(self, version: str, region: str) -> int:
        for key in self._candidate_keys(version, region):
            if key in self._overrides:
                return clamp_percentage(self._overrides[key])
        if self._default is not None:
            return clamp_percentage(self._default)
        return FULL_ROLLOUT

    def include(self, client_id: str, version: str, region: str) -> bool:
        return rollout_hash(client_id + version + region) < self.percentage_for(version, region)

    @staticmethod
    def _candidate_keys(version: str, region: str) -> list[str]:
        version_key = normalize_rollout_key(version)
        region_key = normalize_rollout_key(region)
        keys = []
        if version_key and region_key:
            keys.append(f"{version_key}_{region_key}")
        if version_key:
            keys.append(version_key)
        if region_key:
            keys.append(region_key)
        return keys
