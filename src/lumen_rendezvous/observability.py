"""
Injectable metrics sink.

Components receive a sink at construction instead of touching
module-level counters, so tests can assert on emitted events.
"""

from __future__ import annotations

from collections import Counter
from typing import Protocol, runtime_checkable

ATTESTATION_TOTAL = "attestation_total"
ATTESTATION_FAILURES = "attestation_failures"
CONFIG_PACK_GENERATED = "config_pack_generated"
GATEWAY_STATUS_UPDATES = "gateway_status_updates"
DISCOVERY_LOGS = "discovery_logs"


@runtime_checkable
class MetricsSink(Protocol):
    """Receives counter increments."""

    def increment(self, name: str, **labels: str) -> None: ...


class NullMetricsSink:
    """Discards every event."""

    def increment(self, name: str, **labels: str) -> None:
        return None


class CounterMetricsSink:
    """Records increments in memory, keyed by name and sorted labels."""

    def __init__(self) -> None:
        self.counts: Counter[tuple[str, tuple[tuple[str, str], ...]]] = Counter()

    def increment(self, name: str, **labels: str) -> None:
        self.counts[(name, tuple(sorted(labels.items())))] += 1

    def get(self, name: str, **labels: str) -> int:
        return self.counts[(name, tuple(sorted(labels.items())))]

    def total(self, name: str) -> int:
        return sum(count for (metric, _), count in self.counts.items() if metric == name)
