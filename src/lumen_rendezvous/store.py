"""
Endpoint directory and audit store interfaces.

The persistent store is an external collaborator. These protocols fix
the calls the decision pipeline makes against it; the in-memory
implementations back tests and single-process development servers.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from typing import Protocol, runtime_checkable

from .errors import GatewayNotFoundError
from .models import (
    AttestationRecord,
    DiscoveryLogEntry,
    Endpoint,
    EndpointStatus,
    GatewayStatusReport,
)

logger = logging.getLogger(__name__)

#: Row caps mirrored from the production queries.
REGION_FETCH_LIMIT = 100
DECOY_FETCH_LIMIT = 10
LISTING_LIMIT = 1000


@runtime_checkable
class EndpointDirectory(Protocol):
    """Gateway lookups and operator status writes."""

    async def fetch_by_region(self, region: str) -> list[Endpoint]:
        """Active, non-decoy gateways in ``region``."""
        ...

    async def fetch_decoys(self, region: str) -> list[Endpoint]:
        """Active decoy gateways in ``region``."""
        ...

    async def fetch_all_active(self) -> list[Endpoint]:
        """Active and degraded gateways, for public listings."""
        ...

    async def record_status_update(self, report: GatewayStatusReport, status: EndpointStatus) -> None:
        """Apply a status report and append its time-series metric, atomically."""
        ...

    async def update_load(self, endpoint_id: str, load: float) -> None: ...

    async def record_discovery_log(self, entry: DiscoveryLogEntry) -> None: ...


@runtime_checkable
class AttestationAuditLog(Protocol):
    """Append-only log of attestation evaluations."""

    async def record_attestation(self, record: AttestationRecord) -> None: ...


@dataclass
class OperatorMetric:
    """Time-series sample written alongside each status report."""

    time: float
    gateway_id: str
    users_connected: int
    bandwidth_used_mbps: int
    packets_forwarded: int
    uptime_percent: float


class InMemoryEndpointDirectory:
    """Dict-backed ``EndpointDirectory``.

    Reads return copies so callers can never mutate stored state.
    """

    def __init__(self, endpoints: list[Endpoint] | None = None) -> None:
        self._endpoints: dict[str, Endpoint] = {}
        self._lock = asyncio.Lock()
        self.metrics: list[OperatorMetric] = []
        self.discovery_logs: list[DiscoveryLogEntry] = []
        for endpoint in endpoints or []:
            self.add(endpoint)

    def add(self, endpoint: Endpoint) -> None:
        self._endpoints[endpoint.endpoint_id] = endpoint

    def get(self, endpoint_id: str) -> Endpoint | None:
        endpoint = self._endpoints.get(endpoint_id)
        return replace(endpoint) if endpoint else None

    def __len__(self) -> int:
        return len(self._endpoints)

    async def fetch_by_region(self, region: str) -> list[Endpoint]:
        matches = [
            e
            for e in self._endpoints.values()
            if e.region == region and e.status == EndpointStatus.ACTIVE and not e.is_decoy
        ]
        matches.sort(key=lambda e: e.current_users)
        return [replace(e) for e in matches[:REGION_FETCH_LIMIT]]

    async def fetch_decoys(self, region: str) -> list[Endpoint]:
        matches = [
            e
            for e in self._endpoints.values()
            if e.region == region and e.status == EndpointStatus.ACTIVE and e.is_decoy
        ]
        matches.sort(key=lambda e: e.current_users)
        return [replace(e) for e in matches[:DECOY_FETCH_LIMIT]]

    async def fetch_all_active(self) -> list[Endpoint]:
        matches = [
            e for e in self._endpoints.values() if e.status in (EndpointStatus.ACTIVE, EndpointStatus.DEGRADED)
        ]
        matches.sort(key=lambda e: (-e.current_users, -(e.last_seen or 0.0)))
        return [replace(e) for e in matches[:LISTING_LIMIT]]

    async def record_status_update(self, report: GatewayStatusReport, status: EndpointStatus) -> None:
        async with self._lock:
            endpoint = self._endpoints.get(report.gateway_id)
            if endpoint is None:
                raise GatewayNotFoundError(f"gateway {report.gateway_id} not found")
            endpoint.status = status
            endpoint.current_users = report.users_connected
            endpoint.last_seen = report.reported_at
            self.metrics.append(
                OperatorMetric(
                    time=report.reported_at,
                    gateway_id=report.gateway_id,
                    users_connected=report.users_connected,
                    bandwidth_used_mbps=report.bandwidth_used_mbps,
                    packets_forwarded=report.packets_forwarded,
                    uptime_percent=report.uptime_percent,
                )
            )

    async def update_load(self, endpoint_id: str, load: float) -> None:
        async with self._lock:
            endpoint = self._endpoints.get(endpoint_id)
            if endpoint is None:
                logger.debug("Load update for unknown endpoint %s ignored", endpoint_id)
                return
            if endpoint.max_users:
                endpoint.current_users = min(max(round(load * endpoint.max_users), 0), endpoint.max_users)
            endpoint.last_seen = time.time()

    async def record_discovery_log(self, entry: DiscoveryLogEntry) -> None:
        self.discovery_logs.append(entry)


class InMemoryAttestationLog:
    """List-backed ``AttestationAuditLog``."""

    def __init__(self) -> None:
        self.records: list[AttestationRecord] = []

    async def record_attestation(self, record: AttestationRecord) -> None:
        self.records.append(record)
