"""
Gateway and operator-report data models.

Endpoints are written by operator status reports through the directory;
the decision pipeline only reads them.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from .errors import RequestValidationError

#: Load reported for an endpoint without a usable capacity figure.
DEFAULT_LOAD = 0.5


class EndpointStatus(StrEnum):
    """Operational status of a gateway."""

    ACTIVE = "active"
    DEGRADED = "degraded"
    OFFLINE = "offline"
    MAINTENANCE = "maintenance"


class DecoyPolicy(StrEnum):
    """How decoy gateways combine with the real set for low-trust clients."""

    REPLACE = "replace"  # decoys only
    MERGE = "merge"  # decoys alongside real gateways


class DiscoveryChannel(StrEnum):
    """Out-of-band channels a client can scan for gateway announcements."""

    GPS = "gps"
    FM_RDS = "fm_rds"
    DTV = "dtv"
    PLC = "plc"
    GSM_CB = "gsm_cb"
    LTE_SIB = "lte_sib"
    IOT_MQTT = "iot_mqtt"
    BLOCKCHAIN = "blockchain"
    SATELLITE = "satellite"
    INTRANET = "intranet"
    SOCIAL = "social"


@dataclass
class Endpoint:
    """A relay gateway, real or decoy."""

    endpoint_id: str
    public_key: bytes
    address: str
    port: int
    region: str
    transports: list[str] = field(default_factory=list)
    discovery_channels: list[str] = field(default_factory=list)
    current_users: int = 0
    max_users: int | None = None
    status: EndpointStatus = EndpointStatus.ACTIVE
    is_decoy: bool = False
    bandwidth_mbps: int | None = None
    last_seen: float | None = None

    @property
    def load(self) -> float:
        """Fraction of capacity in use, in [0, 1].

        Endpoints without a positive ``max_users`` report ``DEFAULT_LOAD``
        so they neither dominate nor starve a load-ordered selection.
        """
        if not self.max_users or self.max_users <= 0:
            return DEFAULT_LOAD
        return max(0.0, min(1.0, self.current_users / self.max_users))

    @property
    def is_healthy(self) -> bool:
        return self.status == EndpointStatus.ACTIVE

    @property
    def callsign(self) -> str:
        if not self.endpoint_id:
            return "OP-unknown"
        return f"OP-{self.endpoint_id[:8]}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.endpoint_id,
            "public_key": self.public_key.hex(),
            "address": self.address,
            "port": self.port,
            "region": self.region,
            "transports": list(self.transports),
            "discovery_channels": list(self.discovery_channels),
            "current_users": self.current_users,
            "max_users": self.max_users,
            "status": self.status.value,
            "is_decoy": self.is_decoy,
            "bandwidth_mbps": self.bandwidth_mbps,
            "last_seen": self.last_seen,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Endpoint:
        return cls(
            endpoint_id=data["id"],
            public_key=bytes.fromhex(data.get("public_key", "")),
            address=data.get("address", ""),
            port=int(data.get("port", 0)),
            region=data.get("region", ""),
            transports=list(data.get("transports", [])),
            discovery_channels=list(data.get("discovery_channels", [])),
            current_users=int(data.get("current_users", 0)),
            max_users=data.get("max_users"),
            status=EndpointStatus(data.get("status", EndpointStatus.ACTIVE.value)),
            is_decoy=bool(data.get("is_decoy", False)),
            bandwidth_mbps=data.get("bandwidth_mbps"),
            last_seen=data.get("last_seen"),
        )


@dataclass
class GatewayStatusReport:
    """Periodic status report sent by a gateway operator."""

    gateway_id: str
    status: str
    users_connected: int = 0
    bandwidth_used_mbps: int = 0
    packets_forwarded: int = 0
    uptime_percent: float = 0.0
    reported_at: float = field(default_factory=time.time)

    def validate(self) -> EndpointStatus:
        """Check the report and return its parsed status."""
        if not self.gateway_id or not self.status:
            raise RequestValidationError("gateway_id and status are required", code="missing_field")
        try:
            status = EndpointStatus(self.status)
        except ValueError:
            raise RequestValidationError(f"unknown status {self.status!r}", code="invalid_status") from None
        if self.users_connected < 0 or self.bandwidth_used_mbps < 0 or self.packets_forwarded < 0:
            raise RequestValidationError("counters must be non-negative", code="invalid_metrics")
        if not 0.0 <= self.uptime_percent <= 100.0:
            raise RequestValidationError("uptime must be within [0, 100]", code="invalid_uptime")
        return status


@dataclass
class DiscoveryLogEntry:
    """Client report of a discovery-channel scan."""

    channel_type: str
    success: bool
    gateway_id: str | None = None
    client_ip: str | None = None
    region: str | None = None
    latency_ms: int | None = None
    error: str | None = None
    created_at: float = field(default_factory=time.time)

    def validate(self) -> DiscoveryChannel:
        if not self.channel_type:
            raise RequestValidationError("channel_type is required", code="missing_field")
        try:
            channel = DiscoveryChannel(self.channel_type)
        except ValueError:
            raise RequestValidationError(
                f"unknown channel {self.channel_type!r}", code="invalid_channel_type"
            ) from None
        if self.latency_ms is not None and self.latency_ms < 0:
            raise RequestValidationError("latency must be non-negative", code="invalid_latency")
        return channel


@dataclass
class AttestationRecord:
    """Audit record of one attestation evaluation."""

    device_id: str
    platform: str
    token: str
    verified: bool
    integrity: str
    created_at: float = field(default_factory=time.time)

    @property
    def verified_at(self) -> float | None:
        return self.created_at if self.verified else None
