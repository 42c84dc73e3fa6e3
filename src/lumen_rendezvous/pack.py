"""
Signed config packs.

A config pack tells a client which gateways to try, how to disguise its
traffic, and which out-of-band discovery channels to scan. Packs are
signed with Ed25519 over the canonical JSON of every field except the
signature; changing any field after signing breaks verification.
"""

from __future__ import annotations

import base64
import binascii
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from typing import Any

from .attestation.verdict import TrustVerdict, requires_decoy
from .geo import DEFAULT_ENDPOINT_LIMIT, GeoBalancer
from .models import DiscoveryChannel, Endpoint
from .observability import CONFIG_PACK_GENERATED, MetricsSink, NullMetricsSink
from .rollout import RolloutGate
from .signing import SigningKeyPair, sign_document, verify_document

logger = logging.getLogger(__name__)

PACK_VERSION = "1.0"


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


@dataclass(frozen=True)
class GatewayInfo:
    """Client-facing projection of an ``Endpoint``."""

    id: str
    address: str
    port: int
    region: str
    load: float
    public_key: bytes
    transports: tuple[str, ...] = ()
    is_decoy: bool = False

    @classmethod
    def from_endpoint(cls, endpoint: Endpoint) -> GatewayInfo:
        return cls(
            id=endpoint.endpoint_id,
            address=endpoint.address,
            port=endpoint.port,
            region=endpoint.region,
            load=endpoint.load,
            public_key=endpoint.public_key,
            transports=tuple(endpoint.transports),
            is_decoy=endpoint.is_decoy,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "address": self.address,
            "port": self.port,
            "transports": list(self.transports),
            "region": self.region,
            "load": self.load,
            "is_decoy": self.is_decoy,
            "public_key": _b64(self.public_key),
        }


@dataclass(frozen=True)
class TransportConfig:
    """A transport disguise: what to look like, and where to point."""

    type: str
    endpoints: tuple[str, ...] = ()
    fingerprint: str = ""
    options: tuple[tuple[str, str], ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "endpoints": list(self.endpoints),
            "fingerprint": self.fingerprint,
            "options": dict(self.options),
        }


@dataclass(frozen=True)
class DiscoveryConfig:
    channels: tuple[str, ...]
    scan_interval: int
    battery_aware: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "channels": list(self.channels),
            "scan_interval": self.scan_interval,
            "battery_aware": self.battery_aware,
        }


DEFAULT_TRANSPORTS: tuple[TransportConfig, ...] = (
    TransportConfig(
        type="masque",
        endpoints=("icloud.com", "www.icloud.com"),
        fingerprint="apple_icloud",
        options=(("quic_version", "1"),),
    ),
    TransportConfig(
        type="xtls",
        endpoints=("microsoft.com", "www.microsoft.com"),
        fingerprint="microsoft_edge",
        options=(("reality", "true"),),
    ),
    TransportConfig(
        type="parasite",
        endpoints=("cdn.cloudflare.com", "cdnjs.cloudflare.com"),
        options=(("header_encoding", "base64url"),),
    ),
    TransportConfig(type="ssh", options=(("obfuscated", "true"),)),
)

DEFAULT_DISCOVERY = DiscoveryConfig(
    channels=(
        DiscoveryChannel.GPS.value,
        DiscoveryChannel.FM_RDS.value,
        DiscoveryChannel.DTV.value,
        DiscoveryChannel.PLC.value,
        "gsm",
        "lte",
        DiscoveryChannel.BLOCKCHAIN.value,
    ),
    scan_interval=300,
    battery_aware=True,
)


@dataclass(frozen=True)
class ConfigPack:
    """A signed config pack. Immutable once built."""

    version: str
    timestamp: int
    gateways: tuple[GatewayInfo, ...]
    transports: tuple[TransportConfig, ...]
    discovery: DiscoveryConfig
    metadata: dict[str, Any] = field(default_factory=dict)
    public_key: bytes = b""
    signature: bytes = b""

    def signing_payload(self) -> dict[str, Any]:
        """Every field except the signature, in wire form."""
        return {
            "version": self.version,
            "timestamp": self.timestamp,
            "gateways": [g.to_dict() for g in self.gateways],
            "transports": [t.to_dict() for t in self.transports],
            "discovery": self.discovery.to_dict(),
            "metadata": dict(self.metadata),
            "public_key": _b64(self.public_key),
        }

    def to_dict(self) -> dict[str, Any]:
        result = self.signing_payload()
        result["signature"] = _b64(self.signature)
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConfigPack:
        return cls(
            version=data["version"],
            timestamp=int(data["timestamp"]),
            gateways=tuple(
                GatewayInfo(
                    id=g["id"],
                    address=g["address"],
                    port=int(g["port"]),
                    region=g["region"],
                    load=float(g["load"]),
                    public_key=base64.b64decode(g.get("public_key", "")),
                    transports=tuple(g.get("transports", [])),
                    is_decoy=bool(g.get("is_decoy", False)),
                )
                for g in data.get("gateways", [])
            ),
            transports=tuple(
                TransportConfig(
                    type=t["type"],
                    endpoints=tuple(t.get("endpoints", [])),
                    fingerprint=t.get("fingerprint", ""),
                    options=tuple((t.get("options") or {}).items()),
                )
                for t in data.get("transports", [])
            ),
            discovery=DiscoveryConfig(
                channels=tuple(data["discovery"]["channels"]),
                scan_interval=int(data["discovery"]["scan_interval"]),
                battery_aware=bool(data["discovery"]["battery_aware"]),
            ),
            metadata=dict(data.get("metadata") or {}),
            public_key=base64.b64decode(data.get("public_key", "")),
            signature=base64.b64decode(data.get("signature", "")),
        )

    @property
    def decoy_count(self) -> int:
        return sum(1 for g in self.gateways if g.is_decoy)


def verify_config_pack(pack: ConfigPack) -> bool:
    """Check ``pack.signature`` against the pack's embedded public key.

    Never raises. Missing, short or mismatched signatures and keys all
    verify as False.
    """
    try:
        payload = pack.signing_payload()
    except (binascii.Error, TypeError, ValueError, AttributeError):
        return False
    return verify_document(payload, pack.signature or b"", pack.public_key or b"")


class ConfigPackBuilder:
    """Assembles and signs config packs.

    Every call produces a fresh pack; nothing is cached between requests.
    """

    def __init__(
        self,
        balancer: GeoBalancer,
        signer: SigningKeyPair,
        *,
        rollout_gate: RolloutGate | None = None,
        version: str = PACK_VERSION,
        max_endpoints: int = DEFAULT_ENDPOINT_LIMIT,
        transports: Sequence[TransportConfig] = DEFAULT_TRANSPORTS,
        discovery: DiscoveryConfig = DEFAULT_DISCOVERY,
        metrics: MetricsSink | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.balancer = balancer
        self.signer = signer
        self.rollout_gate = rollout_gate or RolloutGate()
        self.version = version
        self.max_endpoints = max_endpoints
        self.transports = tuple(transports)
        self.discovery = discovery
        self._metrics = metrics or NullMetricsSink()
        self._clock = clock

    async def build(
        self,
        client_id: str,
        region: str | None,
        verdict: TrustVerdict | None,
        *,
        preferred_regions: Sequence[str] = (),
        client_version: str | None = None,
    ) -> ConfigPack:
        """Build and sign a pack for one client.

        Raises:
            InfrastructureError: If endpoint lookup fails.
        """
        resolved = await self.balancer.select_region(region, preferred_regions)
        endpoints = await self.balancer.select_endpoints(resolved, verdict, self.max_endpoints)

        metadata: dict[str, Any] = {
            "client_id": client_id,
            "region": resolved,
            "in_rollout": self.rollout_gate.include(client_id, self.version, resolved),
        }
        if client_version:
            metadata["client_version"] = client_version

        unsigned = ConfigPack(
            version=self.version,
            timestamp=int(self._clock()),
            gateways=tuple(GatewayInfo.from_endpoint(e) for e in endpoints),
            transports=self.transports,
            discovery=self.discovery,
            metadata=metadata,
            public_key=self.signer.public_key,
        )
        signature = sign_document(unsigned.signing_payload(), self.signer)
        pack = replace(unsigned, signature=signature)

        self._metrics.increment(CONFIG_PACK_GENERATED, region=resolved)
        logger.info(
            "Issued config pack v%s for %s in %s: %d gateways (%d decoy, decoys %s)",
            pack.version,
            client_id[:8],
            resolved,
            len(pack.gateways),
            pack.decoy_count,
            "required" if requires_decoy(verdict) else "not required",
        )
        return pack
