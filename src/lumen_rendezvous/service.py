"""
Rendezvous service facade.

``RendezvousService`` is what an HTTP layer calls. It validates
requests, runs attestation, builds signed packs, and accepts operator
and client reports. Failures surface as ``RendezvousError`` subclasses
whose ``to_payload()`` is safe to return to clients.

``create_service()`` wires every component from ``RendezvousSettings``
and is the only place that turns configuration into collaborators.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from cryptography import x509

from .attestation import (
    AppAttestAttester,
    AppAttestVerifier,
    PlayIntegrityAttester,
    PlayIntegrityBackend,
    PlayIntegrityClient,
    ServiceAccountCredentials,
    TrustEvaluator,
    generate_challenge,
    load_root_certificate,
)
from .attestation.verdict import UNSUPPORTED_PLATFORM
from .config import RendezvousSettings
from .errors import GatewayNotFoundError, InfrastructureError, RequestValidationError
from .geo import GeoBalancer, region_for_country
from .models import DiscoveryLogEntry, GatewayStatusReport
from .observability import DISCOVERY_LOGS, GATEWAY_STATUS_UPDATES, MetricsSink, NullMetricsSink
from .pack import ConfigPack, ConfigPackBuilder
from .rollout import RolloutGate
from .signing import resolve_signing_keys
from .store import AttestationAuditLog, EndpointDirectory

logger = logging.getLogger(__name__)


@dataclass
class ConfigRequest:
    """A client's request for a config pack."""

    device_id: str
    platform: str
    region: str | None = None
    attestation: str | None = None
    key_id: str | None = None
    version: str | None = None
    country: str | None = None
    preferred_regions: Sequence[str] = field(default_factory=tuple)


@dataclass
class AttestationResponse:
    verified: bool
    integrity: str
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"verified": self.verified, "integrity": self.integrity}
        if self.reason:
            result["reason"] = self.reason
        return result


class RendezvousService:
    """Entry points for config, attestation, and operator reports."""

    def __init__(
        self,
        evaluator: TrustEvaluator,
        balancer: GeoBalancer,
        builder: ConfigPackBuilder,
        directory: EndpointDirectory,
        *,
        metrics: MetricsSink | None = None,
        backends: Sequence[Any] = (),
    ) -> None:
        self.evaluator = evaluator
        self.balancer = balancer
        self.builder = builder
        self.directory = directory
        self._metrics = metrics or NullMetricsSink()
        self._backends = list(backends)

    async def get_config(self, request: ConfigRequest) -> ConfigPack:
        """Evaluate the client's attestation and return a signed pack.

        Clients without an attestation token are treated as untrusted.

        Raises:
            RequestValidationError: Missing fields or unknown platform.
            VerificationError: The attestation backend failed.
            InfrastructureError: Endpoint lookup failed.
        """
        self._require(device_id=request.device_id, platform=request.platform)
        self._require_platform(request.platform)

        verdict = None
        if request.attestation:
            verdict = await self.evaluator.evaluate(
                request.platform, request.attestation, request.device_id, request.key_id
            )

        region = request.region or (region_for_country(request.country) if request.country else None)
        try:
            return await self.builder.build(
                request.device_id,
                region,
                verdict,
                preferred_regions=request.preferred_regions,
                client_version=request.version,
            )
        except InfrastructureError as e:
            logger.error("Config generation failed for region %s: %s", region, e)
            raise InfrastructureError(str(e), code="config_generation_failed") from e

    def issue_challenge(self) -> str:
        return generate_challenge()

    async def verify_attestation(
        self,
        platform: str,
        token: str,
        device_id: str,
        key_id: str | None = None,
    ) -> AttestationResponse:
        self._require(platform=platform, token=token, device_id=device_id)
        self._require_platform(platform)
        verdict = await self.evaluator.evaluate(platform, token, device_id, key_id)
        return AttestationResponse(
            verified=verdict.is_valid,
            integrity=verdict.integrity.value,
            reason=None if verdict.is_valid else verdict.reason,
        )

    async def report_gateway_status(self, report: GatewayStatusReport) -> dict[str, Any]:
        status = report.validate()
        try:
            await self.directory.record_status_update(report, status)
        except GatewayNotFoundError:
            raise
        except Exception as e:
            logger.error("Failed to store status for gateway %s: %s", report.gateway_id, e)
            raise InfrastructureError(str(e), code="gateway_status_store_failed") from e
        self._metrics.increment(GATEWAY_STATUS_UPDATES)
        logger.info("Gateway %s reported %s (%d users)", report.gateway_id, status, report.users_connected)
        return {"acknowledged": True}

    async def record_discovery_log(self, entry: DiscoveryLogEntry, *, country: str | None = None) -> dict[str, Any]:
        channel = entry.validate()
        if entry.region is None and country:
            entry.region = region_for_country(country)
        try:
            await self.directory.record_discovery_log(entry)
        except Exception as e:
            logger.error("Failed to store discovery log for %s: %s", channel, e)
            raise InfrastructureError(str(e), code="discovery_log_store_failed") from e
        self._metrics.increment(DISCOVERY_LOGS, channel=channel.value, success=str(entry.success).lower())
        return {"logged": True}

    async def list_gateways(self) -> list[dict[str, Any]]:
        """Public listing of active and degraded gateways."""
        try:
            endpoints = await self.directory.fetch_all_active()
        except Exception as e:
            logger.error("Failed to list gateways: %s", e)
            raise InfrastructureError(str(e), code="gateway_listing_failed") from e
        return [
            {
                "id": e.endpoint_id,
                "callsign": e.callsign,
                "region": e.region,
                "status": e.status.value,
                "current_users": e.current_users,
                "max_users": e.max_users,
                "last_seen": e.last_seen,
            }
            for e in endpoints
        ]

    async def record_load(self, endpoint_id: str, load: float) -> None:
        await self.balancer.record_load(endpoint_id, load)

    async def close(self) -> None:
        for backend in self._backends:
            await backend.close()

    def _require_platform(self, platform: str) -> None:
        if not self.evaluator.supports(platform):
            raise RequestValidationError(f"unsupported platform {platform!r}", code=UNSUPPORTED_PLATFORM)

    @staticmethod
    def _require(**fields: Any) -> None:
        missing = [name for name, value in fields.items() if not value]
        if missing:
            raise RequestValidationError(f"missing required fields: {', '.join(missing)}", code="missing_field")


def create_service(
    settings: RendezvousSettings,
    directory: EndpointDirectory,
    audit_log: AttestationAuditLog | None = None,
    *,
    metrics: MetricsSink | None = None,
    play_integrity_backend: PlayIntegrityBackend | None = None,
    app_attest_root: x509.Certificate | None = None,
    clock: Callable[[], float] = time.time,
) -> RendezvousService:
    """Build a service from settings.

    Raises:
        ConfigurationError: If signing keys, credentials or the App Attest
            root cannot be loaded. Startup must not continue.
    """
    metrics = metrics or NullMetricsSink()
    signer = resolve_signing_keys(
        settings.config_signing_private_key,
        settings.config_signing_public_key,
        allow_ephemeral=settings.allow_ephemeral_signing_key,
    )

    owned_backends: list[Any] = []
    backend = play_integrity_backend
    if backend is None:
        credentials = None
        if settings.play_integrity_credentials_json:
            credentials = ServiceAccountCredentials.from_json(settings.play_integrity_credentials_json)
        elif settings.play_integrity_credentials_file:
            credentials = ServiceAccountCredentials.from_file(settings.play_integrity_credentials_file)
        if credentials is not None:
            backend = PlayIntegrityClient(credentials, clock=clock)
            owned_backends.append(backend)

    app_attest_verifier = None
    if settings.apple_app_id:
        root = app_attest_root
        if root is None and settings.apple_app_attest_root_ca_file:
            root = load_root_certificate(settings.apple_app_attest_root_ca_file)
        app_attest_verifier = AppAttestVerifier(
            settings.apple_app_id,
            production=settings.apple_production,
            root_certificate=root,
            clock=clock,
        )

    evaluator = TrustEvaluator(
        [
            PlayIntegrityAttester(
                settings.play_integrity_package_name,
                backend,
                allow_basic=settings.play_integrity_allow_basic,
                require_licensed=settings.play_integrity_require_licensed,
                max_age_seconds=settings.play_integrity_max_age_seconds,
                allow_bypass=settings.allow_attestation_bypass,
                clock=clock,
            ),
            AppAttestAttester(app_attest_verifier, allow_bypass=settings.allow_attestation_bypass, clock=clock),
        ],
        audit_log=audit_log,
        metrics=metrics,
        clock=clock,
    )
    balancer = GeoBalancer(directory, settings.decoy_policy)
    builder = ConfigPackBuilder(
        balancer,
        signer,
        rollout_gate=RolloutGate(settings.rollout_overrides, settings.rollout_default_percentage),
        version=settings.config_version,
        max_endpoints=settings.max_endpoints,
        metrics=metrics,
        clock=clock,
    )
    logger.info(
        "Rendezvous service ready (platforms=%s, decoy_policy=%s, ephemeral_key=%s)",
        ",".join(evaluator.platforms),
        settings.decoy_policy,
        signer.ephemeral,
    )
    return RendezvousService(evaluator, balancer, builder, directory, metrics=metrics, backends=owned_backends)
