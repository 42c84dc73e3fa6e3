"""
LumenLink rendezvous - trust-gated gateway discovery.

Decides, per client, which relay gateways to reveal and under which
transport disguise. Low-trust clients are shown decoy gateways. Every
decision is delivered as an Ed25519-signed config pack.
"""

__version__ = "0.1.0"

from lumen_rendezvous.attestation import (
    AppAttestAttester,
    AppAttestVerifier,
    AttestationRequest,
    Attester,
    IntegrityTier,
    PlayIntegrityAttester,
    PlayIntegrityClient,
    TrustEvaluator,
    TrustVerdict,
    generate_challenge,
    requires_decoy,
)
from lumen_rendezvous.config import RendezvousSettings, load_settings
from lumen_rendezvous.errors import (
    ConfigurationError,
    GatewayNotFoundError,
    InfrastructureError,
    RendezvousError,
    RequestValidationError,
    VerificationError,
)
from lumen_rendezvous.geo import GeoBalancer, region_for_country
from lumen_rendezvous.models import (
    DecoyPolicy,
    DiscoveryChannel,
    DiscoveryLogEntry,
    Endpoint,
    EndpointStatus,
    GatewayStatusReport,
)
from lumen_rendezvous.observability import CounterMetricsSink, MetricsSink, NullMetricsSink
from lumen_rendezvous.pack import ConfigPack, ConfigPackBuilder, verify_config_pack
from lumen_rendezvous.rollout import RolloutGate
from lumen_rendezvous.service import ConfigRequest, RendezvousService, create_service
from lumen_rendezvous.signing import SigningKeyPair, resolve_signing_keys
from lumen_rendezvous.store import (
    AttestationAuditLog,
    EndpointDirectory,
    InMemoryAttestationLog,
    InMemoryEndpointDirectory,
)

__all__ = [
    # Attestation
    "AppAttestAttester",
    "AppAttestVerifier",
    "AttestationRequest",
    "Attester",
    "IntegrityTier",
    "PlayIntegrityAttester",
    "PlayIntegrityClient",
    "TrustEvaluator",
    "TrustVerdict",
    "generate_challenge",
    "requires_decoy",
    # Config
    "RendezvousSettings",
    "load_settings",
    # Errors
    "ConfigurationError",
    "GatewayNotFoundError",
    "InfrastructureError",
    "RendezvousError",
    "RequestValidationError",
    "VerificationError",
    # Selection
    "GeoBalancer",
    "region_for_country",
    "RolloutGate",
    # Models and stores
    "DecoyPolicy",
    "DiscoveryChannel",
    "DiscoveryLogEntry",
    "Endpoint",
    "EndpointStatus",
    "GatewayStatusReport",
    "AttestationAuditLog",
    "EndpointDirectory",
    "InMemoryAttestationLog",
    "InMemoryEndpointDirectory",
    # Observability
    "CounterMetricsSink",
    "MetricsSink",
    "NullMetricsSink",
    # Packs and signing
    "ConfigPack",
    "ConfigPackBuilder",
    "SigningKeyPair",
    "resolve_signing_keys",
    "verify_config_pack",
    # Service
    "ConfigRequest",
    "RendezvousService",
    "create_service",
]
