"""
Device attestation: platform verifiers and the trust evaluator.
"""

from .app_attest import AppAttestAttester, AppAttestVerifier, AttestedKey, load_root_certificate
from .base import AttestationRequest, Attester
from .evaluator import TrustEvaluator, generate_challenge
from .play_integrity import (
    PlayIntegrityAttester,
    PlayIntegrityBackend,
    PlayIntegrityClient,
    ServiceAccountCredentials,
)
from .verdict import IntegrityTier, TrustVerdict, requires_decoy

__all__ = [
    "AppAttestAttester",
    "AppAttestVerifier",
    "AttestationRequest",
    "AttestedKey",
    "Attester",
    "IntegrityTier",
    "PlayIntegrityAttester",
    "PlayIntegrityBackend",
    "PlayIntegrityClient",
    "ServiceAccountCredentials",
    "TrustEvaluator",
    "TrustVerdict",
    "generate_challenge",
    "load_root_certificate",
    "requires_decoy",
]
