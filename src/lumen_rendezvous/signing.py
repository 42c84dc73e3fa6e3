"""
Ed25519 signing for config packs.

Provides:
- Signing key resolution from configuration (or an ephemeral key for
  development)
- Canonical JSON serialization
- Detached sign/verify over canonical documents

Verification never raises: any malformed key or signature simply
fails to verify.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from dataclasses import dataclass
from typing import Any

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

SEED_SIZE = 32
PUBLIC_KEY_SIZE = 32
SIGNATURE_SIZE = 64


@dataclass(frozen=True)
class SigningKeyPair:
    """Config-pack signing key and its raw public key."""

    private_key: Ed25519PrivateKey
    public_key: bytes
    ephemeral: bool = False

    @classmethod
    def generate(cls, ephemeral: bool = False) -> SigningKeyPair:
        private_key = Ed25519PrivateKey.generate()
        return cls(private_key, private_key.public_key().public_bytes_raw(), ephemeral)

    @classmethod
    def from_seed(cls, seed: bytes) -> SigningKeyPair:
        private_key = Ed25519PrivateKey.from_private_bytes(seed)
        return cls(private_key, private_key.public_key().public_bytes_raw())

    def sign(self, data: bytes) -> bytes:
        return self.private_key.sign(data)


def canonical_json(document: dict[str, Any]) -> bytes:
    """Serialize with sorted keys, no insignificant whitespace, and non-ASCII escaped."""
    return json.dumps(document, sort_keys=True, separators=(",", ":")).encode("ascii")


def sign_document(document: dict[str, Any], keys: SigningKeyPair) -> bytes:
    return keys.sign(canonical_json(document))


def verify_document(document: dict[str, Any], signature: bytes, public_key: bytes) -> bool:
    """Check a detached signature over ``document``.

    Returns False (never raises) for wrong-length keys or signatures and
    for any signature that does not match.
    """
    if len(public_key) != PUBLIC_KEY_SIZE or len(signature) != SIGNATURE_SIZE:
        return False
    try:
        Ed25519PublicKey.from_public_bytes(public_key).verify(signature, canonical_json(document))
        return True
    except (InvalidSignature, TypeError, ValueError):
        return False


def _decode_key(value: str, name: str) -> bytes:
    try:
        return base64.b64decode(value.strip(), validate=True)
    except (binascii.Error, ValueError) as e:
        raise ConfigurationError(f"{name} is not valid base64") from e


def resolve_signing_keys(
    private_key_b64: str | None,
    public_key_b64: str | None = None,
    *,
    allow_ephemeral: bool = False,
) -> SigningKeyPair:
    """Build the signing key pair from configuration.

    The private key is a base64 32-byte seed, or a 64-byte seed followed
    by its public key. A configured public key must match the one the
    private key derives.

    Raises:
        ConfigurationError: If no key is configured and ephemeral keys are
            not allowed, or if the configured keys are malformed or do
            not match.
    """
    if not private_key_b64:
        if not allow_ephemeral:
            raise ConfigurationError("config signing private key is required")
        logger.warning("No config signing key configured; using an ephemeral key. Packs will not verify after restart.")
        return SigningKeyPair.generate(ephemeral=True)

    raw = _decode_key(private_key_b64, "config signing private key")
    if len(raw) == SEED_SIZE:
        keys = SigningKeyPair.from_seed(raw)
    elif len(raw) == SEED_SIZE + PUBLIC_KEY_SIZE:
        keys = SigningKeyPair.from_seed(raw[:SEED_SIZE])
        if raw[SEED_SIZE:] != keys.public_key:
            raise ConfigurationError("config signing private key embeds a mismatched public key")
    else:
        raise ConfigurationError(f"config signing private key must be 32 or 64 bytes, got {len(raw)}")

    if public_key_b64:
        public = _decode_key(public_key_b64, "config signing public key")
        if public != keys.public_key:
            raise ConfigurationError("config signing public key does not match the private key")
    return keys
