"""
Tests for config pack signing keys and detached signatures.
"""

import base64
import logging

import pytest

from lumen_rendezvous.errors import ConfigurationError
from lumen_rendezvous.signing import (
    SigningKeyPair,
    canonical_json,
    resolve_signing_keys,
    sign_document,
    verify_document,
)


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode()


@pytest.fixture
def seed():
    return bytes(range(32))


@pytest.fixture
def keys(seed):
    return SigningKeyPair.from_seed(seed)


# =============================================================================
# Key resolution
# =============================================================================


class TestResolveSigningKeys:
    """Test building the signing key pair from configuration."""

    def test_seed_derives_public_key(self, seed, keys):
        """A 32-byte seed should derive its public key."""
        resolved = resolve_signing_keys(b64(seed))
        assert resolved.public_key == keys.public_key
        assert not resolved.ephemeral

    def test_seed_with_public_key_suffix(self, seed, keys):
        """A 64-byte seed||public key should be accepted."""
        resolved = resolve_signing_keys(b64(seed + keys.public_key))
        assert resolved.public_key == keys.public_key

    def test_mismatched_embedded_public_key(self, seed):
        """A 64-byte key whose suffix is not its public key is rejected."""
        with pytest.raises(ConfigurationError):
            resolve_signing_keys(b64(seed + b"\x00" * 32))

    def test_matching_configured_public_key(self, seed, keys):
        """A configured public key that matches should be accepted."""
        resolved = resolve_signing_keys(b64(seed), b64(keys.public_key))
        assert resolved.public_key == keys.public_key

    def test_mismatched_configured_public_key(self, seed):
        """A configured public key from another key pair is rejected."""
        other = SigningKeyPair.generate()
        with pytest.raises(ConfigurationError):
            resolve_signing_keys(b64(seed), b64(other.public_key))

    def test_wrong_length_rejected(self):
        """Keys that are neither 32 nor 64 bytes are rejected."""
        with pytest.raises(ConfigurationError):
            resolve_signing_keys(b64(b"\x01" * 16))

    def test_invalid_base64_rejected(self):
        """Undecodable key material is a configuration error."""
        with pytest.raises(ConfigurationError):
            resolve_signing_keys("not base64!!")

    def test_missing_key_without_ephemeral(self):
        """No key and no ephemeral allowance fails construction."""
        with pytest.raises(ConfigurationError):
            resolve_signing_keys(None)

    def test_ephemeral_key_logs_warning(self, caplog):
        """An ephemeral key is generated only when allowed, with a warning."""
        with caplog.at_level(logging.WARNING, logger="lumen_rendezvous.signing"):
            resolved = resolve_signing_keys("", allow_ephemeral=True)

        assert resolved.ephemeral
        assert len(resolved.public_key) == 32
        assert "ephemeral" in caplog.text


# =============================================================================
# Sign / verify
# =============================================================================


class TestSignVerify:
    """Test detached signatures over canonical JSON."""

    def test_canonical_json_is_order_independent(self):
        """Key order must not change the serialization."""
        assert canonical_json({"b": 1, "a": [1, 2]}) == canonical_json({"a": [1, 2], "b": 1})
        assert canonical_json({"a": 1}) == b'{"a":1}'

    def test_canonical_json_escapes_non_ascii(self, keys):
        """Non-ASCII text, including lone surrogates, is escaped rather than encoded."""
        assert canonical_json({"id": "é"}) == b'{"id":"\\u00e9"}'
        assert canonical_json({"id": "\ud800"}) == b'{"id":"\\ud800"}'

        document = {"client_id": "dev\ud800"}
        assert verify_document(document, sign_document(document, keys), keys.public_key)

    def test_sign_and_verify(self, keys):
        """A signed document should verify."""
        document = {"version": "1.0", "metadata": {"client_id": "c1"}}
        signature = sign_document(document, keys)

        assert len(signature) == 64
        assert verify_document(document, signature, keys.public_key)

    def test_modified_document_fails(self, keys):
        """Changing any value invalidates the signature."""
        document = {"version": "1.0", "timestamp": 1}
        signature = sign_document(document, keys)

        assert not verify_document({"version": "1.0", "timestamp": 2}, signature, keys.public_key)

    def test_wrong_public_key_fails(self, keys):
        """A signature does not verify under another key."""
        document = {"a": 1}
        signature = sign_document(document, keys)

        assert not verify_document(document, signature, SigningKeyPair.generate().public_key)

    @pytest.mark.parametrize("signature", [b"", b"\x00" * 10, b"\x00" * 63, b"\x00" * 65])
    def test_bad_signature_lengths_never_raise(self, keys, signature):
        """Empty or wrong-length signatures verify as False."""
        assert verify_document({"a": 1}, signature, keys.public_key) is False

    @pytest.mark.parametrize("public_key", [b"", b"\x01" * 16, b"\x01" * 33])
    def test_bad_public_key_lengths_never_raise(self, keys, public_key):
        """Empty or wrong-length public keys verify as False."""
        signature = sign_document({"a": 1}, keys)
        assert verify_document({"a": 1}, signature, public_key) is False
