"""
iOS attestation via Apple App Attest (DCAppAttestService).

The client sends a JSON token holding its attestation object and the
client data it hashed, plus the key identifier App Attest returned.
Verification follows Apple's server-side procedure:

1. The ``x5c`` chain must lead to the App Attest root CA.
2. The credential certificate's nonce extension must equal
   SHA256(authData || SHA256(clientData)).
3. SHA256 of the credential public key must equal the key identifier.
4. authData must name our app (``teamID.bundleID``), have a zero sign
   counter, the App Attest AAGUID for the environment, and carry the
   key identifier as its credential id.

Undecodable input is reported as a malformed attestation. Any failed
cryptographic check raises ``VerificationError``.
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import struct
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import cbor2
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from ..errors import ConfigurationError, VerificationError
from .base import AttestationRequest, Attester
from .verdict import (
    DCAPPATTEST_VERIFICATION_FAILED,
    INVALID_ATTESTATION_FORMAT,
    MISSING_DCAPPATTEST_CONFIG,
    MISSING_TOKEN_OR_KEYID,
    IntegrityTier,
    TrustVerdict,
)

logger = logging.getLogger(__name__)

ATTESTATION_FORMAT = "apple-appattest"
NONCE_EXTENSION_OID = x509.ObjectIdentifier("1.2.840.113635.100.8.2")
# DER: SEQUENCE { [1] { OCTET STRING (32) } }
NONCE_EXTENSION_PREFIX = b"\x30\x24\xa1\x22\x04\x20"

AAGUID_PRODUCTION = b"appattest" + b"\x00" * 7
AAGUID_DEVELOPMENT = b"appattestdevelop"

# authData layout
RP_ID_HASH_END = 32
COUNTER_OFFSET = 33
AAGUID_OFFSET = 37
CRED_ID_LEN_OFFSET = 53
CRED_ID_OFFSET = 55

APPLE_APP_ATTEST_ROOT_CA_PEM = b"""-----BEGIN CERTIFICATE-----
MIICITCCAaegAwIBAgIQC/O+DvHN0uD7jG5yH2IXmDAKBggqhkjOPQQDAzBSMSYw
JAYDVQQDDB1BcHBsZSBBcHAgQXR0ZXN0YXRpb24gUm9vdCBDQTETMBEGA1UECgwK
QXBwbGUgSW5jLjETMBEGA1UECAwKQ2FsaWZvcm5pYTAeFw0yMDAzMTgxODMyNTNa
Fw00NTAzMTUwMDAwMDBaMFIxJjAkBgNVBAMMHUFwcGxlIEFwcCBBdHRlc3RhdGlv
biBSb290IENBMRMwEQYDVQQKDApBcHBsZSBJbmMuMRMwEQYDVQQIDApDYWxpZm9y
bmlhMHYwEAYHKoZIzj0CAQYFK4EEACIDYgAERTHhmLW07ATaFQIEVwTtT4dyctdh
NbJhFs/Ii2FdCgAHGbpphY3+d8qjuDngIN3WVhQUBHAoMeQ/cLiP1sOUtgjqK9au
Yen1mMEvRq9Sk3Jm5X8U62H+xTD3FE9TgS41o0IwQDAPBgNVHRMBAf8EBTADAQH/
MB0GA1UdDgQWBBSskRBTM72+aEH/pwyp5frq5eWKoTAOBgNVHQ8BAf8EBAMCAQYw
CgYIKoZIzj0EAwMDaAAwZQIwQgFGnByvsiVbpTKwSga0kP0e8EeDS4+sQmTvb7vn
53O5+FRXgeLhpJ06ysC5PrOyAjEAp5U4xDgEgllF7En3VcE3iexZZtKeYnpqtijV
oyFraWVIyd/dganmrduC1bmTBGwD
-----END CERTIFICATE-----
"""


class MalformedAttestation(ValueError):
    """The attestation could not be decoded into the expected structure."""


@dataclass(frozen=True)
class AttestedKey:
    """Outcome of a successful attestation."""

    key_id: bytes
    public_key: bytes  # X9.62 uncompressed point
    receipt: bytes


def load_root_certificate(path: Path | None = None) -> x509.Certificate:
    """Load the App Attest root CA from ``path``, or the bundled Apple root."""
    try:
        pem = Path(path).read_bytes() if path else APPLE_APP_ATTEST_ROOT_CA_PEM
        return x509.load_pem_x509_certificate(pem)
    except (OSError, ValueError) as e:
        raise ConfigurationError(f"Cannot load App Attest root certificate: {e}") from e


def b64decode_any(value: str) -> bytes:
    """Decode standard or URL-safe base64, padded or not."""
    value = value.strip().replace("-", "+").replace("_", "/")
    value += "=" * (-len(value) % 4)
    return base64.b64decode(value, validate=True)


def _fail(message: str) -> VerificationError:
    return VerificationError(message, platform="ios", reason=DCAPPATTEST_VERIFICATION_FAILED)


class AppAttestVerifier:
    """Verifies App Attest attestation objects for one app identity."""

    def __init__(
        self,
        app_id: str,
        *,
        production: bool = True,
        root_certificate: x509.Certificate | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.app_id = app_id
        self.production = production
        self.root_certificate = root_certificate or load_root_certificate()
        self._clock = clock

    def verify(self, key_id: bytes, attestation_object: bytes, client_data: bytes) -> AttestedKey:
        credential, intermediate, auth_data, receipt = self._decode(attestation_object)

        self._verify_chain(credential, intermediate)

        client_data_hash = hashlib.sha256(client_data).digest()
        nonce = hashlib.sha256(auth_data + client_data_hash).digest()
        try:
            extension = credential.extensions.get_extension_for_oid(NONCE_EXTENSION_OID)
        except x509.ExtensionNotFound as e:
            raise _fail("credential certificate has no nonce extension") from e
        if getattr(extension.value, "value", None) != NONCE_EXTENSION_PREFIX + nonce:
            raise _fail("nonce mismatch")

        public_key = credential.public_key()
        if not isinstance(public_key, ec.EllipticCurvePublicKey):
            raise _fail("credential key is not an EC key")
        public_bytes = public_key.public_bytes(Encoding.X962, PublicFormat.UncompressedPoint)
        if hashlib.sha256(public_bytes).digest() != key_id:
            raise _fail("key identifier does not match credential public key")

        self._verify_auth_data(auth_data, key_id)

        logger.debug("App Attest key %s verified for %s", key_id.hex()[:16], self.app_id)
        return AttestedKey(key_id=key_id, public_key=public_bytes, receipt=receipt)

    def _decode(self, attestation_object: bytes) -> tuple[x509.Certificate, x509.Certificate, bytes, bytes]:
        try:
            obj = cbor2.loads(attestation_object)
        except (cbor2.CBORDecodeError, ValueError) as e:
            raise MalformedAttestation(f"attestation object is not CBOR: {e}") from e
        if not isinstance(obj, dict):
            raise MalformedAttestation("attestation object is not a map")
        if obj.get("fmt") != ATTESTATION_FORMAT:
            raise MalformedAttestation(f"unexpected attestation format {obj.get('fmt')!r}")

        statement = obj.get("attStmt")
        auth_data = obj.get("authData")
        if not isinstance(statement, dict) or not isinstance(auth_data, bytes):
            raise MalformedAttestation("missing attStmt or authData")
        chain = statement.get("x5c")
        if not isinstance(chain, list) or len(chain) < 2:
            raise MalformedAttestation("x5c must hold the credential and intermediate certificates")
        if len(auth_data) < CRED_ID_OFFSET:
            raise MalformedAttestation("authData too short")

        try:
            credential = x509.load_der_x509_certificate(chain[0])
            intermediate = x509.load_der_x509_certificate(chain[1])
        except (TypeError, ValueError) as e:
            raise MalformedAttestation(f"invalid certificate in x5c: {e}") from e
        return credential, intermediate, auth_data, statement.get("receipt") or b""

    def _verify_chain(self, credential: x509.Certificate, intermediate: x509.Certificate) -> None:
        now = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
        for cert, issuer in ((credential, intermediate), (intermediate, self.root_certificate)):
            try:
                cert.verify_directly_issued_by(issuer)
            except (ValueError, TypeError, InvalidSignature) as e:
                raise _fail(f"certificate chain broken at {cert.subject.rfc4514_string()}") from e
            if not cert.not_valid_before_utc <= now <= cert.not_valid_after_utc:
                raise _fail(f"certificate {cert.subject.rfc4514_string()} outside its validity window")

    def _verify_auth_data(self, auth_data: bytes, key_id: bytes) -> None:
        if auth_data[:RP_ID_HASH_END] != hashlib.sha256(self.app_id.encode()).digest():
            raise _fail("rpIdHash does not match app identity")

        (counter,) = struct.unpack(">I", auth_data[COUNTER_OFFSET:AAGUID_OFFSET])
        if counter != 0:
            raise _fail("sign counter must be zero at attestation")

        expected_aaguid = AAGUID_PRODUCTION if self.production else AAGUID_DEVELOPMENT
        if auth_data[AAGUID_OFFSET:CRED_ID_LEN_OFFSET] != expected_aaguid:
            raise _fail("AAGUID does not match App Attest environment")

        (cred_id_len,) = struct.unpack(">H", auth_data[CRED_ID_LEN_OFFSET:CRED_ID_OFFSET])
        if auth_data[CRED_ID_OFFSET : CRED_ID_OFFSET + cred_id_len] != key_id:
            raise _fail("credential id does not match key identifier")


class AppAttestAttester(Attester):
    """iOS verifier. A successful attestation is always ``STRONG``."""

    platform = "ios"

    def __init__(
        self,
        verifier: AppAttestVerifier | None,
        *,
        allow_bypass: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(allow_bypass=allow_bypass, clock=clock)
        self.verifier = verifier

    async def verify(self, request: AttestationRequest) -> TrustVerdict:
        if not request.token or not request.key_id:
            return self._invalid(request, MISSING_TOKEN_OR_KEYID)
        if self.verifier is None:
            return self._unconfigured(request, MISSING_DCAPPATTEST_CONFIG)

        try:
            key_id, attestation_object, client_data = self._parse_token(request.token, request.key_id)
            self.verifier.verify(key_id, attestation_object, client_data)
        except MalformedAttestation as e:
            logger.info("Malformed App Attest token from %s: %s", request.device_id[:8], e)
            return self._invalid(request, INVALID_ATTESTATION_FORMAT)
        return self._valid(request, IntegrityTier.STRONG)

    @staticmethod
    def _parse_token(token: str, key_id: str) -> tuple[bytes, bytes, bytes]:
        try:
            data: Any = json.loads(token)
            if not isinstance(data, dict):
                raise MalformedAttestation("token is not a JSON object")
            token_key_id = data.get("keyID")
            if token_key_id and token_key_id != key_id:
                raise MalformedAttestation("token keyID differs from request key_id")
            return (
                b64decode_any(key_id),
                b64decode_any(data["attestationObject"]),
                b64decode_any(data["clientData"]),
            )
        except MalformedAttestation:
            raise
        except (KeyError, TypeError, AttributeError, ValueError) as e:
            raise MalformedAttestation(f"cannot decode token: {e}") from e
