"""
Android attestation via the Google Play Integrity API.

The attester never decodes integrity tokens itself: the token is sent
to Google's ``decodeIntegrityToken`` endpoint and the returned verdict
payload is checked against local policy.

Authentication uses a service account. A short-lived RS256 assertion
(signed with PyJWT) is exchanged for an OAuth2 access token, which is
cached until shortly before it expires.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

import aiohttp
import jwt

from ..errors import ConfigurationError, VerificationError
from .base import AttestationRequest, Attester
from .verdict import (
    APP_NOT_LICENSED,
    APP_NOT_RECOGNIZED,
    ATTESTATION_EXPIRED,
    DEVICE_INTEGRITY_FAILED,
    MISSING_ATTESTATION_CONFIG,
    MISSING_TOKEN_PAYLOAD,
    PACKAGE_NAME_MISMATCH,
    PLAY_INTEGRITY_API_ERROR,
    IntegrityTier,
    TrustVerdict,
)

logger = logging.getLogger(__name__)

PLAY_INTEGRITY_URL = "https://playintegrity.googleapis.com/v1/{package}:decodeIntegrityToken"
PLAY_INTEGRITY_SCOPE = "https://www.googleapis.com/auth/playintegrity"
GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"
JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"

PLAY_RECOGNIZED = "PLAY_RECOGNIZED"
LICENSED = "LICENSED"

#: Refresh access tokens this many seconds before they expire.
TOKEN_REFRESH_MARGIN = 60.0
ASSERTION_LIFETIME = 3600


class PlayIntegrityBackend(Protocol):
    """Decodes an integrity token into Google's verdict payload.

    Implementations raise ``VerificationError`` on any backend failure.
    """

    async def decode_integrity_token(self, package_name: str, token: str) -> dict[str, Any]: ...


@dataclass(frozen=True)
class ServiceAccountCredentials:
    """The fields of a Google service-account key file that we use."""

    client_email: str
    private_key: str
    private_key_id: str | None = None
    token_uri: str = GOOGLE_TOKEN_URI

    @classmethod
    def from_json(cls, text: str) -> ServiceAccountCredentials:
        try:
            data = json.loads(text)
            return cls(
                client_email=data["client_email"],
                private_key=data["private_key"],
                private_key_id=data.get("private_key_id"),
                token_uri=data.get("token_uri") or GOOGLE_TOKEN_URI,
            )
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            raise ConfigurationError(f"Invalid Play Integrity service account credentials: {e}") from e

    @classmethod
    def from_file(cls, path: Path) -> ServiceAccountCredentials:
        try:
            text = Path(path).read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigurationError(f"Cannot read Play Integrity credentials file {path}: {e}") from e
        return cls.from_json(text)


async def _read_json(resp: aiohttp.ClientResponse, source: str) -> dict[str, Any]:
    """Decode a JSON object body; anything else is a backend fault."""
    try:
        data = await resp.json(content_type=None)
    except ValueError as e:
        raise VerificationError(
            f"{source} returned invalid JSON: {e}", platform="android", reason=PLAY_INTEGRITY_API_ERROR
        ) from e
    if not isinstance(data, dict):
        raise VerificationError(
            f"{source} returned {type(data).__name__}, expected an object",
            platform="android",
            reason=PLAY_INTEGRITY_API_ERROR,
        )
    return data


class PlayIntegrityClient:
    """aiohttp client for ``decodeIntegrityToken``.

    The HTTP session and access token are created on first use, exactly
    once even under concurrent first calls. Backend failures are raised
    immediately; there are no retries.
    """

    def __init__(
        self,
        credentials: ServiceAccountCredentials,
        *,
        request_timeout: float = 10.0,
        session: aiohttp.ClientSession | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._credentials = credentials
        self._timeout = aiohttp.ClientTimeout(total=request_timeout)
        self._session = session
        self._owns_session = session is None
        self._clock = clock
        self._access_token: str | None = None
        self._token_expiry = 0.0
        self._lock = asyncio.Lock()

    async def decode_integrity_token(self, package_name: str, token: str) -> dict[str, Any]:
        session, access_token = await self._ensure_ready()
        url = PLAY_INTEGRITY_URL.format(package=package_name)
        try:
            async with session.post(
                url,
                json={"integrity_token": token},
                headers={"Authorization": f"Bearer {access_token}"},
            ) as resp:
                if resp.status != 200:
                    raise VerificationError(
                        f"Play Integrity returned HTTP {resp.status}",
                        platform="android",
                        reason=PLAY_INTEGRITY_API_ERROR,
                    )
                return await _read_json(resp, "Play Integrity")
        except aiohttp.ClientError as e:
            raise VerificationError(
                f"Play Integrity connection error: {e}", platform="android", reason=PLAY_INTEGRITY_API_ERROR
            ) from e
        except asyncio.TimeoutError as e:
            raise VerificationError(
                "Play Integrity request timeout", platform="android", reason=PLAY_INTEGRITY_API_ERROR
            ) from e

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    async def _ensure_ready(self) -> tuple[aiohttp.ClientSession, str]:
        async with self._lock:
            if self._session is None:
                self._session = aiohttp.ClientSession(timeout=self._timeout)
                self._owns_session = True
            token = self._access_token
            if token is None or self._clock() >= self._token_expiry - TOKEN_REFRESH_MARGIN:
                token = self._access_token = await self._refresh_access_token(self._session)
            return self._session, token

    async def _refresh_access_token(self, session: aiohttp.ClientSession) -> str:
        now = int(self._clock())
        claims = {
            "iss": self._credentials.client_email,
            "scope": PLAY_INTEGRITY_SCOPE,
            "aud": self._credentials.token_uri,
            "iat": now,
            "exp": now + ASSERTION_LIFETIME,
        }
        headers = {"kid": self._credentials.private_key_id} if self._credentials.private_key_id else None
        try:
            assertion = jwt.encode(claims, self._credentials.private_key, algorithm="RS256", headers=headers)
        except (ValueError, TypeError, jwt.PyJWTError) as e:
            raise VerificationError(
                f"Cannot sign service account assertion: {e}", platform="android", reason=PLAY_INTEGRITY_API_ERROR
            ) from e

        try:
            async with session.post(
                self._credentials.token_uri,
                data={"grant_type": JWT_BEARER_GRANT, "assertion": assertion},
            ) as resp:
                if resp.status != 200:
                    raise VerificationError(
                        f"OAuth token endpoint returned HTTP {resp.status}",
                        platform="android",
                        reason=PLAY_INTEGRITY_API_ERROR,
                    )
                data = await _read_json(resp, "OAuth token endpoint")
        except aiohttp.ClientError as e:
            raise VerificationError(
                f"OAuth token request failed: {e}", platform="android", reason=PLAY_INTEGRITY_API_ERROR
            ) from e
        except asyncio.TimeoutError as e:
            raise VerificationError(
                "OAuth token request timeout", platform="android", reason=PLAY_INTEGRITY_API_ERROR
            ) from e

        try:
            access_token = data["access_token"]
            expires_in = float(data.get("expires_in", ASSERTION_LIFETIME))
        except (KeyError, TypeError, ValueError) as e:
            raise VerificationError(
                f"OAuth token response is malformed: {e!r}", platform="android", reason=PLAY_INTEGRITY_API_ERROR
            ) from e
        if not isinstance(access_token, str) or not access_token:
            raise VerificationError(
                "OAuth token response has no access token", platform="android", reason=PLAY_INTEGRITY_API_ERROR
            )

        self._token_expiry = self._clock() + expires_in
        logger.debug("Refreshed Play Integrity access token for %s", self._credentials.client_email)
        return access_token


class PlayIntegrityAttester(Attester):
    """Android verifier.

    Checks, in order: package identity, token age, app recognition,
    licensing (when required), then device integrity. Strong integrity
    always passes; basic (or device) integrity passes only when
    ``allow_basic`` is set.
    """

    platform = "android"

    def __init__(
        self,
        package_name: str | None,
        backend: PlayIntegrityBackend | None,
        *,
        allow_basic: bool = False,
        require_licensed: bool = True,
        max_age_seconds: float = 300.0,
        allow_bypass: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(allow_bypass=allow_bypass, clock=clock)
        self.package_name = package_name
        self.backend = backend
        self.allow_basic = allow_basic
        self.require_licensed = require_licensed
        self.max_age_seconds = max_age_seconds

    async def verify(self, request: AttestationRequest) -> TrustVerdict:
        if self.backend is None or not self.package_name:
            return self._unconfigured(request, MISSING_ATTESTATION_CONFIG)
        if not request.token:
            return self._invalid(request, MISSING_TOKEN_PAYLOAD)

        response = await self.backend.decode_integrity_token(self.package_name, request.token)
        payload = (response or {}).get("tokenPayloadExternal")
        if not payload or not payload.get("requestDetails"):
            return self._invalid(request, MISSING_TOKEN_PAYLOAD)

        details = payload["requestDetails"]
        requested_package = details.get("requestPackageName")
        if requested_package and requested_package != self.package_name:
            return self._invalid(request, PACKAGE_NAME_MISMATCH)

        if self._is_expired(details.get("timestampMillis")):
            return self._invalid(request, ATTESTATION_EXPIRED)

        app_integrity = payload.get("appIntegrity") or {}
        if app_integrity.get("appRecognitionVerdict") != PLAY_RECOGNIZED:
            return self._invalid(request, APP_NOT_RECOGNIZED)

        if self.require_licensed:
            account = payload.get("accountDetails") or {}
            if account.get("appLicensingVerdict") != LICENSED:
                return self._invalid(request, APP_NOT_LICENSED)

        device = payload.get("deviceIntegrity") or {}
        tier = IntegrityTier.from_play_verdicts(device.get("deviceRecognitionVerdict"))
        if tier == IntegrityTier.STRONG:
            return self._valid(request, tier)
        if self.allow_basic and tier.at_least(IntegrityTier.BASIC):
            return self._valid(request, tier)
        return self._invalid(request, DEVICE_INTEGRITY_FAILED, integrity=tier)

    def _is_expired(self, timestamp_millis: Any) -> bool:
        if timestamp_millis in (None, ""):
            return False
        try:
            issued_at = int(timestamp_millis) / 1000.0
        except (TypeError, ValueError):
            return False
        return self._clock() - issued_at > self.max_age_seconds
