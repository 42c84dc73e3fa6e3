"""
Rendezvous configuration using pydantic-settings.

All environment-based configuration flows through ``RendezvousSettings``,
built once at startup by ``load_settings()`` and handed to each
component. Components never read the environment themselves.

Rollout overrides use dynamic variable names, so they are collected by
``scan_rollout_overrides()`` rather than declared as fields:

    LUMENLINK_ROLLOUT_PERCENTAGE                    global default
    LUMENLINK_ROLLOUT_PERCENTAGE_<VERSION>_<REGION>
    LUMENLINK_ROLLOUT_PERCENTAGE_<VERSION>
    LUMENLINK_ROLLOUT_PERCENTAGE_<REGION>
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pydantic import Field, PositiveInt, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError
from .models import DecoyPolicy

logger = logging.getLogger(__name__)

ROLLOUT_ENV_PREFIX = "LUMENLINK_ROLLOUT_PERCENTAGE"


class RendezvousSettings(BaseSettings):
    """Immutable configuration for the rendezvous control plane."""

    model_config = SettingsConfigDict(
        env_prefix="LUMENLINK_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
        populate_by_name=True,
    )

    production: bool = Field(default=False, description="Enforce production safety guards")

    # Config pack signing
    config_signing_private_key: str | None = Field(
        default=None,
        description="Base64 Ed25519 private key (32-byte seed or 64-byte seed+public)",
    )
    config_signing_public_key: str | None = Field(default=None, description="Base64 Ed25519 public key")
    allow_ephemeral_signing_key: bool = Field(
        default=False,
        description="Generate a throwaway signing key when none is configured (never in production)",
    )

    # Attestation
    allow_attestation_bypass: bool = Field(
        default=False,
        description="Treat unconfigured attestation backends as passing (never in production)",
    )
    play_integrity_package_name: str | None = Field(default=None, validation_alias="PLAY_INTEGRITY_PACKAGE_NAME")
    play_integrity_allow_basic: bool = Field(default=False, validation_alias="PLAY_INTEGRITY_ALLOW_BASIC")
    play_integrity_require_licensed: bool = Field(default=True, validation_alias="PLAY_INTEGRITY_REQUIRE_LICENSED")
    play_integrity_max_age_seconds: PositiveInt = Field(default=300, validation_alias="PLAY_INTEGRITY_MAX_AGE_SECONDS")
    play_integrity_credentials_file: Path | None = Field(
        default=None, validation_alias="PLAY_INTEGRITY_CREDENTIALS_FILE"
    )
    play_integrity_credentials_json: str | None = Field(
        default=None, validation_alias="PLAY_INTEGRITY_CREDENTIALS_JSON"
    )
    apple_team_id: str | None = Field(default=None, validation_alias="APPLE_TEAM_ID")
    apple_bundle_id: str | None = Field(default=None, validation_alias="APPLE_BUNDLE_ID")
    apple_production: bool = Field(default=True, validation_alias="APPLE_PRODUCTION")
    apple_app_attest_root_ca_file: Path | None = Field(
        default=None, validation_alias="APPLE_APP_ATTEST_ROOT_CA_FILE"
    )

    # Pack contents
    config_version: str = Field(default="1.0", description="Version stamped into every config pack")
    decoy_policy: DecoyPolicy = Field(default=DecoyPolicy.REPLACE)
    max_endpoints: PositiveInt = Field(default=5, description="Endpoints disclosed per pack")

    # Rollout (populated by load_settings)
    rollout_default_percentage: int | None = None
    rollout_overrides: dict[str, int] = Field(default_factory=dict)

    @field_validator(
        "config_signing_private_key",
        "config_signing_public_key",
        "play_integrity_package_name",
        "play_integrity_credentials_json",
        "apple_team_id",
        "apple_bundle_id",
        mode="before",
    )
    @classmethod
    def _blank_is_unset(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip()
            return value or None
        return value

    @model_validator(mode="after")
    def validate_production_settings(self) -> RendezvousSettings:
        """Refuse configurations that would silently weaken a production deployment."""
        if not self.production:
            return self
        if self.allow_attestation_bypass:
            raise ValueError("LUMENLINK_ALLOW_ATTESTATION_BYPASS must not be enabled in production")
        if self.allow_ephemeral_signing_key:
            raise ValueError("LUMENLINK_ALLOW_EPHEMERAL_SIGNING_KEY must be false in production")
        if not self.config_signing_private_key:
            raise ValueError("LUMENLINK_CONFIG_SIGNING_PRIVATE_KEY is required in production")
        return self

    @property
    def apple_app_id(self) -> str | None:
        """``teamID.bundleID``, or None when either half is missing."""
        if not self.apple_team_id or not self.apple_bundle_id:
            return None
        return f"{self.apple_team_id}.{self.apple_bundle_id}"


def normalize_rollout_key(value: str) -> str:
    """Upper-case, map non-alphanumerics to ``_`` and trim underscores."""
    if not value:
        return ""
    return "".join(c if c.isalnum() else "_" for c in value.upper()).strip("_")


def scan_rollout_overrides(environ: Mapping[str, str]) -> tuple[int | None, dict[str, int]]:
    """Collect rollout percentages from ``environ``.

    Returns the global default (if set) and a mapping from the
    normalized suffix (``1_0_US_EAST_1``, ``1_0``, ``US_EAST_1``) to the
    configured percentage. Unparseable values are skipped.
    """
    default: int | None = None
    overrides: dict[str, int] = {}
    for name, raw in environ.items():
        if name != ROLLOUT_ENV_PREFIX and not name.startswith(ROLLOUT_ENV_PREFIX + "_"):
            continue
        raw = raw.strip()
        if not raw:
            continue
        try:
            percent = int(raw)
        except ValueError:
            logger.warning("Ignoring non-integer rollout override %s=%r", name, raw)
            continue
        if name == ROLLOUT_ENV_PREFIX:
            default = percent
        else:
            overrides[name[len(ROLLOUT_ENV_PREFIX) + 1 :]] = percent
    return default, overrides


def load_settings(**overrides: Any) -> RendezvousSettings:
    """Build settings from the environment plus explicit overrides.

    Raises:
        ConfigurationError: If the configuration is invalid or violates
            a production guard. Callers must let this abort startup.
    """
    if "rollout_overrides" not in overrides or "rollout_default_percentage" not in overrides:
        default, scanned = scan_rollout_overrides(os.environ)
        overrides.setdefault("rollout_overrides", scanned)
        overrides.setdefault("rollout_default_percentage", default)
    try:
        return RendezvousSettings(**overrides)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid rendezvous configuration: {e}") from e
