"""
Tests for config pack building and verification.
"""

from dataclasses import replace

import pytest
from conftest import make_endpoint

from lumen_rendezvous.attestation import IntegrityTier, TrustVerdict
from lumen_rendezvous.geo import GeoBalancer
from lumen_rendezvous.models import DecoyPolicy
from lumen_rendezvous.observability import CONFIG_PACK_GENERATED, CounterMetricsSink
from lumen_rendezvous.pack import (
    DEFAULT_DISCOVERY,
    DEFAULT_TRANSPORTS,
    ConfigPack,
    ConfigPackBuilder,
    verify_config_pack,
)
from lumen_rendezvous.rollout import RolloutGate
from lumen_rendezvous.signing import SigningKeyPair

NOW = 1_700_000_000.0


@pytest.fixture
def signer():
    return SigningKeyPair.generate()


@pytest.fixture
def metrics():
    return CounterMetricsSink()


@pytest.fixture
def builder(directory, signer, metrics):
    return ConfigPackBuilder(GeoBalancer(directory), signer, metrics=metrics, clock=lambda: NOW)


@pytest.fixture
def strong_verdict():
    return TrustVerdict.valid("android", IntegrityTier.STRONG, device_id="device-1")


@pytest.fixture
async def pack(builder, strong_verdict):
    return await builder.build("client-1", "us-east-1", strong_verdict)


# =============================================================================
# Building
# =============================================================================


class TestConfigPackBuilder:
    """Test pack assembly."""

    @pytest.mark.asyncio
    async def test_pack_contents(self, builder, strong_verdict, signer):
        """A pack should carry version, time, key, gateways and static descriptors."""
        pack = await builder.build("client-1", "us-east-1", strong_verdict)

        assert pack.version == "1.0"
        assert pack.timestamp == int(NOW)
        assert pack.public_key == signer.public_key
        assert [g.id for g in pack.gateways] == ["gw-east-b", "gw-east-c", "gw-east-a"]
        assert pack.transports == DEFAULT_TRANSPORTS
        assert pack.discovery == DEFAULT_DISCOVERY
        assert pack.metadata["client_id"] == "client-1"
        assert pack.metadata["region"] == "us-east-1"
        assert pack.metadata["in_rollout"] is True

    @pytest.mark.asyncio
    async def test_static_transports(self, pack):
        """The four transport disguises are always present."""
        by_type = {t.type: t for t in pack.transports}

        assert list(by_type) == ["masque", "xtls", "parasite", "ssh"]
        assert by_type["masque"].fingerprint == "apple_icloud"
        assert dict(by_type["xtls"].options) == {"reality": "true"}
        assert by_type["ssh"].endpoints == ()
        assert pack.discovery.scan_interval == 300
        assert pack.discovery.battery_aware is True

    @pytest.mark.asyncio
    async def test_untrusted_client_gets_decoys(self, builder):
        """An invalid verdict yields decoy gateways only."""
        verdict = TrustVerdict.invalid("android", "device_integrity_failed")
        pack = await builder.build("client-1", "us-east-1", verdict)

        assert pack.gateways
        assert all(g.is_decoy for g in pack.gateways)
        assert verify_config_pack(pack)

    @pytest.mark.asyncio
    async def test_merge_policy_mixes_decoys(self, directory, signer):
        """Under MERGE, decoys sit alongside real gateways."""
        builder = ConfigPackBuilder(GeoBalancer(directory, DecoyPolicy.MERGE), signer)
        pack = await builder.build("client-1", "us-east-1", None)

        assert pack.decoy_count >= 1
        assert any(not g.is_decoy for g in pack.gateways)

    @pytest.mark.asyncio
    async def test_region_resolved_through_balancer(self, builder, strong_verdict):
        """An unavailable region falls back along the adjacency table."""
        pack = await builder.build("client-1", "eu-central-1", strong_verdict)
        assert pack.metadata["region"] == "eu-west-1"

    @pytest.mark.asyncio
    async def test_client_version_recorded(self, builder, strong_verdict):
        """The client's reported version is stamped into metadata."""
        pack = await builder.build("client-1", "us-east-1", strong_verdict, client_version="2.3.1")
        assert pack.metadata["client_version"] == "2.3.1"

    @pytest.mark.asyncio
    async def test_rollout_excluded(self, directory, signer, strong_verdict):
        """A zero percent rollout marks every client as excluded."""
        builder = ConfigPackBuilder(GeoBalancer(directory), signer, rollout_gate=RolloutGate(default=0))
        pack = await builder.build("client-1", "us-east-1", strong_verdict)
        assert pack.metadata["in_rollout"] is False

    @pytest.mark.asyncio
    async def test_max_endpoints(self, directory, signer, strong_verdict):
        """Packs disclose at most ``max_endpoints`` gateways."""
        for i in range(10):
            directory.add(make_endpoint(f"gw-extra-{i}", current_users=i))
        builder = ConfigPackBuilder(GeoBalancer(directory), signer, max_endpoints=2)
        pack = await builder.build("client-1", "us-east-1", strong_verdict)
        assert len(pack.gateways) == 2

    @pytest.mark.asyncio
    async def test_every_build_is_fresh(self, builder, strong_verdict, metrics):
        """Two requests produce two packs and two metric increments."""
        first = await builder.build("client-1", "us-east-1", strong_verdict)
        second = await builder.build("client-2", "us-east-1", strong_verdict)

        assert first is not second
        assert first.signature != second.signature
        assert metrics.get(CONFIG_PACK_GENERATED, region="us-east-1") == 2


# =============================================================================
# Verification
# =============================================================================


class TestVerifyConfigPack:
    """Test the pack integrity contract."""

    @pytest.mark.asyncio
    async def test_valid_pack_verifies(self, pack):
        """A freshly built pack verifies."""
        assert verify_config_pack(pack)

    @pytest.mark.asyncio
    async def test_wire_form_round_trip(self, pack):
        """A pack decoded from its wire form still verifies."""
        assert verify_config_pack(ConfigPack.from_dict(pack.to_dict()))

    @pytest.mark.asyncio
    async def test_tampered_version(self, pack):
        assert not verify_config_pack(replace(pack, version="1.1"))

    @pytest.mark.asyncio
    async def test_tampered_timestamp(self, pack):
        assert not verify_config_pack(replace(pack, timestamp=pack.timestamp + 1))

    @pytest.mark.asyncio
    async def test_tampered_metadata(self, pack):
        metadata = dict(pack.metadata, region="ap-east-1")
        assert not verify_config_pack(replace(pack, metadata=metadata))

    @pytest.mark.asyncio
    async def test_tampered_gateway(self, pack):
        """Altering any gateway field invalidates the pack."""
        gateways = (replace(pack.gateways[0], port=8443),) + pack.gateways[1:]
        assert not verify_config_pack(replace(pack, gateways=gateways))

    @pytest.mark.asyncio
    async def test_appended_gateway(self, pack):
        """Adding a gateway invalidates the pack."""
        gateways = pack.gateways + (replace(pack.gateways[0], id="gw-evil"),)
        assert not verify_config_pack(replace(pack, gateways=gateways))

    @pytest.mark.asyncio
    async def test_flipped_signature_bit(self, pack):
        signature = bytes([pack.signature[0] ^ 0x01]) + pack.signature[1:]
        assert not verify_config_pack(replace(pack, signature=signature))

    @pytest.mark.asyncio
    async def test_substituted_public_key(self, pack):
        """Swapping in another signer's key invalidates the pack."""
        assert not verify_config_pack(replace(pack, public_key=SigningKeyPair.generate().public_key))

    @pytest.mark.asyncio
    @pytest.mark.parametrize("signature", [b"", None, b"\x00" * 12])
    async def test_missing_or_short_signature(self, pack, signature):
        """Absent or short signatures verify as False without raising."""
        assert verify_config_pack(replace(pack, signature=signature)) is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("public_key", [b"", None, b"\x00" * 31])
    async def test_missing_or_short_public_key(self, pack, public_key):
        """Absent or short public keys verify as False without raising."""
        assert verify_config_pack(replace(pack, public_key=public_key)) is False
