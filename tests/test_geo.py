"""
Tests for region selection and load-ordered endpoint selection.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import make_endpoint

from lumen_rendezvous.attestation import IntegrityTier, TrustVerdict
from lumen_rendezvous.errors import InfrastructureError
from lumen_rendezvous.geo import (
    DEFAULT_REGION,
    GeoBalancer,
    clamp_load,
    region_for_country,
)
from lumen_rendezvous.models import DEFAULT_LOAD, DecoyPolicy, EndpointStatus
from lumen_rendezvous.store import InMemoryEndpointDirectory


@pytest.fixture
def balancer(directory):
    return GeoBalancer(directory)


@pytest.fixture
def strong():
    return TrustVerdict.valid("android", IntegrityTier.STRONG)


# =============================================================================
# Load
# =============================================================================


class TestEndpointLoad:
    """Test the load figure used for ordering."""

    def test_load_is_fraction_of_capacity(self):
        assert make_endpoint("gw", current_users=25, max_users=100).load == 0.25

    @pytest.mark.parametrize("max_users", [None, 0, -5])
    @pytest.mark.parametrize("current_users", [0, 7, 10_000])
    def test_unknown_capacity_defaults(self, max_users, current_users):
        """Unknown or zero capacity always reports 0.5."""
        endpoint = make_endpoint("gw", current_users=current_users, max_users=max_users)
        assert endpoint.load == DEFAULT_LOAD == 0.5

    def test_load_clamped(self):
        """Over-capacity endpoints report a load of 1."""
        assert make_endpoint("gw", current_users=250, max_users=100).load == 1.0

    @pytest.mark.parametrize("value,expected", [(-0.5, 0.0), (0.4, 0.4), (3.0, 1.0)])
    def test_clamp_load(self, value, expected):
        assert clamp_load(value) == expected


# =============================================================================
# Region selection
# =============================================================================


class TestSelectRegion:
    """Test the region fallback cascade."""

    @pytest.mark.asyncio
    async def test_explicit_region_available(self, balancer):
        assert await balancer.select_region("eu-west-1") == "eu-west-1"

    @pytest.mark.asyncio
    async def test_preferred_region_used(self, balancer):
        """An unavailable explicit region falls back to the first available preference."""
        region = await balancer.select_region("ap-east-1", ["me-south-1", "eu-west-1", "us-east-1"])
        assert region == "eu-west-1"

    @pytest.mark.asyncio
    async def test_adjacency_table(self, balancer):
        """Without preferences, the adjacency list for the client region is walked."""
        assert await balancer.select_region("eu-central-1") == "eu-west-1"

    @pytest.mark.asyncio
    async def test_unknown_region_uses_default_order(self):
        directory = InMemoryEndpointDirectory([make_endpoint("gw", region="ap-southeast-1")])
        assert await GeoBalancer(directory).select_region("mars-1") == "ap-southeast-1"

    @pytest.mark.asyncio
    async def test_empty_directory_returns_default(self):
        """A region is always returned."""
        assert await GeoBalancer(InMemoryEndpointDirectory()).select_region("eu-west-1") == DEFAULT_REGION

    @pytest.mark.asyncio
    async def test_overloaded_region_unavailable(self):
        """A region whose only gateway is at 90% load is skipped."""
        directory = InMemoryEndpointDirectory(
            [
                make_endpoint("busy", region="eu-west-1", current_users=90),
                make_endpoint("idle", region="eu-central-1", current_users=10),
            ]
        )
        assert await GeoBalancer(directory).select_region("eu-west-1") == "eu-central-1"

    @pytest.mark.asyncio
    async def test_lookup_errors_do_not_fail_selection(self):
        """Region probing swallows lookup errors and still returns a region."""
        directory = MagicMock()
        directory.fetch_by_region = AsyncMock(side_effect=ConnectionError("db down"))
        assert await GeoBalancer(directory).select_region("eu-west-1", ["us-west-1"]) == DEFAULT_REGION


# =============================================================================
# Endpoint selection
# =============================================================================


class TestSelectEndpoints:
    """Test trust-aware, load-ordered endpoint selection."""

    @pytest.mark.asyncio
    async def test_sorted_by_load(self, balancer, strong):
        endpoints = await balancer.select_endpoints("us-east-1", strong)
        assert [e.endpoint_id for e in endpoints] == ["gw-east-b", "gw-east-c", "gw-east-a"]
        assert not any(e.is_decoy for e in endpoints)

    @pytest.mark.asyncio
    async def test_stable_order_for_equal_load(self, strong):
        """Equal loads keep directory order."""
        directory = InMemoryEndpointDirectory(
            [
                make_endpoint("first", max_users=None),
                make_endpoint("second", max_users=0),
                make_endpoint("third", max_users=None),
            ]
        )
        endpoints = await GeoBalancer(directory).select_endpoints("us-east-1", strong)
        assert [e.endpoint_id for e in endpoints] == ["first", "second", "third"]

    @pytest.mark.asyncio
    async def test_limit(self, balancer, strong):
        assert len(await balancer.select_endpoints("us-east-1", strong, limit=2)) == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "verdict",
        [
            None,
            TrustVerdict.invalid("android", "app_not_recognized"),
            TrustVerdict.valid("android", IntegrityTier.DEVICE),
            TrustVerdict.valid("ios", IntegrityTier.BYPASS),
        ],
    )
    async def test_low_trust_sees_only_decoys(self, balancer, verdict):
        """Missing, invalid or sub-strong verdicts never see real gateways."""
        endpoints = await balancer.select_endpoints("us-east-1", verdict)
        assert [e.endpoint_id for e in endpoints] == ["decoy-east"]

    @pytest.mark.asyncio
    async def test_merge_policy(self, directory):
        """MERGE shows decoys alongside real gateways."""
        balancer = GeoBalancer(directory, DecoyPolicy.MERGE)
        endpoints = await balancer.select_endpoints("us-east-1", None)
        assert [e.endpoint_id for e in endpoints] == ["decoy-east", "gw-east-b", "gw-east-c", "gw-east-a"]

    @pytest.mark.asyncio
    async def test_inactive_gateways_excluded(self, directory, strong):
        directory.add(make_endpoint("gw-offline", status=EndpointStatus.OFFLINE))
        endpoints = await GeoBalancer(directory).select_endpoints("us-east-1", strong)
        assert "gw-offline" not in [e.endpoint_id for e in endpoints]

    @pytest.mark.asyncio
    async def test_lookup_error_propagates(self, strong):
        """A directory failure is an infrastructure error, not an empty region."""
        directory = MagicMock()
        directory.fetch_by_region = AsyncMock(side_effect=ConnectionError("db down"))
        with pytest.raises(InfrastructureError):
            await GeoBalancer(directory).select_endpoints("us-east-1", strong)

    @pytest.mark.asyncio
    async def test_decoy_lookup_error_propagates(self):
        directory = MagicMock()
        directory.fetch_decoys = AsyncMock(side_effect=TimeoutError())
        with pytest.raises(InfrastructureError):
            await GeoBalancer(directory).select_endpoints("us-east-1", None)


# =============================================================================
# Load recording and country hints
# =============================================================================


class TestRecordLoad:
    """Test load updates."""

    @pytest.mark.asyncio
    async def test_load_clamped_before_persisting(self):
        directory = MagicMock()
        directory.update_load = AsyncMock()
        balancer = GeoBalancer(directory)

        await balancer.record_load("gw-1", 1.7)
        await balancer.record_load("gw-1", -0.2)

        assert [c.args for c in directory.update_load.await_args_list] == [("gw-1", 1.0), ("gw-1", 0.0)]

    @pytest.mark.asyncio
    async def test_load_updates_users(self, directory, balancer):
        await balancer.record_load("gw-east-a", 0.25)
        assert directory.get("gw-east-a").current_users == 25

    @pytest.mark.asyncio
    async def test_store_failure(self):
        directory = MagicMock()
        directory.update_load = AsyncMock(side_effect=OSError("disk"))
        with pytest.raises(InfrastructureError):
            await GeoBalancer(directory).record_load("gw-1", 0.5)


class TestRegionForCountry:
    @pytest.mark.parametrize(
        "country,region",
        [
            ("CN", "ap-east-1"),
            ("IR", "me-south-1"),
            ("RU", "eu-central-1"),
            ("us", "us-east-1"),
            ("GB", "eu-west-1"),
            ("DE", "eu-central-1"),
            ("FR", "us-east-1"),
            (None, "us-east-1"),
        ],
    )
    def test_mapping(self, country, region):
        assert region_for_country(country) == region
