"""
Shared fixtures for rendezvous tests.
"""

import os

import pytest

from lumen_rendezvous.models import Endpoint, EndpointStatus
from lumen_rendezvous.store import InMemoryAttestationLog, InMemoryEndpointDirectory


def make_endpoint(
    endpoint_id: str,
    region: str = "us-east-1",
    current_users: int = 0,
    max_users: int | None = 100,
    status: EndpointStatus = EndpointStatus.ACTIVE,
    is_decoy: bool = False,
) -> Endpoint:
    return Endpoint(
        endpoint_id=endpoint_id,
        public_key=os.urandom(32),
        address=f"10.0.0.{abs(hash(endpoint_id)) % 250 + 1}",
        port=443,
        region=region,
        transports=["masque", "xtls"],
        discovery_channels=["gps"],
        current_users=current_users,
        max_users=max_users,
        status=status,
        is_decoy=is_decoy,
    )


@pytest.fixture
def directory():
    """A directory with real and decoy gateways in two regions."""
    return InMemoryEndpointDirectory(
        [
            make_endpoint("gw-east-a", current_users=60),
            make_endpoint("gw-east-b", current_users=10),
            make_endpoint("gw-east-c", current_users=30),
            make_endpoint("decoy-east", current_users=5, is_decoy=True),
            make_endpoint("gw-west-a", region="eu-west-1", current_users=20),
            make_endpoint("decoy-west", region="eu-west-1", is_decoy=True),
        ]
    )


@pytest.fixture
def audit_log():
    return InMemoryAttestationLog()
