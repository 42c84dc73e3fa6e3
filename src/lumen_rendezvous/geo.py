"""
Region resolution and load-ordered endpoint selection.

Region selection always produces an answer: the explicit region, then
each preferred region, then the adjacency list for the client's region,
then ``DEFAULT_REGION``. Endpoint selection, by contrast, surfaces
directory failures so an outage never looks like an empty region.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from .attestation.verdict import TrustVerdict, requires_decoy
from .errors import InfrastructureError
from .models import DecoyPolicy, Endpoint, EndpointStatus
from .store import EndpointDirectory

logger = logging.getLogger(__name__)

DEFAULT_REGION = "us-east-1"
DEFAULT_ENDPOINT_LIMIT = 5
#: A region is available if some active endpoint is below this load.
AVAILABILITY_LOAD_THRESHOLD = 0.9

REGION_ADJACENCY: dict[str, tuple[str, ...]] = {
    "us-east-1": ("us-east-1", "us-west-1", "eu-west-1", "ap-southeast-1"),
    "us-west-1": ("us-west-1", "us-east-1", "ap-southeast-1", "eu-west-1"),
    "eu-west-1": ("eu-west-1", "eu-central-1", "us-east-1", "ap-southeast-1"),
    "eu-central-1": ("eu-central-1", "eu-west-1", "us-east-1", "ap-southeast-1"),
    "ap-southeast-1": ("ap-southeast-1", "ap-east-1", "us-west-1", "eu-west-1"),
    "ap-east-1": ("ap-east-1", "ap-southeast-1", "us-west-1", "eu-west-1"),
    "me-south-1": ("me-south-1", "eu-central-1", "eu-west-1", "ap-southeast-1"),
}
DEFAULT_REGION_ORDER: tuple[str, ...] = ("us-east-1", "us-west-1", "eu-west-1", "ap-southeast-1")

COUNTRY_TO_REGION: dict[str, str] = {
    "CN": "ap-east-1",
    "IR": "me-south-1",
    "RU": "eu-central-1",
    "US": "us-east-1",
    "GB": "eu-west-1",
    "DE": "eu-central-1",
}


def region_for_country(country_code: str | None) -> str:
    """Map an ISO country code to a serving region."""
    if not country_code:
        return DEFAULT_REGION
    return COUNTRY_TO_REGION.get(country_code.strip().upper(), DEFAULT_REGION)


def clamp_load(load: float) -> float:
    return max(0.0, min(1.0, load))


class GeoBalancer:
    """Chooses a region and the endpoints to disclose in it.

    Args:
        directory: Endpoint store.
        decoy_policy: ``REPLACE`` shows low-trust clients decoys only;
            ``MERGE`` adds decoys ahead of the real endpoints.
    """

    def __init__(self, directory: EndpointDirectory, decoy_policy: DecoyPolicy = DecoyPolicy.REPLACE) -> None:
        self.directory = directory
        self.decoy_policy = decoy_policy

    async def select_region(self, explicit: str | None = None, preferred: Sequence[str] = ()) -> str:
        if explicit and await self._is_available(explicit):
            return explicit

        for region in preferred:
            if region and await self._is_available(region):
                return region

        for region in REGION_ADJACENCY.get(explicit or "", DEFAULT_REGION_ORDER):
            if await self._is_available(region):
                return region

        logger.info("No available region for %r, using %s", explicit, DEFAULT_REGION)
        return DEFAULT_REGION

    async def select_endpoints(
        self,
        region: str,
        verdict: TrustVerdict | None,
        limit: int = DEFAULT_ENDPOINT_LIMIT,
    ) -> list[Endpoint]:
        """Endpoints for ``region``, least loaded first.

        Clients that need decoys never see real endpoints under the
        ``REPLACE`` policy.

        Raises:
            InfrastructureError: If the directory lookup fails.
        """
        decoys_only = False
        decoys: list[Endpoint] = []
        if requires_decoy(verdict):
            decoys = await self._fetch(self.directory.fetch_decoys, region)
            decoys_only = self.decoy_policy == DecoyPolicy.REPLACE

        real = [] if decoys_only else await self._fetch(self.directory.fetch_by_region, region)
        candidates = decoys + real

        # sorted() is stable, so equal loads keep fetch order.
        ordered = sorted(candidates, key=lambda e: e.load)
        return ordered[: max(limit, 0)]

    async def record_load(self, endpoint_id: str, load: float) -> None:
        try:
            await self.directory.update_load(endpoint_id, clamp_load(load))
        except InfrastructureError:
            raise
        except Exception as e:
            raise InfrastructureError(f"Failed to record load for {endpoint_id}: {e}") from e

    async def _fetch(self, lookup, region: str) -> list[Endpoint]:
        try:
            return list(await lookup(region))
        except InfrastructureError:
            raise
        except Exception as e:
            raise InfrastructureError(f"Endpoint lookup failed for region {region}: {e}") from e

    async def _is_available(self, region: str) -> bool:
        try:
            endpoints = await self.directory.fetch_by_region(region)
        except Exception as e:
            logger.warning("Availability check failed for region %s: %s", region, e)
            return False
        return any(
            e.status == EndpointStatus.ACTIVE and e.load < AVAILABILITY_LOAD_THRESHOLD for e in endpoints
        )
