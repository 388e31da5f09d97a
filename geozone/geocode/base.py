"""Contract for forward and reverse geocoding providers."""
from __future__ import annotations

from typing import Protocol

from geozone.errors import Result
from geozone.geo.models import GeoPoint, ResolvedAddress


class AddressResolver(Protocol):
    async def geocode(self, query: str) -> Result[ResolvedAddress]:
        """Free text to a coordinate plus structured address components."""
        ...

    async def reverse_geocode(self, point: GeoPoint) -> Result[str]:
        """Best-effort display address for a coordinate."""
        ...
