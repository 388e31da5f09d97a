"""Contract for the platform location capability."""
from __future__ import annotations

from enum import Enum
from typing import AsyncIterator, Protocol

from geozone.geo.models import GeoPoint
from geozone.permission.state import PermissionState


class AccuracyTier(str, Enum):
    """Acquisition strategy trading speed for positional precision."""

    LOW = "network"
    HIGH = "gps"


class LocationCapability(Protocol):
    """Device/platform positioning as seen by the acquirer.

    Failures are signalled with `geozone.errors.CapabilityError`.
    """

    async def query_permission_state(self) -> PermissionState:
        ...

    async def request_prompt(self) -> PermissionState:
        ...

    async def request_single_shot(self, tier: AccuracyTier, *, timeout_s: float, max_age_s: float) -> GeoPoint:
        ...

    def watch_position(self, tier: AccuracyTier, *, timeout_s: float, max_age_s: float) -> AsyncIterator[GeoPoint]:
        """Yield fixes until closed; closing the iterator clears the watch."""
        ...
