"""Capability that always reports an operator-supplied coordinate."""
from __future__ import annotations

from typing import AsyncIterator, Optional

from geozone.capability.base import AccuracyTier
from geozone.errors import CapabilityError, ErrorKind
from geozone.geo.models import GeoPoint
from geozone.permission.state import PermissionState


class StaticCapability:
    """Fixed position source, e.g. a kiosk with a known location."""

    def __init__(self, point: Optional[GeoPoint]) -> None:
        self._point = point

    async def query_permission_state(self) -> PermissionState:
        return PermissionState.GRANTED if self._point is not None else PermissionState.UNSUPPORTED

    async def request_prompt(self) -> PermissionState:
        return await self.query_permission_state()

    async def request_single_shot(self, tier: AccuracyTier, *, timeout_s: float, max_age_s: float) -> GeoPoint:
        if self._point is None:
            raise CapabilityError(ErrorKind.UNSUPPORTED, "no static position configured")
        return self._point

    async def watch_position(self, tier: AccuracyTier, *, timeout_s: float, max_age_s: float) -> AsyncIterator[GeoPoint]:
        yield await self.request_single_shot(tier, timeout_s=timeout_s, max_age_s=max_age_s)
