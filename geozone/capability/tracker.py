"""Capability backed by a self-hosted GPS tracker HTTP API."""
from __future__ import annotations

import asyncio
import time
from typing import AsyncIterator, Dict, List, Optional

import httpx
import structlog

from geozone.capability.base import AccuracyTier
from geozone.errors import CapabilityError, ErrorKind
from geozone.geo.models import GeoPoint
from geozone.permission.state import PermissionState

LOGGER = structlog.get_logger(__name__)

# A GPS-tier fix must be at least this tight when the tracker reports accuracy.
HIGH_ACCURACY_MAX_METERS = 100.0


def _window(max_age_s: float, now: float) -> Dict[str, str]:
    start = time.strftime("%Y-%m-%dT%H:%M:%S%z", time.localtime(now - max_age_s))
    end = time.strftime("%Y-%m-%dT%H:%M:%S%z", time.localtime(now))
    return {"start_at": start, "end_at": end, "order": "desc"}


def _point_from_payload(raw: Dict[str, object]) -> GeoPoint:
    accuracy = raw.get("accuracy")
    return GeoPoint(
        latitude=float(raw["latitude"]),
        longitude=float(raw["longitude"]),
        accuracy_meters=float(accuracy) if accuracy not in (None, "") else None,
    )


class TrackerCapability:
    """Reads the most recent fix a tracker app reported for this user.

    The network tier accepts any fix inside the staleness window; the GPS
    tier additionally rejects fixes whose reported accuracy is coarser than
    `HIGH_ACCURACY_MAX_METERS`.
    """

    def __init__(
        self,
        *,
        base_url: Optional[str],
        api_key: str = "",
        client: Optional[httpx.AsyncClient] = None,
        poll_interval_s: float = 2.0,
    ) -> None:
        self._base_url = (base_url or "").rstrip("/")
        self._api_key = api_key
        self._client = client
        self._poll_interval_s = poll_interval_s

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}

    async def _get(self, path: str, *, params: Dict[str, str], timeout_s: float) -> httpx.Response:
        url = f"{self._base_url}{path}"
        if self._client is not None:
            return await self._client.get(url, params=params, headers=self._headers(), timeout=timeout_s)
        async with httpx.AsyncClient(timeout=timeout_s) as client:
            return await client.get(url, params=params, headers=self._headers())

    async def query_permission_state(self) -> PermissionState:
        if not self._base_url:
            return PermissionState.UNSUPPORTED
        if not self._api_key:
            return PermissionState.PROMPT
        try:
            response = await self._get("/api/v1/points", params={"per_page": "1"}, timeout_s=10.0)
        except httpx.HTTPError as exc:
            LOGGER.warning("tracker_permission_probe_failed", reason=str(exc))
            return PermissionState.PROMPT
        if response.status_code in (httpx.codes.UNAUTHORIZED, httpx.codes.FORBIDDEN):
            return PermissionState.DENIED
        return PermissionState.GRANTED

    async def request_prompt(self) -> PermissionState:
        # Tracker access is granted out of band by issuing an API key.
        return await self.query_permission_state()

    async def _latest(self, tier: AccuracyTier, *, timeout_s: float, max_age_s: float) -> Optional[GeoPoint]:
        if not self._base_url:
            raise CapabilityError(ErrorKind.UNSUPPORTED, "tracker base URL not configured")
        try:
            response = await self._get("/api/v1/points", params=_window(max_age_s, time.time()), timeout_s=timeout_s)
        except httpx.TimeoutException as exc:
            raise CapabilityError(ErrorKind.TIMEOUT, str(exc)) from exc
        except httpx.HTTPError as exc:
            raise CapabilityError(ErrorKind.POSITION_UNAVAILABLE, str(exc)) from exc
        if response.status_code in (httpx.codes.UNAUTHORIZED, httpx.codes.FORBIDDEN):
            raise CapabilityError(ErrorKind.PERMISSION_DENIED, f"tracker returned {response.status_code}")
        if response.status_code >= 400:
            raise CapabilityError(ErrorKind.POSITION_UNAVAILABLE, f"tracker returned {response.status_code}")
        points: List[Dict[str, object]] = response.json() or []
        for raw in points:
            try:
                point = _point_from_payload(raw)
            except (KeyError, TypeError, ValueError):
                continue
            if not point.is_valid():
                continue
            if tier is AccuracyTier.HIGH and (
                point.accuracy_meters is not None and point.accuracy_meters > HIGH_ACCURACY_MAX_METERS
            ):
                continue
            return point
        return None

    async def request_single_shot(self, tier: AccuracyTier, *, timeout_s: float, max_age_s: float) -> GeoPoint:
        point = await self._latest(tier, timeout_s=timeout_s, max_age_s=max_age_s)
        if point is None:
            raise CapabilityError(ErrorKind.POSITION_UNAVAILABLE, "no recent fix reported by tracker")
        return point

    async def watch_position(self, tier: AccuracyTier, *, timeout_s: float, max_age_s: float) -> AsyncIterator[GeoPoint]:
        deadline = time.monotonic() + timeout_s
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise CapabilityError(ErrorKind.TIMEOUT, "tracker watch timed out")
            point = await self._latest(tier, timeout_s=remaining, max_age_s=max_age_s)
            if point is not None:
                yield point
            await asyncio.sleep(min(self._poll_interval_s, max(0.0, deadline - time.monotonic())))
