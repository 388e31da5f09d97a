"""Google Geocoding API adapter."""
from __future__ import annotations

from typing import Dict, List, Optional

import httpx
import structlog

from geozone.errors import ErrorKind, GeocodeError, Result
from geozone.geo.models import GeoPoint, ResolvedAddress

LOGGER = structlog.get_logger(__name__)

DEFAULT_ENDPOINT = "https://maps.googleapis.com/maps/api/geocode/json"

_AREA_TYPES = ("sublocality_level_1", "sublocality", "neighborhood")


def parse_address_components(components: List[Dict[str, object]]) -> Dict[str, str]:
    """Pick area, city, state and postal code out of provider component types."""
    parsed = {"area": "", "city": "", "state": "", "postal_code": ""}
    for component in components or []:
        types = component.get("types") or []
        name = str(component.get("long_name") or "")
        if any(t in types for t in _AREA_TYPES):
            parsed["area"] = name
        if "locality" in types:
            parsed["city"] = name
        if "administrative_area_level_1" in types:
            parsed["state"] = name
        if "postal_code" in types:
            parsed["postal_code"] = name
    if not parsed["area"] and components:
        parsed["area"] = str(components[0].get("long_name") or "")
    return parsed


def _resolved_from(result: Dict[str, object]) -> ResolvedAddress:
    location = result["geometry"]["location"]  # type: ignore[index]
    point = GeoPoint(latitude=float(location["lat"]), longitude=float(location["lng"]))
    if not point.is_valid():
        raise GeocodeError(f"provider returned invalid coordinate {point!r}")
    parts = parse_address_components(result.get("address_components") or [])  # type: ignore[arg-type]
    return ResolvedAddress(
        formatted_address=str(result.get("formatted_address") or ""),
        point=point,
        **parts,
    )


class GoogleGeocoder:
    """Forward and reverse lookups against the Google Geocoding JSON API."""

    def __init__(
        self,
        *,
        api_key: str,
        endpoint: str = DEFAULT_ENDPOINT,
        region: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._api_key = api_key
        self._endpoint = endpoint
        self._region = region
        self._timeout = timeout
        self._client = client

    async def _request(self, params: Dict[str, str]) -> List[Dict[str, object]]:
        params = {**params, "key": self._api_key}
        if self._region:
            params["region"] = self._region
        try:
            if self._client is not None:
                response = await self._client.get(self._endpoint, params=params, timeout=self._timeout)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.get(self._endpoint, params=params)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise GeocodeError(f"geocoding request failed: {exc}") from exc
        payload = response.json()
        status = payload.get("status")
        if status != "OK":
            raise GeocodeError(f"geocoding status {status}: {payload.get('error_message', '')}".strip())
        results = payload.get("results") or []
        if not results:
            raise GeocodeError("geocoding returned no results")
        return results

    async def geocode(self, query: str) -> Result[ResolvedAddress]:
        query = (query or "").strip()
        if not query:
            return Result.fail(ErrorKind.GEOCODE_FAILURE, "empty address query")
        try:
            results = await self._request({"address": query})
            return Result.success(_resolved_from(results[0]))
        except (GeocodeError, KeyError, TypeError, ValueError) as exc:
            LOGGER.info("geocode_failed", query=query, reason=str(exc))
            return Result.fail(ErrorKind.GEOCODE_FAILURE, str(exc))

    async def reverse_geocode(self, point: GeoPoint) -> Result[str]:
        if point is None or not point.is_valid():
            return Result.fail(ErrorKind.GEOCODE_FAILURE, "invalid coordinate")
        try:
            results = await self._request({"latlng": f"{point.latitude},{point.longitude}"})
        except GeocodeError as exc:
            LOGGER.info("reverse_geocode_failed", reason=str(exc))
            return Result.fail(ErrorKind.GEOCODE_FAILURE, str(exc))
        address = str(results[0].get("formatted_address") or "")
        if not address:
            return Result.fail(ErrorKind.GEOCODE_FAILURE, "no formatted address")
        return Result.success(address)
