"""Circular service-zone matching."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional

import structlog

from geozone.geo.distance import distance_km
from geozone.geo.models import GeoPoint, MatchResult, ServiceZone, Source, ZoneCandidate

LOGGER = structlog.get_logger(__name__)

TIE_EPSILON_KM = 1e-9


@dataclass(frozen=True, slots=True)
class NearestZone:
    """Closest usable zone regardless of radius, for advisory messaging."""

    zone: ServiceZone
    distance_km: float
    within_radius: bool


def _usable(zone: ServiceZone) -> bool:
    if not zone.is_active:
        return False
    if not zone.has_valid_center():
        LOGGER.warning("zone_excluded", zone_id=zone.id, reason="invalid_center")
        return False
    if not zone.radius_km or zone.radius_km <= 0:
        LOGGER.warning("zone_excluded", zone_id=zone.id, reason="invalid_radius", radius_km=zone.radius_km)
        return False
    return True


def _order(candidates: List[ZoneCandidate]) -> List[ZoneCandidate]:
    """Ascending distance, then id; near-equal distances always defer to id."""
    ordered = sorted(candidates, key=ZoneCandidate.sort_key)
    if len(ordered) < 2:
        return ordered
    closest = ordered[0].distance_km
    ties = [c for c in ordered if c.distance_km - closest <= TIE_EPSILON_KM]
    winner = min(ties, key=lambda c: c.zone.id)
    return [winner] + [c for c in ordered if c is not winner]


class ZoneMatcher:
    """Matches a coordinate against a zone snapshot. Pure and deterministic."""

    def __init__(self, metrics=None) -> None:
        self._metrics = metrics

    def _incr(self, name: str) -> None:
        if self._metrics is not None:
            self._metrics.incr(name)

    def _distances(self, point: GeoPoint, zones: Iterable[ServiceZone]) -> List[ZoneCandidate]:
        measured: List[ZoneCandidate] = []
        for zone in zones:
            if not _usable(zone):
                if zone.is_active:
                    self._incr("zones_excluded")
                continue
            result = distance_km(point, zone.center)
            if not result.ok:
                LOGGER.warning("zone_excluded", zone_id=zone.id, reason=result.failure.message)
                self._incr("zones_excluded")
                continue
            measured.append(ZoneCandidate(zone=zone, distance_km=result.value))
        return measured

    def match(self, point: GeoPoint, zones: Iterable[ServiceZone], *, source: Source = Source.DEVICE) -> MatchResult:
        """Return every zone containing the point with the nearest one chosen."""
        if point is None or not point.is_valid():
            LOGGER.warning("match_invalid_point", point=repr(point))
            return MatchResult(matched=False, zone=None, distance_km=None, candidates=(), source=source, point=point)

        within = [c for c in self._distances(point, zones) if c.distance_km <= c.zone.radius_km]
        candidates = tuple(_order(within))
        if not candidates:
            self._incr("no_matches")
            return MatchResult(matched=False, zone=None, distance_km=None, candidates=(), source=source, point=point)

        best = candidates[0]
        self._incr("matches")
        LOGGER.debug("zone_matched", zone_id=best.zone.id, distance_km=best.distance_km, candidates=len(candidates))
        return MatchResult(
            matched=True,
            zone=best.zone,
            distance_km=best.distance_km,
            candidates=candidates,
            source=source,
            point=point,
        )

    def nearest(self, point: GeoPoint, zones: Iterable[ServiceZone]) -> Optional[NearestZone]:
        """Closest active zone with a valid center, ignoring the radius."""
        if point is None or not point.is_valid():
            return None
        ordered = _order(self._distances(point, zones))
        if not ordered:
            return None
        best = ordered[0]
        return NearestZone(
            zone=best.zone,
            distance_km=best.distance_km,
            within_radius=best.distance_km <= best.zone.radius_km,
        )
