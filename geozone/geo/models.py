"""Value types exchanged between the resolution stages."""
from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple

DEFAULT_PRECISE_ACCURACY_M = 1000.0


class Source(str, Enum):
    """Where the coordinate behind a match came from."""

    DEVICE = "device"
    MANUAL = "manual"
    CACHE = "cache"


@dataclass(frozen=True, slots=True)
class GeoPoint:
    """Represents a resolved coordinate pair with optional accuracy radius."""

    latitude: float
    longitude: float
    accuracy_meters: Optional[float] = None

    def is_valid(self) -> bool:
        """Return True for finite coordinates inside the WGS84 ranges."""
        try:
            lat = float(self.latitude)
            lon = float(self.longitude)
        except (TypeError, ValueError):
            return False
        if not (math.isfinite(lat) and math.isfinite(lon)):
            return False
        return -90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0

    def is_precise(self, threshold_m: float = DEFAULT_PRECISE_ACCURACY_M) -> bool:
        """GPS-grade fixes report an accuracy radius at or below the threshold."""
        if self.accuracy_meters is None:
            return False
        return self.accuracy_meters <= threshold_m

    def to_dict(self) -> Dict[str, Optional[float]]:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "accuracy_meters": self.accuracy_meters,
        }


@dataclass(frozen=True, slots=True)
class ServiceZone:
    """A circular delivery catchment owned by the zone catalog."""

    id: str
    center: Optional[GeoPoint]
    radius_km: float
    display_name: str = ""
    is_active: bool = True

    def has_valid_center(self) -> bool:
        return self.center is not None and self.center.is_valid()

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "display_name": self.display_name,
            "center": self.center.to_dict() if self.center else None,
            "radius_km": self.radius_km,
            "is_active": self.is_active,
        }


@dataclass(frozen=True, slots=True)
class ZoneCandidate:
    """A zone whose radius contains the point, with the computed distance."""

    zone: ServiceZone
    distance_km: float

    def sort_key(self) -> Tuple[float, str]:
        return (self.distance_km, self.zone.id)


@dataclass(frozen=True)
class MatchResult:
    """Outcome of matching a single coordinate against a zone snapshot."""

    matched: bool
    zone: Optional[ServiceZone]
    distance_km: Optional[float]
    candidates: Tuple[ZoneCandidate, ...]
    source: Source
    point: Optional[GeoPoint] = None
    display_address: Optional[str] = None
    precise: bool = False

    def with_context(
        self,
        *,
        source: Source,
        display_address: Optional[str] = None,
        precise_threshold_m: float = DEFAULT_PRECISE_ACCURACY_M,
    ) -> "MatchResult":
        """Return a copy stamped with the source and display address."""
        return MatchResult(
            matched=self.matched,
            zone=self.zone,
            distance_km=self.distance_km,
            candidates=self.candidates,
            source=source,
            point=self.point,
            display_address=display_address,
            precise=self.point.is_precise(precise_threshold_m) if self.point else False,
        )

    def to_dict(self) -> Dict[str, object]:
        """JSON friendly view; distances are rounded for display only."""
        return {
            "matched": self.matched,
            "zone": self.zone.to_dict() if self.zone else None,
            "distance_km": round(self.distance_km, 2) if self.distance_km is not None else None,
            "candidates": [
                {"zone_id": c.zone.id, "display_name": c.zone.display_name, "distance_km": round(c.distance_km, 2)}
                for c in self.candidates
            ],
            "source": self.source.value,
            "point": self.point.to_dict() if self.point else None,
            "display_address": self.display_address,
            "precise": self.precise,
        }


@dataclass(frozen=True, slots=True)
class ResolvedAddress:
    """Forward geocoding result with structured address components."""

    formatted_address: str
    point: GeoPoint
    area: str = ""
    city: str = ""
    state: str = ""
    postal_code: str = ""


@dataclass(frozen=True, slots=True)
class CacheEntry:
    """A cached fix with the wall-clock window it stays valid for."""

    point: GeoPoint
    captured_at: float
    ttl_expires_at: float
    source: str = Source.DEVICE.value

    def is_expired(self, now: float) -> bool:
        return now >= self.ttl_expires_at
