"""Utilities for loading service zones from the catalog CSV."""
from __future__ import annotations

import csv
import math
from pathlib import Path
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError, field_validator

from geozone.geo.models import GeoPoint, ServiceZone


class ZoneRecord(BaseModel):
    """Validated catalog row for a single zone."""

    zone_id: str = Field(min_length=1)
    display_name: str = ""
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    radius_km: float = Field(gt=0)
    is_active: bool = True

    @field_validator("latitude", "longitude", mode="before")
    @classmethod
    def _blank_to_none(cls, value):
        if value in (None, ""):
            return None
        try:
            number = float(value)
        except (TypeError, ValueError):
            return None
        return number if math.isfinite(number) else None

    def center(self) -> Optional[GeoPoint]:
        if self.latitude is None or self.longitude is None:
            return None
        return GeoPoint(latitude=self.latitude, longitude=self.longitude)

    def to_zone(self) -> ServiceZone:
        return ServiceZone(
            id=self.zone_id,
            center=self.center(),
            radius_km=self.radius_km,
            display_name=self.display_name or self.zone_id,
            is_active=self.is_active,
        )


def _coerce_bool(value: str | bool | None, default: bool = True) -> bool:
    if isinstance(value, bool):
        return value
    if value is None or str(value).strip() == "":
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "y"}


def _prepare_row(row: dict[str, str]) -> dict[str, object]:
    mapped: dict[str, object] = {}
    for key, value in row.items():
        if key is None:
            continue
        mapped[key.strip()] = value.strip() if isinstance(value, str) else value
    mapped["is_active"] = _coerce_bool(mapped.get("is_active"), default=True)
    return mapped


def _read_rows(csv_path: Path) -> List[dict[str, object]]:
    with csv_path.open("r", encoding="utf-8") as handle:
        reader = csv.DictReader(handle)
        return [_prepare_row(raw) for raw in reader if raw and raw.get("zone_id")]


def load_zones(csv_path: Path) -> List[ServiceZone]:
    """Load every zone row, raising `ValueError` on the first invalid row."""
    zones: List[ServiceZone] = []
    for prepared in _read_rows(csv_path):
        try:
            record = ZoneRecord(**prepared)
        except ValidationError as exc:
            raise ValueError(f"Invalid zone row {prepared.get('zone_id')}: {exc}") from exc
        zones.append(record.to_zone())
    return zones


def validate_zones(csv_path: Path) -> List[Tuple[str, bool, str]]:
    """Validate all rows, returning results per zone without raising."""
    results: List[Tuple[str, bool, str]] = []
    for prepared in _read_rows(csv_path):
        zone_id = str(prepared.get("zone_id"))
        try:
            record = ZoneRecord(**prepared)
        except ValidationError as exc:
            results.append((zone_id, False, str(exc)))
            continue
        center = record.center()
        if center is None or not center.is_valid():
            results.append((zone_id, False, "missing or out-of-range center coordinate"))
        elif not record.is_active:
            results.append((zone_id, True, "inactive"))
        else:
            results.append((zone_id, True, "ok"))
    return results


class ZoneCatalog:
    """Read-only zone source; every call returns a fresh snapshot."""

    def __init__(self, csv_path: Path) -> None:
        self._csv_path = csv_path

    def list_active_zones(self) -> List[ServiceZone]:
        return [zone for zone in load_zones(self._csv_path) if zone.is_active]
