"""Settings loading: TOML file first, `GEOZONE_*` environment variables on top."""
from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Dict, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError

ENV_PREFIX = "GEOZONE_"


class EngineSettings(BaseModel):
    """Tunables recognised by the resolution engine."""

    ttl_seconds: int = Field(default=1800, gt=0)
    low_accuracy_timeout_ms: int = Field(default=20000, gt=0)
    high_accuracy_timeout_ms: int = Field(default=30000, gt=0)
    prefer_low_accuracy_first: bool = True
    max_staleness_ms: int = Field(default=120000, ge=0)
    precise_accuracy_meters: float = Field(default=1000.0, gt=0)


class GeocoderSettings(BaseModel):
    api_key: str = ""
    endpoint: str = "https://maps.googleapis.com/maps/api/geocode/json"
    region: Optional[str] = None
    timeout_seconds: float = Field(default=10.0, gt=0)


class TrackerSettings(BaseModel):
    base_url: str = ""
    api_key: str = ""
    poll_interval_seconds: float = Field(default=2.0, gt=0)
    static_latitude: Optional[float] = None
    static_longitude: Optional[float] = None


class AppSettings(BaseModel):
    zones_csv: Path = Path("config/zones.csv")
    cache_path: Optional[Path] = Path("data/position_cache.json")
    metrics_dir: Path = Path("data/metrics")
    logging_config: Path = Path("config/logging.yaml")


class Settings(BaseModel):
    engine: EngineSettings = Field(default_factory=EngineSettings)
    geocoder: GeocoderSettings = Field(default_factory=GeocoderSettings)
    tracker: TrackerSettings = Field(default_factory=TrackerSettings)
    app: AppSettings = Field(default_factory=AppSettings)


def _env_overrides(environ: Mapping[str, str]) -> Dict[str, Dict[str, str]]:
    """Map `GEOZONE_<SECTION>_<KEY>` (or `GEOZONE_<KEY>` for engine keys) onto sections."""
    overrides: Dict[str, Dict[str, str]] = {}
    sections = set(Settings.model_fields)
    engine_keys = set(EngineSettings.model_fields)
    for name, value in environ.items():
        if not name.startswith(ENV_PREFIX):
            continue
        key = name[len(ENV_PREFIX):].lower()
        if key in engine_keys:
            overrides.setdefault("engine", {})[key] = value
            continue
        section, _, field = key.partition("_")
        if section in sections and field:
            overrides.setdefault(section, {})[field] = value
    return overrides


def load_settings(path: Optional[Path] = None, *, environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Read the TOML configuration file and apply environment overrides."""
    raw: Dict[str, Dict[str, object]] = {}
    if path is not None and path.exists():
        with path.open("rb") as handle:
            raw = tomllib.load(handle)
    environ = os.environ if environ is None else environ
    for section, values in _env_overrides(environ).items():
        raw.setdefault(section, {}).update(values)
    try:
        return Settings(**raw)
    except ValidationError as exc:
        raise ValueError(f"Invalid settings: {exc}") from exc
