"""Command-line entrypoints for the delivery zone resolver."""
from __future__ import annotations

import argparse
import asyncio
import json
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from dotenv import load_dotenv

try:
    import uvloop
except ImportError:  # pragma: no cover - uvloop optional on some platforms
    uvloop = None

from geozone.acquire.acquirer import AcquisitionOptions, PositionAcquirer
from geozone.cache.position_cache import PositionCache
from geozone.capability.base import LocationCapability
from geozone.capability.static import StaticCapability
from geozone.capability.tracker import TrackerCapability
from geozone.config import Settings, load_settings
from geozone.errors import Failure, Result
from geozone.geo.models import GeoPoint, MatchResult, ServiceZone, Source
from geozone.geocode.base import AddressResolver
from geozone.geocode.google import GoogleGeocoder
from geozone.match.matcher import ZoneMatcher
from geozone.observability.log import configure_logging
from geozone.observability.metrics import MetricsRegistry
from geozone.orchestrator.resolver import ResolutionOrchestrator
from geozone.permission.state import PermissionStateMachine
from geozone.zones.catalog import ZoneCatalog, validate_zones

DEFAULT_SETTINGS = Path("config/settings.toml")
DEFAULT_CACHE_KEY = "default"


def build_arg_parser() -> argparse.ArgumentParser:
    """Create the CLI argument parser."""
    parser = argparse.ArgumentParser(prog="geozone", description="Delivery zone resolution")
    parser.add_argument("--settings", default=str(DEFAULT_SETTINGS), help="Path to settings TOML")
    parser.add_argument("--zones", help="Zone catalog CSV (overrides settings)")
    sub = parser.add_subparsers(dest="command", required=True)

    match = sub.add_parser("match", help="Match a coordinate against the zone catalog")
    match.add_argument("--lat", type=float, required=True)
    match.add_argument("--lon", type=float, required=True)
    match.add_argument("--accuracy", type=float, help="Reported accuracy radius in metres")

    locate = sub.add_parser("locate", help="Resolve the current device position")
    locate.add_argument("--cache-key", default=DEFAULT_CACHE_KEY)
    locate.add_argument("--gps-first", action="store_true", help="Try the GPS tier before the network tier")

    lookup = sub.add_parser("lookup", help="Resolve a typed address")
    lookup.add_argument("--address", required=True)
    lookup.add_argument("--cache-key", default=DEFAULT_CACHE_KEY)

    reset = sub.add_parser("reset", help="Forget the cached position for a key")
    reset.add_argument("--cache-key", default=DEFAULT_CACHE_KEY)

    sub.add_parser("validate-zones", help="Validate the zone catalog CSV")
    return parser


def _capability(settings: Settings):
    tracker = settings.tracker
    if tracker.base_url:
        return TrackerCapability(
            base_url=tracker.base_url,
            api_key=tracker.api_key,
            poll_interval_s=tracker.poll_interval_seconds,
        )
    if tracker.static_latitude is not None and tracker.static_longitude is not None:
        return StaticCapability(GeoPoint(tracker.static_latitude, tracker.static_longitude))
    return StaticCapability(None)


def _geocoder(settings: Settings) -> Optional[GoogleGeocoder]:
    if not settings.geocoder.api_key:
        return None
    return GoogleGeocoder(
        api_key=settings.geocoder.api_key,
        endpoint=settings.geocoder.endpoint,
        region=settings.geocoder.region,
        timeout=settings.geocoder.timeout_seconds,
    )


def build_orchestrator(
    settings: Settings,
    *,
    capability: Optional[LocationCapability] = None,
    geocoder: Optional[AddressResolver] = None,
    cache: Optional[PositionCache] = None,
    metrics: Optional[MetricsRegistry] = None,
) -> ResolutionOrchestrator:
    """Wire the engine components from settings; collaborators may be injected."""
    metrics = metrics or MetricsRegistry()
    cache = cache or PositionCache(ttl_seconds=settings.engine.ttl_seconds, path=settings.app.cache_path)
    capability = capability if capability is not None else _capability(settings)
    permissions = PermissionStateMachine(capability)
    acquirer = PositionAcquirer(capability, permissions, cache=cache, metrics=metrics)
    return ResolutionOrchestrator(
        acquirer=acquirer,
        cache=cache,
        resolver=geocoder if geocoder is not None else _geocoder(settings),
        matcher=ZoneMatcher(metrics=metrics),
        metrics=metrics,
        settings=settings.engine,
    )


def _zones_path(args: argparse.Namespace, settings: Settings) -> Path:
    return Path(args.zones) if getattr(args, "zones", None) else settings.app.zones_csv


def _load_zones(path: Path) -> List[ServiceZone]:
    try:
        return ZoneCatalog(path).list_active_zones()
    except (OSError, ValueError) as exc:
        raise SystemExit(f"Failed to load zones: {exc}")


def _report(result: MatchResult, zones: List[ServiceZone], matcher: ZoneMatcher) -> Dict[str, object]:
    payload = result.to_dict()
    if not result.matched and result.point is not None:
        nearest = matcher.nearest(result.point, zones)
        payload["nearest"] = (
            {"zone_id": nearest.zone.id, "display_name": nearest.zone.display_name,
             "distance_km": round(nearest.distance_km, 2), "radius_km": nearest.zone.radius_km}
            if nearest
            else None
        )
    return payload


def _emit(result: Result[MatchResult], zones: List[ServiceZone], matcher: ZoneMatcher) -> None:
    if not result.ok:
        failure: Failure = result.failure  # type: ignore[assignment]
        print(json.dumps({"error": failure.kind.value, "message": failure.message}, indent=2))
        raise SystemExit(2)
    print(json.dumps(_report(result.value, zones, matcher), indent=2))


def _export_metrics(orchestrator: ResolutionOrchestrator, settings: Settings) -> None:
    run_id = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
    orchestrator.metrics.export(path=settings.app.metrics_dir / f"run_{run_id}.json", run_id=run_id)


async def run_locate(
    args: argparse.Namespace,
    settings: Settings,
    orchestrator: ResolutionOrchestrator,
    zones: List[ServiceZone],
) -> Result[MatchResult]:
    options = AcquisitionOptions.from_settings(settings.engine)
    if getattr(args, "gps_first", False):
        options = replace(options, prefer_low_accuracy_first=False)
    return await orchestrator.resolve_current_location(zones, args.cache_key, options)


async def run_lookup(
    args: argparse.Namespace,
    settings: Settings,
    orchestrator: ResolutionOrchestrator,
    zones: List[ServiceZone],
) -> Result[MatchResult]:
    return await orchestrator.resolve_manual_address(args.address, zones, args.cache_key)


def main(argv: Optional[List[str]] = None) -> None:
    """Entry point for the CLI."""
    load_dotenv()
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    try:
        settings = load_settings(Path(args.settings))
    except ValueError as exc:
        raise SystemExit(str(exc))
    configure_logging(settings.app.logging_config)

    if args.command == "validate-zones":
        results = validate_zones(_zones_path(args, settings))
        report = []
        success = True
        for zone_id, ok, detail in results:
            status = "OK"
            if detail == "inactive":
                status = "INACTIVE"
            elif not ok:
                status = "FAIL"
                success = False
            report.append({"zone_id": zone_id, "status": status, "detail": detail if status != "OK" else ""})
        print(json.dumps(report, indent=2))
        if not success:
            raise SystemExit(1)
        return

    if args.command == "match":
        zones = _load_zones(_zones_path(args, settings))
        matcher = ZoneMatcher()
        point = GeoPoint(args.lat, args.lon, args.accuracy)
        if not point.is_valid():
            print(json.dumps({"error": "invalid_coordinate", "message": f"{args.lat},{args.lon}"}, indent=2))
            raise SystemExit(2)
        result = matcher.match(point, zones, source=Source.MANUAL).with_context(
            source=Source.MANUAL,
            precise_threshold_m=settings.engine.precise_accuracy_meters,
        )
        print(json.dumps(_report(result, zones, matcher), indent=2))
        return

    orchestrator = build_orchestrator(settings)

    if args.command == "reset":
        orchestrator.reset(args.cache_key)
        print(json.dumps({"cache_key": args.cache_key, "reset": True}, indent=2))
        return

    zones = _load_zones(_zones_path(args, settings))
    if uvloop is not None:
        uvloop.install()

    runner = run_locate if args.command == "locate" else run_lookup
    result = asyncio.run(runner(args, settings, orchestrator, zones))
    _export_metrics(orchestrator, settings)
    _emit(result, zones, ZoneMatcher())


if __name__ == "__main__":
    main()
