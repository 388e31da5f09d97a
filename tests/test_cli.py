import json
from pathlib import Path

import pytest

import geozone.main as cli
from fakes import FakeGeocoder
from geozone.cache.position_cache import PositionCache
from geozone.geo.models import GeoPoint, ResolvedAddress

ROOT = Path(__file__).resolve().parents[1]


def _settings(tmp_path: Path, *, static: bool = True) -> Path:
    lines = []
    if static:
        lines += ["[tracker]", "static_latitude = 11.0168", "static_longitude = 76.9558", ""]
    lines += [
        "[app]",
        f'zones_csv = "{(ROOT / "config" / "zones.csv").as_posix()}"',
        f'cache_path = "{(tmp_path / "cache.json").as_posix()}"',
        f'metrics_dir = "{(tmp_path / "metrics").as_posix()}"',
        f'logging_config = "{(ROOT / "config" / "logging.yaml").as_posix()}"',
    ]
    path = tmp_path / "settings.toml"
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in ("GEOZONE_GEOCODER_API_KEY", "GEOZONE_TRACKER_BASE_URL"):
        monkeypatch.delenv(name, raising=False)


def test_match_inside_zone(tmp_path, capsys):
    cli.main(["--settings", str(_settings(tmp_path)), "match", "--lat", "11.0170", "--lon", "76.9560", "--accuracy", "20"])
    payload = json.loads(capsys.readouterr().out)
    assert payload["matched"] is True
    assert payload["zone"]["id"] == "cbe-rs-puram"
    assert payload["source"] == "manual"
    assert payload["precise"] is True
    assert "nearest" not in payload


def test_match_outside_every_zone_reports_nearest(tmp_path, capsys):
    cli.main(["--settings", str(_settings(tmp_path)), "match", "--lat", "13.0827", "--lon", "80.2707"])
    payload = json.loads(capsys.readouterr().out)
    assert payload["matched"] is False
    assert payload["candidates"] == []
    assert payload["nearest"]["distance_km"] > payload["nearest"]["radius_km"]


def test_match_rejects_invalid_coordinate(tmp_path, capsys):
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["--settings", str(_settings(tmp_path)), "match", "--lat", "95", "--lon", "76.9"])
    assert excinfo.value.code == 2
    assert json.loads(capsys.readouterr().out)["error"] == "invalid_coordinate"


def test_validate_zones_flags_bad_rows(tmp_path, capsys):
    zones = tmp_path / "zones.csv"
    zones.write_text(
        "zone_id,display_name,latitude,longitude,radius_km,is_active\n"
        "cbe-rs-puram,RS Puram,11.0168,76.9558,5,true\n"
        "ghost,Ghost,,76.9,2,true\n"
        "old,Old,11.0,76.9,2,false\n",
        encoding="utf-8",
    )
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["--settings", str(_settings(tmp_path)), "--zones", str(zones), "validate-zones"])
    assert excinfo.value.code == 1
    statuses = {row["zone_id"]: row["status"] for row in json.loads(capsys.readouterr().out)}
    assert statuses == {"cbe-rs-puram": "OK", "ghost": "FAIL", "old": "INACTIVE"}


def test_validate_shipped_zones(tmp_path, capsys):
    cli.main(["--settings", str(_settings(tmp_path)), "validate-zones"])
    rows = json.loads(capsys.readouterr().out)
    assert {row["status"] for row in rows} == {"OK", "INACTIVE"}


def test_locate_uses_static_position_then_cache(tmp_path, capsys):
    settings = _settings(tmp_path)
    cli.main(["--settings", str(settings), "locate", "--cache-key", "kiosk"])
    first = json.loads(capsys.readouterr().out)
    assert first["source"] == "device"
    assert first["zone"]["id"] == "cbe-rs-puram"
    assert list((tmp_path / "metrics").glob("run_*.json"))

    cli.main(["--settings", str(settings), "locate", "--cache-key", "kiosk"])
    second = json.loads(capsys.readouterr().out)
    assert second["source"] == "cache"

    cli.main(["--settings", str(settings), "reset", "--cache-key", "kiosk"])
    assert json.loads(capsys.readouterr().out) == {"cache_key": "kiosk", "reset": True}
    assert PositionCache(path=tmp_path / "cache.json").get("kiosk") is None


def test_locate_without_capability_is_unsupported(tmp_path, capsys):
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["--settings", str(_settings(tmp_path, static=False)), "locate"])
    assert excinfo.value.code == 2
    assert json.loads(capsys.readouterr().out)["error"] == "unsupported"


def test_lookup_geocodes_address(tmp_path, capsys, monkeypatch):
    address = ResolvedAddress(
        formatted_address="Peelamedu, Coimbatore, Tamil Nadu 641004, India",
        point=GeoPoint(11.0510, 77.0010),
        area="Peelamedu",
        city="Coimbatore",
    )
    monkeypatch.setattr(cli, "_geocoder", lambda settings: FakeGeocoder({"Peelamedu": address}))
    cli.main(["--settings", str(_settings(tmp_path)), "lookup", "--address", "Peelamedu"])
    payload = json.loads(capsys.readouterr().out)
    assert payload["source"] == "manual"
    assert payload["zone"]["id"] == "cbe-peelamedu"
    assert payload["display_address"] == address.formatted_address


def test_lookup_failure_exits_with_kind(tmp_path, capsys, monkeypatch):
    monkeypatch.setattr(cli, "_geocoder", lambda settings: FakeGeocoder())
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["--settings", str(_settings(tmp_path)), "lookup", "--address", "Atlantis"])
    assert excinfo.value.code == 2
    assert json.loads(capsys.readouterr().out)["error"] == "geocode_failure"
