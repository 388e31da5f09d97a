from pathlib import Path

import pytest

from geozone.zones.catalog import ZoneCatalog, load_zones, validate_zones

HEADER = "zone_id,display_name,latitude,longitude,radius_km,is_active\n"


def _write(tmp_path: Path, body: str) -> Path:
    path = tmp_path / "zones.csv"
    path.write_text(HEADER + body, encoding="utf-8")
    return path


def test_active_zones_only(tmp_path):
    path = _write(
        tmp_path,
        "cbe-rs-puram,RS Puram,11.0168,76.9558,5,true\n"
        "cbe-saravanampatti,Saravanampatti,11.0780,77.0020,4,false\n"
        "cbe-peelamedu,,11.05,77.0,3,\n",
    )
    zones = ZoneCatalog(path).list_active_zones()
    assert [zone.id for zone in zones] == ["cbe-rs-puram", "cbe-peelamedu"]
    assert zones[0].center.latitude == pytest.approx(11.0168)
    assert zones[1].display_name == "cbe-peelamedu"


def test_blank_center_is_kept_for_the_matcher_to_exclude(tmp_path):
    path = _write(tmp_path, "ghost,Ghost,,76.9,2,true\n")
    (zone,) = load_zones(path)
    assert zone.center is None
    assert not zone.has_valid_center()


def test_non_positive_radius_is_rejected(tmp_path):
    path = _write(tmp_path, "flat,Flat,11.0,76.9,0,true\n")
    with pytest.raises(ValueError, match="Invalid zone row flat"):
        load_zones(path)


def test_rows_without_id_are_skipped(tmp_path):
    path = _write(tmp_path, ",Nameless,11.0,76.9,2,true\ncbe-rs-puram,RS Puram,11.0168,76.9558,5,true\n")
    assert [zone.id for zone in load_zones(path)] == ["cbe-rs-puram"]


def test_validate_reports_each_row(tmp_path):
    path = _write(
        tmp_path,
        "cbe-rs-puram,RS Puram,11.0168,76.9558,5,true\n"
        "off-map,Off Map,123.0,76.9,5,true\n"
        "flat,Flat,11.0,76.9,-1,true\n"
        "old,Old,11.0,76.9,2,no\n",
    )
    results = {zone_id: (ok, detail) for zone_id, ok, detail in validate_zones(path)}
    assert results["cbe-rs-puram"] == (True, "ok")
    assert results["off-map"] == (False, "missing or out-of-range center coordinate")
    assert results["flat"][0] is False
    assert results["old"] == (True, "inactive")


def test_shipped_catalog_is_valid():
    path = Path(__file__).resolve().parents[1] / "config" / "zones.csv"
    assert all(ok for _, ok, _ in validate_zones(path))
