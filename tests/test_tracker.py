import asyncio

import httpx
import pytest

from geozone.capability.base import AccuracyTier
from geozone.capability.static import StaticCapability
from geozone.capability.tracker import TrackerCapability
from geozone.errors import CapabilityError, ErrorKind
from geozone.geo.models import GeoPoint
from geozone.permission.state import PermissionState

BASE = "https://tracker.example.test"
POINTS = [
    {"latitude": "11.0168", "longitude": "76.9558", "accuracy": 850},
    {"latitude": "11.0170", "longitude": "76.9560", "accuracy": 15},
]


def _tracker(handler, api_key="secret"):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return TrackerCapability(base_url=BASE, api_key=api_key, client=client, poll_interval_s=0.01)


def _serve(payload, status=200):
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(status, json=payload)

    return handler, requests


def test_permission_states():
    handler, _ = _serve(POINTS)
    assert asyncio.run(_tracker(handler).query_permission_state()) is PermissionState.GRANTED
    assert asyncio.run(_tracker(handler, api_key="").query_permission_state()) is PermissionState.PROMPT
    assert asyncio.run(TrackerCapability(base_url=None).query_permission_state()) is PermissionState.UNSUPPORTED

    denied, _ = _serve({"error": "unauthorized"}, status=401)
    assert asyncio.run(_tracker(denied).query_permission_state()) is PermissionState.DENIED


def test_single_shot_returns_latest_fix_with_bearer_token():
    handler, requests = _serve(POINTS)
    point = asyncio.run(_tracker(handler).request_single_shot(AccuracyTier.LOW, timeout_s=1, max_age_s=120))
    assert point == GeoPoint(11.0168, 76.9558, 850.0)
    assert requests[0].headers["Authorization"] == "Bearer secret"
    assert requests[0].url.path == "/api/v1/points"
    assert requests[0].url.params["order"] == "desc"


def test_gps_tier_skips_coarse_fixes():
    handler, _ = _serve(POINTS)
    point = asyncio.run(_tracker(handler).request_single_shot(AccuracyTier.HIGH, timeout_s=1, max_age_s=60))
    assert point.accuracy_meters == 15.0


def test_no_recent_fix_is_position_unavailable():
    handler, _ = _serve([])
    with pytest.raises(CapabilityError) as excinfo:
        asyncio.run(_tracker(handler).request_single_shot(AccuracyTier.LOW, timeout_s=1, max_age_s=120))
    assert excinfo.value.kind is ErrorKind.POSITION_UNAVAILABLE


def test_revoked_key_is_permission_denied():
    handler, _ = _serve({"error": "forbidden"}, status=403)
    with pytest.raises(CapabilityError) as excinfo:
        asyncio.run(_tracker(handler).request_single_shot(AccuracyTier.LOW, timeout_s=1, max_age_s=120))
    assert excinfo.value.kind is ErrorKind.PERMISSION_DENIED


def test_transport_timeout_maps_to_timeout():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("too slow", request=request)

    with pytest.raises(CapabilityError) as excinfo:
        asyncio.run(_tracker(handler).request_single_shot(AccuracyTier.LOW, timeout_s=1, max_age_s=120))
    assert excinfo.value.kind is ErrorKind.TIMEOUT


def test_watch_polls_until_a_fix_arrives():
    responses = [[], [], POINTS]

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=responses.pop(0) if responses else POINTS)

    async def _first():
        async for point in _tracker(handler).watch_position(AccuracyTier.LOW, timeout_s=2, max_age_s=120):
            return point

    assert asyncio.run(_first()) == GeoPoint(11.0168, 76.9558, 850.0)
    assert responses == []


def test_watch_times_out_without_fix():
    handler, _ = _serve([])

    async def _first():
        async for point in _tracker(handler).watch_position(AccuracyTier.LOW, timeout_s=0.05, max_age_s=120):
            return point

    with pytest.raises(CapabilityError) as excinfo:
        asyncio.run(_first())
    assert excinfo.value.kind is ErrorKind.TIMEOUT


def test_static_capability():
    fixed = StaticCapability(GeoPoint(11.0168, 76.9558, 25.0))
    assert asyncio.run(fixed.query_permission_state()) is PermissionState.GRANTED
    assert asyncio.run(fixed.request_single_shot(AccuracyTier.HIGH, timeout_s=1, max_age_s=1)).accuracy_meters == 25.0
    assert asyncio.run(StaticCapability(None).query_permission_state()) is PermissionState.UNSUPPORTED
