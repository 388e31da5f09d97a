"""Public facade sequencing cache, acquisition, geocoding and matching."""
from __future__ import annotations

import asyncio
import concurrent.futures
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

import structlog

from geozone.acquire.acquirer import AcquisitionOptions, PositionAcquirer
from geozone.cache.position_cache import PositionCache
from geozone.config import EngineSettings
from geozone.errors import ErrorKind, Result
from geozone.geo.models import GeoPoint, MatchResult, ServiceZone, Source
from geozone.geocode.base import AddressResolver
from geozone.match.matcher import ZoneMatcher
from geozone.observability.metrics import MetricsRegistry, record_duration
from geozone.observability.tracing import clear_context, set_context

LOGGER = structlog.get_logger(__name__)

# (cache key, operation, normalised query); device resolutions use an empty query.
FlightKey = Tuple[str, str, str]


class SessionState(str, Enum):
    IDLE = "idle"
    DETECTING = "detecting"
    SUCCESS = "success"
    ERROR = "error"


@dataclass
class _InFlight:
    task: "asyncio.Task[Result[MatchResult]]"
    waiters: int = 0


class ResolutionOrchestrator:
    """Resolves a user's position to a service zone.

    Identical requests share one resolution: concurrent device lookups for
    a cache key, or concurrent manual lookups of the same address for that
    key, wait on the running task and receive its result. A different
    request for a busy key waits until the running one settles and then runs
    on its own, so at most one resolution per key is detecting. Shared work is
    cancelled only when every waiter has gone away (or on `reset`). The
    cache is written last, after every await, so a cancelled resolution
    never leaves an entry behind.
    """

    def __init__(
        self,
        *,
        acquirer: PositionAcquirer,
        cache: PositionCache,
        resolver: Optional[AddressResolver] = None,
        matcher: Optional[ZoneMatcher] = None,
        metrics: Optional[MetricsRegistry] = None,
        settings: Optional[EngineSettings] = None,
    ) -> None:
        self._acquirer = acquirer
        self._cache = cache
        self._resolver = resolver
        self._metrics = metrics or MetricsRegistry()
        self._matcher = matcher or ZoneMatcher(metrics=self._metrics)
        self._settings = settings or EngineSettings()
        self._inflight: Dict[FlightKey, _InFlight] = {}
        self._states: Dict[str, SessionState] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def metrics(self) -> MetricsRegistry:
        return self._metrics

    def _flights(self, cache_key: str) -> List[FlightKey]:
        return [key for key in self._inflight if key[0] == cache_key]

    def state(self, cache_key: str) -> SessionState:
        """Current session state for `cache_key` (last outcome when idle)."""
        if any(not self._inflight[key].task.done() for key in self._flights(cache_key)):
            return SessionState.DETECTING
        return self._states.get(cache_key, SessionState.IDLE)

    async def resolve_current_location(
        self,
        zones: Iterable[ServiceZone],
        cache_key: str,
        options: Optional[AcquisitionOptions] = None,
        *,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Result[MatchResult]:
        """Match the cached fix, or a freshly acquired device fix."""
        snapshot = list(zones)
        options = options or AcquisitionOptions.from_settings(self._settings)
        return await self._run_exclusive(
            (cache_key, "device", ""),
            lambda: self._resolve_device(snapshot, cache_key, options),
            cancel_event,
        )

    async def resolve_manual_address(
        self,
        query: str,
        zones: Iterable[ServiceZone],
        cache_key: str,
        *,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Result[MatchResult]:
        """Geocode free text and match the resulting coordinate."""
        snapshot = list(zones)
        return await self._run_exclusive(
            (cache_key, "manual", " ".join((query or "").split())),
            lambda: self._resolve_manual(query, snapshot, cache_key),
            cancel_event,
        )

    def reset(self, cache_key: str) -> None:
        """Forget the cached fix and abandon every resolution in flight for the key."""
        self._cache.invalidate(cache_key)
        for key in self._flights(cache_key):
            inflight = self._inflight.pop(key)
            if not inflight.task.done():
                inflight.task.cancel()
        self._states[cache_key] = SessionState.IDLE
        LOGGER.info("resolution_reset", cache_key=cache_key)

    def submit(self, coro: Awaitable[Result[MatchResult]]) -> "concurrent.futures.Future[Result[MatchResult]]":
        """Schedule a resolution from another thread onto the engine's loop."""
        if self._loop is None or self._loop.is_closed():
            raise RuntimeError("orchestrator is not attached to a running event loop")
        return asyncio.run_coroutine_threadsafe(coro, self._loop)  # type: ignore[arg-type]

    def attach(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    async def _run_exclusive(
        self,
        key: FlightKey,
        factory: Callable[[], Awaitable[Result[MatchResult]]],
        cancel_event: Optional[asyncio.Event],
    ) -> Result[MatchResult]:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        cache_key, operation, _ = key
        while True:
            inflight = self._inflight.get(key)
            if inflight is not None and not inflight.task.done():
                self._metrics.incr("joined_requests")
                LOGGER.info("resolution_joined", cache_key=cache_key, operation=operation)
                break
            busy = [f.task for k, f in self._inflight.items() if k[0] == cache_key and not f.task.done()]
            if not busy:
                inflight = _InFlight(task=asyncio.create_task(self._tracked(key, factory)))
                self._inflight[key] = inflight
                break
            # A different request owns the key; run ours once it settles.
            LOGGER.info("resolution_queued", cache_key=cache_key, operation=operation)
            await self._wait_settled(busy, cancel_event)

        inflight.waiters += 1
        try:
            return await self._await_shared(inflight.task, cancel_event)
        except asyncio.CancelledError:
            if inflight.waiters == 1 and not inflight.task.done():
                inflight.task.cancel()
            raise
        finally:
            inflight.waiters -= 1

    @staticmethod
    async def _wait_settled(tasks: List[asyncio.Task], cancel_event: Optional[asyncio.Event]) -> None:
        guard = asyncio.create_task(cancel_event.wait()) if cancel_event is not None else None
        try:
            watched = set(tasks) if guard is None else {*tasks, guard}
            await asyncio.wait(watched, return_when=asyncio.FIRST_COMPLETED)
            if guard is not None and guard.done():
                raise asyncio.CancelledError()
        finally:
            if guard is not None:
                guard.cancel()

    @staticmethod
    async def _await_shared(task: asyncio.Task, cancel_event: Optional[asyncio.Event]) -> Result[MatchResult]:
        shared = asyncio.shield(task)
        if cancel_event is None:
            return await shared
        guard = asyncio.create_task(cancel_event.wait())
        try:
            done, _ = await asyncio.wait({shared, guard}, return_when=asyncio.FIRST_COMPLETED)
            if shared in done:
                return shared.result()
            raise asyncio.CancelledError()
        finally:
            guard.cancel()
            if not shared.done():
                shared.cancel()

    async def _tracked(self, key: FlightKey, factory: Callable[[], Awaitable[Result[MatchResult]]]) -> Result[MatchResult]:
        cache_key, operation, _ = key
        self._states[cache_key] = SessionState.DETECTING
        set_context(cache_key=cache_key, operation=operation)
        self._metrics.incr("resolutions")
        try:
            with record_duration(self._metrics, f"resolve_{operation}"):
                result = await factory()
        except asyncio.CancelledError:
            self._states[cache_key] = SessionState.IDLE
            LOGGER.info("resolution_cancelled")
            raise
        except Exception:
            self._states[cache_key] = SessionState.ERROR
            raise
        else:
            self._states[cache_key] = SessionState.SUCCESS if result.ok else SessionState.ERROR
            return result
        finally:
            clear_context()
            current = self._inflight.get(key)
            if current is not None and current.task is asyncio.current_task():
                del self._inflight[key]

    async def _resolve_device(
        self,
        zones: List[ServiceZone],
        cache_key: str,
        options: AcquisitionOptions,
    ) -> Result[MatchResult]:
        entry = self._cache.get(cache_key)
        if entry is not None:
            self._metrics.incr("cache_hits")
            LOGGER.info("cache_hit", captured_at=entry.captured_at, expires_at=entry.ttl_expires_at)
            point, source = entry.point, Source.CACHE
        else:
            self._metrics.incr("cache_misses")
            acquired = await self._acquirer.acquire(options)
            if not acquired.ok:
                return Result.from_failure(acquired.failure)  # type: ignore[arg-type]
            point, source = acquired.value, Source.DEVICE
        display_address = await self._display_address(point)
        if source is Source.DEVICE:
            self._cache.put(cache_key, point, source=Source.DEVICE.value)
        return Result.success(self._match(point, zones, source, display_address))

    async def _resolve_manual(self, query: str, zones: List[ServiceZone], cache_key: str) -> Result[MatchResult]:
        if self._resolver is None:
            return Result.fail(ErrorKind.GEOCODE_FAILURE, "no geocoder configured")
        geocoded = await self._resolver.geocode(query)
        if not geocoded.ok:
            self._metrics.incr("geocode_failures")
            return Result.from_failure(geocoded.failure)  # type: ignore[arg-type]
        address = geocoded.value
        self._cache.put(cache_key, address.point, source=Source.MANUAL.value)
        return Result.success(self._match(address.point, zones, Source.MANUAL, address.formatted_address or None))

    async def _display_address(self, point: GeoPoint) -> Optional[str]:
        if self._resolver is None:
            return None
        reversed_ = await self._resolver.reverse_geocode(point)
        if not reversed_.ok:
            self._metrics.incr("reverse_geocode_failures")
            LOGGER.info("reverse_geocode_failed", reason=reversed_.failure.message)
            return None
        return reversed_.value

    def _match(
        self,
        point: GeoPoint,
        zones: List[ServiceZone],
        source: Source,
        display_address: Optional[str],
    ) -> MatchResult:
        result = self._matcher.match(point, zones, source=source)
        return result.with_context(
            source=source,
            display_address=display_address,
            precise_threshold_m=self._settings.precise_accuracy_meters,
        )
