"""Device position acquisition with tiered accuracy fallback."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

import structlog

from geozone.cache.position_cache import PositionCache
from geozone.capability.base import AccuracyTier, LocationCapability
from geozone.errors import CapabilityError, ErrorKind, Failure, Result
from geozone.geo.models import GeoPoint, Source
from geozone.observability.metrics import MetricsRegistry
from geozone.observability.tracing import span
from geozone.permission.state import PermissionState, PermissionStateMachine

LOGGER = structlog.get_logger(__name__)

_BLOCKING_STATES = {
    PermissionState.DENIED: ErrorKind.PERMISSION_DENIED,
    PermissionState.UNSUPPORTED: ErrorKind.UNSUPPORTED,
}
_FATAL_KINDS = (ErrorKind.PERMISSION_DENIED, ErrorKind.UNSUPPORTED)


@dataclass(frozen=True)
class AcquisitionOptions:
    """Timeouts and ordering for one `acquire` call."""

    prefer_low_accuracy_first: bool = True
    low_accuracy_timeout_ms: int = 20000
    high_accuracy_timeout_ms: int = 30000
    max_staleness_ms: int = 120000

    @classmethod
    def from_settings(cls, settings) -> "AcquisitionOptions":
        return cls(
            prefer_low_accuracy_first=settings.prefer_low_accuracy_first,
            low_accuracy_timeout_ms=settings.low_accuracy_timeout_ms,
            high_accuracy_timeout_ms=settings.high_accuracy_timeout_ms,
            max_staleness_ms=settings.max_staleness_ms,
        )

    def tiers(self) -> List[Tuple[AccuracyTier, float, float]]:
        """(tier, timeout seconds, max fix age seconds) in attempt order."""
        low = (AccuracyTier.LOW, self.low_accuracy_timeout_ms / 1000, self.max_staleness_ms / 1000)
        # GPS fixes are only worth having when they are fresher.
        high = (AccuracyTier.HIGH, self.high_accuracy_timeout_ms / 1000, max(0, self.max_staleness_ms // 2) / 1000)
        return [low, high] if self.prefer_low_accuracy_first else [high, low]


def _failure_from(exc: BaseException) -> Failure:
    if isinstance(exc, CapabilityError):
        return Failure(exc.kind, str(exc))
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return Failure(ErrorKind.TIMEOUT, "position request timed out")
    raise exc


def _timed_out(tier: AccuracyTier, timeout_s: float) -> Failure:
    return Failure(ErrorKind.TIMEOUT, f"{tier.value} tier timed out after {timeout_s:g}s")


def _most_specific(failures: List[Failure]) -> Failure:
    worst: Optional[Failure] = None
    for failure in failures:
        if failure.more_specific_than(worst):
            worst = failure
    assert worst is not None
    return worst


class PositionAcquirer:
    """Obtains one device coordinate per call.

    Each tier races a single-shot request against a continuous watch and
    keeps whichever produces a fix first; the loser is cancelled and its
    late result discarded. The second tier only starts after the first has
    definitively failed or timed out, and nothing is retried beyond that.
    """

    def __init__(
        self,
        capability: LocationCapability,
        permissions: PermissionStateMachine,
        *,
        cache: Optional[PositionCache] = None,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self._capability = capability
        self._permissions = permissions
        self._cache = cache
        self._metrics = metrics

    def _incr(self, name: str) -> None:
        if self._metrics is not None:
            self._metrics.incr(name)

    async def acquire(
        self,
        options: Optional[AcquisitionOptions] = None,
        *,
        cache_key: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Result[GeoPoint]:
        """Return a fix, or the most specific failure across both tiers.

        Raises `asyncio.CancelledError` when cancelled; the cache is not
        touched in that case.
        """
        options = options or AcquisitionOptions()
        state = await self._permissions.refresh()
        if state is PermissionState.PROMPT:
            # A still-unanswered prompt falls through; the device request may ask again.
            state = await self._permissions.request_prompt()
        if state in _BLOCKING_STATES:
            LOGGER.info("acquisition_blocked", permission=state.value)
            self._incr("acquisition_failures")
            return Result.fail(_BLOCKING_STATES[state], f"location permission is {state.value}")

        loop = asyncio.get_running_loop()
        revoked = asyncio.Event()
        revoked_kind: List[ErrorKind] = []

        def _on_change(_old: PermissionState, new: PermissionState) -> None:
            if new in _BLOCKING_STATES:
                revoked_kind.append(_BLOCKING_STATES[new])
                loop.call_soon_threadsafe(revoked.set)

        unsubscribe = self._permissions.on_change(_on_change)
        try:
            outcome = await self._run_tiers(options, cancel_event, revoked, revoked_kind)
        finally:
            unsubscribe()

        if isinstance(outcome, Failure):
            self._incr("acquisition_failures")
            LOGGER.info("acquisition_failed", kind=outcome.kind.value, reason=outcome.message)
            return Result.from_failure(outcome)

        self._incr("device_acquisitions")
        if self._cache is not None and cache_key is not None:
            self._cache.put(cache_key, outcome, source=Source.DEVICE.value)
        return Result.success(outcome)

    async def _run_tiers(
        self,
        options: AcquisitionOptions,
        cancel_event: Optional[asyncio.Event],
        revoked: asyncio.Event,
        revoked_kind: List[ErrorKind],
    ) -> Union[GeoPoint, Failure]:
        worst: Optional[Failure] = None
        for index, (tier, timeout_s, max_age_s) in enumerate(options.tiers()):
            if index:
                self._incr("tier_fallbacks")
                LOGGER.info("tier_fallback", tier=tier.value, previous=worst.kind.value if worst else None)
            LOGGER.debug("tier_attempt", tier=tier.value, timeout_s=timeout_s, max_age_s=max_age_s)
            with span(name=f"acquire_{tier.value}"):
                outcome = await self._race(tier, timeout_s, max_age_s, cancel_event, revoked, revoked_kind)
            if isinstance(outcome, GeoPoint):
                LOGGER.info("position_acquired", tier=tier.value, accuracy_m=outcome.accuracy_meters)
                return outcome
            LOGGER.info("tier_failed", tier=tier.value, kind=outcome.kind.value, reason=outcome.message)
            if outcome.kind in _FATAL_KINDS:
                return outcome
            if outcome.more_specific_than(worst):
                worst = outcome
        return worst or Failure(ErrorKind.POSITION_UNAVAILABLE, "no accuracy tier configured")

    async def _single_shot(self, tier: AccuracyTier, timeout_s: float, max_age_s: float) -> GeoPoint:
        return await self._capability.request_single_shot(tier, timeout_s=timeout_s, max_age_s=max_age_s)

    async def _first_watched(self, tier: AccuracyTier, timeout_s: float, max_age_s: float) -> GeoPoint:
        watcher = self._capability.watch_position(tier, timeout_s=timeout_s, max_age_s=max_age_s)
        try:
            async for point in watcher:
                return point
        finally:
            aclose = getattr(watcher, "aclose", None)
            if aclose is not None:
                await aclose()
        raise CapabilityError(ErrorKind.POSITION_UNAVAILABLE, "watch ended without a fix")

    async def _race(
        self,
        tier: AccuracyTier,
        timeout_s: float,
        max_age_s: float,
        cancel_event: Optional[asyncio.Event],
        revoked: asyncio.Event,
        revoked_kind: List[ErrorKind],
    ) -> Union[GeoPoint, Failure]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_s
        contenders = [
            asyncio.create_task(self._single_shot(tier, timeout_s, max_age_s)),
            asyncio.create_task(self._first_watched(tier, timeout_s, max_age_s)),
        ]
        revoke_guard = asyncio.create_task(revoked.wait())
        cancel_guard = asyncio.create_task(cancel_event.wait()) if cancel_event is not None else None
        guards = [g for g in (revoke_guard, cancel_guard) if g is not None]
        pending = set(contenders)
        failures: List[Failure] = []
        try:
            while pending:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return _most_specific(failures + [_timed_out(tier, timeout_s)])
                done, _ = await asyncio.wait(
                    pending | set(guards), timeout=remaining, return_when=asyncio.FIRST_COMPLETED
                )
                if not done:
                    return _most_specific(failures + [_timed_out(tier, timeout_s)])
                if cancel_guard is not None and cancel_guard in done:
                    raise asyncio.CancelledError()
                if revoke_guard in done:
                    kind = revoked_kind[-1] if revoked_kind else ErrorKind.PERMISSION_DENIED
                    return Failure(kind, "location permission revoked during acquisition")
                # Single-shot wins a same-tick finish so the outcome is deterministic.
                for task in contenders:
                    if task not in done or task not in pending:
                        continue
                    pending.discard(task)
                    exc = task.exception()
                    if exc is None:
                        return task.result()
                    failure = _failure_from(exc)
                    if failure.kind in _FATAL_KINDS:
                        return failure
                    failures.append(failure)
            return _most_specific(failures)
        finally:
            leftovers = [t for t in contenders + guards if not t.done()]
            for task in leftovers:
                task.cancel()
            if leftovers:
                await asyncio.gather(*leftovers, return_exceptions=True)
