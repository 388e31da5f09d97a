"""In-process counters and timings for the resolution pipeline."""
from __future__ import annotations

import contextlib
import json
import threading
import time
from collections import defaultdict
from pathlib import Path
from typing import Dict, Iterator, Optional

import structlog

LOGGER = structlog.get_logger(__name__)

_DEFAULT_COUNTERS = (
    "resolutions",
    "cache_hits",
    "cache_misses",
    "device_acquisitions",
    "tier_fallbacks",
    "acquisition_failures",
    "geocode_failures",
    "reverse_geocode_failures",
    "zones_excluded",
    "matches",
    "no_matches",
    "joined_requests",
)


def _ratio(numerator: int, denominator: int) -> Optional[float]:
    return round(numerator / denominator, 4) if denominator else None


class MetricsRegistry:
    """Counters plus per-stage duration statistics for one process."""

    def __init__(self) -> None:
        self._counters: Dict[str, int] = defaultdict(int)
        self._durations: Dict[str, Dict[str, int]] = {}
        self._lock = threading.Lock()
        for key in _DEFAULT_COUNTERS:
            self._counters[key] = 0

    def incr(self, name: str, value: int = 1) -> None:
        with self._lock:
            self._counters[name] += value

    def get(self, name: str) -> int:
        with self._lock:
            return self._counters.get(name, 0)

    def observe_duration(self, name: str, elapsed_ms: int) -> None:
        """Fold one timing into the count/total/max statistics for `name`."""
        with self._lock:
            stats = self._durations.setdefault(name, {"count": 0, "total_ms": 0, "max_ms": 0})
            stats["count"] += 1
            stats["total_ms"] += elapsed_ms
            stats["max_ms"] = max(stats["max_ms"], elapsed_ms)

    def durations(self) -> Dict[str, Dict[str, int]]:
        with self._lock:
            return {name: dict(stats) for name, stats in self._durations.items()}

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._counters)

    def summary(self) -> Dict[str, Optional[float]]:
        """Rates a dashboard cares about; None where nothing was observed yet."""
        counters = self.snapshot()
        return {
            "cache_hit_rate": _ratio(counters["cache_hits"], counters["cache_hits"] + counters["cache_misses"]),
            "match_rate": _ratio(counters["matches"], counters["matches"] + counters["no_matches"]),
            "acquisition_success_rate": _ratio(
                counters["device_acquisitions"],
                counters["device_acquisitions"] + counters["acquisition_failures"],
            ),
        }

    def export(self, *, path: Path, run_id: str) -> Path:
        """Write counters, timings and rates to a JSON report at `path`."""
        path.parent.mkdir(parents=True, exist_ok=True)
        durations = self.durations()
        payload = {
            "run_id": run_id,
            "counters": self.snapshot(),
            "durations": {
                name: {**stats, "mean_ms": _ratio(stats["total_ms"], stats["count"])}
                for name, stats in durations.items()
            },
            "summary": self.summary(),
            "generated_at": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        }
        path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        LOGGER.info("metrics_exported", path=str(path), resolutions=payload["counters"]["resolutions"])
        return path


@contextlib.contextmanager
def record_duration(registry: MetricsRegistry, stage: str) -> Iterator[None]:
    """Time a resolution stage, including stages that end in cancellation."""
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        registry.observe_duration(stage, elapsed_ms)
        LOGGER.debug("stage_timed", stage=stage, duration_ms=elapsed_ms)
