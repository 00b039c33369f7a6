"""
Host quality statistics for the resolution engine.

This module keeps decaying success/failure/latency counters per host and turns
them into a UCB-style score used to rank candidates. Counters decay toward
zero with a configurable half-life whenever a record is touched, so stale
hosts lose influence without a periodic sweep. It also holds the resolver's
activity counters and the periodic reporter that logs them.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Iterable, Optional, Tuple, Union

from .address import HostAddress, to_host_base

logger = logging.getLogger(__name__)

STATS_SCHEMA_VERSION = 2

HostKey = Union[HostAddress, str]


def _host_key(host: HostKey) -> str:
    if isinstance(host, HostAddress):
        return to_host_base(host)
    return str(host).strip().lower()


@dataclass
class HostStat:
    """Decayed counters for one host.

    Inputs:
      - successes / failures: exponentially decayed counts.
      - last_success_at: epoch seconds of the last success (0.0 = never).
      - avg_latency_ms: moving-average latency (0.0 = no sample yet).
      - last_updated_at: epoch seconds of the last decay/update.
    """

    successes: float = 0.0
    failures: float = 0.0
    last_success_at: float = 0.0
    avg_latency_ms: float = 0.0
    last_updated_at: float = 0.0

    @property
    def tries(self) -> float:
        return self.successes + self.failures


class HostStatsStore:
    """Per-host decaying statistics with UCB scoring.

    Inputs (constructor):
        half_life_minutes: Decay half-life for success/failure counters.
        latency_weight: Weight of a new latency sample in the moving average.
        exploration: Multiplier of the exploration bonus.
        latency_base_ms: Base of the latency discount base/(base+avg).
        recent_window_minutes: Window over which the recency boost decays.
        recency_boost: Boost for a success that happened just now.
        clock: Callable returning epoch seconds (injectable for tests).
        on_change: Optional callback invoked after every mutation.

    Outputs:
        HostStatsStore instance.

    Example:
        >>> store = HostStatsStore(clock=lambda: 1000.0)
        >>> _ = store.record("n05.exampleroot.org", True, 120.0)
        >>> store.get("n05.exampleroot.org").successes
        1.0
    """

    def __init__(
        self,
        *,
        half_life_minutes: float = 60.0,
        latency_weight: float = 0.3,
        exploration: float = 0.5,
        latency_base_ms: float = 800.0,
        recent_window_minutes: float = 30.0,
        recency_boost: float = 0.25,
        clock: Callable[[], float] = time.time,
        on_change: Optional[Callable[[], None]] = None,
    ) -> None:
        self.half_life_seconds = max(1e-6, float(half_life_minutes) * 60.0)
        self.latency_weight = float(latency_weight)
        self.exploration = float(exploration)
        self.latency_base_ms = float(latency_base_ms)
        self.recent_window_seconds = max(1e-6, float(recent_window_minutes) * 60.0)
        self.recency_boost = float(recency_boost)
        self._clock = clock
        self.on_change = on_change
        self._stats: Dict[str, HostStat] = {}

    def __len__(self) -> int:
        return len(self._stats)

    def __contains__(self, host: object) -> bool:
        if not isinstance(host, (HostAddress, str)):
            return False
        return _host_key(host) in self._stats

    def _decay_factor(self, elapsed: float) -> float:
        if elapsed <= 0:
            return 1.0
        return 0.5 ** (elapsed / self.half_life_seconds)

    def _decayed_copy(self, stat: HostStat, now: float) -> HostStat:
        factor = self._decay_factor(now - stat.last_updated_at)
        return HostStat(
            successes=stat.successes * factor,
            failures=stat.failures * factor,
            last_success_at=stat.last_success_at,
            avg_latency_ms=stat.avg_latency_ms,
            last_updated_at=now,
        )

    def _changed(self) -> None:
        if self.on_change is not None:
            self.on_change()

    def record(
        self, host: HostKey, success: bool, latency_ms: Optional[float] = None
    ) -> HostStat:
        """Record one probe outcome for host.

        Inputs:
            host: HostAddress or host base string.
            success: True when the probe loaded real content.
            latency_ms: Observed latency; None leaves the average untouched.

        Outputs:
            The updated HostStat.
        """
        key = _host_key(host)
        now = self._clock()
        current = self._stats.get(key)
        stat = self._decayed_copy(current, now) if current else HostStat(last_updated_at=now)

        if success:
            stat.successes += 1.0
            stat.last_success_at = now
        else:
            stat.failures += 1.0

        if latency_ms is not None and latency_ms >= 0:
            if stat.avg_latency_ms <= 0:
                stat.avg_latency_ms = float(latency_ms)
            else:
                w = self.latency_weight
                stat.avg_latency_ms = (1.0 - w) * stat.avg_latency_ms + w * float(latency_ms)

        self._stats[key] = stat
        self._changed()
        return stat

    def get(self, host: HostKey) -> Optional[HostStat]:
        """Return a decayed view of host's record without modifying it."""
        stat = self._stats.get(_host_key(host))
        if stat is None:
            return None
        return self._decayed_copy(stat, self._clock())

    def total_tries(self) -> float:
        now = self._clock()
        return sum(self._decayed_copy(s, now).tries for s in self._stats.values())

    def mean_latency_ms(self) -> Optional[float]:
        """Mean of per-host average latencies, or None without samples."""
        samples = [s.avg_latency_ms for s in self._stats.values() if s.avg_latency_ms > 0]
        if not samples:
            return None
        return sum(samples) / len(samples)

    def score(self, host: HostKey, total_tries: Optional[float] = None) -> float:
        """Rank a host for candidate ordering.

        Inputs:
            host: HostAddress or host base string.
            total_tries: Total decayed tries across all hosts; computed when None.

        Outputs:
            float: (rate + exploration bonus) * latency discount + recency boost,
            where rate is Laplace-smoothed so an unknown host scores 0.5.
        """
        if total_tries is None:
            total_tries = self.total_tries()
        stat = self.get(host)
        successes = stat.successes if stat else 0.0
        tries = stat.tries if stat else 0.0

        rate = (successes + 1.0) / (tries + 2.0)
        bonus = self.exploration * math.sqrt(
            math.log(max(0.0, float(total_tries)) + 1.0) / (tries + 1.0)
        )

        latency_factor = 1.0
        if stat and stat.avg_latency_ms > 0:
            latency_factor = self.latency_base_ms / (self.latency_base_ms + stat.avg_latency_ms)

        recency = 0.0
        if stat and stat.last_success_at > 0:
            age = max(0.0, self._clock() - stat.last_success_at)
            recency = self.recency_boost * max(0.0, 1.0 - age / self.recent_window_seconds)

        return (rate + bonus) * latency_factor + recency

    def prune(self, max_entries: int) -> int:
        """Drop the least recently updated records beyond max_entries."""
        excess = len(self._stats) - max(0, int(max_entries))
        if excess <= 0:
            return 0
        oldest = sorted(self._stats.items(), key=lambda kv: kv[1].last_updated_at)[:excess]
        for key, _ in oldest:
            del self._stats[key]
        return excess

    def to_document(self) -> Dict[str, Any]:
        """Serialize to the versioned statistics document."""
        return {
            "version": STATS_SCHEMA_VERSION,
            "savedAt": self._clock(),
            "stats": {
                key: {
                    "successes": s.successes,
                    "failures": s.failures,
                    "lastUsed": s.last_updated_at,
                    "lastSuccessAt": s.last_success_at,
                    "avgLatencyMs": s.avg_latency_ms,
                }
                for key, s in self._stats.items()
            },
        }

    def load_document(self, doc: Any) -> Tuple[int, int]:
        """Merge a persisted statistics document into memory.

        Inputs:
            doc: Decoded JSON document.

        Outputs:
            (loaded, skipped): entries accepted and entries rejected as malformed.
        """
        entries = doc.get("stats") if isinstance(doc, dict) else None
        if not isinstance(entries, dict):
            return 0, 0

        loaded = skipped = 0
        for key, raw in entries.items():
            try:
                stat = HostStat(
                    successes=max(0.0, float(raw["successes"])),
                    failures=max(0.0, float(raw["failures"])),
                    last_updated_at=float(raw["lastUsed"]),
                    last_success_at=float(raw.get("lastSuccessAt", 0.0) or 0.0),
                    avg_latency_ms=max(0.0, float(raw.get("avgLatencyMs", 0.0) or 0.0)),
                )
            except (KeyError, TypeError, ValueError, AttributeError):
                skipped += 1
                continue
            if not isinstance(key, str) or not key or not all(
                math.isfinite(v) for v in (stat.successes, stat.failures, stat.last_updated_at)
            ):
                skipped += 1
                continue
            self._stats[key.lower()] = stat
            loaded += 1
        return loaded, skipped

    def items(self) -> Iterable[Tuple[str, HostStat]]:
        return list(self._stats.items())


@dataclass
class ResolverCounters:
    """Activity counters for one resolver instance (best-effort, in memory)."""

    resources_seen: int = 0
    resources_ignored: int = 0
    probes_made: int = 0
    probes_skipped: int = 0
    successes: int = 0
    failures: int = 0
    retries: int = 0
    watchdog_expired: int = 0
    reference_cache_hits: int = 0
    host_cache_hits: int = 0
    preemptive_confirmed: int = 0
    preemptive_reverted: int = 0
    broadcast_confirmed: int = 0
    broadcast_reverted: int = 0
    shared_races: int = 0

    def bump(self, name: str, delta: int = 1) -> None:
        setattr(self, name, getattr(self, name) + int(delta))

    def snapshot(self) -> Dict[str, int]:
        return asdict(self)


def format_counters_json(counters: ResolverCounters, uptime_seconds: float) -> str:
    """Single JSON line describing resolver activity, for periodic logging."""
    payload: Dict[str, Any] = {"uptime_seconds": round(max(0.0, uptime_seconds), 1)}
    payload.update(counters.snapshot())
    return json.dumps(payload, sort_keys=True)


class StatsReporter:
    """
    Background task for periodic counters logging.

    Inputs (constructor):
        counters: ResolverCounters to report
        interval_seconds: Seconds between log emissions
        log_level: Logging level name ("debug", "info", ...)
        logger_name: Logger name to use (default "detour.stats")
        clock: Callable returning epoch seconds

    Outputs:
        StatsReporter instance (call start() inside a running loop)
    """

    def __init__(
        self,
        counters: ResolverCounters,
        interval_seconds: float = 60.0,
        log_level: str = "debug",
        logger_name: str = "detour.stats",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.counters = counters
        self.interval_seconds = max(0.01, float(interval_seconds))
        self.logger = logging.getLogger(logger_name)
        self.log_level = logging.getLevelName(str(log_level).upper())
        if not isinstance(self.log_level, int):
            self.log_level = logging.DEBUG
        self._clock = clock
        self._started_at = clock()
        self._task: Optional[asyncio.Task] = None

    def emit(self) -> str:
        line = format_counters_json(self.counters, self._clock() - self._started_at)
        self.logger.log(self.log_level, line)
        return line

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            self.emit()

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(
                self._run(), name="detour-stats-reporter"
            )

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
