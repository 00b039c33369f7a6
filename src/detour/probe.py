"""Cancellable, concurrency-bounded probes.

Brief:
  A probe loads one candidate reference through the configured Loader and
  classifies the outcome. Completed outcomes feed the host statistics and
  the negative cache; cancelled probes leave no trace. One semaphore bounds
  simultaneous probes across every resolution sharing the engine.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from .address import HostAddress, to_host_base, try_parse
from .errors import ProbeEmpty, ProbeError, ProbeFailure, ProbeTimeout
from .health import NegativeCache
from .interfaces import Loader
from .stats import HostStatsStore, ResolverCounters

logger = logging.getLogger(__name__)


class ProbeOutcome(str, Enum):
    SUCCESS = "success"
    TIMEOUT = "timeout"
    ERROR = "error"
    EMPTY = "empty"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ProbeResult:
    """Brief: Classified outcome of one probe.

    Inputs:
      - url: Probed reference.
      - outcome: ProbeOutcome.
      - host: HostAddress of url (None when url is not address-shaped).
      - latency_ms: Load latency for completed network attempts.
      - detail: Error text for failures.
    """

    url: str
    outcome: ProbeOutcome
    host: Optional[HostAddress] = None
    latency_ms: Optional[float] = None
    detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome is ProbeOutcome.SUCCESS


class ProbeHandle:
    """Brief: A running probe.

    Inputs (constructor):
      - url: Probed reference.
      - task: asyncio.Task producing the ProbeResult.

    Outputs:
      - ProbeHandle; ``result`` is the awaitable task, ``cancel()`` is
        idempotent and ``wait()`` maps cancellation to a CANCELLED result.
    """

    def __init__(self, url: str, task: "asyncio.Task[ProbeResult]") -> None:
        self.url = url
        self.result = task
        self._cancel_requested = False

    def done(self) -> bool:
        return self.result.done()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    def cancel(self) -> bool:
        """Cancel the probe; returns True only for the call that cancelled it."""
        if self._cancel_requested or self.result.done():
            return False
        self._cancel_requested = True
        self.result.cancel()
        return True

    async def wait(self) -> ProbeResult:
        try:
            return await asyncio.shield(self.result)
        except asyncio.CancelledError:
            if not self.result.cancelled():
                raise
            return ProbeResult(url=self.url, outcome=ProbeOutcome.CANCELLED)


class ProbeEngine:
    """Run probes and record what they teach about hosts.

    Inputs (constructor):
        loader: Loader performing the network load.
        stats: HostStatsStore receiving every completed outcome.
        negative: NegativeCache receiving every failure.
        max_concurrent: Global limit of simultaneous probes.
        min_content_size: Loads of at most this size count as placeholders.
        counters: Optional ResolverCounters.
        clock: Monotonic seconds used to time loads.

    Outputs:
        ProbeEngine instance. probe() must be called inside a running loop.
    """

    def __init__(
        self,
        loader: Loader,
        stats: HostStatsStore,
        negative: NegativeCache,
        *,
        max_concurrent: int = 4,
        min_content_size: int = 1,
        counters: Optional[ResolverCounters] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.loader = loader
        self.stats = stats
        self.negative = negative
        self.max_concurrent = max(1, int(max_concurrent))
        self.min_content_size = int(min_content_size)
        self.counters = counters or ResolverCounters()
        self._clock = clock
        self._semaphore = asyncio.Semaphore(self.max_concurrent)
        self._in_flight = 0
        self.peak_in_flight = 0

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def is_blocked(self, url: str) -> bool:
        parsed = try_parse(url)
        return parsed is not None and self.negative.is_blocked(parsed.address)

    def skip(self, url: str) -> ProbeResult:
        """Account for a candidate that is not probed because it is backed off."""
        parsed = try_parse(url)
        self.counters.bump("probes_skipped")
        logger.debug("probe %s skipped (backed off)", url)
        return ProbeResult(
            url=url,
            outcome=ProbeOutcome.SKIPPED,
            host=parsed.address if parsed else None,
        )

    def probe(self, url: str, timeout: float) -> ProbeHandle:
        """Start probing url with a per-probe timeout in seconds."""
        task = asyncio.get_running_loop().create_task(
            self._run(url, float(timeout)), name=f"detour-probe {url}"
        )
        return ProbeHandle(url, task)

    async def _load(self, url: str, timeout: float) -> float:
        start = self._clock()
        try:
            result = await asyncio.wait_for(self.loader.load(url, timeout), timeout)
        except asyncio.TimeoutError as exc:
            raise ProbeTimeout(f"no response within {timeout:.2f}s") from exc
        except ProbeFailure:
            raise
        except Exception as exc:
            raise ProbeError(str(exc) or exc.__class__.__name__) from exc
        latency_ms = max(0.0, (self._clock() - start) * 1000.0)
        if result is None or result.size <= self.min_content_size:
            raise ProbeEmpty(f"size {getattr(result, 'size', None)}")
        return latency_ms

    async def _run(self, url: str, timeout: float) -> ProbeResult:
        parsed = try_parse(url)
        host = parsed.address if parsed else None

        async with self._semaphore:
            # The host may have been backed off while this probe was queued.
            if host is not None and self.negative.is_blocked(host):
                return self.skip(url)

            self._in_flight += 1
            self.peak_in_flight = max(self.peak_in_flight, self._in_flight)
            self.counters.bump("probes_made")
            try:
                latency_ms = await self._load(url, timeout)
            except ProbeFailure as exc:
                reason = ProbeOutcome(exc.reason)
                if host is not None:
                    self.stats.record(host, False)
                    self.negative.mark_failed(host, reason.value)
                logger.debug("probe %s failed: %s (%s)", url, reason.value, exc)
                return ProbeResult(url=url, outcome=reason, host=host, detail=str(exc))
            finally:
                self._in_flight -= 1

        if host is not None:
            self.stats.record(host, True, latency_ms)
            self.negative.mark_ok(host)
        logger.debug(
            "probe %s ok in %.0fms (%s)",
            url,
            latency_ms,
            to_host_base(host) if host else "-",
        )
        return ProbeResult(
            url=url, outcome=ProbeOutcome.SUCCESS, host=host, latency_ms=latency_ms
        )
