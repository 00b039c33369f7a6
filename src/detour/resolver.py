"""Resolver context: one object owning every map and background task.

Brief:
  Builds the statistics store, negative cache, fix cache, persistence
  manager, probe engine, race scheduler, orchestrator and broadcast
  propagator from a ResolverConfig and wires them together. Independent
  Resolver instances share nothing.

Example:
    >>> async def main(loader, mutator, resource):  # doctest: +SKIP
    ...     async with Resolver(ResolverConfig(), loader=loader, mutator=mutator) as r:
    ...         return await r.resolve(resource)
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional, Set

from .address import HostAddress, to_host_base
from .broadcast import BroadcastPropagator, BroadcastReport
from .cache.backends import MemoryStore, SQLiteStore
from .cache.fix_cache import FixCache
from .candidates import CandidateGenerator
from .config.config_parser import load_config
from .config.config_schema import PersistenceConfig, ResolverConfig
from .config.logging_config import init_logging
from .errors import PersistenceError
from .health import NegativeCache
from .interfaces import Loader, Mutator, PersistenceStore, Resource
from .orchestrator import ResolutionOrchestrator, ResolutionState
from .persistence import PersistenceManager
from .probe import ProbeEngine
from .race import RaceScheduler
from .stats import HostStatsStore, ResolverCounters, StatsReporter
from .transports.http import HttpLoader

logger = logging.getLogger(__name__)


def build_store(cfg: PersistenceConfig) -> Optional[PersistenceStore]:
    """Create the configured key/value store.

    Inputs:
        cfg: PersistenceConfig; backend is 'memory', 'sqlite' or 'none'.

    Outputs:
        PersistenceStore, or None for 'none' and for a sqlite database that
        cannot be opened (the session then runs in memory only).
    """
    if cfg.backend == "none":
        return None
    if cfg.backend == "sqlite":
        try:
            return SQLiteStore(cfg.db_path)
        except (PersistenceError, OSError) as exc:
            logger.warning("cannot open %s (%s); running in memory only", cfg.db_path, exc)
            return None
    return MemoryStore()


class Resolver:
    """Entry point used by a scanner.

    Inputs (constructor):
        config: ResolverConfig (defaults when None).
        loader: Loader used for probes; an HttpLoader when None.
        mutator: Mutator applying references to live resources.
        store: PersistenceStore; built from config.persistence when None.
        clock: Epoch seconds for cache and statistics timestamps.
        monotonic: Monotonic seconds for backoff, debounce and the watchdog.

    Outputs:
        Resolver instance. Use ``async with`` (or start()/close()) so the
        background flush, watchdog and reporter tasks run.
    """

    def __init__(
        self,
        config: Optional[ResolverConfig] = None,
        *,
        loader: Optional[Loader] = None,
        mutator: Mutator,
        store: Optional[PersistenceStore] = None,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or ResolverConfig()
        cfg = self.config
        if cfg.logging is not None:
            init_logging(cfg.logging)
        self.counters = ResolverCounters()

        self.stats = HostStatsStore(
            half_life_minutes=cfg.scoring.decay_half_life_minutes,
            latency_weight=cfg.scoring.latency_weight,
            exploration=cfg.scoring.exploration,
            latency_base_ms=cfg.scoring.latency_base_ms,
            recent_window_minutes=cfg.scoring.recent_success_window_minutes,
            recency_boost=cfg.scoring.recency_boost,
            clock=clock,
        )
        self.cache = FixCache(
            max_host_entries=cfg.persistence.max_host_entries,
            max_reference_entries=cfg.persistence.max_reference_entries,
            max_learned_hosts=cfg.persistence.max_learned_hosts,
            path_key_segments=cfg.heuristics.path_key_segments,
            clock=clock,
        )
        self.negative = NegativeCache(
            timeout_seconds=cfg.backoff.timeout_seconds,
            error_seconds=cfg.backoff.error_seconds,
            max_seconds=cfg.backoff.max_seconds,
            maxsize=cfg.backoff.maxsize,
            clock=monotonic,
        )

        self._owns_store = store is None
        if store is None:
            store = build_store(cfg.persistence)
        self.store = store
        self.persistence = PersistenceManager(
            store,
            self.cache,
            self.stats,
            namespace=cfg.persistence.namespace,
            quiet_seconds=cfg.persistence.flush_quiet_seconds,
            max_delay_seconds=cfg.persistence.flush_max_delay_seconds,
            max_stats_entries=cfg.persistence.max_stats_entries,
            clock=monotonic,
        )

        self._owns_loader = loader is None
        if loader is None:
            loader = HttpLoader()
        self.loader = loader
        self.mutator = mutator

        self.engine = ProbeEngine(
            loader,
            self.stats,
            self.negative,
            max_concurrent=cfg.max_concurrent_probes,
            min_content_size=cfg.min_content_size,
            counters=self.counters,
            clock=monotonic,
        )
        self.generator = CandidateGenerator(
            cfg.heuristics,
            self.cache,
            self.stats,
            self.negative,
            max_attempts=cfg.max_attempts,
            max_server_num=cfg.max_server_num,
        )
        self.scheduler = RaceScheduler(
            self.engine,
            probe_timeout_ms=cfg.probe_timeout_ms,
            late_candidate_index=cfg.network.late_candidate_index,
            late_candidate_extra_ms=cfg.network.late_candidate_extra_ms,
        )
        self.orchestrator = ResolutionOrchestrator(
            cfg,
            self.cache,
            self.stats,
            self.generator,
            self.scheduler,
            mutator,
            counters=self.counters,
            on_host_fixed=self._on_host_fixed,
            clock=monotonic,
        )
        self.propagator = BroadcastPropagator(
            self.cache,
            self.orchestrator.verify,
            self.orchestrator.revert,
            counters=self.counters,
            clock=monotonic,
        )
        self.reporter = StatsReporter(
            self.counters,
            interval_seconds=cfg.report_interval_seconds,
            clock=clock,
        )

        self._background: Set[asyncio.Task] = set()
        self._watchdog_task: Optional[asyncio.Task] = None
        self._started = False

    @classmethod
    def from_yaml(
        cls,
        config_path: str,
        *,
        environ: Optional[Dict[str, str]] = None,
        **kwargs: Any,
    ) -> "Resolver":
        """Build a Resolver from a YAML file (see load_config for the format)."""
        return cls(load_config(config_path, environ=environ), **kwargs)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        """Load persisted state and start the background tasks."""
        if self._started:
            return
        self._started = True
        self.persistence.load()
        self.persistence.start(self.config.persistence.flush_check_interval_seconds)
        self.orchestrator.start()
        self.reporter.start()
        self._watchdog_task = asyncio.get_running_loop().create_task(
            self._watchdog(), name="detour-watchdog"
        )

    async def _watchdog(self) -> None:
        interval = self.config.watchdog_interval_ms / 1000.0
        while True:
            await asyncio.sleep(interval)
            self.orchestrator.check_watchdog()

    async def close(self) -> None:
        """Stop background work, flush pending state and release resources."""
        if self._watchdog_task is not None:
            self._watchdog_task.cancel()
            try:
                await self._watchdog_task
            except asyncio.CancelledError:
                pass
            self._watchdog_task = None

        background = list(self._background)
        for task in background:
            task.cancel()
        if background:
            await asyncio.gather(*background, return_exceptions=True)

        await self.orchestrator.close()
        await self.reporter.stop()
        await self.persistence.close()
        self.reporter.emit()

        if self._owns_loader:
            close = getattr(self.loader, "close", None)
            if callable(close):
                close()
        if self._owns_store:
            close = getattr(self.store, "close", None)
            if callable(close):
                close()
        self._started = False

    async def __aenter__(self) -> "Resolver":
        await self.start()
        return self

    async def __aexit__(self, *_exc: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Broadcast wiring
    # ------------------------------------------------------------------
    def _on_host_fixed(self, bad_host_base: str, good_host: HostAddress) -> None:
        logger.debug("host fix %s -> %s", bad_host_base, to_host_base(good_host))
        task = asyncio.get_running_loop().create_task(
            self.propagate(bad_host_base, good_host),
            name=f"detour-propagate {bad_host_base}",
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def propagate(self, bad_host_base: str, good_host: HostAddress) -> BroadcastReport:
        return await self.propagator.propagate(
            bad_host_base,
            good_host,
            self.orchestrator.resolutions(),
            self.orchestrator.restart,
        )

    # ------------------------------------------------------------------
    # Scanner-facing API
    # ------------------------------------------------------------------
    def submit(self, resource: Resource, priority: int = 0) -> None:
        self.orchestrator.submit(resource, priority)

    async def resolve(self, resource: Resource) -> ResolutionState:
        return await self.orchestrator.resolve(resource)

    def state_of(self, resource_id: str) -> Optional[ResolutionState]:
        res = self.orchestrator.get(resource_id)
        return res.state if res else None

    def notify_reference_changed(self, resource: Resource) -> bool:
        return self.orchestrator.notify_reference_changed(resource)

    def notify_loaded(self, resource: Resource) -> bool:
        return self.orchestrator.notify_loaded(resource)

    def notify_error(self, resource: Resource) -> Optional[asyncio.Task]:
        return self.orchestrator.notify_error(resource)

    async def drain(self) -> None:
        """Wait until queued work, resolutions and broadcasts are all finished."""
        while True:
            await self.orchestrator.drain()
            background = [t for t in self._background if not t.done()]
            if not background:
                await asyncio.sleep(0)
                if self.orchestrator.idle() and not any(
                    not t.done() for t in self._background
                ):
                    return
                continue
            await asyncio.wait(background)
