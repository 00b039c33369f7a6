"""Per-resource resolution state machine.

Brief:
  Every tracked resource moves through
  ``idle -> probing -> (done | failed | retry_pending -> probing)``.
  Resources with the same broken host share one race per search depth: the
  first becomes the leader, the rest await the leader's task and then verify
  the winning host on their own path. Exhaustion is retried once with a
  deeper search; a watchdog rescues resolutions stuck in ``probing``.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    Callable,
    Dict,
    FrozenSet,
    List,
    Optional,
    Set,
    Tuple,
)

from .address import (
    HostAddress,
    ParsedReference,
    host_base_of,
    rewrite_srcset,
    to_host_base,
    try_parse,
)
from .cache.fix_cache import FixCache
from .candidates import CandidateGenerator
from .config.config_schema import ResolverConfig
from .errors import AllCandidatesExhausted
from .interfaces import Mutator, Resource
from .race import RaceScheduler, select_profile
from .stats import HostStatsStore, ResolverCounters

logger = logging.getLogger(__name__)

FIX_REFERENCE_CACHE = "reference-cache"
FIX_PREEMPTIVE = "preemptive"
FIX_RACE = "race"
FIX_SHARED = "shared"
FIX_BROADCAST = "broadcast"


class ResolutionState(str, Enum):
    IDLE = "idle"
    PROBING = "probing"
    RETRY_PENDING = "retry_pending"
    DONE = "done"
    FAILED = "failed"


@dataclass(eq=False)
class ResourceResolution:
    """Tracking record for one resource id.

    Inputs:
      - resource: Latest Resource handle reported for the id.
      - original_reference / original_srcset: What the resource pointed at
        before the resolver touched it; used for rollback.
      - parsed: Parsed original reference (None when unparseable).

    Outputs:
      - ResourceResolution. ``applied_reference`` is the last reference the
        resolver itself wrote, so external changes can be told apart.
    """

    resource: Resource
    original_reference: str
    original_srcset: Optional[str]
    parsed: Optional[ParsedReference]
    state: ResolutionState = ResolutionState.IDLE
    depth: int = 0
    retries: int = 0
    started_at: Optional[float] = None
    applied_reference: Optional[str] = None
    fixed_by: Optional[str] = None
    error_retry_used: bool = False
    excluded: Set[str] = field(default_factory=set)
    task: Optional[asyncio.Task] = None

    @property
    def resource_id(self) -> str:
        return self.resource.resource_id

    @property
    def current_reference(self) -> str:
        return self.applied_reference or self.original_reference

    @property
    def current_host_base(self) -> Optional[str]:
        return host_base_of(self.current_reference)

    @property
    def bad_host_base(self) -> Optional[str]:
        return self.parsed.host_base if self.parsed else None


class ResolutionOrchestrator:
    """Owns resolution records, shared races and the work queue.

    Inputs (constructor):
        config: ResolverConfig.
        cache: FixCache.
        stats: HostStatsStore (network profile selection).
        generator: CandidateGenerator.
        scheduler: RaceScheduler.
        mutator: Mutator applying references to live resources.
        counters: ResolverCounters.
        on_host_fixed: Callback(bad_host_base, good_host) after a race finds a
            host; the resolver uses it to start a broadcast.
        clock: Monotonic seconds for the watchdog.

    Outputs:
        ResolutionOrchestrator instance. start() must run inside the loop
        before submit() is used.
    """

    def __init__(
        self,
        config: ResolverConfig,
        cache: FixCache,
        stats: HostStatsStore,
        generator: CandidateGenerator,
        scheduler: RaceScheduler,
        mutator: Mutator,
        *,
        counters: Optional[ResolverCounters] = None,
        on_host_fixed: Optional[Callable[[str, HostAddress], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.cache = cache
        self.stats = stats
        self.generator = generator
        self.scheduler = scheduler
        self.mutator = mutator
        self.counters = counters or ResolverCounters()
        self.on_host_fixed = on_host_fixed
        self._clock = clock

        self._resolutions: Dict[str, ResourceResolution] = {}
        self._races: Dict[Tuple[str, int], asyncio.Task] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._queue: Optional[asyncio.PriorityQueue] = None
        self._queue_task: Optional[asyncio.Task] = None
        self._seq = itertools.count()
        self.races_started = 0

    # ------------------------------------------------------------------
    # Tracking
    # ------------------------------------------------------------------
    def is_ignored(self, reference: str) -> bool:
        """True for references the resolver never tracks (ads, trackers, off-scope paths)."""
        lowered = str(reference or "").lower()
        if any(p.lower() in lowered for p in self.config.ignore_patterns):
            return True
        marker = self.config.required_path_marker
        if marker:
            parsed = try_parse(reference)
            if parsed is None or marker not in parsed.path:
                return True
        return False

    def get(self, resource_id: str) -> Optional[ResourceResolution]:
        return self._resolutions.get(resource_id)

    def resolutions(self) -> List[ResourceResolution]:
        return list(self._resolutions.values())

    def _new_record(self, resource: Resource) -> ResourceResolution:
        res = ResourceResolution(
            resource=resource,
            original_reference=resource.reference,
            original_srcset=resource.srcset,
            parsed=try_parse(resource.reference),
        )
        self._resolutions[resource.resource_id] = res
        self.counters.bump("resources_seen")
        return res

    def _discard(self, res: ResourceResolution) -> None:
        if res.task is not None and not res.task.done():
            res.task.cancel()
        res.state = ResolutionState.IDLE
        if self._resolutions.get(res.resource_id) is res:
            del self._resolutions[res.resource_id]

    def track(self, resource: Resource) -> Optional[ResourceResolution]:
        """Record for resource, created (or reset after an external change) as needed.

        Outputs:
            ResourceResolution, or None when the reference is ignored.
        """
        if self.is_ignored(resource.reference):
            self.counters.bump("resources_ignored")
            return None
        res = self._resolutions.get(resource.resource_id)
        if res is not None:
            if resource.reference in (res.current_reference, res.original_reference):
                res.resource = resource
                return res
            logger.debug("resource %s changed externally; resetting", resource.resource_id)
            self._discard(res)
        return self._new_record(resource)

    # ------------------------------------------------------------------
    # Applying references
    # ------------------------------------------------------------------
    def _apply(self, res: ResourceResolution, good_host: HostAddress) -> str:
        assert res.parsed is not None
        reference = res.parsed.with_host(good_host)
        srcset = rewrite_srcset(res.original_srcset, good_host, res.parsed.scheme)
        res.applied_reference = reference
        self.mutator.apply(res.resource, reference, srcset)
        return reference

    def _apply_reference(self, res: ResourceResolution, reference: str) -> None:
        parsed = try_parse(reference)
        srcset = None
        if parsed is not None and res.parsed is not None:
            srcset = rewrite_srcset(res.original_srcset, parsed.address, res.parsed.scheme)
        res.applied_reference = reference
        self.mutator.apply(res.resource, reference, srcset)

    def revert(self, res: ResourceResolution) -> None:
        """Point the resource back at its original reference and srcset."""
        res.applied_reference = None
        self.mutator.apply(res.resource, res.original_reference, res.original_srcset)

    async def verify(self, res: ResourceResolution, good_host: HostAddress) -> bool:
        """Apply good_host speculatively and wait for the mutator's verdict."""
        self._apply(res, good_host)
        timeout = self.config.observe_timeout_ms / 1000.0
        try:
            return bool(await asyncio.wait_for(self.mutator.observe(res.resource, timeout), timeout))
        except asyncio.TimeoutError:
            logger.debug("no render signal for %s within %.1fs", res.resource_id, timeout)
            return False

    def _finish(self, res: ResourceResolution, fixed_by: str) -> None:
        res.state = ResolutionState.DONE
        res.fixed_by = fixed_by
        res.started_at = None
        if res.parsed is not None and res.applied_reference:
            self.cache.set_reference_fix(str(res.parsed), res.applied_reference)
            fixed = try_parse(res.applied_reference)
            if fixed is not None:
                self.cache.learn_good_host(fixed.address)
        self.counters.bump("successes")
        logger.info(
            "resolved %s: %s -> %s (%s)",
            res.resource_id,
            res.original_reference,
            res.applied_reference,
            fixed_by,
        )

    # ------------------------------------------------------------------
    # Races
    # ------------------------------------------------------------------
    async def _race(
        self,
        parsed: ParsedReference,
        depth: int,
        exclude: FrozenSet[str],
        use_host_cache: bool = True,
    ) -> HostAddress:
        candidates = self.generator.generate(
            parsed, depth=depth, exclude=exclude, use_host_cache=use_host_cache
        )
        if not candidates:
            raise AllCandidatesExhausted(None, 0)
        self.races_started += 1
        profile = select_profile(self.config.network, self.stats)
        try:
            url = await self.scheduler.race_first_success(candidates, profile)
        except AllCandidatesExhausted:
            if len(candidates) == 1 and candidates[0].source == "host-cache":
                self.cache.drop_host_fix(parsed.host_base)
            raise
        if candidates[0].source == "host-cache" and candidates[0].url == url:
            self.counters.bump("host_cache_hits")
        winner = try_parse(url)
        assert winner is not None
        good = winner.address
        self.cache.set_host_fix(parsed.host_base, good)
        self.cache.learn_good_host(good)
        if self.on_host_fixed is not None:
            self.on_host_fixed(parsed.host_base, good)
        return good

    def _shared_race(self, res: ResourceResolution) -> Tuple[asyncio.Task, bool]:
        """(task, is_leader) for the race shared by res's broken host and depth."""
        assert res.parsed is not None
        key = (res.parsed.host_base, res.depth)
        task = self._races.get(key)
        if task is not None and not task.done():
            return task, False
        task = asyncio.get_running_loop().create_task(
            self._race(res.parsed, res.depth, frozenset(res.excluded)),
            name=f"detour-race {key[0]}@{key[1]}",
        )
        self._races[key] = task

        def _forget(t: asyncio.Task, key: Tuple[str, int] = key) -> None:
            if self._races.get(key) is t:
                del self._races[key]
            if not t.cancelled():
                # Marks the exception retrieved.
                t.exception()

        task.add_done_callback(_forget)
        return task, True

    def _preemptive_host(self, res: ResourceResolution) -> Optional[HostAddress]:
        assert res.parsed is not None
        good = self.generator.host_cache_candidate(res.parsed, res.excluded)
        if good is not None:
            return good
        for host in self.cache.learned_hosts():
            base = to_host_base(host)
            if host == res.parsed.address or base in res.excluded:
                continue
            if self.generator.negative.is_blocked(base):
                continue
            return host
        return None

    async def _attempt(self, res: ResourceResolution) -> None:
        parsed = res.parsed
        assert parsed is not None

        if res.depth == 0 and not res.error_retry_used:
            fixed = self.cache.get_reference_fix(str(parsed))
            if fixed is not None:
                self._apply_reference(res, fixed)
                self.counters.bump("reference_cache_hits")
                self._finish(res, FIX_REFERENCE_CACHE)
                return

        if self.config.preemptive and res.depth == 0:
            guess = self._preemptive_host(res)
            if guess is not None:
                if await self.verify(res, guess):
                    self.counters.bump("preemptive_confirmed")
                    self._finish(res, FIX_PREEMPTIVE)
                    return
                self.counters.bump("preemptive_reverted")
                res.excluded.add(to_host_base(guess))
                self.revert(res)

        task, leader = self._shared_race(res)
        if leader:
            good = await asyncio.shield(task)
            self._apply(res, good)
            self._finish(res, FIX_RACE)
            return

        self.counters.bump("shared_races")
        # Exhaustion of the shared race is this resource's exhaustion too; the
        # retry joins the shared race one level deeper.
        shared = await asyncio.shield(task)
        if to_host_base(shared) not in res.excluded:
            if await self.verify(res, shared):
                self._finish(res, FIX_SHARED)
                return
            res.excluded.add(to_host_base(shared))
            self.revert(res)

        # Independent search for this resource only.
        good = await self._race(parsed, res.depth, frozenset(res.excluded), use_host_cache=False)
        self._apply(res, good)
        self._finish(res, FIX_RACE)

    async def _drive(self, res: ResourceResolution, delay: float = 0.0) -> ResolutionState:
        if delay > 0:
            await asyncio.sleep(delay)
            if res.state is not ResolutionState.RETRY_PENDING:
                return res.state
        while True:
            res.state = ResolutionState.PROBING
            res.started_at = self._clock()
            try:
                await self._attempt(res)
                return res.state
            except AllCandidatesExhausted as exc:
                if res.retries < self.config.max_retries:
                    res.retries += 1
                    res.depth += 1
                    res.state = ResolutionState.RETRY_PENDING
                    res.started_at = None
                    self.counters.bump("retries")
                    logger.info(
                        "retrying %s at depth %d after %s", res.resource_id, res.depth, exc
                    )
                    await asyncio.sleep(self.config.retry_delay_ms / 1000.0)
                    if res.state is not ResolutionState.RETRY_PENDING:
                        return res.state
                    continue
                res.state = ResolutionState.FAILED
                res.started_at = None
                self.counters.bump("failures")
                logger.warning("could not resolve %s: %s", res.resource_id, exc)
                return res.state

    def _spawn(self, res: ResourceResolution, delay: float = 0.0) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(
            self._drive(res, delay), name=f"detour-resolve {res.resource_id}"
        )
        res.task = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def resolve(self, resource: Resource) -> ResolutionState:
        """Resolve resource now and return its resulting state.

        Ignored and unparseable references return IDLE without being tracked.
        """
        if try_parse(resource.reference) is None:
            logger.debug("unparseable reference %r", resource.reference)
            return ResolutionState.IDLE
        res = self.track(resource)
        if res is None:
            return ResolutionState.IDLE
        if res.state is ResolutionState.IDLE:
            self._spawn(res)
        return await self._wait(res)

    async def _wait(self, res: ResourceResolution) -> ResolutionState:
        while res.task is not None and not res.task.done():
            task = res.task
            try:
                await asyncio.shield(task)
            except asyncio.CancelledError:
                if not task.cancelled():
                    raise
        return res.state

    def restart(self, res: ResourceResolution) -> Optional[asyncio.Task]:
        """Re-enter res into resolution as an independent search."""
        if self._resolutions.get(res.resource_id) is not res or res.parsed is None:
            return None
        current = asyncio.current_task()
        if res.task is not None and not res.task.done() and res.task is not current:
            res.task.cancel()
        res.state = ResolutionState.IDLE
        res.started_at = None
        return self._spawn(res)

    def start(self) -> None:
        if self._queue is None:
            self._queue = asyncio.PriorityQueue()
        if self._queue_task is None or self._queue_task.done():
            self._queue_task = asyncio.get_running_loop().create_task(
                self._process_queue(), name="detour-queue"
            )

    def submit(self, resource: Resource, priority: int = 0) -> None:
        """Queue resource; higher priority is processed first."""
        if self._queue is None:
            self.start()
        assert self._queue is not None
        self._queue.put_nowait((-int(priority), next(self._seq), resource))

    async def _process_queue(self) -> None:
        assert self._queue is not None
        batch_size = self.config.batch_size
        while True:
            batch = [await self._queue.get()]
            while len(batch) < batch_size and not self._queue.empty():
                batch.append(self._queue.get_nowait())
            for _, _, resource in batch:
                task = asyncio.get_running_loop().create_task(self.resolve(resource))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
                self._queue.task_done()
            await asyncio.sleep(0)

    def pending(self) -> List[asyncio.Task]:
        tasks = [t for t in self._tasks if not t.done()]
        tasks.extend(t for t in self._races.values() if not t.done())
        return tasks

    def idle(self) -> bool:
        return not self.pending() and (self._queue is None or self._queue.empty())

    async def drain(self) -> None:
        """Wait until the queue is empty and no resolution is running."""
        while True:
            await asyncio.sleep(0)
            tasks = self.pending()
            if not tasks:
                if self._queue is None or self._queue.empty():
                    return
                continue
            await asyncio.wait(tasks)

    def check_watchdog(self) -> int:
        """Move resolutions stuck in probing to retry_pending or failed.

        Outputs:
            int: Number of resolutions the watchdog acted on.
        """
        limit = self.config.watchdog_timeout_ms / 1000.0
        now = self._clock()
        expired = 0
        for res in list(self._resolutions.values()):
            if res.state is not ResolutionState.PROBING or res.started_at is None:
                continue
            if now - res.started_at < limit:
                continue
            expired += 1
            self.counters.bump("watchdog_expired")
            if res.task is not None and not res.task.done():
                res.task.cancel()
            if res.applied_reference is not None:
                self.revert(res)
            res.started_at = None
            if res.retries < self.config.max_retries:
                res.retries += 1
                res.depth += 1
                res.state = ResolutionState.RETRY_PENDING
                logger.info("watchdog: %s stuck in probing; retrying", res.resource_id)
                self._spawn(res, delay=self.config.retry_delay_ms / 1000.0)
            else:
                res.state = ResolutionState.FAILED
                self.counters.bump("failures")
                logger.warning("watchdog: giving up on %s", res.resource_id)
        return expired

    # ------------------------------------------------------------------
    # Scanner notifications
    # ------------------------------------------------------------------
    def notify_reference_changed(self, resource: Resource) -> bool:
        """Reset tracking after an external reference change.

        Outputs:
            bool: True when the record was reset; False for the resolver's own
            writes and for untracked resources.
        """
        res = self._resolutions.get(resource.resource_id)
        if res is None:
            return False
        if resource.reference == res.current_reference:
            return False
        self._discard(res)
        if self.is_ignored(resource.reference) or try_parse(resource.reference) is None:
            return True
        self._new_record(resource)
        return True

    def notify_loaded(self, resource: Resource) -> bool:
        """Learn the host of a resource that loaded normally."""
        if self.is_ignored(resource.reference):
            return False
        parsed = try_parse(resource.reference)
        if parsed is None:
            return False
        self.cache.learn_good_host(parsed.address)
        return True

    def notify_error(self, resource: Resource) -> Optional[asyncio.Task]:
        """Handle a render failure of a resource fixed from the reference cache.

        The cache entry is dropped and the resource is resolved again, once.
        """
        res = self._resolutions.get(resource.resource_id)
        if res is None or res.parsed is None:
            return None
        if res.state is not ResolutionState.DONE or res.fixed_by != FIX_REFERENCE_CACHE:
            return None
        if res.error_retry_used:
            return None
        res.error_retry_used = True
        self.cache.drop_reference_fix(str(res.parsed))
        bad = try_parse(res.applied_reference)
        if bad is not None:
            res.excluded.add(to_host_base(bad.address))
        logger.info("cached fix for %s failed to render; resolving again", res.resource_id)
        self.revert(res)
        return self.restart(res)

    async def close(self) -> None:
        tasks = self.pending()
        if self._queue_task is not None:
            tasks.append(self._queue_task)
            self._queue_task = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
