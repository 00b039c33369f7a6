"""Debounced persistence of the fix cache and host statistics.

Brief:
  Mutations only mark the state dirty. A flush happens once the state has
  been quiet for ``quiet_seconds`` (or has been dirty for longer than
  ``max_delay_seconds``), and unconditionally on close. Store failures are
  logged once and the session continues in memory only.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Callable, Optional

from .cache.fix_cache import FixCache
from .errors import CacheLoadCorruption, PersistenceError
from .interfaces import PersistenceStore
from .stats import HostStatsStore

logger = logging.getLogger(__name__)


def _decode(raw: str, key: str) -> Any:
    try:
        return json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise CacheLoadCorruption(f"{key}: {exc}") from exc


class PersistenceManager:
    """Load at start-up, flush when quiet, flush on close.

    Inputs (constructor):
        store: PersistenceStore or None (None keeps everything in memory).
        cache: FixCache to persist.
        stats: HostStatsStore to persist.
        namespace: Key prefix; documents live at '<ns>:cache' and '<ns>:stats'.
        quiet_seconds: Flush once no mutation happened for this long.
        max_delay_seconds: Flush at the latest this long after the first
            unflushed mutation, even under continuous activity.
        max_stats_entries: Statistics are pruned to this size before writing.
        clock: Monotonic seconds (injectable for tests).

    Outputs:
        PersistenceManager instance; it registers itself as the change
        callback of cache and stats.

    Example:
        >>> from detour.cache import FixCache, MemoryStore
        >>> from detour.stats import HostStatsStore
        >>> now = [0.0]
        >>> pm = PersistenceManager(MemoryStore(), FixCache(), HostStatsStore(),
        ...                         clock=lambda: now[0])
        >>> pm.mark_dirty(); pm.maybe_flush()
        False
        >>> now[0] = 5.0; pm.maybe_flush()
        True
    """

    def __init__(
        self,
        store: Optional[PersistenceStore],
        cache: FixCache,
        stats: HostStatsStore,
        *,
        namespace: str = "detour",
        quiet_seconds: float = 2.0,
        max_delay_seconds: float = 30.0,
        max_stats_entries: int = 500,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.cache = cache
        self.stats = stats
        self.namespace = str(namespace)
        self.quiet_seconds = max(0.0, float(quiet_seconds))
        self.max_delay_seconds = max(self.quiet_seconds, float(max_delay_seconds))
        self.max_stats_entries = int(max_stats_entries)
        self._clock = clock

        self._dirty_since: Optional[float] = None
        self._last_change: Optional[float] = None
        self.degraded = store is None
        self.flushes = 0
        self._task: Optional[asyncio.Task] = None

        cache.on_change = self.mark_dirty
        stats.on_change = self.mark_dirty

    @property
    def cache_key(self) -> str:
        return f"{self.namespace}:cache"

    @property
    def stats_key(self) -> str:
        return f"{self.namespace}:stats"

    @property
    def dirty(self) -> bool:
        return self._dirty_since is not None

    def mark_dirty(self) -> None:
        now = self._clock()
        if self._dirty_since is None:
            self._dirty_since = now
        self._last_change = now

    def _degrade(self, action: str, exc: BaseException) -> None:
        if not self.degraded:
            logger.warning(
                "persistence %s failed (%s); continuing in memory only", action, exc
            )
        self.degraded = True

    # ------------------------------------------------------------------
    # Load
    # ------------------------------------------------------------------
    def load(self) -> None:
        """Merge persisted documents into the cache and statistics.

        A document that is not JSON is treated as empty; a document with
        skipped entries or another schema version marks the state dirty so it
        is rewritten in the current schema at the next flush.
        """
        if self.store is None:
            return

        try:
            raw_cache = self.store.get(self.cache_key)
            raw_stats = self.store.get(self.stats_key)
        except PersistenceError as exc:
            self._degrade("load", exc)
            return

        if raw_cache is not None:
            try:
                report = self.cache.load_document(_decode(raw_cache, self.cache_key))
            except CacheLoadCorruption as exc:
                logger.warning("ignoring corrupt cache document %s", exc)
                self.mark_dirty()
            else:
                logger.info(
                    "loaded %d cache entries (%d skipped)", report.loaded, report.skipped
                )
                if report.needs_resave:
                    self.mark_dirty()

        if raw_stats is not None:
            try:
                loaded, skipped = self.stats.load_document(_decode(raw_stats, self.stats_key))
            except CacheLoadCorruption as exc:
                logger.warning("ignoring corrupt statistics document %s", exc)
                self.mark_dirty()
            else:
                logger.debug("loaded %d host statistics (%d skipped)", loaded, skipped)
                if skipped:
                    self.mark_dirty()

    # ------------------------------------------------------------------
    # Flush
    # ------------------------------------------------------------------
    def due(self) -> bool:
        if self._dirty_since is None or self._last_change is None:
            return False
        now = self._clock()
        if now - self._last_change >= self.quiet_seconds:
            return True
        return now - self._dirty_since >= self.max_delay_seconds

    def maybe_flush(self) -> bool:
        """Flush when the debounce window has elapsed; returns True on write."""
        if not self.due():
            return False
        return self.flush()

    def flush(self) -> bool:
        """Prune and write both documents now.

        Outputs:
            bool: True when the documents were written. In degraded mode the
            dirty flag is cleared without writing.
        """
        if self._dirty_since is None:
            return False

        self.cache.prune_all()
        self.stats.prune(self.max_stats_entries)
        self._dirty_since = None
        self._last_change = None

        if self.degraded or self.store is None:
            return False

        try:
            self.store.set(self.cache_key, json.dumps(self.cache.to_document()))
            self.store.set(self.stats_key, json.dumps(self.stats.to_document()))
        except PersistenceError as exc:
            self._degrade("flush", exc)
            return False
        except (TypeError, ValueError) as exc:
            logger.error("persistence encode error: %s", exc, exc_info=True)
            return False

        self.flushes += 1
        logger.debug("flushed %s", self.namespace)
        return True

    async def _run(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            self.maybe_flush()

    def start(self, interval_seconds: float = 1.0) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(
                self._run(max(0.01, float(interval_seconds))), name="detour-flush"
            )

    async def close(self) -> None:
        """Stop the flush loop and write any pending state."""
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.flush()
