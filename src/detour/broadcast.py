"""Fan a discovered host fix out to other resources on the same broken host.

Brief:
  Once a race maps a broken host to a good one, every other tracked resource
  still pointing at the broken host is rewritten speculatively and verified
  individually. A failed verification rolls that single resource back to its
  original reference and srcset and hands it back to the orchestrator for an
  independent search that avoids the host. A broadcast failure does not put
  the host into the negative cache.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable, List, Optional

from .address import HostAddress, to_host_base
from .cache.fix_cache import FixCache
from .orchestrator import (
    FIX_BROADCAST,
    ResolutionState,
    ResourceResolution,
)
from .stats import ResolverCounters

logger = logging.getLogger(__name__)

_SKIP_STATES = (ResolutionState.DONE, ResolutionState.PROBING)


@dataclass
class BroadcastReport:
    """Brief: Outcome of one propagation.

    Inputs:
      - confirmed: Resource ids that rendered with the good host.
      - reverted: Resource ids rolled back and re-entered.
    """

    confirmed: List[str] = field(default_factory=list)
    reverted: List[str] = field(default_factory=list)

    @property
    def targets(self) -> int:
        return len(self.confirmed) + len(self.reverted)


class BroadcastPropagator:
    """Apply-and-verify a host fix across tracked resources.

    Inputs (constructor):
        cache: FixCache receiving reference fixes and learned hosts.
        verify: Coroutine function(resolution, good_host) -> bool that applies
            and waits for the render verdict.
        revert: Callable(resolution) restoring the original reference.
        counters: Optional ResolverCounters.
        clock: Monotonic seconds (start time for the watchdog).

    Outputs:
        BroadcastPropagator instance.
    """

    def __init__(
        self,
        cache: FixCache,
        verify: Callable[[ResourceResolution, HostAddress], Awaitable[bool]],
        revert: Callable[[ResourceResolution], None],
        *,
        counters: Optional[ResolverCounters] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.cache = cache
        self._verify = verify
        self._revert = revert
        self.counters = counters or ResolverCounters()
        self._clock = clock

    @staticmethod
    def targets(
        bad_host_base: str,
        good_host: HostAddress,
        resolutions: Iterable[ResourceResolution],
    ) -> List[ResourceResolution]:
        """Resolutions currently pointing at bad_host_base and not busy or done."""
        bad = bad_host_base.lower()
        good = to_host_base(good_host)
        out: List[ResourceResolution] = []
        for res in resolutions:
            if res.parsed is None or res.state in _SKIP_STATES:
                continue
            if res.current_host_base != bad or good in res.excluded:
                continue
            out.append(res)
        return out

    async def _confirm(
        self,
        res: ResourceResolution,
        good_host: HostAddress,
        reenter: Callable[[ResourceResolution], object],
        report: BroadcastReport,
    ) -> None:
        if await self._verify(res, good_host):
            res.state = ResolutionState.DONE
            res.fixed_by = FIX_BROADCAST
            res.started_at = None
            assert res.parsed is not None and res.applied_reference is not None
            self.cache.set_reference_fix(str(res.parsed), res.applied_reference)
            self.cache.learn_good_host(good_host)
            self.counters.bump("broadcast_confirmed")
            self.counters.bump("successes")
            report.confirmed.append(res.resource_id)
            return

        self._revert(res)
        res.excluded.add(to_host_base(good_host))
        res.state = ResolutionState.IDLE
        res.started_at = None
        self.counters.bump("broadcast_reverted")
        report.reverted.append(res.resource_id)
        logger.debug(
            "broadcast of %s did not render for %s; resolving independently",
            to_host_base(good_host),
            res.resource_id,
        )
        reenter(res)

    async def propagate(
        self,
        bad_host_base: str,
        good_host: HostAddress,
        resolutions: Iterable[ResourceResolution],
        reenter: Callable[[ResourceResolution], object],
    ) -> BroadcastReport:
        """Rewrite every eligible resource on bad_host_base to good_host.

        Inputs:
            bad_host_base: Broken host base, e.g. 'k05.exampleroot.org'.
            good_host: Host confirmed by a race.
            resolutions: Tracked resolutions to consider.
            reenter: Called with each reverted resolution so it is resolved
                again independently.

        Outputs:
            BroadcastReport.
        """
        report = BroadcastReport()
        targets = self.targets(bad_host_base, good_host, resolutions)
        if not targets:
            return report
        logger.info(
            "broadcasting %s -> %s to %d resources",
            bad_host_base,
            to_host_base(good_host),
            len(targets),
        )
        loop = asyncio.get_running_loop()
        tasks = []
        for res in targets:
            if res.task is not None and not res.task.done():
                # A pending retry is superseded by the broadcast.
                res.task.cancel()
            res.state = ResolutionState.PROBING
            res.started_at = self._clock() if self._clock else None
            res.task = loop.create_task(
                self._confirm(res, good_host, reenter, report),
                name=f"detour-broadcast {res.resource_id}",
            )
            tasks.append(res.task)

        for outcome in await asyncio.gather(*tasks, return_exceptions=True):
            if isinstance(outcome, Exception):
                logger.error("broadcast verification error: %s", outcome, exc_info=outcome)
        return report
