"""First-success race over ranked candidates.

Brief:
  The scheduler keeps a wave of probes in flight, starts the next candidate
  whenever one fails, returns the first success and cancels everything still
  running. Wave size and timeouts follow a network profile chosen from
  observed host latency.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Iterator, Optional, Sequence, Tuple, Union

from .candidates import Candidate
from .config.config_schema import NetworkConfig
from .errors import AllCandidatesExhausted
from .probe import ProbeEngine, ProbeHandle, ProbeOutcome
from .stats import HostStatsStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NetworkProfile:
    """Brief: Race shape for one class of network.

    Inputs:
      - name: 'fast', 'slow' or 'constrained'.
      - wave_size: Probes kept in flight per race.
      - timeout_multiplier: Applied to the base probe timeout.
    """

    name: str
    wave_size: int
    timeout_multiplier: float


PROFILES: Dict[str, NetworkProfile] = {
    "fast": NetworkProfile("fast", wave_size=3, timeout_multiplier=1.0),
    "slow": NetworkProfile("slow", wave_size=2, timeout_multiplier=1.5),
    "constrained": NetworkProfile("constrained", wave_size=1, timeout_multiplier=2.0),
}


def select_profile(network: NetworkConfig, stats: Optional[HostStatsStore] = None) -> NetworkProfile:
    """Pick the configured profile, or derive one from mean host latency.

    Inputs:
        network: NetworkConfig; profile 'auto' selects by latency.
        stats: HostStatsStore providing mean_latency_ms().

    Outputs:
        NetworkProfile. Without latency samples 'auto' resolves to 'fast'.

    Example:
        >>> select_profile(NetworkConfig(profile="slow")).wave_size
        2
    """
    if network.profile != "auto":
        return PROFILES[network.profile]
    mean = stats.mean_latency_ms() if stats is not None else None
    if mean is None:
        return PROFILES["fast"]
    if mean >= network.constrained_latency_ms:
        return PROFILES["constrained"]
    if mean >= network.slow_latency_ms:
        return PROFILES["slow"]
    return PROFILES["fast"]


CandidateLike = Union[Candidate, str]


def _url(candidate: CandidateLike) -> str:
    return candidate.url if isinstance(candidate, Candidate) else str(candidate)


class RaceScheduler:
    """Drive a ProbeEngine over candidates until one succeeds.

    Inputs (constructor):
        engine: ProbeEngine.
        probe_timeout_ms: Base per-probe timeout.
        late_candidate_index: Candidates past this index get extra time.
        late_candidate_extra_ms: Extra time for late candidates.

    Outputs:
        RaceScheduler instance.
    """

    def __init__(
        self,
        engine: ProbeEngine,
        *,
        probe_timeout_ms: int = 5000,
        late_candidate_index: int = 5,
        late_candidate_extra_ms: int = 1000,
    ) -> None:
        self.engine = engine
        self.probe_timeout_ms = int(probe_timeout_ms)
        self.late_candidate_index = int(late_candidate_index)
        self.late_candidate_extra_ms = int(late_candidate_extra_ms)

    def timeout_for(self, index: int, profile: NetworkProfile) -> float:
        """Per-probe timeout in seconds for the candidate at index."""
        ms = self.probe_timeout_ms * profile.timeout_multiplier
        if index > self.late_candidate_index:
            ms += self.late_candidate_extra_ms
        return ms / 1000.0

    async def race_first_success(
        self,
        candidates: Sequence[CandidateLike],
        profile: NetworkProfile = PROFILES["fast"],
    ) -> str:
        """Return the URL of the first candidate that loads.

        Inputs:
            candidates: Ranked candidates (Candidate objects or URLs).
            profile: NetworkProfile giving wave size and timeout multiplier.

        Outputs:
            str: winning URL.

        Raises:
            AllCandidatesExhausted: every candidate failed or was skipped.
        """
        pending: Iterator[Tuple[int, CandidateLike]] = iter(enumerate(candidates))
        active: Dict[asyncio.Task, ProbeHandle] = {}
        order: Dict[asyncio.Task, int] = {}
        wave = max(1, profile.wave_size)
        last_reason: Optional[str] = None
        attempts = 0

        def refill() -> None:
            nonlocal last_reason
            while len(active) < wave:
                nxt = next(pending, None)
                if nxt is None:
                    return
                index, candidate = nxt
                url = _url(candidate)
                if self.engine.is_blocked(url):
                    self.engine.skip(url)
                    last_reason = last_reason or ProbeOutcome.SKIPPED.value
                    continue
                handle = self.engine.probe(url, self.timeout_for(index, profile))
                active[handle.result] = handle
                order[handle.result] = index

        try:
            refill()
            while active:
                done, _ = await asyncio.wait(
                    list(active), return_when=asyncio.FIRST_COMPLETED
                )
                winner: Optional[Tuple[int, str]] = None
                for task in done:
                    active.pop(task)
                    index = order.pop(task)
                    result = task.result()
                    if result.outcome is ProbeOutcome.SUCCESS:
                        if winner is None or index < winner[0]:
                            winner = (index, result.url)
                    elif result.outcome is ProbeOutcome.SKIPPED:
                        last_reason = last_reason or result.outcome.value
                    else:
                        attempts += 1
                        last_reason = result.outcome.value
                if winner is not None:
                    logger.debug(
                        "race won by %s (%d failed before it, profile %s)",
                        winner[1],
                        attempts,
                        profile.name,
                    )
                    return winner[1]
                refill()
        finally:
            for handle in active.values():
                handle.cancel()

        raise AllCandidatesExhausted(last_reason, attempts)
