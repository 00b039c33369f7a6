"""
Brief: Tests for detour.race wave scheduling, cancellation and profiles.

Inputs:
  - None

Outputs:
  - None
"""

import asyncio

import pytest
from fakes import FakeLoader

from detour.config.config_schema import NetworkConfig
from detour.errors import AllCandidatesExhausted
from detour.health import NegativeCache
from detour.probe import ProbeEngine
from detour.race import PROFILES, NetworkProfile, RaceScheduler, select_profile
from detour.stats import HostStatsStore

A = "https://a05.exampleroot.org/p/1"
B = "https://b05.exampleroot.org/p/1"
C = "https://c05.exampleroot.org/p/1"


def _scheduler(loader, clock, **kw):
    engine = ProbeEngine(loader, HostStatsStore(clock=clock), NegativeCache(clock=clock))
    return RaceScheduler(engine, **kw)


def test_wave_of_one_stops_after_first_success(clock):
    """
    Brief: With one probe in flight, a later candidate never starts once one wins.

    Inputs:
      - A errors, B loads, C loads

    Outputs:
      - None: Asserts B wins and C is never requested
    """
    loader = FakeLoader(good=["b05.exampleroot.org", "c05.exampleroot.org"])
    profile = NetworkProfile("single", wave_size=1, timeout_multiplier=1.0)

    async def main():
        sched = _scheduler(loader, clock)
        return await sched.race_first_success([A, B, C], profile)

    assert asyncio.run(main()) == B
    assert loader.calls == [A, B]


def test_winner_cancels_remaining_probes(clock):
    """
    Brief: Probes still running when a candidate wins are cancelled.

    Inputs:
      - wave of 3; A errors, B loads after 20ms, C hangs

    Outputs:
      - None: Asserts B wins and C's load was cancelled
    """
    loader = FakeLoader(
        good=["b05.exampleroot.org"],
        behaviors={"c05.exampleroot.org": "hang"},
        delays={"b05.exampleroot.org": 0.02},
    )

    async def main():
        sched = _scheduler(loader, clock)
        url = await sched.race_first_success([A, B, C], PROFILES["fast"])
        await asyncio.sleep(0.01)
        return url

    assert asyncio.run(main()) == B
    assert loader.cancelled == [C]


def test_exhaustion_reports_last_reason_and_attempts(clock):
    """
    Brief: When every candidate fails the race raises with a summary.

    Inputs:
      - three erroring candidates

    Outputs:
      - None: Asserts last_reason 'error' and three attempts
    """
    loader = FakeLoader()

    async def main():
        sched = _scheduler(loader, clock)
        await sched.race_first_success([A, B, C], PROFILES["fast"])

    with pytest.raises(AllCandidatesExhausted) as info:
        asyncio.run(main())
    assert info.value.last_reason == "error"
    assert info.value.attempts == 3


def test_empty_candidate_list_is_exhausted_immediately(clock):
    """
    Brief: No candidates means no probes and an empty summary.

    Inputs:
      - []

    Outputs:
      - None: Asserts last_reason None and zero attempts
    """
    loader = FakeLoader()

    async def main():
        await _scheduler(loader, clock).race_first_success([])

    with pytest.raises(AllCandidatesExhausted) as info:
        asyncio.run(main())
    assert info.value.last_reason is None
    assert info.value.attempts == 0
    assert loader.calls == []


def test_backed_off_candidates_are_skipped(clock):
    """
    Brief: A candidate on a backed-off host costs no network attempt.

    Inputs:
      - A's host in backoff, B loads

    Outputs:
      - None: Asserts only B was loaded and one skip counted
    """
    loader = FakeLoader(good=["a05.exampleroot.org", "b05.exampleroot.org"])

    async def main():
        sched = _scheduler(loader, clock)
        sched.engine.negative.mark_failed("a05.exampleroot.org", "timeout")
        return sched, await sched.race_first_success([A, B])

    sched, url = asyncio.run(main())
    assert url == B
    assert loader.calls == [B]
    assert sched.engine.counters.probes_skipped == 1


def test_all_skipped_reports_skipped(clock):
    """
    Brief: A race whose every candidate is backed off is exhausted as skipped.

    Inputs:
      - A in backoff

    Outputs:
      - None: Asserts last_reason 'skipped' with no attempts
    """
    loader = FakeLoader(good=["a05.exampleroot.org"])

    async def main():
        sched = _scheduler(loader, clock)
        sched.engine.negative.mark_failed("a05.exampleroot.org", "error")
        await sched.race_first_success([A])

    with pytest.raises(AllCandidatesExhausted) as info:
        asyncio.run(main())
    assert info.value.last_reason == "skipped"
    assert info.value.attempts == 0


def test_timeout_for_scales_by_profile_and_index(clock):
    """
    Brief: Per-probe timeouts follow the profile multiplier and late allowance.

    Inputs:
      - base 1000ms, late index 5, extra 1000ms

    Outputs:
      - None: Asserts computed seconds
    """

    async def main():
        return _scheduler(
            FakeLoader(),
            clock,
            probe_timeout_ms=1000,
            late_candidate_index=5,
            late_candidate_extra_ms=1000,
        )

    sched = asyncio.run(main())
    assert sched.timeout_for(0, PROFILES["fast"]) == pytest.approx(1.0)
    assert sched.timeout_for(5, PROFILES["constrained"]) == pytest.approx(2.0)
    assert sched.timeout_for(6, PROFILES["slow"]) == pytest.approx(2.5)


def test_select_profile_fixed_and_auto(clock):
    """
    Brief: Profiles are either fixed by configuration or derived from latency.

    Inputs:
      - NetworkConfig variants and a HostStatsStore

    Outputs:
      - None: Asserts the selected profile names
    """
    assert select_profile(NetworkConfig(profile="slow")).name == "slow"
    assert select_profile(NetworkConfig()).name == "fast"

    stats = HostStatsStore(clock=clock)
    stats.record("n05.exampleroot.org", True, 200.0)
    assert select_profile(NetworkConfig(), stats).name == "fast"

    slow = HostStatsStore(clock=clock)
    slow.record("n05.exampleroot.org", True, 2000.0)
    assert select_profile(NetworkConfig(), slow).name == "slow"

    bad = HostStatsStore(clock=clock)
    bad.record("n05.exampleroot.org", True, 4000.0)
    assert select_profile(NetworkConfig(), bad).name == "constrained"
