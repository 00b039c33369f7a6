"""
Brief: Tests for detour.stats host statistics, counters and reporter.

Inputs:
  - None

Outputs:
  - None
"""

import json

import pytest

from detour.address import HostAddress
from detour.stats import (
    STATS_SCHEMA_VERSION,
    HostStatsStore,
    ResolverCounters,
    StatsReporter,
    format_counters_json,
)

N05 = "n05.exampleroot.org"
X05 = "x05.exampleroot.org"


def test_record_counts_success_and_failure(clock):
    """
    Brief: record() increments the right counter and stamps timestamps.

    Inputs:
      - one success and one failure for the same host

    Outputs:
      - None: Asserts counters and last_success_at
    """
    store = HostStatsStore(clock=clock)
    store.record(N05, True, 120.0)
    store.record(N05, False)
    stat = store.get(N05)
    assert stat.successes == pytest.approx(1.0)
    assert stat.failures == pytest.approx(1.0)
    assert stat.last_success_at == clock.now
    assert stat.tries == pytest.approx(2.0)
    assert N05 in store
    assert HostAddress("n", 5, "exampleroot", "org") in store


def test_counters_decay_with_half_life(clock):
    """
    Brief: Counters halve after one half-life.

    Inputs:
      - half_life_minutes=60, clock advanced by one hour

    Outputs:
      - None: Asserts halved successes on read and on next record
    """
    store = HostStatsStore(half_life_minutes=60, clock=clock)
    store.record(N05, True)
    store.record(N05, True)
    clock.advance(3600)
    assert store.get(N05).successes == pytest.approx(1.0)
    store.record(N05, False)
    stat = store.get(N05)
    assert stat.successes == pytest.approx(1.0)
    assert stat.failures == pytest.approx(1.0)


def test_latency_moving_average(clock):
    """
    Brief: The first sample seeds the average; later samples weigh 0.3.

    Inputs:
      - samples 100ms then 200ms

    Outputs:
      - None: Asserts 100 then 130
    """
    store = HostStatsStore(latency_weight=0.3, clock=clock)
    store.record(N05, True, 100.0)
    assert store.get(N05).avg_latency_ms == pytest.approx(100.0)
    store.record(N05, True, 200.0)
    assert store.get(N05).avg_latency_ms == pytest.approx(130.0)
    assert store.mean_latency_ms() == pytest.approx(130.0)


def test_unknown_host_scores_half_without_history(clock):
    """
    Brief: A never-probed host scores the Laplace prior 0.5 with no tries anywhere.

    Inputs:
      - empty store

    Outputs:
      - None: Asserts 0.5
    """
    store = HostStatsStore(clock=clock)
    assert store.score(N05) == pytest.approx(0.5)
    assert store.mean_latency_ms() is None


def test_score_monotonic_in_success_rate(clock):
    """
    Brief: With latency and recency equal, a better success rate scores higher.

    Inputs:
      - host A 3/4 successes, host B 1/4 successes, same clock

    Outputs:
      - None: Asserts score(A) > score(B)
    """
    store = HostStatsStore(clock=clock)
    for ok in (True, True, True, False):
        store.record(N05, ok)
    for ok in (True, False, False, False):
        store.record(X05, ok)
    total = store.total_tries()
    assert total == pytest.approx(8.0)
    assert store.score(N05, total) > store.score(X05, total)


def test_score_penalizes_latency(clock):
    """
    Brief: Equal outcomes, higher latency ranks lower.

    Inputs:
      - N05 at 100ms, X05 at 2000ms

    Outputs:
      - None: Asserts N05 scores higher
    """
    store = HostStatsStore(clock=clock)
    store.record(N05, True, 100.0)
    store.record(X05, True, 2000.0)
    assert store.score(N05) > store.score(X05)


def test_recency_boost_fades(clock):
    """
    Brief: A fresh success carries a boost that is gone after the window.

    Inputs:
      - recent_window_minutes=30, clock advanced 31 minutes

    Outputs:
      - None: Asserts score decreases past the window
    """
    store = HostStatsStore(recent_window_minutes=30, half_life_minutes=10_000, clock=clock)
    store.record(N05, True)
    fresh = store.score(N05)
    clock.advance(31 * 60)
    assert store.score(N05) < fresh


def test_prune_drops_least_recently_updated(clock):
    """
    Brief: prune() keeps the most recently updated records.

    Inputs:
      - three hosts recorded one second apart, max_entries=2

    Outputs:
      - None: Asserts oldest removed
    """
    store = HostStatsStore(clock=clock)
    for host in ("a01.r.org", "b01.r.org", "c01.r.org"):
        store.record(host, True)
        clock.advance(1)
    assert store.prune(2) == 1
    assert "a01.r.org" not in store
    assert len(store) == 2


def test_document_round_trip_skips_malformed_entries(clock):
    """
    Brief: load_document accepts good entries and skips bad ones individually.

    Inputs:
      - exported document plus one malformed entry

    Outputs:
      - None: Asserts loaded/skipped counts and values
    """
    store = HostStatsStore(clock=clock)
    store.record(N05, True, 150.0)
    doc = store.to_document()
    assert doc["version"] == STATS_SCHEMA_VERSION
    assert doc["stats"][N05]["avgLatencyMs"] == pytest.approx(150.0)

    doc["stats"]["bad01.r.org"] = {"successes": "many"}
    fresh = HostStatsStore(clock=clock)
    loaded, skipped = fresh.load_document(json.loads(json.dumps(doc)))
    assert (loaded, skipped) == (1, 1)
    assert fresh.get(N05).successes == pytest.approx(1.0)
    assert fresh.load_document("nonsense") == (0, 0)


def test_on_change_callback_fires(clock):
    """
    Brief: Every record() notifies the change callback.

    Inputs:
      - on_change counter

    Outputs:
      - None: Asserts two notifications
    """
    calls = []
    store = HostStatsStore(clock=clock, on_change=lambda: calls.append(1))
    store.record(N05, True)
    store.record(N05, False)
    assert len(calls) == 2


def test_counters_bump_and_json_line():
    """
    Brief: ResolverCounters.bump and format_counters_json produce one JSON line.

    Inputs:
      - a few bumps

    Outputs:
      - None: Asserts values in decoded JSON
    """
    counters = ResolverCounters()
    counters.bump("probes_made", 3)
    counters.bump("successes")
    payload = json.loads(format_counters_json(counters, 12.34))
    assert payload["probes_made"] == 3
    assert payload["successes"] == 1
    assert payload["uptime_seconds"] == 12.3


def test_reporter_emit_returns_line(clock):
    """
    Brief: StatsReporter.emit logs and returns the counters line.

    Inputs:
      - reporter with info level

    Outputs:
      - None: Asserts uptime reflects clock
    """
    counters = ResolverCounters()
    counters.bump("retries")
    reporter = StatsReporter(counters, interval_seconds=5, log_level="info", clock=clock)
    clock.advance(10)
    payload = json.loads(reporter.emit())
    assert payload["retries"] == 1
    assert payload["uptime_seconds"] == 10.0
