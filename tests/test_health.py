"""
Brief: Tests for detour.health.NegativeCache backoff windows.

Inputs:
  - None

Outputs:
  - None
"""

import pytest

from detour.address import HostAddress
from detour.health import NegativeCache

HOST = "k05.exampleroot.org"


def test_timeout_window_expires(clock):
    """
    Brief: A timeout blocks the host for the base window, then releases it.

    Inputs:
      - timeout_seconds=15

    Outputs:
      - None: Asserts blocked at 14.9s and free after 15s
    """
    neg = NegativeCache(timeout_seconds=15, clock=clock)
    assert neg.mark_failed(HOST, "timeout") == pytest.approx(15.0)
    assert neg.is_blocked(HOST)
    assert neg.is_blocked(HostAddress("k", 5, "exampleroot", "org"))
    clock.advance(14.9)
    assert neg.is_blocked(HOST)
    assert neg.remaining(HOST) == pytest.approx(0.1, abs=1e-3)
    clock.advance(0.2)
    assert not neg.is_blocked(HOST)
    assert neg.remaining(HOST) is None


def test_error_and_empty_use_error_base(clock):
    """
    Brief: Errors and placeholder loads start from the longer error window.

    Inputs:
      - error_seconds=120

    Outputs:
      - None: Asserts 120s windows
    """
    neg = NegativeCache(error_seconds=120, clock=clock)
    assert neg.mark_failed("a01.r.org", "error") == pytest.approx(120.0)
    assert neg.mark_failed("b01.r.org", "empty") == pytest.approx(120.0)
    assert len(neg) == 2


def test_consecutive_failures_double_up_to_cap(clock):
    """
    Brief: Each consecutive failure doubles the window until max_seconds.

    Inputs:
      - timeout_seconds=15, max_seconds=40

    Outputs:
      - None: Asserts 15, 30, 40, 40
    """
    neg = NegativeCache(timeout_seconds=15, error_seconds=20, max_seconds=40, clock=clock)
    delays = [neg.mark_failed(HOST, "timeout") for _ in range(4)]
    assert delays == [15.0, 30.0, 40.0, 40.0]


def test_success_resets_streak(clock):
    """
    Brief: mark_ok clears the window and the failure streak.

    Inputs:
      - two failures, one success, one failure

    Outputs:
      - None: Asserts the window is back to the base
    """
    neg = NegativeCache(timeout_seconds=15, clock=clock)
    neg.mark_failed(HOST, "timeout")
    neg.mark_failed(HOST, "timeout")
    neg.mark_ok(HOST)
    assert not neg.is_blocked(HOST)
    assert neg.mark_failed(HOST, "timeout") == pytest.approx(15.0)


def test_clear_forgets_everything(clock):
    """
    Brief: clear() empties windows and streaks.

    Inputs:
      - one blocked host

    Outputs:
      - None: Asserts empty cache
    """
    neg = NegativeCache(clock=clock)
    neg.mark_failed(HOST, "error")
    neg.clear()
    assert len(neg) == 0
    assert not neg.is_blocked(HOST)


def test_streak_outlives_window_then_is_forgotten(clock):
    """
    Brief: A host failing again after its window keeps doubling; a long quiet spell resets it.

    Inputs:
      - timeout_seconds=15, max_seconds=60

    Outputs:
      - None: Asserts 15, 30 after the first window, then 15 after 60s past the second
    """
    neg = NegativeCache(timeout_seconds=15, error_seconds=20, max_seconds=60, clock=clock)
    assert neg.mark_failed(HOST, "timeout") == pytest.approx(15.0)
    clock.advance(16)
    assert not neg.is_blocked(HOST)
    assert neg.mark_failed(HOST, "timeout") == pytest.approx(30.0)
    clock.advance(30 + 60 + 1)
    assert neg.mark_failed(HOST, "timeout") == pytest.approx(15.0)


def test_streaks_are_bounded_by_maxsize(clock):
    """
    Brief: Failure streaks are capped like the windows.

    Inputs:
      - maxsize=2 and three failing hosts

    Outputs:
      - None: Asserts at most two windows and two streaks tracked
    """
    neg = NegativeCache(maxsize=2, clock=clock)
    for host in ("a01.r.org", "b01.r.org", "c01.r.org"):
        neg.mark_failed(host, "error")
    assert len(neg) <= 2
    assert len(neg._streaks) <= 2
    assert neg.is_blocked("c01.r.org")
