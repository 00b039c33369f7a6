"""Negative cache: hosts that recently failed, with exponential backoff.

Brief:
  A lazy, traffic-driven health mechanism. A failing host is kept out of
  candidate generation and probing until its backoff window expires, after
  which it is allowed back in automatically. Windows start short for
  timeouts and long for hard errors, and double with each consecutive
  failure up to a cap. A success clears the host.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional, Tuple, Union

from cachetools import TLRUCache

from .address import HostAddress, to_host_base

logger = logging.getLogger(__name__)

FAILURE_TIMEOUT = "timeout"
FAILURE_ERROR = "error"
FAILURE_EMPTY = "empty"


def _down_until(_key: str, until: float, _now: float) -> float:
    return until


def _streak_until(_key: str, value: Tuple[int, float], _now: float) -> float:
    return value[1]


class NegativeCache:
    """Per-host backoff windows keyed by host base.

    Inputs (constructor):
      - timeout_seconds: Base window after a timeout.
      - error_seconds: Base window after an error or an empty/placeholder load.
      - max_seconds: Cap for the doubled window.
      - maxsize: Most hosts tracked at once (oldest expiring first).
        Streaks are bounded the same way and forgotten max_seconds after
        their window ends.
      - clock: Callable returning seconds; shared with the cache timer.

    Outputs:
      - NegativeCache instance.

    Example:
      >>> now = [0.0]
      >>> neg = NegativeCache(clock=lambda: now[0])
      >>> neg.mark_failed("k05.exampleroot.org", "timeout")
      15.0
      >>> neg.is_blocked("k05.exampleroot.org")
      True
      >>> now[0] = 15.0
      >>> neg.is_blocked("k05.exampleroot.org")
      False
    """

    def __init__(
        self,
        *,
        timeout_seconds: float = 15.0,
        error_seconds: float = 120.0,
        max_seconds: float = 900.0,
        maxsize: int = 4096,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.timeout_seconds = float(timeout_seconds)
        self.error_seconds = float(error_seconds)
        self.max_seconds = max(float(max_seconds), self.timeout_seconds, self.error_seconds)
        self._clock = clock
        self._windows: TLRUCache = TLRUCache(maxsize=int(maxsize), ttu=_down_until, timer=clock)
        # host base -> (consecutive failures, forget at)
        self._streaks: TLRUCache = TLRUCache(
            maxsize=int(maxsize), ttu=_streak_until, timer=clock
        )

    @staticmethod
    def _key(host: Union[HostAddress, str]) -> str:
        if isinstance(host, HostAddress):
            return to_host_base(host)
        return str(host).strip().lower()

    def base_delay(self, reason: str) -> float:
        if reason == FAILURE_TIMEOUT:
            return self.timeout_seconds
        return self.error_seconds

    def mark_failed(self, host: Union[HostAddress, str], reason: str) -> float:
        """Put host into its backoff window.

        Inputs:
          - host: HostAddress or host base.
          - reason: 'timeout', 'error' or 'empty'.

        Outputs:
          - float: Window length in seconds.
        """
        key = self._key(host)
        streak = self._streaks.get(key, (0, 0.0))[0] + 1
        delay = min(self.base_delay(reason) * (2 ** (streak - 1)), self.max_seconds)
        until = self._clock() + delay
        self._windows[key] = until
        self._streaks[key] = (streak, until + self.max_seconds)
        logger.debug("host %s backed off for %.1fs (%s, streak %d)", key, delay, reason, streak)
        return delay

    def mark_ok(self, host: Union[HostAddress, str]) -> None:
        key = self._key(host)
        self._streaks.pop(key, None)
        self._windows.pop(key, None)

    def is_blocked(self, host: Union[HostAddress, str]) -> bool:
        return self._key(host) in self._windows

    def remaining(self, host: Union[HostAddress, str]) -> Optional[float]:
        """Seconds left in host's window, or None when it is not blocked."""
        until = self._windows.get(self._key(host))
        if until is None:
            return None
        return max(0.0, until - self._clock())

    def __len__(self) -> int:
        self._windows.expire()
        return len(self._windows)

    def clear(self) -> None:
        self._windows.clear()
        self._streaks.clear()
