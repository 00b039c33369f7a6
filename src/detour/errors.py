"""Exception types raised and handled inside the resolution engine.

Brief:
  Probe-level failures (ProbeTimeout, ProbeError, ProbeEmpty) are recorded
  locally and drive the next scheduling decision; they never escape the race
  scheduler. AllCandidatesExhausted is the per-attempt terminal failure the
  orchestrator turns into a retry or the `failed` state.
"""

from __future__ import annotations

from typing import Optional


class DetourError(Exception):
    """Brief: Base class for every error defined by detour."""


class ParseError(DetourError, ValueError):
    """
    Brief: Reference does not match scheme://prefixNN.root.domain/path.

    Inputs:
    - reference: The offending reference string

    Outputs:
    - Exception instance
    """

    def __init__(self, reference: str, reason: str = "unrecognized reference") -> None:
        super().__init__(f"{reason}: {reference!r}")
        self.reference = reference
        self.reason = reason


class ProbeFailure(DetourError):
    """Brief: A single candidate probe did not produce a usable load."""

    reason = "error"


class ProbeTimeout(ProbeFailure):
    reason = "timeout"


class ProbeError(ProbeFailure):
    reason = "error"


class ProbeEmpty(ProbeFailure):
    """Brief: The resource loaded but looks like a placeholder (too small)."""

    reason = "empty"


class AllCandidatesExhausted(DetourError):
    """
    Brief: Every candidate of one race failed or was skipped.

    Inputs:
    - last_reason: Outcome name of the last failed probe ('timeout', 'error',
      'empty', 'skipped') or None when there were no candidates at all
    - attempts: Number of network probes actually issued

    Outputs:
    - Exception instance
    """

    def __init__(self, last_reason: Optional[str] = None, attempts: int = 0) -> None:
        super().__init__(
            f"all candidates exhausted after {attempts} probes "
            f"(last reason: {last_reason or 'none'})"
        )
        self.last_reason = last_reason
        self.attempts = attempts


class CacheLoadCorruption(DetourError):
    """Brief: A persisted document could not be decoded at all."""


class PersistenceError(DetourError):
    """Brief: The key/value store rejected a read or write."""
