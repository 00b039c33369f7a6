"""Typed configuration models for the detour resolver.

Brief:
  Every tunable the resolver reads is declared here with its default and
  bounds. Host label lists (seeds, prefix orders, roots and their families)
  are configuration data rather than algorithm: the defaults below are
  neutral and real deployments supply their own through YAML.
"""

from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

DEFAULT_IGNORE_PATTERNS = [
    "/rec?",
    "pubadx",
    "adform",
    "criteo",
    "doubleclick",
    "googlesyndication",
    "/ads/",
]


class RootSpec(BaseModel):
    """Brief: One alternate 'root.domain' label and the family it belongs to.

    Inputs:
      - label: 'root.domain', e.g. 'exampleroot.org'.
      - family: Family name; roots of other families are reached by bridging.

    Outputs:
      - RootSpec instance.
    """

    label: str
    family: str = Field(default="default")

    @field_validator("label")
    @classmethod
    def _check_label(cls, value: str) -> str:
        parts = str(value).strip().lower().split(".")
        if len(parts) < 2 or not all(parts):
            raise ValueError(f"root label must look like 'root.domain', got {value!r}")
        return ".".join(parts)


class HeuristicsConfig(BaseModel):
    """Brief: Candidate-generation data and per-tier quotas.

    Inputs:
      - seed_hosts: Host bases always tried first ('n05.exampleroot.org').
      - prefix_order: Preferred prefixes, best first.
      - number_order: Preferred server numbers, best first.
      - prefix_redirects: Prefix -> prefixes it usually redirects to.
      - roots: Alternate roots with family labels.
      - bridge_prefixes / bridge_numbers: How many of the top prefixes and
        numbers are paired on cross-family roots.
      - *_quota: Upper bound of candidates per tier.

    Outputs:
      - HeuristicsConfig instance.
    """

    seed_hosts: List[str] = Field(default_factory=list)
    prefix_order: List[str] = Field(
        default_factory=lambda: ["n", "s", "b", "d", "x", "t", "w", "m", "c", "u", "k"]
    )
    number_order: List[int] = Field(
        default_factory=lambda: [1, 0, 9, 2, 8, 7, 5, 4, 3, 10, 6, 11, 12, 15, 14, 13]
    )
    prefix_redirects: Dict[str, List[str]] = Field(
        default_factory=lambda: {"k": ["n", "x", "t"]}
    )
    roots: List[RootSpec] = Field(default_factory=list)
    top_prefixes: int = Field(default=4, ge=1)
    top_numbers: int = Field(default=6, ge=1)
    bridge_prefixes: int = Field(default=2, ge=1)
    bridge_numbers: int = Field(default=2, ge=1)
    root_limit: int = Field(default=10, ge=0)
    seed_quota: int = Field(default=6, ge=0)
    learned_quota: int = Field(default=8, ge=0)
    redirect_quota: int = Field(default=3, ge=0)
    prefix_swap_quota: int = Field(default=8, ge=0)
    number_swap_quota: int = Field(default=8, ge=0)
    combo_quota: int = Field(default=8, ge=0)
    root_quota: int = Field(default=12, ge=0)
    bridge_quota: int = Field(default=8, ge=0)
    path_key_segments: int = Field(default=3, ge=1)

    @field_validator("prefix_order")
    @classmethod
    def _lower_prefixes(cls, value: List[str]) -> List[str]:
        return [str(p).strip().lower() for p in value if str(p).strip()]


class ScoringConfig(BaseModel):
    """Brief: Host statistics decay and UCB scoring knobs."""

    decay_half_life_minutes: float = Field(default=60.0, gt=0)
    exploration: float = Field(default=0.5, ge=0)
    latency_base_ms: float = Field(default=800.0, gt=0)
    latency_weight: float = Field(default=0.3, gt=0, le=1)
    recent_success_window_minutes: float = Field(default=30.0, gt=0)
    recency_boost: float = Field(default=0.25, ge=0)


class BackoffConfig(BaseModel):
    """Brief: Negative-cache windows, in seconds, per failure kind."""

    timeout_seconds: float = Field(default=15.0, gt=0)
    error_seconds: float = Field(default=120.0, gt=0)
    max_seconds: float = Field(default=900.0, gt=0)
    maxsize: int = Field(default=4096, ge=1)


class PersistenceConfig(BaseModel):
    """Brief: Where and how the fix cache and host statistics are persisted.

    Inputs:
      - backend: 'memory', 'sqlite' or 'none'.
      - db_path: sqlite database file (sqlite backend only).
      - namespace: Key prefix inside the store.
      - flush_quiet_seconds: Quiet period before a dirty cache is written.
      - flush_max_delay_seconds: Upper bound on how long writes may be deferred.
    """

    backend: str = Field(default="memory")
    db_path: str = Field(default="./var/detour.db")
    namespace: str = Field(default="detour")
    flush_quiet_seconds: float = Field(default=2.0, ge=0)
    flush_max_delay_seconds: float = Field(default=30.0, ge=0)
    flush_check_interval_seconds: float = Field(default=1.0, gt=0)
    max_host_entries: int = Field(default=250, ge=1)
    max_reference_entries: int = Field(default=800, ge=1)
    max_learned_hosts: int = Field(default=50, ge=1)
    max_stats_entries: int = Field(default=500, ge=1)

    @field_validator("backend")
    @classmethod
    def _check_backend(cls, value: str) -> str:
        v = str(value or "memory").strip().lower()
        if v not in {"memory", "sqlite", "none"}:
            raise ValueError(f"unsupported persistence backend {value!r}")
        return v


class NetworkConfig(BaseModel):
    """Brief: Network-condition profile selection.

    Inputs:
      - profile: 'auto', 'fast', 'slow' or 'constrained'.
      - slow_latency_ms / constrained_latency_ms: 'auto' thresholds on the
        mean observed host latency.
    """

    profile: str = Field(default="auto")
    slow_latency_ms: float = Field(default=1500.0, gt=0)
    constrained_latency_ms: float = Field(default=3000.0, gt=0)
    late_candidate_index: int = Field(default=5, ge=0)
    late_candidate_extra_ms: int = Field(default=1000, ge=0)

    @field_validator("profile")
    @classmethod
    def _check_profile(cls, value: str) -> str:
        v = str(value or "auto").strip().lower()
        if v not in {"auto", "fast", "slow", "constrained"}:
            raise ValueError(f"unsupported network profile {value!r}")
        return v


class ResolverConfig(BaseModel):
    """Brief: Top-level resolver tunables supplied at construction.

    Inputs:
      - probe_timeout_ms: Per-probe timeout before profile scaling.
      - max_attempts: Candidate cap for one race (depth 0).
      - max_concurrent_probes: Global probe semaphore size.
      - max_retries: Deepened retries after an exhausted race.
      - watchdog_timeout_ms: Longest a resource may stay in 'probing'.

    Outputs:
      - ResolverConfig instance.

    Example:
      >>> cfg = ResolverConfig(max_attempts=10)
      >>> cfg.persistence.max_host_entries
      250
    """

    probe_timeout_ms: int = Field(default=5000, ge=1)
    max_attempts: int = Field(default=30, ge=1)
    max_concurrent_probes: int = Field(default=4, ge=1, le=64)
    max_server_num: int = Field(default=15, ge=0, le=999)
    retry_delay_ms: int = Field(default=1000, ge=0)
    max_retries: int = Field(default=1, ge=0)
    batch_size: int = Field(default=3, ge=1)
    watchdog_timeout_ms: int = Field(default=30000, ge=1)
    watchdog_interval_ms: int = Field(default=10000, ge=1)
    observe_timeout_ms: int = Field(default=5000, ge=1)
    min_content_size: int = Field(default=1, ge=0)
    report_interval_seconds: float = Field(default=60.0, gt=0)
    preemptive: bool = Field(default=True)
    ignore_patterns: List[str] = Field(default_factory=lambda: list(DEFAULT_IGNORE_PATTERNS))
    required_path_marker: Optional[str] = Field(default=None)
    heuristics: HeuristicsConfig = Field(default_factory=HeuristicsConfig)
    scoring: ScoringConfig = Field(default_factory=ScoringConfig)
    backoff: BackoffConfig = Field(default_factory=BackoffConfig)
    persistence: PersistenceConfig = Field(default_factory=PersistenceConfig)
    network: NetworkConfig = Field(default_factory=NetworkConfig)
    logging: Optional[Dict[str, object]] = Field(default=None)
