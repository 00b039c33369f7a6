"""Ranked candidate hosts for a broken reference.

Brief:
  Candidates come from four tiers, each with its own quota:

  1. configured seed hosts
  2. learned good hosts (plus their prefix/number on the broken root)
  3. cache hits for this exact reference and for sibling paths
  4. heuristic mutations of the broken address: prefix redirects, prefix
     and number swaps, same-root combinations, alternate roots of the same
     family and cross-family bridging

  The merged list is deduplicated by URL, ranked by host score and capped.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Set, Tuple

from .address import (
    HostAddress,
    ParsedReference,
    parse_host_base,
    to_host_base,
    try_parse,
)
from .cache.fix_cache import FixCache
from .config.config_schema import HeuristicsConfig
from .errors import ParseError
from .health import NegativeCache
from .stats import HostStatsStore

logger = logging.getLogger(__name__)

TIER_SEED = 1
TIER_LEARNED = 2
TIER_CACHE = 3
TIER_MUTATION = 4


@dataclass(frozen=True)
class Candidate:
    """One candidate reference.

    Inputs:
      - url: Full reference to probe.
      - host: HostAddress serving it.
      - tier: Tier that produced it (1 = seeds ... 4 = mutations).
      - score: Host score at generation time.
      - seq: Discovery order, the final tie-breaker.
      - source: Short label of the heuristic that produced it (for logging).
    """

    url: str
    host: HostAddress
    tier: int
    score: float
    seq: int
    source: str = ""

    @property
    def host_base(self) -> str:
        return to_host_base(self.host)


class _Collector:
    """Accumulates unique candidates until the overall cap is reached."""

    def __init__(
        self,
        ref: ParsedReference,
        cap: int,
        skip: Set[str],
        negative: NegativeCache,
    ) -> None:
        self.ref = ref
        self.cap = cap
        self.skip = skip
        self.negative = negative
        self.seen: Set[str] = set()
        self.items: List[Tuple[HostAddress, int, int, str]] = []
        self.skipped = 0

    @property
    def full(self) -> bool:
        return len(self.items) >= self.cap

    def add(self, host: HostAddress, tier: int, source: str) -> bool:
        if self.full:
            return False
        base = to_host_base(host)
        if base in self.skip:
            return False
        url = self.ref.with_host(host)
        if url in self.seen:
            return False
        if self.negative.is_blocked(base):
            self.skipped += 1
            return False
        self.seen.add(url)
        self.items.append((host, tier, len(self.items), source))
        return True

    def add_many(
        self, hosts: Iterable[HostAddress], tier: int, source: str, quota: int
    ) -> int:
        added = 0
        for host in hosts:
            if added >= quota or self.full:
                break
            if self.add(host, tier, source):
                added += 1
        return added


class CandidateGenerator:
    """Produce ranked, unique candidate references for a broken reference.

    Inputs (constructor):
        heuristics: HeuristicsConfig with seed lists, orders and quotas.
        cache: FixCache consulted for host, reference and path fixes.
        stats: HostStatsStore used for ranking.
        negative: NegativeCache whose blocked hosts are skipped.
        max_attempts: Candidate cap for a depth-0 search.
        max_server_num: Highest server number a mutation may produce.

    Outputs:
        CandidateGenerator instance.

    Example:
        >>> from detour.address import parse
        >>> from detour.config.config_schema import HeuristicsConfig
        >>> gen = CandidateGenerator(HeuristicsConfig(), FixCache(),
        ...                          HostStatsStore(), NegativeCache())
        >>> urls = [c.url for c in gen.generate(parse("https://k05.exampleroot.org/p/1"))]
        >>> "https://n05.exampleroot.org/p/1" in urls
        True
    """

    def __init__(
        self,
        heuristics: HeuristicsConfig,
        cache: FixCache,
        stats: HostStatsStore,
        negative: NegativeCache,
        *,
        max_attempts: int = 30,
        max_server_num: int = 15,
    ) -> None:
        self.heuristics = heuristics
        self.cache = cache
        self.stats = stats
        self.negative = negative
        self.max_attempts = max(1, int(max_attempts))
        self.max_server_num = int(max_server_num)
        self._seeds = self._parse_seeds(heuristics.seed_hosts)

    @staticmethod
    def _parse_seeds(seed_hosts: Iterable[str]) -> List[HostAddress]:
        seeds: List[HostAddress] = []
        for raw in seed_hosts:
            try:
                seeds.append(parse_host_base(raw))
            except ParseError:
                logger.warning("ignoring unparseable seed host %r", raw)
        return seeds

    # ------------------------------------------------------------------
    # Root families
    # ------------------------------------------------------------------
    def _family_of(self, root_label: str) -> Optional[str]:
        for entry in self.heuristics.roots:
            if entry.label == root_label:
                return entry.family
        return None

    def _roots(self, addr: HostAddress) -> Tuple[List[Tuple[str, str]], List[Tuple[str, str]]]:
        """Split configured roots into (same family, other families)."""
        family = self._family_of(addr.root_label)
        same: List[Tuple[str, str]] = []
        other: List[Tuple[str, str]] = []
        for entry in self.heuristics.roots[: self.heuristics.root_limit]:
            if entry.label == addr.root_label:
                continue
            root, _, domain = entry.label.rpartition(".")
            if family is None or entry.family == family:
                same.append((root, domain))
            else:
                other.append((root, domain))
        return same, other

    # ------------------------------------------------------------------
    # Tier 4 mutations
    # ------------------------------------------------------------------
    def _valid_number(self, number: int) -> bool:
        return 0 <= int(number) <= self.max_server_num

    def _redirects(self, addr: HostAddress) -> Iterable[HostAddress]:
        for prefix in self.heuristics.prefix_redirects.get(addr.prefix, []):
            yield addr.with_prefix(prefix)

    def _prefix_swaps(self, addr: HostAddress) -> Iterable[HostAddress]:
        for prefix in self.heuristics.prefix_order:
            if prefix != addr.prefix:
                yield addr.with_prefix(prefix)

    def _number_swaps(self, addr: HostAddress) -> Iterable[HostAddress]:
        for number in self.heuristics.number_order:
            if number != addr.number and self._valid_number(number):
                yield addr.with_number(number)

    def _combos(self, addr: HostAddress) -> Iterable[HostAddress]:
        prefixes = self.heuristics.prefix_order[: self.heuristics.top_prefixes]
        numbers = [
            n for n in self.heuristics.number_order if self._valid_number(n)
        ][: self.heuristics.top_numbers]
        for prefix, number in itertools.product(prefixes, numbers):
            yield HostAddress(prefix, number, addr.root, addr.domain)

    def _same_family(self, addr: HostAddress, roots: List[Tuple[str, str]]) -> Iterable[HostAddress]:
        for root, domain in roots:
            yield addr.with_root(root, domain)

    def _bridges(self, roots: List[Tuple[str, str]]) -> Iterable[HostAddress]:
        prefixes = self.heuristics.prefix_order[: self.heuristics.bridge_prefixes]
        numbers = [
            n for n in self.heuristics.number_order if self._valid_number(n)
        ][: self.heuristics.bridge_numbers]
        for root, domain in roots:
            for prefix, number in itertools.product(prefixes, numbers):
                yield HostAddress(prefix, number, root, domain)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def host_cache_candidate(
        self, ref: ParsedReference, exclude: Iterable[str] = ()
    ) -> Optional[HostAddress]:
        """Good host recorded for ref's broken host, when usable right now."""
        good = self.cache.get_host_fix(ref.host_base)
        if good is None:
            return None
        base = to_host_base(good)
        if base in set(exclude) or good == ref.address or self.negative.is_blocked(base):
            return None
        return good

    def generate(
        self,
        ref: ParsedReference,
        *,
        depth: int = 0,
        exclude: Iterable[str] = (),
        use_host_cache: bool = True,
    ) -> List[Candidate]:
        """Build the ranked candidate list for ref.

        Inputs:
            ref: ParsedReference of the broken reference.
            depth: 0 for a first search; each retry deepens by one, which
                multiplies the cap and every tier quota.
            exclude: Host bases that must not be proposed.
            use_host_cache: When True and depth is 0, a usable host-level
                cache entry short-circuits the search to that single host.

        Outputs:
            List[Candidate]: unique by URL, sorted by (-score, tier, seq),
            at most max_attempts * (1 + depth) long.
        """
        depth = max(0, int(depth))
        exclude_set = {str(h).lower() for h in exclude}

        if use_host_cache and depth == 0:
            good = self.host_cache_candidate(ref, exclude_set)
            if good is not None:
                score = self.stats.score(good)
                logger.debug("host cache hit %s -> %s", ref.host_base, to_host_base(good))
                return [
                    Candidate(
                        url=ref.with_host(good),
                        host=good,
                        tier=TIER_CACHE,
                        score=score,
                        seq=0,
                        source="host-cache",
                    )
                ]

        scale = 1 + depth
        h = self.heuristics
        addr = ref.address
        cap = self.max_attempts * scale
        skip = set(exclude_set)
        skip.add(ref.host_base)
        out = _Collector(ref, cap, skip, self.negative)

        # Tier 1: seeds.
        out.add_many(self._seeds, TIER_SEED, "seed", h.seed_quota * scale)

        # Tier 2: learned hosts, and their prefix/number on the broken root.
        learned: List[HostAddress] = []
        for host in self.cache.learned_hosts():
            if host == addr:
                continue
            learned.append(host)
            if host.root_label != addr.root_label:
                learned.append(host.with_root(addr.root, addr.domain))
        out.add_many(learned, TIER_LEARNED, "learned", h.learned_quota * scale)

        # Tier 3: cache hits for this reference and its siblings.
        cached: List[HostAddress] = []
        fixed = try_parse(self.cache.get_reference_fix(str(ref)))
        if fixed is not None:
            cached.append(fixed.address)
        path_host = self.cache.find_path_fix(ref.path, h.path_key_segments)
        if path_host is not None:
            cached.append(path_host)
        host_fix = self.cache.get_host_fix(ref.host_base)
        if host_fix is not None:
            cached.append(host_fix)
        out.add_many(cached, TIER_CACHE, "cache", len(cached))

        # Tier 4: mutations of the broken address.
        same_roots, other_roots = self._roots(addr)
        for source, hosts, quota in (
            ("redirect", self._redirects(addr), h.redirect_quota),
            ("prefix-swap", self._prefix_swaps(addr), h.prefix_swap_quota),
            ("number-swap", self._number_swaps(addr), h.number_swap_quota),
            ("combo", self._combos(addr), h.combo_quota),
            ("root", self._same_family(addr, same_roots), h.root_quota),
            ("bridge", self._bridges(other_roots), h.bridge_quota),
        ):
            if out.full:
                break
            out.add_many(hosts, TIER_MUTATION, source, quota * scale)

        total = self.stats.total_tries()
        ranked = sorted(
            (
                Candidate(
                    url=ref.with_host(host),
                    host=host,
                    tier=tier,
                    score=self.stats.score(host, total),
                    seq=seq,
                    source=source,
                )
                for host, tier, seq, source in out.items
            ),
            key=lambda c: (-c.score, c.tier, c.seq),
        )[:cap]

        logger.debug(
            "%d candidates for %s (depth %d, %d backed off): %s",
            len(ranked),
            ref.host_base,
            depth,
            out.skipped,
            ", ".join(c.host_base for c in ranked),
        )
        return ranked
