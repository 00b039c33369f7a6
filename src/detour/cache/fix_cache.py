from __future__ import annotations

import logging
import math
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..address import (
    HostAddress,
    parse_host_base,
    path_key,
    to_host_base,
    try_parse,
)
from ..errors import ParseError

""" Two-level fix cache: broken host -> good host, broken reference -> fixed reference. """


logger = logging.getLogger(__name__)

CACHE_SCHEMA_VERSION = 3


@dataclass
class HostFix:
    good_host: HostAddress
    last_used: float


@dataclass
class ReferenceFix:
    fixed_reference: str
    last_used: float


@dataclass
class LoadReport:
    """Brief: Outcome of merging a persisted cache document.

    Inputs:
      - loaded: Entries accepted.
      - skipped: Entries rejected individually as malformed.
      - needs_resave: True when the document was written by another schema
        version (or partially corrupt) and should be rewritten.
    """

    loaded: int = 0
    skipped: int = 0
    needs_resave: bool = False


def prune(mapping: Dict[str, Any], max_entries: int) -> int:
    """Brief: Evict least recently used entries until mapping fits.

    Inputs:
      - mapping: dict whose values carry a ``last_used`` attribute.
      - max_entries: Size bound.

    Outputs:
      - int: Number of entries removed.

    Example:
      >>> m = {"a": HostFix(HostAddress("n", 1, "r", "org"), 1.0),
      ...      "b": HostFix(HostAddress("n", 2, "r", "org"), 2.0)}
      >>> prune(m, 1), list(m)
      (1, ['b'])
    """

    excess = len(mapping) - max(0, int(max_entries))
    if excess <= 0:
        return 0
    ordered = sorted(mapping.items(), key=lambda kv: kv[1].last_used)
    for key, _ in ordered[:excess]:
        del mapping[key]
    return excess


class FixCache:
    """In-memory two-level fix cache with bounded LRU maps.

    Brief:
      - Host level: bad host base -> good HostAddress. One mapping per bad
        host; a new fix overwrites the previous one.
      - Reference level: exact broken reference -> fixed reference. Lets an
        identical broken reference skip the search entirely next time.
      - Learned hosts: recency-ordered set of hosts observed serving content.

    Inputs (constructor):
      - max_host_entries / max_reference_entries / max_learned_hosts: bounds.
      - path_key_segments: Leading path segments shared by sibling content.
      - clock: Callable returning epoch seconds.
      - on_change: Optional callback invoked after every mutation (used to mark
        the persistence layer dirty).

    Outputs:
      - FixCache instance.

    Notes:
      Bounds are enforced on every insertion and again before every flush, so
      the maps never exceed their budget and always retain the most recently
      used entries.
    """

    def __init__(
        self,
        *,
        max_host_entries: int = 250,
        max_reference_entries: int = 800,
        max_learned_hosts: int = 50,
        path_key_segments: int = 3,
        clock: Callable[[], float] = time.time,
        on_change: Optional[Callable[[], None]] = None,
    ) -> None:
        self.max_host_entries = int(max_host_entries)
        self.max_reference_entries = int(max_reference_entries)
        self.max_learned_hosts = int(max_learned_hosts)
        self.path_key_segments = int(path_key_segments)
        self._clock = clock
        self.on_change = on_change
        self._hosts: Dict[str, HostFix] = {}
        self._references: Dict[str, ReferenceFix] = {}
        self._learned: "OrderedDict[str, HostAddress]" = OrderedDict()

    def _changed(self) -> None:
        if self.on_change is not None:
            self.on_change()

    # ------------------------------------------------------------------
    # Host level
    # ------------------------------------------------------------------
    def get_host_fix(self, bad_host_base: str) -> Optional[HostAddress]:
        """Brief: Good host previously confirmed for bad_host_base, if any."""
        entry = self._hosts.get(bad_host_base.lower())
        if entry is None:
            return None
        entry.last_used = self._clock()
        return entry.good_host

    def set_host_fix(self, bad_host_base: str, good_host: HostAddress) -> None:
        key = bad_host_base.lower()
        if key == to_host_base(good_host):
            return
        self._hosts[key] = HostFix(good_host=good_host, last_used=self._clock())
        prune(self._hosts, self.max_host_entries)
        self._changed()

    def drop_host_fix(self, bad_host_base: str) -> bool:
        removed = self._hosts.pop(bad_host_base.lower(), None) is not None
        if removed:
            self._changed()
        return removed

    # ------------------------------------------------------------------
    # Reference level
    # ------------------------------------------------------------------
    def get_reference_fix(self, reference: str) -> Optional[str]:
        entry = self._references.get(reference)
        if entry is None:
            return None
        entry.last_used = self._clock()
        return entry.fixed_reference

    def set_reference_fix(self, reference: str, fixed_reference: str) -> None:
        if reference == fixed_reference:
            return
        self._references[reference] = ReferenceFix(
            fixed_reference=fixed_reference, last_used=self._clock()
        )
        prune(self._references, self.max_reference_entries)
        self._changed()

    def drop_reference_fix(self, reference: str) -> bool:
        removed = self._references.pop(reference, None) is not None
        if removed:
            self._changed()
        return removed

    def find_path_fix(self, path: str, segments: Optional[int] = None) -> Optional[HostAddress]:
        """Brief: Host that most recently fixed content under the same path key.

        Inputs:
          - path: Path of the reference being resolved.
          - segments: Leading path segments forming the key (cache default when None).

        Outputs:
          - HostAddress of the most recently used matching fix, or None.
        """

        if segments is None:
            segments = self.path_key_segments
        wanted = path_key(path, segments)
        best: Optional[Tuple[float, HostAddress]] = None
        for original, entry in self._references.items():
            parsed_original = try_parse(original)
            if parsed_original is None:
                continue
            if path_key(parsed_original.path, segments) != wanted:
                continue
            fixed = try_parse(entry.fixed_reference)
            if fixed is None:
                continue
            if best is None or entry.last_used > best[0]:
                best = (entry.last_used, fixed.address)
        return best[1] if best else None

    # ------------------------------------------------------------------
    # Learned good hosts
    # ------------------------------------------------------------------
    def learn_good_host(self, host: HostAddress) -> bool:
        """Brief: Remember host as generally good; returns True when new."""
        key = to_host_base(host)
        is_new = key not in self._learned
        self._learned[key] = host
        self._learned.move_to_end(key)
        while len(self._learned) > self.max_learned_hosts:
            self._learned.popitem(last=False)
        self._changed()
        return is_new

    def learned_hosts(self) -> List[HostAddress]:
        """Brief: Learned hosts, most recently confirmed first."""
        return list(reversed(self._learned.values()))

    # ------------------------------------------------------------------
    # Sizes, pruning and documents
    # ------------------------------------------------------------------
    @property
    def host_entries(self) -> Dict[str, HostFix]:
        return dict(self._hosts)

    @property
    def reference_entries(self) -> Dict[str, ReferenceFix]:
        return dict(self._references)

    def prune_all(self) -> int:
        return prune(self._hosts, self.max_host_entries) + prune(
            self._references, self.max_reference_entries
        )

    def to_document(self) -> Dict[str, Any]:
        """Brief: Versioned JSON-ready document; prunes first."""
        self.prune_all()
        return {
            "version": CACHE_SCHEMA_VERSION,
            "savedAt": self._clock(),
            "hosts": {
                bad: {"host": to_host_base(e.good_host), "lastUsed": e.last_used}
                for bad, e in self._hosts.items()
            },
            "urls": {
                bad: {"fixedUrl": e.fixed_reference, "lastUsed": e.last_used}
                for bad, e in self._references.items()
            },
            "learned": [to_host_base(h) for h in self._learned.values()],
        }

    def load_document(self, doc: Any) -> LoadReport:
        """Brief: Merge a persisted document, skipping bad entries one by one.

        Inputs:
          - doc: Decoded JSON value.

        Outputs:
          - LoadReport. A document from another schema version is loaded as far
            as its entries are recognizable and flagged for re-save.
        """

        report = LoadReport()
        if not isinstance(doc, dict):
            report.needs_resave = doc is not None
            return report
        if doc.get("version") != CACHE_SCHEMA_VERSION:
            report.needs_resave = True

        hosts = doc.get("hosts")
        if isinstance(hosts, dict):
            for bad, raw in hosts.items():
                try:
                    good = parse_host_base(raw["host"])
                    last_used = float(raw.get("lastUsed", 0.0))
                    if not isinstance(bad, str) or not bad or not math.isfinite(last_used):
                        raise ValueError("bad key or timestamp")
                except (ParseError, KeyError, TypeError, ValueError, AttributeError):
                    report.skipped += 1
                    continue
                self._hosts[bad.lower()] = HostFix(good_host=good, last_used=last_used)
                report.loaded += 1

        urls = doc.get("urls")
        if isinstance(urls, dict):
            for bad, raw in urls.items():
                try:
                    fixed = raw["fixedUrl"]
                    last_used = float(raw.get("lastUsed", 0.0))
                    if not isinstance(bad, str) or try_parse(fixed) is None:
                        raise ValueError("unparseable reference")
                    if not math.isfinite(last_used):
                        raise ValueError("bad timestamp")
                except (KeyError, TypeError, ValueError, AttributeError):
                    report.skipped += 1
                    continue
                self._references[bad] = ReferenceFix(fixed_reference=fixed, last_used=last_used)
                report.loaded += 1

        learned = doc.get("learned")
        if isinstance(learned, list):
            for raw in learned:
                try:
                    host = parse_host_base(raw)
                except ParseError:
                    report.skipped += 1
                    continue
                self._learned[to_host_base(host)] = host
                report.loaded += 1
            while len(self._learned) > self.max_learned_hosts:
                self._learned.popitem(last=False)

        self.prune_all()
        if report.skipped:
            report.needs_resave = True
        return report
