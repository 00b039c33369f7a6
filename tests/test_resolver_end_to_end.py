"""
Brief: End-to-end resolver sessions sharing one persistent store.

Inputs:
  - None

Outputs:
  - None
"""

import asyncio
import json

import pytest
from fakes import FakeLoader, FakeMutator

from detour import ResolutionState, Resource, Resolver
from detour.address import to_host_base
from detour.cache.backends import MemoryStore
from detour.config.config_schema import HeuristicsConfig, ResolverConfig
from detour.orchestrator import FIX_RACE, FIX_REFERENCE_CACHE

K05 = "https://k05.exampleroot.org"


def _config(**kw):
    return ResolverConfig(
        retry_delay_ms=0,
        probe_timeout_ms=200,
        observe_timeout_ms=200,
        heuristics=HeuristicsConfig(seed_hosts=["n05.exampleroot.org"]),
        **kw,
    )


def test_fix_survives_restart_through_store():
    """
    Brief: A fix found in one session is reused by the next session.

    Inputs:
      - session 1 resolves k05/p/1 to the seed n05
      - session 2 resolves the same reference and a sibling

    Outputs:
      - None: Asserts persisted documents, a reference-cache hit and a
        single host-cache probe in session 2
    """
    store = MemoryStore()
    loader1 = FakeLoader(good=["n05.exampleroot.org"])
    mutator = FakeMutator(good=["n05.exampleroot.org"])

    async def session1():
        async with Resolver(_config(), loader=loader1, mutator=mutator, store=store) as r:
            state = await r.resolve(Resource("r1", f"{K05}/p/1"))
            await r.drain()
            return r, state

    r1, state = asyncio.run(session1())
    assert state is ResolutionState.DONE
    assert r1.orchestrator.get("r1").fixed_by == FIX_RACE
    assert loader1.calls[0] == "https://n05.exampleroot.org/p/1"
    assert r1.persistence.flushes >= 1

    doc = json.loads(store.get("detour:cache"))
    assert doc["hosts"]["k05.exampleroot.org"]["host"] == "n05.exampleroot.org"
    assert doc["urls"][f"{K05}/p/1"]["fixedUrl"] == "https://n05.exampleroot.org/p/1"
    assert "n05.exampleroot.org" in doc["learned"]
    stats_doc = json.loads(store.get("detour:stats"))["stats"]
    assert stats_doc["n05.exampleroot.org"]["successes"] == pytest.approx(1.0)
    assert stats_doc["n05.exampleroot.org"]["failures"] == pytest.approx(0.0)
    assert r1.stats.get("n05.exampleroot.org").successes == pytest.approx(1.0, rel=1e-3)

    loader2 = FakeLoader(good=["n05.exampleroot.org"])
    same = Resource("again", f"{K05}/p/1")
    sibling = Resource("sibling", f"{K05}/p/2")

    async def session2():
        async with Resolver(
            _config(preemptive=False), loader=loader2, mutator=mutator, store=store
        ) as r:
            states = [await r.resolve(same), await r.resolve(sibling)]
            await r.drain()
            return r, states

    r2, states = asyncio.run(session2())
    assert states == [ResolutionState.DONE, ResolutionState.DONE]
    assert r2.orchestrator.get("again").fixed_by == FIX_REFERENCE_CACHE
    assert sibling.reference == "https://n05.exampleroot.org/p/2"
    assert loader2.calls == ["https://n05.exampleroot.org/p/2"]
    assert r2.counters.host_cache_hits == 1
    assert to_host_base(r2.cache.get_host_fix("k05.exampleroot.org")) == "n05.exampleroot.org"


def test_stale_host_fix_is_dropped_and_search_continues():
    """
    Brief: A persisted host fix that no longer works is dropped; the retry searches wider.

    Inputs:
      - store holds k05 -> n05, but only x05 serves now

    Outputs:
      - None: Asserts DONE on x05 and the host fix replaced
    """
    store = MemoryStore()
    store.set(
        "detour:cache",
        json.dumps(
            {
                "version": 3,
                "savedAt": 0,
                "hosts": {"k05.exampleroot.org": {"host": "n05.exampleroot.org", "lastUsed": 1.0}},
                "urls": {},
                "learned": [],
            }
        ),
    )
    loader = FakeLoader(good=["x05.exampleroot.org"])
    mutator = FakeMutator(good=["x05.exampleroot.org"])
    resource = Resource("r1", f"{K05}/p/1")

    async def main():
        async with Resolver(
            _config(preemptive=False), loader=loader, mutator=mutator, store=store
        ) as r:
            state = await r.resolve(resource)
            await r.drain()
            return r, state

    r, state = asyncio.run(main())
    assert state is ResolutionState.DONE
    assert resource.reference == "https://x05.exampleroot.org/p/1"
    assert loader.calls[0] == "https://n05.exampleroot.org/p/1"
    assert to_host_base(r.cache.get_host_fix("k05.exampleroot.org")) == "x05.exampleroot.org"
    assert r.counters.retries == 1
