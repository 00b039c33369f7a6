"""detour: find working hosts for broken resource references."""

from .address import HostAddress, ParsedReference, parse, to_full_reference, to_host_base
from .config import ResolverConfig, init_logging, load_config
from .errors import (
    AllCandidatesExhausted,
    CacheLoadCorruption,
    DetourError,
    ParseError,
    PersistenceError,
    ProbeEmpty,
    ProbeError,
    ProbeFailure,
    ProbeTimeout,
)
from .interfaces import LoadResult, Loader, Mutator, PersistenceStore, Resource
from .orchestrator import ResolutionState
from .resolver import Resolver

__version__ = "0.1.0"

__all__ = [
    "AllCandidatesExhausted",
    "CacheLoadCorruption",
    "DetourError",
    "HostAddress",
    "LoadResult",
    "Loader",
    "Mutator",
    "ParseError",
    "ParsedReference",
    "PersistenceError",
    "PersistenceStore",
    "ProbeEmpty",
    "ProbeError",
    "ProbeFailure",
    "ProbeTimeout",
    "ResolutionState",
    "Resolver",
    "ResolverConfig",
    "Resource",
    "init_logging",
    "load_config",
    "parse",
    "to_full_reference",
    "to_host_base",
]
