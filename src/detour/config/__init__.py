"""Configuration models, YAML loading and logging setup."""

from .config_parser import build_config, load_config
from .config_schema import (
    BackoffConfig,
    HeuristicsConfig,
    NetworkConfig,
    PersistenceConfig,
    ResolverConfig,
    RootSpec,
    ScoringConfig,
)
from .logging_config import init_logging

__all__ = [
    "BackoffConfig",
    "HeuristicsConfig",
    "NetworkConfig",
    "PersistenceConfig",
    "ResolverConfig",
    "RootSpec",
    "ScoringConfig",
    "build_config",
    "init_logging",
    "load_config",
]
