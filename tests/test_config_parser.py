"""Brief: Unit tests for detour.config.config_parser helpers.

Inputs:
  - None

Outputs:
  - None
"""

from __future__ import annotations

import os
from typing import Any, Dict

import pytest
from fakes import FakeMutator

from detour.cache.backends import MemoryStore
from detour.config import config_parser as cp
from detour.config.config_schema import ResolverConfig
from detour.resolver import Resolver

EXAMPLE = os.path.join(
    os.path.dirname(os.path.abspath(__file__)), os.pardir, "assets", "detour.example.yaml"
)


def test_is_var_key_empty_and_uppercase() -> None:
    """Brief: _is_var_key rejects empty and lowercase names.

    Inputs:
      - None.

    Outputs:
      - None; asserts behaviour for empty and valid keys.
    """

    assert cp._is_var_key("") is False
    assert cp._is_var_key("DETOUR_DB") is True
    assert cp._is_var_key("detour_db") is False


def test_parse_config_variables_non_mapping_raises() -> None:
    """Brief: parse_config_variables rejects a non-mapping variables block.

    Inputs:
      - None.

    Outputs:
      - None; asserts ValueError.
    """

    with pytest.raises(ValueError, match="config.variables must be a mapping"):
        cp.parse_config_variables({"variables": [1, 2, 3]})


def test_parse_config_variables_bad_name_raises() -> None:
    """Brief: Variable names must be ALL_UPPERCASE identifiers."""

    with pytest.raises(ValueError, match="Invalid variable name"):
        cp.parse_config_variables({"variables": {"lower": 1}})


def test_parse_config_variables_env_overrides_declared_only() -> None:
    """Brief: Environment values override declared variables and are YAML-parsed.

    Inputs:
      - None.

    Outputs:
      - None; asserts LIMIT becomes an int and undeclared names are ignored.
    """

    cfg: Dict[str, Any] = {"variables": {"LIMIT": 5}}
    merged = cp.parse_config_variables(cfg, environ={"LIMIT": "12", "OTHER": "x"})
    assert merged == {"LIMIT": 12}


def test_expand_variables_whole_and_embedded() -> None:
    """Brief: Whole-string references keep their type, embedded ones become text."""

    out = cp.expand_variables(
        {"a": "${N}", "b": ["p-${N}", "${MISSING}"], "c": "${FLAG}"},
        {"N": 3, "FLAG": True},
    )
    assert out == {"a": 3, "b": ["p-3", "${MISSING}"], "c": True}


def test_load_example_config_with_env_override() -> None:
    """Brief: The shipped example config loads and honours env overrides.

    Inputs:
      - None.

    Outputs:
      - None; asserts expanded db path and parsed heuristics.
    """

    cfg = cp.load_config(EXAMPLE, environ={"DETOUR_DB": "/tmp/other.db"})
    assert cfg.persistence.backend == "sqlite"
    assert cfg.persistence.db_path == "/tmp/other.db"
    assert cfg.heuristics.seed_hosts == ["n05.exampleroot.org"]
    assert cfg.heuristics.prefix_redirects == {"k": ["n", "x", "t"]}
    assert [r.family for r in cfg.heuristics.roots] == ["primary", "primary", "secondary"]
    assert cfg.logging == {"level": "info", "stderr": True}


def test_build_config_rejects_invalid_values() -> None:
    """Brief: Out-of-range values and unknown enums surface as ValueError."""

    with pytest.raises(ValueError, match="Invalid resolver configuration"):
        cp.build_config({"max_attempts": 0})
    with pytest.raises(ValueError, match="Invalid resolver configuration"):
        cp.build_config({"persistence": {"backend": "redis"}})
    with pytest.raises(ValueError, match="Invalid resolver configuration"):
        cp.build_config({"heuristics": {"roots": [{"label": "nodot"}]}})


def test_build_config_non_mapping_root() -> None:
    """Brief: A YAML document that is not a mapping is rejected."""

    with pytest.raises(ValueError, match="must be a mapping"):
        cp.build_config(["not", "a", "mapping"])  # type: ignore[arg-type]
    assert isinstance(cp.build_config(None), ResolverConfig)


def test_load_config_non_mapping_file(tmp_path) -> None:
    """Brief: load_config rejects a file whose root is a list."""

    path = tmp_path / "bad.yaml"
    path.write_text("- 1\n- 2\n", encoding="utf-8")
    with pytest.raises(ValueError, match="must be a mapping"):
        cp.load_config(str(path))


def test_resolver_from_yaml(tmp_path) -> None:
    """Brief: Resolver.from_yaml builds a resolver from a config file.

    Inputs:
      - tmp_path: pytest temporary directory.

    Outputs:
      - None; asserts config values reach the components.
    """

    path = tmp_path / "detour.yaml"
    path.write_text(
        "variables:\n"
        "  ATTEMPTS: 7\n"
        "max_attempts: ${ATTEMPTS}\n"
        "max_concurrent_probes: 2\n"
        "persistence:\n"
        "  backend: none\n",
        encoding="utf-8",
    )
    resolver = Resolver.from_yaml(
        str(path), environ={"ATTEMPTS": "9"}, mutator=FakeMutator(), loader=object()
    )
    assert resolver.config.max_attempts == 9
    assert resolver.generator.max_attempts == 9
    assert resolver.engine.max_concurrent == 2
    assert resolver.store is None
    assert resolver.persistence.degraded is True

    explicit = Resolver(ResolverConfig(), mutator=FakeMutator(), loader=object(), store=MemoryStore())
    assert explicit.persistence.degraded is False
