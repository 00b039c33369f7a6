"""Configuration parsing helpers for detour.

Brief:
  Reads a YAML file, merges `variables` from the file with the process
  environment, expands `${VAR}` references and validates the result through
  :class:`~detour.config.config_schema.ResolverConfig`.

Inputs:
  - YAML config dicts and paths

Outputs:
  - Validated ResolverConfig instances
"""

from __future__ import annotations

import copy
import json
import os
import re
from typing import Any, Dict, Optional

import yaml

from .config_schema import ResolverConfig

_VAR_KEY_RE = re.compile(r"[A-Z_][A-Z0-9_]*")
_VAR_PATTERN = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)\}")


def _is_var_key(key: str) -> bool:
    """Brief: Validate whether a string is a supported variable key name.

    Inputs:
      - key: Candidate variable name.

    Outputs:
      - bool: True when the name is ALL_UPPERCASE and matches [A-Z_][A-Z0-9_]*.
    """

    if not key or key != key.upper():
        return False
    return bool(_VAR_KEY_RE.fullmatch(key))


def _parse_yaml_value(text: str) -> Any:
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError:
        return text


def parse_config_variables(
    cfg: Dict[str, Any],
    *,
    environ: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    """Brief: Merge config-file variables with the environment.

    Inputs:
      - cfg: Parsed YAML configuration mapping (not mutated).
      - environ: Optional environment mapping (defaults to os.environ).

    Outputs:
      - dict: Merged variables; environment values override file values but
        only for names already declared in the file's `variables` block.

    Notes:
      - Values coming from the environment are parsed as YAML so list/int/bool
        values can be provided.
    """

    base = cfg.get("variables")
    if base is None:
        merged: Dict[str, Any] = {}
    elif isinstance(base, dict):
        merged = dict(base)
    else:
        raise ValueError("config.variables must be a mapping when present")

    for k in list(merged):
        if not _is_var_key(str(k)):
            raise ValueError(
                "Invalid variable name %r (must be ALL_UPPERCASE and match [A-Z_][A-Z0-9_]*)"
                % k
            )

    env = os.environ if environ is None else environ
    for k in list(merged):
        if k in env:
            merged[k] = _parse_yaml_value(str(env[k]))
    return merged


def expand_variables(obj: Any, variables: Dict[str, Any]) -> Any:
    """Brief: Replace `${KEY}` references inside string values.

    Inputs:
      - obj: Parsed YAML node (dict/list/scalar).
      - variables: Mapping of variable name -> value.

    Outputs:
      - A new node. A string that is exactly `${KEY}` becomes the variable's
        value (any YAML type); embedded references are substituted as text.
        Unknown names are left untouched.

    Example:
      >>> expand_variables({"a": "${X}", "b": "p-${X}"}, {"X": 3})
      {'a': 3, 'b': 'p-3'}
    """

    if isinstance(obj, dict):
        return {k: expand_variables(v, variables) for k, v in obj.items()}
    if isinstance(obj, list):
        return [expand_variables(v, variables) for v in obj]
    if not isinstance(obj, str):
        return obj

    whole = _VAR_PATTERN.fullmatch(obj)
    if whole and whole.group(1) in variables:
        return copy.deepcopy(variables[whole.group(1)])

    def _repl(match: "re.Match[str]") -> str:
        name = match.group(1)
        if name not in variables:
            return match.group(0)
        v = variables[name]
        if isinstance(v, bool):
            return "true" if v else "false"
        if v is None:
            return "null"
        if isinstance(v, (int, float, str)):
            return str(v)
        return json.dumps(v)

    return _VAR_PATTERN.sub(_repl, obj)


def build_config(
    raw: Optional[Dict[str, Any]],
    *,
    environ: Optional[Dict[str, str]] = None,
) -> ResolverConfig:
    """Brief: Validate an already-parsed mapping into a ResolverConfig.

    Inputs:
      - raw: Mapping as read from YAML (may contain a `variables` block).
      - environ: Optional environment mapping for variable overrides.

    Outputs:
      - ResolverConfig.

    Raises:
      - ValueError: When the mapping is not valid.
    """

    if not isinstance(raw or {}, dict):
        raise ValueError("Configuration root must be a mapping")
    cfg = dict(raw or {})

    variables = parse_config_variables(cfg, environ=environ)
    cfg.pop("variables", None)
    expanded = expand_variables(cfg, variables)

    try:
        return ResolverConfig(**expanded)
    except Exception as exc:
        raise ValueError(f"Invalid resolver configuration: {exc}") from exc


def load_config(
    config_path: str,
    *,
    environ: Optional[Dict[str, str]] = None,
) -> ResolverConfig:
    """Brief: Read, variable-expand and validate a YAML config file.

    Inputs:
      - config_path: Path to the YAML configuration file.
      - environ: Optional environment mapping (defaults to os.environ).

    Outputs:
      - ResolverConfig.

    Raises:
      - ValueError: When the file content is not a mapping or fails validation.
      - OSError: When the file cannot be read.
    """

    with open(config_path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}

    if not isinstance(raw, dict):
        raise ValueError("Configuration root must be a mapping")
    return build_config(raw, environ=environ)
