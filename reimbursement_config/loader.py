"""
Configuration Loader (``reimbursement_config.loader``).

Responsibility
--------------
Reads YAML files and ``REIMBURSEMENT_*`` environment variables and parses
the merged mapping into a frozen ``Settings``.

Precedence (lowest to highest)
------------------------------
1. ``defaults.yaml`` shipped inside this package.
2. The YAML file passed explicitly, or named by ``REIMBURSEMENT_CONFIG``.
3. ``REIMBURSEMENT_<FIELD>`` environment variables
   (e.g. ``REIMBURSEMENT_DATABASE_URL``).

Failure modes
-------------
* Missing override file -> ``FileNotFoundError`` propagates.
* Malformed YAML -> ``yaml.YAMLError`` propagates.
* Unknown keys, wrong types or invalid values -> ``ValueError``.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import fields
from pathlib import Path
from typing import Any

import yaml

from reimbursement_config.schema import Settings

DEFAULTS_PATH = Path(__file__).parent / "defaults.yaml"
CONFIG_PATH_ENV = "REIMBURSEMENT_CONFIG"
ENV_PREFIX = "REIMBURSEMENT_"

_BOOL_TRUE = {"1", "true", "yes", "on"}
_BOOL_FALSE = {"0", "false", "no", "off"}


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ValueError: if the top level is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping, got {type(data).__name__}")
    return data


def _field_types() -> dict[str, type]:
    # Field annotations are strings under postponed evaluation
    mapping = {"str": str, "int": int, "bool": bool}
    return {f.name: mapping[str(f.type)] for f in fields(Settings)}


def _coerce(name: str, value: Any, target: type) -> Any:
    if target is bool:
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _BOOL_TRUE:
            return True
        if text in _BOOL_FALSE:
            return False
        raise ValueError(f"{name}: expected a boolean, got {value!r}")
    if target is int:
        if isinstance(value, bool):
            raise ValueError(f"{name}: expected an integer, got {value!r}")
        try:
            return int(str(value).strip())
        except ValueError:
            raise ValueError(f"{name}: expected an integer, got {value!r}") from None
    if value is None:
        raise ValueError(f"{name}: must not be empty")
    return str(value)


def env_overrides(environ: Mapping[str, str]) -> dict[str, str]:
    """Collect ``REIMBURSEMENT_<FIELD>`` variables for known fields."""
    known = {f.name for f in fields(Settings)}
    overrides = {}
    for key, value in environ.items():
        if not key.startswith(ENV_PREFIX) or key == CONFIG_PATH_ENV:
            continue
        name = key[len(ENV_PREFIX):].lower()
        if name in known:
            overrides[name] = value
    return overrides


def parse_settings(data: Mapping[str, Any]) -> Settings:
    """
    Build ``Settings`` from a flat mapping.

    Raises:
        ValueError: unknown key or invalid value.
    """
    types = _field_types()
    unknown = sorted(set(data) - set(types))
    if unknown:
        raise ValueError(f"Unknown configuration keys: {', '.join(unknown)}")
    values = {name: _coerce(name, raw, types[name]) for name, raw in data.items()}
    if "default_currency" in values:
        values["default_currency"] = values["default_currency"].upper()
    if "log_level" in values:
        values["log_level"] = values["log_level"].upper()
    return Settings(**values)


def load_settings(
    path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """Merge defaults, the optional override file and the environment."""
    env = os.environ if environ is None else environ
    merged: dict[str, Any] = dict(load_yaml_file(DEFAULTS_PATH))

    override_path = path if path is not None else env.get(CONFIG_PATH_ENV)
    if override_path:
        merged.update(load_yaml_file(Path(override_path)))

    merged.update(env_overrides(env))
    return parse_settings(merged)
