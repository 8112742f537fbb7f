"""Built-in relay defaults and the deep merge applied to user config."""

from __future__ import annotations

import copy
from pathlib import Path
from typing import Any

import yaml

from cdc_relay.config.models import RelayConfig

DEFAULTS_DIR = Path(__file__).parent / "defaults"


def load_defaults(name: str = "relay") -> dict[str, Any]:
    """Raw (unexpanded) contents of ``defaults/<name>.yaml``."""
    path = DEFAULTS_DIR / f"{name}.yaml"
    if not path.is_file():
        msg = f"Defaults file '{name}' not found at {path}"
        raise FileNotFoundError(msg)
    return yaml.safe_load(path.read_text()) or {}


def merge_configs(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    """Deep-merge *overrides* over *base* without mutating either.

    Mappings merge key by key.  Anything else, lists included, is replaced
    wholesale, so a user ``tables:`` entry replaces the built-in table set.
    """
    merged = copy.deepcopy(base)
    for key, value in overrides.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = merge_configs(current, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def build_relay_config(
    overrides: dict[str, Any],
    *,
    defaults: str = "relay",
) -> RelayConfig:
    """Validate *overrides* merged over the expanded built-in defaults."""
    from cdc_relay.config.loader import resolve_env_vars

    base = resolve_env_vars(load_defaults(defaults))
    return RelayConfig.model_validate(merge_configs(base, overrides))
