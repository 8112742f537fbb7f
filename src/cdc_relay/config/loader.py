"""Relay config loading: YAML files, ``${VAR}`` expansion and validation."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from cdc_relay.config.defaults import build_relay_config
from cdc_relay.config.models import RelayConfig

CONFIG_ENV_VAR = "CDC_RELAY_CONFIG"

# ${NAME} or ${NAME:-fallback}; a "}" inside the fallback is escaped as "\}".
_PLACEHOLDER = re.compile(
    r"\$\{(?P<name>[^}:]+)(?::-(?P<fallback>(?:[^}\\]|\\.)*))?\}"
)


def _expand(text: str) -> str:
    def lookup(match: re.Match[str]) -> str:
        name = match["name"]
        if name in os.environ:
            return os.environ[name]
        fallback = match["fallback"]
        if fallback is None:
            msg = f"Environment variable '{name}' is not set and no default provided"
            raise ValueError(msg)
        return fallback.replace("\\}", "}")

    return _PLACEHOLDER.sub(lookup, text)


def resolve_env_vars(data: Any) -> Any:
    """Expand placeholders in every string of a parsed YAML document."""
    if isinstance(data, str):
        return _expand(data)
    if isinstance(data, dict):
        return {key: resolve_env_vars(value) for key, value in data.items()}
    if isinstance(data, list):
        return [resolve_env_vars(item) for item in data]
    return data


def load_yaml(path: str | Path) -> dict[str, Any]:
    """Parse *path* as a YAML mapping with placeholders expanded.

    An empty file yields ``{}``.  Syntax errors become ``ValueError`` with
    the line and column when PyYAML reports one.
    """
    source = Path(path)
    if not source.is_file():
        msg = f"Config file not found: {source}"
        raise FileNotFoundError(msg)

    try:
        document = yaml.safe_load(source.read_text())
    except yaml.YAMLError as exc:
        mark = getattr(exc, "problem_mark", None)
        where = f" at line {mark.line + 1}, column {mark.column + 1}" if mark else ""
        msg = f"Failed to parse YAML in {source}{where}: {exc}"
        raise ValueError(msg) from exc

    if document is None:
        return {}
    if not isinstance(document, dict):
        kind = type(document).__name__
        msg = f"Expected a YAML mapping at top level in {source}, got {kind}"
        raise TypeError(msg)
    return resolve_env_vars(document)


def load_relay_config(path: str | Path | None = None) -> RelayConfig:
    """Build a ``RelayConfig`` from the built-in defaults and an optional file.

    When *path* is None the file named by ``CDC_RELAY_CONFIG`` is used, if set.
    """
    if path is None and os.environ.get(CONFIG_ENV_VAR):
        path = os.environ[CONFIG_ENV_VAR]
    overrides = {} if path is None else load_yaml(path)
    try:
        return build_relay_config(overrides)
    except ValidationError as exc:
        origin = path if path is not None else "built-in defaults"
        msg = f"Invalid relay config ({origin}):\n{exc}"
        raise ValueError(msg) from exc
