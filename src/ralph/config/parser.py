"""Load, validate, and resolve ralph.yaml configuration."""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import ValidationError

from ralph.config.models import RalphConfig
from ralph.errors import RalphError

DEFAULT_CONFIG_NAME = "ralph.yaml"

#: Environment variables that override config file values.
ENV_OVERRIDES = {
    "RALPH_MODEL": "model",
    "RALPH_ADAPTER": "adapter",
    "RALPH_PLAN": "plan",
    "RALPH_SERVER": "server",
    "RALPH_AGENT": "agent",
}


class ConfigError(RalphError):
    """User-facing configuration error."""


def load_config(
    path: Path | None = None,
    overrides: Mapping[str, Any] | None = None,
    cwd: Path | None = None,
) -> RalphConfig:
    """Load and validate ralph configuration.

    Precedence, lowest first: ralph.yaml, ``RALPH_*`` environment
    variables (a sibling ``.env`` is loaded first), then *overrides*
    (``None`` values are ignored).

    Args:
        path: Explicit config file path.  If None, ralph.yaml in *cwd*
              is used when present, otherwise defaults apply.
        overrides: Values from the command line.
        cwd: Directory searched for ralph.yaml and .env.

    Raises:
        ConfigError: On a missing explicit file, bad YAML, or validation failure.
    """
    base_dir = cwd or Path.cwd()
    config_path = _resolve_path(path, base_dir)
    raw = _read_yaml(config_path) if config_path is not None else {}
    _load_env(config_path.parent if config_path is not None else base_dir)
    _apply_env(raw)
    if overrides:
        raw.update({k: v for k, v in overrides.items() if v is not None})
    return _validate(raw)


def _resolve_path(path: Path | None, base_dir: Path) -> Path | None:
    if path is not None:
        resolved = Path(path)
        if not resolved.is_file():
            msg = f"Config file not found: {resolved}"
            raise ConfigError(msg)
        return resolved

    default = base_dir / DEFAULT_CONFIG_NAME
    return default if default.is_file() else None


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        msg = f"Cannot read config file: {exc}"
        raise ConfigError(msg) from exc

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        detail = ""
        if hasattr(exc, "problem_mark") and exc.problem_mark is not None:
            mark = exc.problem_mark
            detail = f" (line {mark.line + 1}, column {mark.column + 1})"
        msg = f"Invalid YAML in {path.name}{detail}"
        raise ConfigError(msg) from exc

    if data is None:
        return {}
    if not isinstance(data, dict):
        msg = f"Expected a YAML mapping in {path.name}, got {type(data).__name__}"
        raise ConfigError(msg)

    return data


def _load_env(config_dir: Path) -> None:
    env_path = config_dir / ".env"
    if env_path.is_file():
        load_dotenv(env_path)


def _apply_env(raw: dict[str, Any]) -> None:
    for var, field in ENV_OVERRIDES.items():
        value = os.environ.get(var)
        if value:
            raw[field] = value


def _validate(raw: dict[str, Any]) -> RalphConfig:
    try:
        return RalphConfig.model_validate(raw)
    except ValidationError as exc:
        parts: list[str] = []
        for err in exc.errors():
            loc = " → ".join(str(s) for s in err["loc"]) or "config"
            msg = err["msg"]
            if "field required" in msg.lower():
                msg = "This field is required"
            elif "input should be" in msg.lower():
                msg = f"Invalid value: {msg}"
            elif "extra inputs are not permitted" in msg.lower():
                msg = "Unknown setting"
            parts.append(f"  {loc}: {msg}")
        joined = "\n".join(parts)
        msg = f"Config validation failed:\n{joined}"
        raise ConfigError(msg) from exc
