"""Configuration models and parser for ralph.yaml."""

from ralph.config.models import (
    DEFAULT_MODEL,
    BackoffConfig,
    RalphConfig,
    SessionConfig,
)
from ralph.config.parser import ConfigError, load_config

__all__ = [
    "DEFAULT_MODEL",
    "BackoffConfig",
    "ConfigError",
    "RalphConfig",
    "SessionConfig",
    "load_config",
]
