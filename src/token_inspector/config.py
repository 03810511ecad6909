"""Runtime settings read from the environment.

Only the network fetch and the CLI logging level are configurable; every
other engine behavior is fixed.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass

ENV_FETCH_TIMEOUT = "TOKEN_INSPECTOR_FETCH_TIMEOUT"
ENV_JWKS_MAX_BYTES = "TOKEN_INSPECTOR_JWKS_MAX_BYTES"
ENV_LOG_LEVEL = "TOKEN_INSPECTOR_LOG_LEVEL"

DEFAULT_JWKS_MAX_BYTES = 512 * 1024
DEFAULT_LOG_LEVEL = "WARNING"

_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


class ConfigError(ValueError):
    """Raised when an environment setting cannot be parsed."""


@dataclass(frozen=True)
class Settings:
    # None leaves the socket default in place; the engine itself enforces no timeout.
    fetch_timeout: float | None = None
    jwks_max_bytes: int = DEFAULT_JWKS_MAX_BYTES
    log_level: str = DEFAULT_LOG_LEVEL

    @property
    def log_level_number(self) -> int:
        return int(getattr(logging, self.log_level))


def _parse_timeout(raw: str) -> float | None:
    text = raw.strip()
    if not text:
        return None
    try:
        value = float(text)
    except ValueError:
        raise ConfigError(f"{ENV_FETCH_TIMEOUT} must be a number of seconds") from None
    if value <= 0:
        raise ConfigError(f"{ENV_FETCH_TIMEOUT} must be positive")
    return value


def _parse_max_bytes(raw: str) -> int:
    try:
        value = int(raw.strip())
    except ValueError:
        raise ConfigError(f"{ENV_JWKS_MAX_BYTES} must be an integer") from None
    if value <= 0:
        raise ConfigError(f"{ENV_JWKS_MAX_BYTES} must be positive")
    return value


def _parse_log_level(raw: str) -> str:
    level = raw.strip().upper()
    if level not in _LOG_LEVELS:
        supported = ", ".join(sorted(_LOG_LEVELS))
        raise ConfigError(f"{ENV_LOG_LEVEL} must be one of: {supported}")
    return level


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    env = os.environ if environ is None else environ
    timeout = _parse_timeout(env.get(ENV_FETCH_TIMEOUT, ""))
    max_bytes = DEFAULT_JWKS_MAX_BYTES
    if env.get(ENV_JWKS_MAX_BYTES):
        max_bytes = _parse_max_bytes(env[ENV_JWKS_MAX_BYTES])
    log_level = DEFAULT_LOG_LEVEL
    if env.get(ENV_LOG_LEVEL):
        log_level = _parse_log_level(env[ENV_LOG_LEVEL])
    return Settings(fetch_timeout=timeout, jwks_max_bytes=max_bytes, log_level=log_level)
