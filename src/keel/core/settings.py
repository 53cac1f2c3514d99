"""Environment-driven defaults for keel-core.

Runtime objects never read the environment themselves: a
``CircuitBreaker`` or ``RetryPolicy`` takes explicit arguments. Services
that want their defaults from the environment build them through
``get_settings()``::

    settings = get_settings()
    policy = RetryPolicy.from_settings(settings)
    registry = CircuitBreakerRegistry(default_config=BreakerConfig.from_settings(settings))

Every field can be set with a ``KEEL_`` environment variable or a
``.env`` file, e.g. ``KEEL_FAILURE_THRESHOLD=3``.

Fields
──────
failure_threshold : consecutive failures that open a circuit
open_timeout      : seconds a circuit stays OPEN before a probe
max_attempts      : attempts per invocation, first one included
base_delay        : delay before the second attempt, seconds
max_delay         : cap on any single backoff delay, seconds
multiplier        : exponential growth factor between delays
jitter_fraction   : +/- fraction of random spread on each delay
context_budget    : default budget for context assembly, budget units
chars_per_token   : character estimator ratio
log_level         : structlog log level
log_format        : json | console
"""

from __future__ import annotations

from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class KeelSettings(BaseSettings):
    """Validated keel-core configuration (env prefix ``KEEL_``)."""

    model_config = SettingsConfigDict(
        env_prefix="KEEL_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Circuit breaker ──────────────────────────────────────────
    failure_threshold: int = Field(default=5, ge=1)
    open_timeout: float = Field(default=60.0, ge=0)

    # ── Retry ────────────────────────────────────────────────────
    max_attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=4.0, ge=0)
    max_delay: float = Field(default=10.0, ge=0)
    multiplier: float = Field(default=2.0, gt=1)
    jitter_fraction: float = Field(default=0.1, ge=0, lt=1)

    # ── Context assembly ─────────────────────────────────────────
    context_budget: float = Field(default=8000, ge=0)
    chars_per_token: float = Field(default=4.0, gt=0)

    # ── Observability ────────────────────────────────────────────
    log_level: str = Field(default="INFO")
    log_format: Literal["json", "console"] = Field(default="console")

    @model_validator(mode="after")
    def _check_delays(self) -> KeelSettings:
        if self.base_delay > self.max_delay:
            raise ValueError(
                f"base_delay ({self.base_delay}) must not exceed max_delay ({self.max_delay})"
            )
        return self


# ── Settings factory with caching ────────────────────────────────────────

_settings_cache: dict[str, KeelSettings] = {}


def get_settings(*, env_file: str | None = None, _force_reload: bool = False) -> KeelSettings:
    """Load, validate, and cache a :class:`KeelSettings` instance.

    Parameters
    ----------
    env_file:
        Explicit ``.env`` path. Defaults to ``.env`` in the working directory.
    _force_reload:
        Bypass cache and reload.
    """
    cache_key = env_file or ""
    if not _force_reload and cache_key in _settings_cache:
        return _settings_cache[cache_key]

    if env_file:
        settings = KeelSettings(_env_file=env_file)  # type: ignore[call-arg]
    else:
        settings = KeelSettings()

    _settings_cache[cache_key] = settings
    return settings


def clear_settings_cache() -> None:
    """Clear the settings cache (primarily for testing)."""
    _settings_cache.clear()


__all__ = ["KeelSettings", "get_settings", "clear_settings_cache"]
