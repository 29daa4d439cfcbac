from __future__ import annotations

from collections.abc import Sequence

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from resilience_core.circuit_breaker import (
    BreakerListener,
    BreakerRegistry,
    CircuitBreakerConfig,
    normalize_dependency_name,
)
from resilience_core.logging import get_log_level_value

_HOUR = 60.0 * 60.0
_DAY = 24.0 * _HOUR


def prefixed_settings_config(prefix: str) -> SettingsConfigDict:
    """Build standard Pydantic settings config for prefixed environments."""
    return SettingsConfigDict(
        env_prefix=prefix,
        case_sensitive=False,
        env_nested_delimiter="__",
    )


class BreakerSettings(BaseModel):
    """Environment-facing mirror of ``CircuitBreakerConfig``."""

    failure_threshold: int = Field(default=5, ge=1)
    recovery_timeout_seconds: float = Field(default=60.0, ge=0)
    success_threshold: int = Field(default=2, ge=1)
    monitoring_period_seconds: float = Field(default=10.0, gt=0)

    def to_config(self) -> CircuitBreakerConfig:
        return CircuitBreakerConfig(
            failure_threshold=self.failure_threshold,
            recovery_timeout=self.recovery_timeout_seconds,
            success_threshold=self.success_threshold,
            monitoring_period=self.monitoring_period_seconds,
        )


def _default_breakers() -> dict[str, BreakerSettings]:
    return {
        "serper": BreakerSettings(failure_threshold=5, recovery_timeout_seconds=60.0),
        "firecrawl": BreakerSettings(
            failure_threshold=3, recovery_timeout_seconds=120.0
        ),
        "openai": BreakerSettings(failure_threshold=5, recovery_timeout_seconds=30.0),
    }


def _default_cache_ttls() -> dict[str, float]:
    return {
        "serper": _DAY,
        "firecrawl": 7 * _DAY,
        "openai": _HOUR,
    }


class ResilienceSettings(BaseSettings):
    """Settings for the dependency resilience layer.

    Read from ``RESILIENCE_*`` environment variables. Mapping fields accept
    JSON, for example ``RESILIENCE_BREAKERS='{"serper": {"failure_threshold": 3}}'``.
    """

    model_config = prefixed_settings_config("RESILIENCE_")

    log_level: str = "INFO"
    monitor_interval_seconds: float = 10.0
    default_breaker: BreakerSettings = Field(default_factory=BreakerSettings)
    breakers: dict[str, BreakerSettings] = Field(default_factory=_default_breakers)
    default_cache_ttl_seconds: float = _HOUR
    cache_ttl_seconds: dict[str, float] = Field(default_factory=_default_cache_ttls)

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: object) -> object:
        if not isinstance(value, str):
            return value
        normalized = value.strip().upper()
        get_log_level_value(normalized)
        return normalized

    @field_validator("breakers", "cache_ttl_seconds", mode="before")
    @classmethod
    def _normalize_dependency_keys(cls, value: object) -> object:
        if not isinstance(value, dict):
            return value
        normalized: dict[str, object] = {}
        for key, item in value.items():
            name = normalize_dependency_name(str(key))
            if not name:
                raise ValueError("dependency names must be non-empty")
            normalized[name] = item
        return normalized

    @model_validator(mode="after")
    def _validate_resilience_settings(self) -> ResilienceSettings:
        if self.monitor_interval_seconds <= 0:
            raise ValueError("monitor_interval_seconds must be > 0")
        if self.default_cache_ttl_seconds <= 0:
            raise ValueError("default_cache_ttl_seconds must be > 0")
        for name, ttl in self.cache_ttl_seconds.items():
            if ttl <= 0:
                raise ValueError(f"cache_ttl_seconds[{name}] must be > 0")
        return self

    def breaker_config(self, name: str) -> CircuitBreakerConfig:
        """Return the breaker config for dependency ``name``."""
        return self.breakers.get(
            normalize_dependency_name(name), self.default_breaker
        ).to_config()

    def cache_ttl(self, name: str) -> float:
        """Return the cache TTL in seconds for dependency ``name``."""
        return self.cache_ttl_seconds.get(
            normalize_dependency_name(name), self.default_cache_ttl_seconds
        )

    def build_registry(
        self, listeners: Sequence[BreakerListener] | None = None
    ) -> BreakerRegistry:
        """Build the application's breaker registry from these settings."""
        return BreakerRegistry(
            default_config=self.default_breaker.to_config(),
            configs={name: item.to_config() for name, item in self.breakers.items()},
            listeners=listeners,
        )
