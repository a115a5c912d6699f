from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Literal

AppEnv = Literal["dev", "test", "prod"]
LogLevel = Literal["debug", "info", "warning", "error"]


def _getenv(name: str, default: str) -> str:
    # Centralize env access so it's easy to extend later (type casting, required vars)
    return os.environ.get(name, default).strip()


def _getint(name: str, default: int, *, minimum: int = 0) -> int:
    raw = _getenv(name, str(default))
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer (got {raw!r})") from None
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum} (got {value})")
    return value


def _getfloat(name: str, default: float, *, minimum: float = 0.0) -> float:
    raw = _getenv(name, str(default))
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number (got {raw!r})") from None
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum} (got {value})")
    return value


def _getbool(name: str, default: bool) -> bool:
    raw = _getenv(name, "true" if default else "false").lower()
    if raw in ("1", "true", "yes", "on"):
        return True
    if raw in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"{name} must be a boolean (got {raw!r})")


@dataclass(frozen=True)
class EngagementPolicy:
    """Tunable engagement-score policy.

    The score is a weighted sum of three saturating ratios, each capped
    at 1.0:

      interactions / interaction_baseline
      time_spent   / section expected duration
      attempts     / normal_attempts

    Weights are normalized, so only their proportions matter.  Every
    term is non-decreasing in its input, which keeps the score monotonic.
    """

    weight_interactions: float = 0.4
    weight_time: float = 0.4
    weight_attempts: float = 0.2
    interaction_baseline: int = 10
    normal_attempts: int = 3
    min_events: int = 3

    @property
    def normalized_weights(self) -> tuple[float, float, float]:
        total = self.weight_interactions + self.weight_time + self.weight_attempts
        return (
            self.weight_interactions / total,
            self.weight_time / total,
            self.weight_attempts / total,
        )


@dataclass(frozen=True)
class Settings:
    app_env: AppEnv
    log_level: LogLevel
    log_json: bool
    port: int
    database_url: str | None
    redis_url: str | None
    content_catalog_path: str | None = None
    jwt_public_key: str | None = None
    clock_skew_seconds: int = 300
    tick_ceiling_seconds: int = 3600
    recompute_inline: bool = True
    lock_timeout_seconds: float = 2.0
    lock_shards: int = 64
    retry_attempts: int = 3
    retry_backoff_seconds: float = 0.05
    analytics_timeout_seconds: float = 10.0
    view_cache_ttl_seconds: int = 3600
    trend_deadzone: float = 0.01
    engagement: EngagementPolicy = field(default_factory=EngagementPolicy)

    @property
    def is_dev(self) -> bool:
        return self.app_env == "dev"

    @property
    def is_test(self) -> bool:
        return self.app_env == "test"

    @property
    def is_prod(self) -> bool:
        return self.app_env == "prod"


def _load_engagement_policy() -> EngagementPolicy:
    policy = EngagementPolicy(
        weight_interactions=_getfloat("ENGAGEMENT_WEIGHT_INTERACTIONS", 0.4),
        weight_time=_getfloat("ENGAGEMENT_WEIGHT_TIME", 0.4),
        weight_attempts=_getfloat("ENGAGEMENT_WEIGHT_ATTEMPTS", 0.2),
        interaction_baseline=_getint("ENGAGEMENT_INTERACTION_BASELINE", 10, minimum=1),
        normal_attempts=_getint("ENGAGEMENT_NORMAL_ATTEMPTS", 3, minimum=1),
        min_events=_getint("ENGAGEMENT_MIN_EVENTS", 3, minimum=1),
    )
    if (
        policy.weight_interactions + policy.weight_time + policy.weight_attempts
        <= 0
    ):
        raise ValueError("ENGAGEMENT_WEIGHT_* must not all be zero")
    return policy


def load_settings() -> Settings:
    app_env_raw = _getenv("APP_ENV", "dev").lower()
    log_level_raw = _getenv("LOG_LEVEL", "info").lower()
    port_raw = _getenv("PORT", "8000")

    if app_env_raw not in ("dev", "test", "prod"):
        raise ValueError(f"APP_ENV must be dev|test|prod (got {app_env_raw!r})")

    if log_level_raw not in ("debug", "info", "warning", "error"):
        raise ValueError(
            f"LOG_LEVEL must be debug|info|warning|error (got {log_level_raw!r})"
        )

    try:
        port = int(port_raw)
    except ValueError:
        raise ValueError(f"PORT must be an integer (got {port_raw!r})") from None

    trend_deadzone = _getfloat("TREND_DEADZONE", 0.01)
    if trend_deadzone >= 1.0:
        raise ValueError(f"TREND_DEADZONE must be < 1.0 (got {trend_deadzone})")

    return Settings(  # type: ignore[arg-type]
        app_env=app_env_raw,
        log_level=log_level_raw,
        log_json=_getbool("LOG_JSON", False),
        port=port,
        database_url=_getenv("DATABASE_URL", "") or None,
        redis_url=_getenv("REDIS_URL", "") or None,
        content_catalog_path=_getenv("CONTENT_CATALOG_PATH", "") or None,
        jwt_public_key=_getenv("JWT_PUBLIC_KEY", "") or None,
        clock_skew_seconds=_getint("CLOCK_SKEW_SECONDS", 300),
        tick_ceiling_seconds=_getint("TICK_CEILING_SECONDS", 3600, minimum=1),
        recompute_inline=_getbool("RECOMPUTE_INLINE", True),
        lock_timeout_seconds=_getfloat("LOCK_TIMEOUT_SECONDS", 2.0),
        lock_shards=_getint("LOCK_SHARDS", 64, minimum=1),
        retry_attempts=_getint("RETRY_ATTEMPTS", 3, minimum=1),
        retry_backoff_seconds=_getfloat("RETRY_BACKOFF_SECONDS", 0.05),
        analytics_timeout_seconds=_getfloat("ANALYTICS_TIMEOUT_SECONDS", 10.0),
        view_cache_ttl_seconds=_getint("VIEW_CACHE_TTL_SECONDS", 3600, minimum=1),
        trend_deadzone=trend_deadzone,
        engagement=_load_engagement_policy(),
    )


# Optional: module-level singleton so imports are cheap
SETTINGS = load_settings()
