"""Botline configuration, read from environment variables."""

import os
from dataclasses import dataclass
from typing import Optional

from botline.errors import ConfigError


def _env_str(name: str, default: str = "") -> str:
    return os.environ.get(name, default).strip()


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got '{raw}'") from None


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got '{raw}'") from None


@dataclass
class Settings:
    """Process-wide settings for the relay."""

    host: str = "0.0.0.0"
    port: int = 3000
    redis_url: str = "redis://localhost:6379"
    default_agent: Optional[str] = None
    log_level: str = "INFO"
    behind_proxy: bool = False

    buffer_size: int = 100
    rate_limit_messages: int = 30
    rate_limit_window_seconds: float = 60.0

    # Credit keeper (heartbeat) timings are configured in minutes
    credit_keeper_enabled: bool = False
    credit_keeper_interval_minutes: float = 60.0
    credit_keeper_cooldown_minutes: float = 60.0

    agent_max_retries: int = 2
    agent_retry_delay_seconds: float = 1.0
    agent_timeout_seconds: float = 30.0

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the environment, falling back to defaults.

        Raises:
            ConfigError: If a numeric variable cannot be parsed or is out of range
        """
        settings = cls(
            host=_env_str("BOTLINE_HOST", cls.host),
            port=_env_int("BOTLINE_PORT", cls.port),
            redis_url=_env_str("REDIS_URL", cls.redis_url),
            default_agent=_env_str("DEFAULT_AGENT") or None,
            log_level=_env_str("LOG_LEVEL", cls.log_level).upper(),
            behind_proxy=_env_bool("BOTLINE_BEHIND_PROXY"),
            buffer_size=_env_int("BOTLINE_BUFFER_SIZE", cls.buffer_size),
            rate_limit_messages=_env_int("BOTLINE_RATE_LIMIT", cls.rate_limit_messages),
            rate_limit_window_seconds=_env_float("BOTLINE_RATE_WINDOW", cls.rate_limit_window_seconds),
            credit_keeper_enabled=_env_bool("CREDIT_KEEPER_ENABLED"),
            credit_keeper_interval_minutes=_env_float(
                "CREDIT_KEEPER_INTERVAL", cls.credit_keeper_interval_minutes
            ),
            credit_keeper_cooldown_minutes=_env_float(
                "CREDIT_KEEPER_COOLDOWN", cls.credit_keeper_cooldown_minutes
            ),
            agent_max_retries=_env_int("AGENT_MAX_RETRIES", cls.agent_max_retries),
            agent_retry_delay_seconds=_env_float("AGENT_RETRY_DELAY", cls.agent_retry_delay_seconds),
            agent_timeout_seconds=_env_float("AGENT_TIMEOUT", cls.agent_timeout_seconds),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        """Reject values the components cannot run with."""
        if self.buffer_size < 1:
            raise ConfigError("BOTLINE_BUFFER_SIZE must be at least 1")
        if self.rate_limit_messages < 1 or self.rate_limit_window_seconds <= 0:
            raise ConfigError("BOTLINE_RATE_LIMIT and BOTLINE_RATE_WINDOW must be positive")
        if self.credit_keeper_interval_minutes <= 0 or self.credit_keeper_cooldown_minutes <= 0:
            raise ConfigError("CREDIT_KEEPER_INTERVAL and CREDIT_KEEPER_COOLDOWN must be positive")
        if self.agent_max_retries < 0:
            raise ConfigError("AGENT_MAX_RETRIES cannot be negative")
        if self.agent_retry_delay_seconds < 0 or self.agent_timeout_seconds <= 0:
            raise ConfigError("AGENT_RETRY_DELAY and AGENT_TIMEOUT must be positive")
