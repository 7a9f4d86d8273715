from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from multisession.logging import get_logger

logger = get_logger(__name__)

# Device limit applied when none is configured or stored
DEFAULT_TOKEN_MAX_COUNT = 10


class DriverType(str, Enum):
    """Session storage backends selectable at startup."""

    LOCAL = "local"
    REDIS = "redis"
    JWT = "jwt"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings consumed when the auth driver is constructed."""

    driver_type: DriverType = env_field(
        DriverType.LOCAL,
        "AUTH_DRIVER",
        description="Session backend: local, redis, or jwt",
    )
    token_max_count: int = env_field(
        DEFAULT_TOKEN_MAX_COUNT,
        "TOKEN_MAX_COUNT",
        description="Concurrent sessions allowed per (role, user); 0 selects the default",
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_socket_timeout: float = env_field(5.0, "REDIS_SOCKET_TIMEOUT")
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_require_secret: bool = env_field(
        False,
        "JWT_REQUIRE_SECRET",
        description="Refuse to start the jwt driver without JWT_SECRET instead of using the sample secret",
    )
    local_cleanup_interval_seconds: int = env_field(
        24 * 60,
        "LOCAL_CLEANUP_INTERVAL_SECONDS",
        description="Minimum gap between sweeps of expired entries in the in-process store",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("driver_type", mode="before")
    @classmethod
    def _validate_driver(cls, value: Any) -> DriverType:
        if isinstance(value, DriverType):
            return value
        try:
            return DriverType(str(value).strip().lower())
        except ValueError:
            logger.warning("unknown_auth_driver", driver=value, fallback=DriverType.LOCAL.value)
            return DriverType.LOCAL

    @field_validator("token_max_count")
    @classmethod
    def _validate_token_max_count(cls, value: int) -> int:
        if value < 0:
            raise ValueError("token_max_count must be >= 0")
        return value or DEFAULT_TOKEN_MAX_COUNT


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
