from __future__ import annotations

import threading
from typing import Optional

from multisession.config import DriverType, Settings, get_settings, reset_settings_cache
from multisession.logging import get_logger
from multisession.service.auth import Authentication
from multisession.service.jwt import JwtAuth
from multisession.service.tokens import reset_node_for_tests
from multisession.storage.expiring import reset_shared_store_for_tests, shared_store
from multisession.storage.memory import LocalAuth
from multisession.storage.redis_cache import RedisAuth

logger = get_logger(__name__)


def init_driver(settings: Settings) -> Authentication:
    """Build the configured backend and apply the configured device limit.

    Raises:
        BackendUnavailableError: the remote store failed its ping
        JwtSecretMissingError: the jwt driver requires a secret and none is set
    """
    driver = settings.driver_type
    if driver == DriverType.REDIS:
        logger.info(
            "auth_driver_connecting",
            driver=driver.value,
            redis_url=settings.redis_url,
        )
        auth: Authentication = RedisAuth.from_url(
            settings.redis_url, socket_timeout=settings.redis_socket_timeout
        )
    elif driver == DriverType.JWT:
        auth = JwtAuth(settings.jwt_secret, require_secret=settings.jwt_require_secret)
    else:
        auth = LocalAuth(shared_store(settings.local_cleanup_interval_seconds))

    if driver != DriverType.JWT:
        auth.set_device_limit(settings.token_max_count)
    logger.info(
        "auth_driver_initialized",
        driver=driver.value,
        token_max_count=settings.token_max_count if driver != DriverType.JWT else None,
    )
    return auth


class Runtime:
    """Holds the process-wide auth backend for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        try:
            self.auth = init_driver(self.settings)
        except Exception as exc:
            logger.error(
                "runtime_init_failed",
                driver=self.settings.driver_type.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

    def close(self) -> None:
        self.auth.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(settings: Optional[Settings] = None) -> Runtime:
    """Drop every process-wide singleton and build a fresh runtime."""
    global runtime
    with _runtime_lock:
        if runtime is not None:
            try:
                runtime.close()
            except Exception as exc:
                logger.warning("runtime_close_failed", error=str(exc))
        reset_settings_cache()
        reset_shared_store_for_tests()
        reset_node_for_tests()
        runtime = Runtime(settings)
        return runtime
