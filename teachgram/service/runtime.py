from __future__ import annotations

import threading

from teachgram.config import get_settings, reset_settings_cache
from teachgram.logging import get_logger
from teachgram.service.auth import AuthService
from teachgram.service.oauth import OAuthBridge
from teachgram.service.passwords import PasswordHasher
from teachgram.service.tokens import TokenService
from teachgram.storage.memory import MemoryStore
from teachgram.storage.postgres import PostgresStore

logger = get_logger(__name__)


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                self.store = MemoryStore(
                    fs_root=(
                        self.settings.shared_fs_root
                        if self.settings.persist_memory_store
                        else None
                    )
                )
            else:
                self.store = PostgresStore(
                    self.settings.database_url,
                    min_size=self.settings.db_pool_min_size,
                    max_size=self.settings.db_pool_max_size,
                )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.hasher = PasswordHasher()
        self.tokens = TokenService.from_settings(self.settings)
        self.oauth = OAuthBridge.from_settings(self.store, self.hasher, self.settings)
        self.auth = AuthService(
            self.store,
            self.tokens,
            self.oauth,
            hasher=self.hasher,
            default_role=self.settings.default_role,
        )
        logger.info("runtime_init_completed", store_type=store_type)

    def close(self) -> None:
        close = getattr(self.store, "close", None)
        if close is not None:
            close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: the unlocked check is the fast path once the
    runtime exists, the locked one prevents two threads building it at once.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        runtime = Runtime()
        return runtime
