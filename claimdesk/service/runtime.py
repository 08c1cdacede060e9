from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional, Union
from urllib.parse import urlparse, urlunparse

from claimdesk.config import Settings, get_settings
from claimdesk.logging import get_logger
from claimdesk.service.auth import AuthService
from claimdesk.storage.memory import MemoryStore
from claimdesk.storage.postgres import PostgresStore

logger = get_logger(__name__)

Store = Union[MemoryStore, PostgresStore]


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a DSN with '***' for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Process-wide store and services.

    Built once by the application lifespan before traffic is served and
    closed on shutdown. Request handlers receive it through ``app.state``
    rather than importing it.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[Store] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            environment=self.settings.environment.value,
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store = store if store is not None else self._build_store()
        self.auth = AuthService(self.store, self.settings, clock=clock)
        logger.info("runtime_init_complete", store_type=type(self.store).__name__)

    def _build_store(self) -> Store:
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                # test runs keep state in-process only
                fs_root = None if self.settings.test_mode else self.settings.shared_fs_root
                store = MemoryStore(fs_root=fs_root)
            else:
                store = PostgresStore(self.settings.database_url)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)
        return store

    def close(self) -> None:
        self.store.close()
        logger.info("runtime_closed")
