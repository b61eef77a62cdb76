"""Configuration and dependency wiring for hubmirror.

``AppContext`` holds settings read from the environment and
``config/hubmirror.env``; ``Container`` builds the store, registry client
and sync driver from it.
"""

from __future__ import annotations

import os
import threading
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, TypeVar

T = TypeVar("T")

ENV_FILE = Path("config") / "hubmirror.env"


@dataclass
class AppContext:
    """Application context with all configuration."""

    # Storage
    data_dir: Path
    db_path: Path
    log_dir: Path | None = None

    # Registry
    endpoint: str = "https://huggingface.co"
    token: str | None = None
    page_size: int = 100
    request_timeout: float = 30.0

    # Query / sync
    max_query_limit: int = 1000
    sync_max_retries: int = 3
    sync_retry_delay: float = 0.5
    sync_workers: int = 4

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    @classmethod
    def from_env(
        cls,
        base_dir: Path | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> AppContext:
        """Load configuration from environment variables.

        Values from ``config/hubmirror.env`` under ``base_dir`` are used
        when the variable is not set in the environment.

        Args:
            base_dir: Directory holding ``config/`` (defaults to cwd)
            environ: Environment mapping (defaults to ``os.environ``)

        Returns:
            AppContext instance
        """
        base_dir = base_dir or Path(os.environ.get("HUBMIRROR_HOME", Path.cwd()))
        values = {**cls._load_env_file(base_dir / ENV_FILE), **(environ if environ is not None else os.environ)}

        data_dir = Path(values.get("HUBMIRROR_DATA_DIR", str(base_dir / "data")))
        db_path = Path(values.get("HUBMIRROR_DB", str(data_dir / "registry" / "models.db")))
        log_dir = values.get("HUBMIRROR_LOG_DIR")

        return cls(
            data_dir=data_dir,
            db_path=db_path,
            log_dir=Path(log_dir) if log_dir else None,
            endpoint=values.get("HUBMIRROR_ENDPOINT", "https://huggingface.co"),
            token=values.get("HF_TOKEN") or None,
            page_size=_int(values, "HUBMIRROR_PAGE_SIZE", 100),
            request_timeout=_float(values, "HUBMIRROR_TIMEOUT", 30.0),
            max_query_limit=_int(values, "HUBMIRROR_MAX_QUERY_LIMIT", 1000),
            sync_max_retries=_int(values, "HUBMIRROR_SYNC_RETRIES", 3),
            sync_retry_delay=_float(values, "HUBMIRROR_SYNC_RETRY_DELAY", 0.5),
            sync_workers=_int(values, "HUBMIRROR_SYNC_WORKERS", 4),
            log_level=values.get("HUBMIRROR_LOG_LEVEL", "INFO").upper(),
            log_json=values.get("HUBMIRROR_LOG_JSON", "").lower() in ("1", "true", "yes"),
        )

    @staticmethod
    def _load_env_file(path: Path) -> dict[str, str]:
        """Load a KEY=VALUE env file."""
        if not path.exists():
            return {}

        values: dict[str, str] = {}
        for line in path.read_text().splitlines():
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            if line.startswith("export "):
                line = line[7:]
            if "=" in line:
                key, value = line.split("=", 1)
                values[key.strip()] = value.strip().strip('"').strip("'")

        return values


def _int(values: Mapping[str, str], key: str, default: int) -> int:
    raw = values.get(key)
    if raw in (None, ""):
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ValueError(f"{key} must be an integer, got {raw!r}") from e


def _float(values: Mapping[str, str], key: str, default: float) -> float:
    raw = values.get(key)
    if raw in (None, ""):
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ValueError(f"{key} must be a number, got {raw!r}") from e


class Container:
    """Dependency injection container.

    Instances are created lazily from registered factories and cached per
    type until :meth:`reset`.

    Usage:
        container = Container(AppContext.from_env())
        container.setup_defaults()
        report = container.get(SyncDriver).sync_listing({"pipeline_tag": "text-generation"})
    """

    def __init__(self, context: AppContext):
        self.context = context
        self._instances: dict[type, Any] = {}
        self._factories: dict[type, Callable[[], Any]] = {}
        self._lock = threading.RLock()

    def register(self, interface: type[T], factory: Callable[[], T]) -> None:
        """Register a lazy factory; replaces any cached instance."""
        with self._lock:
            self._factories[interface] = factory
            self._instances.pop(interface, None)

    def register_singleton(self, interface: type[T], instance: T) -> None:
        """Use a pre-built instance (tests swap in fakes this way)."""
        with self._lock:
            self._instances[interface] = instance

    def get(self, interface: type[T]) -> T:
        """Cached instance for ``interface``, built on first request.

        Raises:
            ValueError: If nothing is registered for the type
        """
        with self._lock:
            try:
                return self._instances[interface]
            except KeyError:
                pass
            factory = self._factories.get(interface)
            if factory is None:
                raise ValueError(f"Nothing registered for {interface.__name__}")
            instance = self._instances[interface] = factory()
            return instance

    def has(self, interface: type) -> bool:
        with self._lock:
            return interface in self._instances or interface in self._factories

    def setup_defaults(self) -> None:
        """Wire the store, the registry client and the sync driver from the context."""
        # deferred: hubmirror.registry imports this package's logging module
        from hubmirror.hub import HubClient
        from hubmirror.registry import ModelStore, RetryPolicy, SyncDriver

        ctx = self.context

        def store() -> ModelStore:
            return ModelStore(ctx.db_path, max_query_limit=ctx.max_query_limit)

        def client() -> HubClient:
            return HubClient(
                endpoint=ctx.endpoint,
                token=ctx.token,
                timeout=ctx.request_timeout,
                page_size=ctx.page_size,
            )

        def driver() -> SyncDriver:
            retry = RetryPolicy(max_retries=ctx.sync_max_retries, delay=ctx.sync_retry_delay)
            return SyncDriver(self.get(ModelStore), self.get(HubClient), retry=retry)

        self.register(ModelStore, store)
        self.register(HubClient, client)
        self.register(SyncDriver, driver)

    def reset(self) -> None:
        """Close anything closeable and forget every cached instance."""
        with self._lock:
            instances = list(self._instances.values())
            self._instances.clear()
        for instance in instances:
            close = getattr(instance, "close", None)
            if callable(close):
                close()


_container: Container | None = None
_container_lock = threading.Lock()


def get_container(context: AppContext | None = None) -> Container:
    """Process-wide container, built from the environment on first use."""
    global _container
    with _container_lock:
        if _container is None:
            _container = Container(context or AppContext.from_env())
            _container.setup_defaults()
        return _container


def reset_container() -> None:
    global _container
    with _container_lock:
        container, _container = _container, None
    if container is not None:
        container.reset()
