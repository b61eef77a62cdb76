"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import os
from collections.abc import Iterator, Mapping
from pathlib import Path
from typing import Any

import pytest

from hubmirror.db.pool import close_all_pools
from hubmirror.logging_config import configure_logging
from hubmirror.registry import ModelStore, NotFoundError, RetryPolicy, SyncDriver


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "integration: test talks to the live registry")
    config.addinivalue_line("markers", "slow: mark test as slow running")


def pytest_collection_modifyitems(config, items):
    """Skip integration tests unless HUBMIRROR_INTEGRATION=1."""
    if os.environ.get("HUBMIRROR_INTEGRATION") in ("1", "true", "True"):
        return
    skip = pytest.mark.skip(reason="Set HUBMIRROR_INTEGRATION=1 to run integration tests")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip)


class FakeFetcher:
    """In-memory registry fetcher."""

    def __init__(
        self,
        listing: list[dict[str, Any]] | None = None,
        details: Mapping[str, dict[str, Any]] | None = None,
        trees: Mapping[tuple[str, str | None], list[dict[str, Any]]] | None = None,
        page_size: int = 2,
    ):
        self.listing = list(listing or [])
        self.details = dict(details or {})
        self.trees = dict(trees or {})
        self.page_size = page_size
        self.calls: list[tuple[str, Any]] = []

    def iter_listing_pages(self, params=None, limit=None) -> Iterator[list[dict[str, Any]]]:
        self.calls.append(("listing", dict(params or {})))
        entries = self.listing if limit is None else self.listing[:limit]
        for start in range(0, len(entries), self.page_size):
            yield entries[start : start + self.page_size]

    def model_info(self, model_id: str) -> dict[str, Any]:
        self.calls.append(("detail", model_id))
        if model_id not in self.details:
            raise NotFoundError(model_id)
        return self.details[model_id]

    def list_tree(self, model_id: str, path: str | None = None) -> list[dict[str, Any]]:
        self.calls.append(("tree", (model_id, path)))
        if (model_id, path) not in self.trees:
            raise NotFoundError(model_id)
        return self.trees[(model_id, path)]


@pytest.fixture(autouse=True, scope="session")
def _session_setup():
    configure_logging(level="WARNING", colors=False)
    yield
    close_all_pools()


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "registry" / "models.db"


@pytest.fixture
def store(db_path: Path) -> Iterator[ModelStore]:
    s = ModelStore(db_path)
    yield s
    s.close()


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def driver(store: ModelStore, fetcher: FakeFetcher) -> SyncDriver:
    sleeps: list[float] = []
    d = SyncDriver(store, fetcher, retry=RetryPolicy(max_retries=2, delay=0.01), sleep=sleeps.append)
    d.sleeps = sleeps
    return d
