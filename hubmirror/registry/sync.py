"""
Sync driver.

Pulls payloads from a registry fetcher and pushes them through
merge -> upsert. Holds no state of its own beyond the report it returns.

Per record:
    fetch (no lock)  ->  store.locked(id): find -> merge -> upsert if changed

Store failures are retried with exponential backoff; a record that still
fails is reported and the rest of the page carries on.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable, Iterator, Mapping
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Protocol, TypeVar

from hubmirror.logging_config import get_logger
from hubmirror.registry.errors import HubMirrorError, StoreIoError
from hubmirror.registry.merge import MergeResult, merge
from hubmirror.registry.payloads import Payload, parse_detail, parse_listing, parse_tree
from hubmirror.registry.store import ModelStore

logger = get_logger(__name__)

T = TypeVar("T")


class RegistryFetcher(Protocol):
    """What the driver needs from a registry client."""

    def iter_listing_pages(
        self,
        params: Mapping[str, Any] | None = None,
        limit: int | None = None,
    ) -> Iterator[list[dict[str, Any]]]: ...

    def model_info(self, model_id: str) -> dict[str, Any]: ...

    def list_tree(self, model_id: str, path: str | None = None) -> list[dict[str, Any]]: ...


@dataclass
class RetryPolicy:
    """
    Backoff for store failures.

    Args:
        max_retries: Attempts after the first failure
        delay: Initial delay in seconds
        backoff: Delay multiplier per attempt
    """

    max_retries: int = 3
    delay: float = 0.5
    backoff: float = 2.0

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.delay < 0:
            raise ValueError("delay must be >= 0")
        if self.backoff < 1:
            raise ValueError("backoff must be >= 1")


@dataclass
class SyncFailure:
    model_id: str | None
    error: str


@dataclass
class SyncReport:
    """Per-run counts; failures never abort the run."""

    fetched: int = 0
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    stale: int = 0
    failures: list[SyncFailure] = field(default_factory=list)
    # ids of every parsed payload, in fetch order
    model_ids: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def record(self, result: MergeResult):
        if result.created:
            self.created += 1
        elif result.changed:
            self.updated += 1
        else:
            self.unchanged += 1
        if result.stale:
            self.stale += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "fetched": self.fetched,
            "created": self.created,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "stale": self.stale,
            "failed": len(self.failures),
            "failures": [{"model_id": f.model_id, "error": f.error} for f in self.failures],
        }


class SyncDriver:
    """Orchestrates fetch -> merge -> upsert."""

    def __init__(
        self,
        store: ModelStore,
        fetcher: RegistryFetcher,
        retry: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.fetcher = fetcher
        self.retry = retry or RetryPolicy()
        self._sleep = sleep

    def _with_retry(self, func: Callable[..., T], *args: Any) -> T:
        delay = self.retry.delay
        attempt = 0
        while True:
            try:
                return func(*args)
            except StoreIoError as exc:
                if attempt >= self.retry.max_retries:
                    raise
                attempt += 1
                logger.warning(
                    "sync_upsert_retry",
                    attempt=attempt,
                    max_retries=self.retry.max_retries,
                    delay=delay,
                    error=str(exc),
                )
                self._sleep(delay)
                delay *= self.retry.backoff

    def apply(self, payload: Payload, force: bool = False) -> MergeResult:
        """
        Merge one payload into the store.

        Raises:
            ValidationError: merged record is invalid
            StoreIoError: store still failing after retries
        """
        with self.store.locked(payload.model_id):
            existing = self._with_retry(self.store.find, payload.model_id)
            result = merge(existing, payload, force=force)
            if result.changed:
                result.record = self._with_retry(self.store.upsert, result.record)
        return result

    def _ingest(
        self,
        report: SyncReport,
        raw: Any,
        parser: Callable[[Any], Payload],
    ):
        model_id = None
        if isinstance(raw, Mapping):
            model_id = raw.get("id") or raw.get("modelId") or raw.get("model_id")
        try:
            payload = parser(raw)
            report.model_ids.append(payload.model_id)
            result = self.apply(payload)
        except HubMirrorError as exc:
            report.failures.append(SyncFailure(model_id, str(exc)))
            logger.error("sync_record_failed", model_id=model_id, error=str(exc))
            return
        report.record(result)

    def sync_listing(
        self,
        params: Mapping[str, Any] | None = None,
        limit: int | None = None,
    ) -> SyncReport:
        """
        Mirror listing pages.

        Fetch errors for a whole page propagate; per-record errors are
        collected in the report.
        """
        report = SyncReport()
        for page in self.fetcher.iter_listing_pages(params or {}, limit):
            for raw in page:
                report.fetched += 1
                self._ingest(report, raw, parse_listing)
            logger.debug("sync_page_done", entries=len(page), fetched=report.fetched)

        summary = report.to_dict()
        summary.pop("failures")
        logger.info("sync_listing_done", **summary)
        return report

    def sync_detail(self, model_id: str, force: bool = False) -> MergeResult:
        """Fetch and merge the full detail record for one model."""
        raw = self.fetcher.model_info(model_id)
        payload = parse_detail(raw)
        if payload.model_id != model_id:
            logger.info("sync_detail_renamed", requested=model_id, model_id=payload.model_id)
        return self.apply(payload, force=force)

    def sync_tree(self, model_id: str, path: str | None = None) -> MergeResult:
        """Fetch a file tree (optionally one folder) and merge its files."""
        entries = self.fetcher.list_tree(model_id, path=path)
        return self.apply(parse_tree(model_id, entries, path))

    def sync_details(
        self,
        model_ids: Iterable[str],
        max_workers: int = 4,
        force: bool = False,
    ) -> SyncReport:
        """Fetch details for many models in parallel."""
        ids = list(dict.fromkeys(model_ids))
        report = SyncReport(model_ids=ids)
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            futures = {
                executor.submit(self.sync_detail, model_id, force): model_id
                for model_id in ids
            }
            for future in as_completed(futures):
                model_id = futures[future]
                report.fetched += 1
                try:
                    report.record(future.result())
                except HubMirrorError as exc:
                    report.failures.append(SyncFailure(model_id, str(exc)))
                    logger.error("sync_record_failed", model_id=model_id, error=str(exc))

        summary = report.to_dict()
        summary.pop("failures")
        logger.info("sync_details_done", **summary)
        return report
