"""
Registry HTTP client.

Thin wrapper over the model registry REST API. Returns raw JSON; parsing
into typed payloads happens in ``hubmirror.registry.payloads``.

Example:
    client = HubClient()
    for page in client.iter_listing_pages({"pipeline_tag": "text-generation"}, limit=200):
        ...
    detail = client.model_info("openai-community/gpt2")
    files = client.list_tree("TheBloke/Llama-2-70B-GGUF", path="llama-2-70b.Q8_0")
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from typing import Any
from urllib.parse import quote

import requests

from hubmirror.logging_config import get_logger
from hubmirror.registry.errors import FetchError, NotFoundError

logger = get_logger(__name__)

DEFAULT_ENDPOINT = "https://huggingface.co"


class HubClient:
    """Fetches listing pages, model details and file trees."""

    def __init__(
        self,
        endpoint: str = DEFAULT_ENDPOINT,
        token: str | None = None,
        timeout: float = 30.0,
        page_size: int = 100,
        session: requests.Session | None = None,
    ):
        """
        Args:
            endpoint: Registry base URL
            token: Optional bearer token, passed through unchanged
            timeout: Per-request timeout in seconds
            page_size: Listing page size requested from the registry
            session: Pre-built session (tests inject one)
        """
        self.endpoint = endpoint.rstrip("/")
        self.timeout = timeout
        self.page_size = page_size
        self._session = session or requests.Session()
        self._session.headers.setdefault("Accept", "application/json")
        if token:
            self._session.headers["Authorization"] = f"Bearer {token}"

    def _get(
        self,
        url: str,
        params: Mapping[str, Any] | None = None,
        model_id: str | None = None,
    ) -> requests.Response:
        try:
            response = self._session.get(url, params=params, timeout=self.timeout)
        except requests.RequestException as exc:
            raise FetchError(f"GET {url} failed: {exc}") from exc

        if response.status_code == 404 and model_id is not None:
            raise NotFoundError(model_id, f"Model not found in registry: {model_id}")
        if response.status_code >= 400:
            raise FetchError(
                f"GET {url} returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        logger.debug("registry_get", url=url, status=response.status_code)
        return response

    @staticmethod
    def _json(response: requests.Response) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise FetchError(f"Registry returned invalid JSON from {response.url}") from exc

    def _paginate(
        self,
        url: str,
        params: Mapping[str, Any] | None,
        model_id: str | None = None,
    ) -> Iterator[list[dict[str, Any]]]:
        next_url: str | None = url
        query = params
        while next_url:
            response = self._get(next_url, params=query, model_id=model_id)
            page = self._json(response)
            if not isinstance(page, list):
                raise FetchError(f"Expected a JSON array from {next_url}")
            yield page
            next_url = response.links.get("next", {}).get("url")
            # The next link already carries the cursor and filters.
            query = None

    def iter_listing_pages(
        self,
        params: Mapping[str, Any] | None = None,
        limit: int | None = None,
    ) -> Iterator[list[dict[str, Any]]]:
        """
        Yield listing pages until the registry runs out or ``limit`` entries
        have been yielded.
        """
        query = {"limit": self.page_size, **(params or {})}
        remaining = limit
        for page in self._paginate(f"{self.endpoint}/api/models", query):
            if remaining is not None:
                page = page[:remaining]
                remaining -= len(page)
            if page:
                yield page
            if remaining is not None and remaining <= 0:
                return

    def model_info(self, model_id: str) -> dict[str, Any]:
        """Full detail object for one model."""
        url = f"{self.endpoint}/api/models/{quote(model_id, safe='/')}"
        data = self._json(self._get(url, model_id=model_id))
        if not isinstance(data, dict):
            raise FetchError(f"Expected a JSON object for {model_id}")
        return data

    def list_tree(
        self,
        model_id: str,
        path: str | None = None,
        revision: str = "main",
        recursive: bool = True,
    ) -> list[dict[str, Any]]:
        """File-tree entries for a repository, optionally under ``path``."""
        url = (
            f"{self.endpoint}/api/models/{quote(model_id, safe='/')}"
            f"/tree/{quote(revision, safe='')}"
        )
        if path:
            url += f"/{quote(path.strip('/'), safe='/')}"
        params = {"recursive": "true"} if recursive else None

        entries: list[dict[str, Any]] = []
        for page in self._paginate(url, params, model_id=model_id):
            entries.extend(page)
        return entries

    def close(self):
        self._session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
