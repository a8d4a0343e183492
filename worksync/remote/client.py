"""HTTP client for the remote workspace API.

Thin wrapper over httpx: bearer auth, a pinned API version header, bounded
linear-backoff retries for 429/503/504 and network timeouts, and a lazily
filled cache of database id -> data source id.
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

import httpx

from worksync.config import Settings
from worksync.protocols import (
    PermanentRemoteError,
    RecordNotFoundError,
    TransientRemoteError,
)
from worksync.types import PageResult

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = frozenset({429, 503, 504})
MAX_PAGE_SIZE = 100
VERSION_HEADER = "Notion-Version"


class RemoteClient:
    """Paged queries, single-record fetches and writes against the remote API.

    Args:
        settings: Connection and retry settings.
        http: Pre-built httpx client (tests pass one with a MockTransport).
        sleep: Called with the backoff delay in seconds.
    """

    def __init__(
        self,
        settings: Settings,
        http: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings
        self._sleep = sleep
        self._http = http or httpx.Client(
            base_url=settings.base_url,
            timeout=settings.request_timeout,
        )
        self._headers = {
            "Authorization": f"Bearer {settings.api_key}",
            "Content-Type": "application/json",
            VERSION_HEADER: settings.api_version,
        }
        self._data_sources: Dict[str, str] = {}
        self._cache_lock = threading.Lock()

    def close(self):
        self._http.close()

    # === Transport ===

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        max_attempts: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Issue a request, retrying transient failures with ``base * attempt`` delays.

        Raises:
            TransientRemoteError: Retries exhausted.
            RecordNotFoundError: 404.
            PermanentRemoteError: Any other 4xx/5xx or a malformed body.
        """
        attempts = max_attempts or self.settings.max_retries + 1
        last_error: Optional[TransientRemoteError] = None

        for attempt in range(1, attempts + 1):
            try:
                response = self._http.request(
                    method, path, json=json, params=params, headers=self._headers
                )
            except httpx.TimeoutException as e:
                last_error = TransientRemoteError(
                    f"{method} {path} timed out: {e}", timed_out=True
                )
            except httpx.TransportError as e:
                last_error = TransientRemoteError(f"{method} {path} failed: {e}")
            else:
                status = response.status_code
                if status in RETRYABLE_STATUS:
                    last_error = TransientRemoteError(f"{method} {path} returned {status}", status)
                elif status == 404:
                    raise RecordNotFoundError(path.rsplit("/", 1)[-1])
                elif status >= 400:
                    raise PermanentRemoteError(
                        f"{method} {path} returned {status}: {response.text[:200]}", status
                    )
                else:
                    return self._decode(method, path, response)

            if attempt < attempts:
                delay = self.settings.retry_base_delay * attempt
                logger.warning(
                    f"{last_error}; retrying in {delay:.1f}s (attempt {attempt}/{attempts})"
                )
                self._sleep(delay)

        raise last_error

    def _decode(self, method: str, path: str, response: httpx.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError as e:
            raise PermanentRemoteError(
                f"{method} {path} returned malformed JSON: {e}", response.status_code
            ) from e
        if not isinstance(data, dict):
            raise PermanentRemoteError(
                f"{method} {path} returned {type(data).__name__}, expected an object",
                response.status_code,
            )
        return data

    # === Data source cache ===

    def resolve_data_source(self, resource_id: str) -> str:
        """Return the data source id behind a database id, caching the answer.

        Falls back to ``resource_id`` itself when the database lists no data
        source or does not exist (the id may already be a data source id).
        """
        with self._cache_lock:
            cached = self._data_sources.get(resource_id)
        if cached:
            return cached

        try:
            data = self._request("GET", f"/databases/{resource_id}")
        except RecordNotFoundError:
            logger.debug(f"No database {resource_id}; using it as a data source id")
            data = {}
        sources = data.get("data_sources") or []
        source_id = sources[0].get("id") if sources else None
        source_id = source_id or resource_id

        with self._cache_lock:
            self._data_sources[resource_id] = source_id
        return source_id

    def forget_data_source(self, resource_id: str) -> None:
        with self._cache_lock:
            self._data_sources.pop(resource_id, None)

    # === Reads ===

    def query_page(
        self,
        resource_id: str,
        cursor: Optional[str] = None,
        filter: Optional[Dict[str, Any]] = None,
        sorts: Optional[List[Dict[str, Any]]] = None,
        page_size: Optional[int] = None,
        max_attempts: Optional[int] = None,
    ) -> PageResult:
        """Fetch one page of a collection.

        Args:
            resource_id: Database id (resolved to its data source).
            cursor: ``next_cursor`` from the previous page.
            filter: Server-side filter object.
            sorts: Sort specification.
            page_size: Records per page, capped at 100.
            max_attempts: Override the retry bound (1 disables retries).
        """
        size = min(page_size or self.settings.page_size, MAX_PAGE_SIZE)
        body: Dict[str, Any] = {"page_size": size}
        if cursor:
            body["start_cursor"] = cursor
        if filter:
            body["filter"] = filter
        if sorts:
            body["sorts"] = sorts

        source_id = self.resolve_data_source(resource_id)
        data = self._request(
            "POST", f"/data_sources/{source_id}/query", json=body, max_attempts=max_attempts
        )
        results = data.get("results")
        if not isinstance(results, list):
            raise PermanentRemoteError("Query response has no results list")
        return PageResult(
            records=results,
            has_more=bool(data.get("has_more")),
            next_cursor=data.get("next_cursor"),
            page_size=size,
        )

    def fetch_one(
        self, record_id: str, filter_properties: Optional[List[str]] = None
    ) -> Optional[Dict[str, Any]]:
        """Fetch a single record, or None if the remote has no such record."""
        params = {"filter_properties": filter_properties} if filter_properties else None
        try:
            return self._request("GET", f"/pages/{record_id}", params=params)
        except RecordNotFoundError:
            return None

    # === Writes ===

    def create_record(self, resource_id: str, properties: Dict[str, Any]) -> Dict[str, Any]:
        source_id = self.resolve_data_source(resource_id)
        return self._request(
            "POST",
            "/pages",
            json={
                "parent": {"type": "data_source_id", "data_source_id": source_id},
                "properties": properties,
            },
        )

    def update_record(self, record_id: str, properties: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("PATCH", f"/pages/{record_id}", json={"properties": properties})

    def archive_record(self, record_id: str) -> Dict[str, Any]:
        return self._request("PATCH", f"/pages/{record_id}", json={"in_trash": True})
