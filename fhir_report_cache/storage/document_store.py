"""Elasticsearch adapter for report indices."""

from typing import Any

import httpx
import structlog

from fhir_report_cache.models.records import PatchAction, PatchOperation
from fhir_report_cache.utils.errors import (
    RateLimitedError,
    StoreError,
    TransientStoreError,
    VersionConflictError,
)
from fhir_report_cache.utils.retry import exponential_backoff_retry

log = structlog.stdlib.get_logger()

SCROLL_SIZE = 10000
SCROLL_LIFETIME = "1m"

# Writes racing each other or a throttled cluster clear up on their own
store_retry = exponential_backoff_retry(
    max_retries=5,
    base_delay=2.0,
    max_delay=30.0,
    exceptions=(TransientStoreError,),
)


def painless_literal(value: Any) -> str:
    """Render a Python value as a Painless literal."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return repr(value)
    text = str(value).replace("\\", "\\\\").replace("'", "\\'")
    return f"'{text}'"


def render_patch(patch: list[PatchOperation]) -> dict[str, Any]:
    """
    Render patch operations into one Painless update script.

    Column names are embedded as escaped literals and values travel in
    ``params``, so the compiled source only depends on which columns are
    set or nulled. Elasticsearch caches one compilation per source.
    """
    statements = []
    params: dict[str, Any] = {}
    for operation in patch:
        target = f"ctx._source[{painless_literal(operation.column)}]"
        if operation.action == PatchAction.NULL:
            statements.append(f"{target} = null;")
        else:
            name = f"v{len(params)}"
            params[name] = operation.value
            statements.append(f"{target} = params.{name};")
    return {"lang": "painless", "source": " ".join(statements), "params": params}


class ElasticsearchStore:
    """Async Elasticsearch REST client covering what the cache needs."""

    def __init__(
        self,
        base_url: str,
        username: str = "",
        password: str = "",
        timeout: float = 120.0,
        client: httpx.AsyncClient | None = None,
    ):
        """
        Initialize Elasticsearch store.

        Args:
            base_url: Elasticsearch base URL
            username: Basic auth username (no auth when empty)
            password: Basic auth password
            timeout: Per request timeout in seconds
            client: Preconfigured httpx client, mainly for tests
        """
        self._base_url = base_url.rstrip("/")
        auth = httpx.BasicAuth(username, password) if username else None
        self._client = client or httpx.AsyncClient(auth=auth, timeout=timeout)
        log.info("elasticsearch_store_initialized", base_url=self._base_url)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "ElasticsearchStore":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def index_exists(self, index: str) -> bool:
        response = await self._request("HEAD", f"/{index}", expected=(404,))
        return response.status_code != 404

    async def create_index(self, index: str, body: dict[str, Any]) -> None:
        """Create an index; an index created concurrently in the meantime is fine."""
        response = await self._request("PUT", f"/{index}", json=body, expected=(400,))
        if response.status_code == 400:
            if "resource_already_exists_exception" not in response.text:
                raise StoreError(f"Cannot create index {index}: {response.text[:500]}", 400)
            log.info("index_already_exists", index=index)
            return
        log.info("index_created", index=index)

    async def put_cluster_settings(self, settings: dict[str, Any]) -> None:
        await self._request("PUT", "/_cluster/settings", json={"persistent": settings})
        log.info("cluster_settings_updated", settings=settings)

    async def search_all(self, index: str, query: dict[str, Any]) -> list[dict[str, Any]]:
        """
        Every hit of a search, following the scroll until it is drained.

        Args:
            index: Index to search
            query: Search body, usually ``{"query": {...}}``

        Returns:
            Raw hits (``_id`` and ``_source``); empty when the index is missing
        """
        response = await self._request(
            "POST",
            f"/{index}/_search",
            params={"scroll": SCROLL_LIFETIME},
            json={"size": SCROLL_SIZE, **query},
            expected=(404,),
        )
        if response.status_code == 404:
            return []

        page = response.json()
        hits: list[dict[str, Any]] = list(page["hits"]["hits"])
        scroll_id = page.get("_scroll_id")
        try:
            while scroll_id and len(page["hits"]["hits"]) == SCROLL_SIZE:
                response = await self._request(
                    "POST",
                    "/_search/scroll",
                    json={"scroll": SCROLL_LIFETIME, "scroll_id": scroll_id},
                )
                page = response.json()
                scroll_id = page.get("_scroll_id", scroll_id)
                hits.extend(page["hits"]["hits"])
        finally:
            if scroll_id:
                await self._clear_scroll(scroll_id)
        return hits

    async def update_by_query(
        self,
        index: str,
        query: dict[str, Any],
        patch: list[PatchOperation],
        conflicts_proceed: bool = False,
    ) -> int:
        """
        Apply a patch to every document matching ``query``.

        Returns:
            Number of documents updated
        """
        params = {"refresh": "true"}
        if conflicts_proceed:
            params["conflicts"] = "proceed"
        body = {"query": query, "script": render_patch(patch)}
        result = await self._write("POST", f"/{index}/_update_by_query", params=params, json=body)
        updated = result.get("updated", 0)
        log.debug("documents_updated", index=index, updated=updated, columns=len(patch))
        return updated

    async def delete_by_query(self, index: str, query: dict[str, Any]) -> int:
        result = await self._write(
            "POST",
            f"/{index}/_delete_by_query",
            params={"refresh": "true", "conflicts": "proceed"},
            json={"query": query},
        )
        deleted = result.get("deleted", 0)
        log.debug("documents_deleted", index=index, deleted=deleted)
        return deleted

    async def insert(self, index: str, document: dict[str, Any], doc_id: str | None = None) -> str:
        """Insert a document, overwriting the document of the same id if any."""
        if doc_id is None:
            result = await self._write("POST", f"/{index}/_doc", params={"refresh": "true"}, json=document)
        else:
            result = await self._write(
                "PUT", f"/{index}/_doc/{doc_id}", params={"refresh": "true"}, json=document
            )
        return result["_id"]

    async def get_document(self, index: str, doc_id: str) -> dict[str, Any] | None:
        response = await self._request("GET", f"/{index}/_doc/{doc_id}", expected=(404,))
        if response.status_code == 404:
            return None
        return response.json().get("_source")

    async def put_document(self, index: str, doc_id: str, document: dict[str, Any]) -> None:
        await self.insert(index, document, doc_id=doc_id)

    async def refresh(self, index: str) -> None:
        await self._request("POST", f"/{index}/_refresh")

    async def _clear_scroll(self, scroll_id: str) -> None:
        try:
            await self._client.request(
                "DELETE", self._base_url + "/_search/scroll", json={"scroll_id": [scroll_id]}
            )
        except httpx.TransportError as e:
            log.warning("scroll_clear_failed", error=str(e))

    @store_retry
    async def _write(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        response = await self._send(method, path, **kwargs)
        self._raise_for_status(response, method, path)
        return response.json()

    @store_retry
    async def _request(
        self, method: str, path: str, expected: tuple[int, ...] = (), **kwargs: Any
    ) -> httpx.Response:
        response = await self._send(method, path, **kwargs)
        if response.status_code not in expected:
            self._raise_for_status(response, method, path)
        return response

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._client.request(method, self._base_url + path, **kwargs)
        except httpx.TransportError as e:
            raise TransientStoreError(f"{method} {path} failed: {e}") from e

    def _raise_for_status(self, response: httpx.Response, method: str, path: str) -> None:
        if response.is_success:
            return

        status = response.status_code
        detail = response.text[:500]
        log.warning("store_request_rejected", method=method, path=path, status_code=status, body=detail)

        message = f"{method} {path} answered {status}: {detail}"
        if status == 409:
            raise VersionConflictError(message, status)
        if status == 429 or "circuit_breaking_exception" in detail:
            raise RateLimitedError(message, status)
        if status in (502, 503, 504):
            raise TransientStoreError(message, status)
        raise StoreError(message, status)
