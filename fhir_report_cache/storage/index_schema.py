"""Report index and sync state index bootstrap."""

from typing import Any

import structlog

from fhir_report_cache.models.relationship import FieldType, OrderedResource
from fhir_report_cache.processing.dependency_resolver import key_columns, resource_columns
from fhir_report_cache.storage.document_store import ElasticsearchStore
from fhir_report_cache.utils.errors import IndexBootstrapError, RetryExhaustedError, StoreError

log = structlog.stdlib.get_logger()

SYNC_STATE_INDEX = "syncdata"
LAST_UPDATED_FIELD = "lastUpdated"

TEXT_WITH_KEYWORD = {
    "type": "text",
    "fields": {"keyword": {"type": "keyword", "ignore_above": 256}},
}
FIELD_TYPE_MAPPINGS: dict[FieldType, dict[str, Any]] = {
    FieldType.TEXT: TEXT_WITH_KEYWORD,
    FieldType.KEYWORD: {"type": "keyword"},
    FieldType.INTEGER: {"type": "long"},
    FieldType.DECIMAL: {"type": "double"},
}


def build_mappings(ordered: list[OrderedResource]) -> dict[str, Any]:
    """
    Index mappings for a resolved relationship.

    Key columns always get a ``keyword`` subfield since rows are matched on
    them by exact value; typed columns follow their mapping type.
    """
    keys = set(key_columns(ordered))
    typed = {
        mapping.output_name: mapping.type
        for resource in ordered
        for mapping in resource.field_mappings
        if mapping.type is not None
    }

    properties: dict[str, Any] = {}
    for column in resource_columns(ordered):
        if column in keys or column not in typed:
            properties[column] = TEXT_WITH_KEYWORD
        else:
            properties[column] = FIELD_TYPE_MAPPINGS[typed[column]]
    properties[LAST_UPDATED_FIELD] = {"type": "date"}
    return {"mappings": {"properties": properties}}


class IndexSchemaManager:
    """Creates report indices and applies cluster tuning."""

    def __init__(
        self,
        store: ElasticsearchStore,
        max_scroll_context: int | None = None,
        max_compilation_rate: str | None = None,
    ):
        self._store = store
        self._max_scroll_context = max_scroll_context
        self._max_compilation_rate = max_compilation_rate

    async def apply_cluster_settings(self) -> None:
        """Apply the configured cluster settings, if any."""
        settings: dict[str, Any] = {}
        if self._max_scroll_context is not None:
            settings["search.max_open_scroll_context"] = self._max_scroll_context
        if self._max_compilation_rate:
            settings["script.max_compilations_rate"] = self._max_compilation_rate
        if not settings:
            return

        try:
            await self._store.put_cluster_settings(settings)
        except (StoreError, RetryExhaustedError) as e:
            log.error("cluster_settings_failed", settings=settings, error=str(e))
            raise IndexBootstrapError(f"Cannot apply cluster settings: {e}") from e

    async def ensure_state_index(self) -> None:
        await self._ensure(SYNC_STATE_INDEX, {})

    async def ensure_index(self, index: str, ordered: list[OrderedResource]) -> None:
        """
        Create the report index when it does not exist yet.

        Raises:
            IndexBootstrapError: If the index can neither be found nor created
        """
        await self._ensure(index, build_mappings(ordered))

    async def _ensure(self, index: str, body: dict[str, Any]) -> None:
        try:
            if await self._store.index_exists(index):
                return
            log.info("creating_index", index=index)
            await self._store.create_index(index, body)
        except (StoreError, RetryExhaustedError) as e:
            log.error("index_bootstrap_failed", index=index, error=str(e))
            raise IndexBootstrapError(f"Cannot create index {index}: {e}") from e
