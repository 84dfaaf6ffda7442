"""Elasticsearch storage for report rows and sync state."""

from fhir_report_cache.storage.document_store import ElasticsearchStore
from fhir_report_cache.storage.index_schema import IndexSchemaManager
from fhir_report_cache.storage.sync_state_store import SyncStateStore

__all__ = ["ElasticsearchStore", "IndexSchemaManager", "SyncStateStore"]
