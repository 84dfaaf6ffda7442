"""Data models for the FHIR report cache."""

from fhir_report_cache.models.config import (
    AppConfig,
    ElasticsearchConfig,
    FhirConfig,
    LoggingConfig,
    SyncConfig,
)
from fhir_report_cache.models.records import (
    DenormalizedRecord,
    FetchedRecord,
    PassContext,
    PatchAction,
    PatchOperation,
    SyncState,
)
from fhir_report_cache.models.relationship import (
    DisplayFormat,
    ExternalHooks,
    FieldMapping,
    FieldType,
    LinkSpec,
    OrderedResource,
    RelationshipSpec,
)

__all__ = [
    "AppConfig",
    "DenormalizedRecord",
    "DisplayFormat",
    "ElasticsearchConfig",
    "ExternalHooks",
    "FetchedRecord",
    "FhirConfig",
    "FieldMapping",
    "FieldType",
    "LinkSpec",
    "LoggingConfig",
    "OrderedResource",
    "PassContext",
    "PatchAction",
    "PatchOperation",
    "RelationshipSpec",
    "SyncConfig",
    "SyncState",
]
