"""FHIR server access: REST client, relationship catalog and change feed."""

from fhir_report_cache.ingestion.fhir_client import FhirClient
from fhir_report_cache.ingestion.incremental_fetcher import IncrementalFetcher
from fhir_report_cache.ingestion.relationship_catalog import RelationshipCatalog

__all__ = ["FhirClient", "IncrementalFetcher", "RelationshipCatalog"]
