"""Synchronization components for merging changes into report indices."""

from fhir_report_cache.sync.consistency_repairer import ConsistencyRepairer
from fhir_report_cache.sync.document_synchronizer import DocumentSynchronizer
from fhir_report_cache.sync.models import SyncReport
from fhir_report_cache.sync.sync_coordinator import SyncCoordinator

__all__ = [
    "ConsistencyRepairer",
    "DocumentSynchronizer",
    "SyncCoordinator",
    "SyncReport",
]
