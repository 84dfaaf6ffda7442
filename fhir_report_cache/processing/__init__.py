"""Relationship resolution and projection of records into report columns."""

from fhir_report_cache.processing.dependency_resolver import DependencyResolver
from fhir_report_cache.processing.field_projector import FieldProjector
from fhir_report_cache.processing.hooks import HookRegistry
from fhir_report_cache.processing.path_evaluator import FhirPathEvaluator
from fhir_report_cache.processing.value_modifier import apply_value_modifier

__all__ = [
    "DependencyResolver",
    "FhirPathEvaluator",
    "FieldProjector",
    "HookRegistry",
    "apply_value_modifier",
]
