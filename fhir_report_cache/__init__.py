"""Incremental cache of FHIR resources into denormalized Elasticsearch report indices."""

__version__ = "0.1.0"
