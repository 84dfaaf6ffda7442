"""Shared utilities for configuration, logging, and error handling"""

from fhir_report_cache.utils.retry import exponential_backoff_retry

__all__ = ["exponential_backoff_retry"]
