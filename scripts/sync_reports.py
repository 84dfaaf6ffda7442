#!/usr/bin/env python3
"""
Scheduled synchronization script for the FHIR report cache.

Reads every relationship definition from the FHIR server and brings each
report index up to date:
- pulls records changed since the last completed pass
- merges them into the report rows
- repairs rows left stale by changes to linked records

Designed to be run on a schedule (e.g., via cron or Airflow).

Usage:
    python scripts/sync_reports.py [--config CONFIG_PATH] [--relationship ID] [--since TIMESTAMP] [--reset]
"""

import sys

from fhir_report_cache.cli import main

if __name__ == "__main__":
    sys.exit(main())
