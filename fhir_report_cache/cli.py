"""Command line entry point running one synchronization of every report index."""

import argparse
import asyncio
import importlib
import sys
from datetime import datetime

import structlog

from fhir_report_cache.ingestion.fhir_client import FhirClient
from fhir_report_cache.ingestion.incremental_fetcher import IncrementalFetcher
from fhir_report_cache.ingestion.relationship_catalog import RelationshipCatalog
from fhir_report_cache.models.config import AppConfig
from fhir_report_cache.models.records import parse_timestamp
from fhir_report_cache.processing.field_projector import FieldProjector
from fhir_report_cache.processing.hooks import HookRegistry
from fhir_report_cache.storage.document_store import ElasticsearchStore
from fhir_report_cache.storage.index_schema import IndexSchemaManager
from fhir_report_cache.storage.sync_state_store import SyncStateStore
from fhir_report_cache.sync.consistency_repairer import ConsistencyRepairer
from fhir_report_cache.sync.document_synchronizer import DocumentSynchronizer
from fhir_report_cache.sync.models import SyncReport
from fhir_report_cache.sync.sync_coordinator import SyncCoordinator
from fhir_report_cache.utils.config_loader import ConfigLoader
from fhir_report_cache.utils.errors import ConfigurationError, FetchError, IndexBootstrapError
from fhir_report_cache.utils.logging_config import configure_logging

log = structlog.stdlib.get_logger()


def load_hooks(module_path: str | None) -> HookRegistry:
    """
    Build the hook registry from a module exposing a ``HOOKS`` mapping.

    Raises:
        ConfigurationError: If the module cannot be imported or has no HOOKS
    """
    registry = HookRegistry()
    if not module_path:
        return registry

    try:
        module = importlib.import_module(module_path)
    except ImportError as e:
        raise ConfigurationError(f"Cannot import hooks module {module_path}: {e}") from e

    hooks = getattr(module, "HOOKS", None)
    if not isinstance(hooks, dict):
        raise ConfigurationError(f"Hooks module {module_path} has no HOOKS mapping")

    for name, hook in hooks.items():
        registry.register(name, hook)
    log.info("hooks_loaded", module=module_path, hooks=sorted(hooks))
    return registry


async def perform_sync(config: AppConfig, hooks: HookRegistry) -> list[SyncReport]:
    """Wire the components from configuration and run one synchronization."""
    since = parse_timestamp(config.sync.since) if config.sync.since else None

    async with FhirClient(
        str(config.fhir.base_url),
        username=config.fhir.username,
        password=config.fhir.password,
        timeout=config.fhir.timeout_seconds,
    ) as fhir_client, ElasticsearchStore(
        str(config.elasticsearch.base_url),
        username=config.elasticsearch.username,
        password=config.elasticsearch.password,
        timeout=config.elasticsearch.timeout_seconds,
    ) as store:
        projector = FieldProjector(fhir_client, store, hooks=hooks)
        synchronizer = DocumentSynchronizer(store)
        coordinator = SyncCoordinator(
            catalog=RelationshipCatalog(fhir_client),
            fetcher=IncrementalFetcher(fhir_client, page_size=config.fhir.page_size),
            projector=projector,
            synchronizer=synchronizer,
            repairer=ConsistencyRepairer(
                fhir_client,
                store,
                projector,
                synchronizer,
                batch_size=config.sync.repair_batch_size,
            ),
            schema=IndexSchemaManager(
                store,
                max_scroll_context=config.elasticsearch.max_scroll_context,
                max_compilation_rate=config.elasticsearch.max_compilation_rate,
            ),
            state_store=SyncStateStore(store),
            store=store,
            hooks=hooks,
        )
        return await coordinator.run(
            relationship_ids=config.sync.relationship_ids or None,
            since=since,
            reset=config.sync.reset,
        )


def print_summary(reports: list[SyncReport]) -> None:
    print("\n" + "=" * 60)
    print("SYNCHRONIZATION SUMMARY")
    print("=" * 60)
    for report in reports:
        if report.skipped:
            print(f"{report.relationship}: skipped")
            continue
        status = "SUCCESS" if report.success else "FAILED"
        print(
            f"{report.relationship}: {status} "
            f"upserted={report.records_upserted} deleted={report.records_deleted} "
            f"skipped={report.records_skipped} failed={report.records_failed} "
            f"repaired={report.rows_repaired} ({report.duration_seconds:.2f}s)"
        )
        for error in report.errors[:5]:
            print(f"    {error}")
    print("=" * 60)


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the report cache synchronization."""
    parser = argparse.ArgumentParser(description="Cache FHIR resources into Elasticsearch report indices")
    parser.add_argument("--config", type=str, default=None, help="Path to configuration file")
    parser.add_argument(
        "--relationship",
        action="append",
        default=None,
        help="Relationship id to synchronize (repeatable, all when omitted)",
    )
    parser.add_argument("--since", type=str, default=None, help="Read changes since this ISO timestamp")
    parser.add_argument("--reset", action="store_true", help="Rebuild every index from scratch")
    parser.add_argument("--verbose", action="store_true", help="Log at DEBUG level to the console")
    args = parser.parse_args(argv)

    try:
        config = ConfigLoader().load_config(args.config)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    updates = {}
    if args.relationship:
        updates["relationship_ids"] = args.relationship
    if args.since:
        updates["since"] = args.since
    if args.reset:
        updates["reset"] = True
    if updates:
        config.sync = config.sync.model_copy(update=updates)

    configure_logging(
        log_level="DEBUG" if args.verbose else config.logging.log_level,
        json_logs=False if args.verbose else config.logging.json_logs,
        log_file=config.logging.log_file,
    )
    for warning in ConfigLoader().validate_config(config):
        log.warning("configuration_warning", warning=warning)

    start_time = datetime.now()
    try:
        hooks = load_hooks(config.sync.hooks_module)
        reports = asyncio.run(perform_sync(config, hooks))
    except (ConfigurationError, FetchError, IndexBootstrapError, ValueError) as e:
        log.error(
            "synchronization_failed",
            error=str(e),
            duration_seconds=(datetime.now() - start_time).total_seconds(),
        )
        return 1

    print_summary(reports)
    return 0 if all(report.skipped or report.success for report in reports) else 1


if __name__ == "__main__":
    sys.exit(main())
