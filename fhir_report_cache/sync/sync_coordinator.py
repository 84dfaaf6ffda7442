"""Synchronization coordinator running every relationship pass."""

from datetime import datetime
from typing import Any

import structlog

from fhir_report_cache.ingestion.incremental_fetcher import IncrementalFetcher
from fhir_report_cache.ingestion.relationship_catalog import RelationshipCatalog
from fhir_report_cache.models.records import EPOCH, FetchedRecord, PassContext, utc_now
from fhir_report_cache.models.relationship import OrderedResource, RelationshipSpec
from fhir_report_cache.processing.dependency_resolver import DependencyResolver
from fhir_report_cache.processing.field_projector import FieldProjector
from fhir_report_cache.processing.hooks import HookRegistry
from fhir_report_cache.storage.document_store import ElasticsearchStore
from fhir_report_cache.storage.index_schema import IndexSchemaManager
from fhir_report_cache.storage.sync_state_store import SyncStateStore
from fhir_report_cache.sync.consistency_repairer import ConsistencyRepairer
from fhir_report_cache.sync.document_synchronizer import DocumentSynchronizer
from fhir_report_cache.sync.models import SyncReport
from fhir_report_cache.utils.errors import (
    FetchError,
    IndexBootstrapError,
    RelationshipConfigError,
    RetryExhaustedError,
    StoreError,
)
from fhir_report_cache.utils.logging_config import bound_pass

log = structlog.stdlib.get_logger()


class SyncCoordinator:
    """Orchestrates synchronization of every relationship into its report index."""

    def __init__(
        self,
        catalog: RelationshipCatalog,
        fetcher: IncrementalFetcher,
        projector: FieldProjector,
        synchronizer: DocumentSynchronizer,
        repairer: ConsistencyRepairer,
        schema: IndexSchemaManager,
        state_store: SyncStateStore,
        store: ElasticsearchStore,
        hooks: HookRegistry | None = None,
        resolver: DependencyResolver | None = None,
    ):
        """
        Initialize sync coordinator.

        Args:
            catalog: Source of relationship definitions
            fetcher: Reader of changed source records
            projector: Projection of records into columns
            synchronizer: Merge of projected records into rows
            repairer: Post-resource repair sweep
            schema: Report index bootstrap
            state_store: Watermark persistence
            store: Store holding the report indices
            hooks: Host callbacks for pre-disable and post-run hooks
            resolver: Link ordering, a plain DependencyResolver by default
        """
        self._catalog = catalog
        self._fetcher = fetcher
        self._projector = projector
        self._synchronizer = synchronizer
        self._repairer = repairer
        self._schema = schema
        self._state_store = state_store
        self._store = store
        self._hooks = hooks or HookRegistry()
        self._resolver = resolver or DependencyResolver()

        log.info("sync_coordinator_initialized")

    async def run(
        self,
        relationship_ids: list[str] | None = None,
        since: datetime | None = None,
        reset: bool = False,
    ) -> list[SyncReport]:
        """
        Synchronize every relationship of the catalog, one at a time.

        Args:
            relationship_ids: Only synchronize these relationships
            since: Read changes since this moment instead of the stored watermark
            reset: Ignore stored watermarks and rebuild from scratch

        Returns:
            One report per relationship, in catalog order

        Raises:
            FetchError: If the catalog cannot be read
            IndexBootstrapError: If the sync state index cannot be created
        """
        log.info("sync_started", relationship_ids=relationship_ids or "all", since=since, reset=reset)

        try:
            await self._schema.apply_cluster_settings()
        except IndexBootstrapError as e:
            log.warning("cluster_settings_not_applied", error=str(e))
        await self._schema.ensure_state_index()

        definitions = await self._catalog.fetch_definitions(relationship_ids)
        reports = []
        for definition in definitions:
            reports.append(await self.sync_relationship(definition, since=since, reset=reset))

        log.info(
            "sync_completed",
            relationships=len(reports),
            failed=sum(1 for report in reports if not report.skipped and not report.success),
        )
        return reports

    async def sync_relationship(
        self,
        definition: dict[str, Any],
        since: datetime | None = None,
        reset: bool = False,
    ) -> SyncReport:
        """
        Run one relationship pass.

        Configuration and index errors end the pass of this relationship only;
        they are reported, never raised.
        """
        with bound_pass(relationship_id=definition.get("id")):
            return await self._sync_relationship(definition, since, reset)

    async def _sync_relationship(
        self, definition: dict[str, Any], since: datetime | None, reset: bool
    ) -> SyncReport:
        start_time = utc_now()
        name = definition.get("id", "<unknown>")
        ctx: PassContext | None = None
        relationship: RelationshipSpec | None = None

        try:
            relationship = self._catalog.decode(definition)
            name = relationship.name

            if await self._disabled(relationship):
                report = SyncReport(relationship=name, skipped=True, start_time=start_time, end_time=utc_now())
            else:
                ordered = self._resolver.resolve(relationship)
                ctx = await self._begin(relationship, ordered, start_time, since, reset)

                completed = True
                for resource in ctx.ordered_resources:
                    completed = await self._sync_resource(ctx, resource) and completed

                if completed:
                    state = await self._state_store.get_state(ctx.index_name)
                    await self._state_store.mark_completed(state, start_time, utc_now())
                else:
                    log.warning("watermark_not_advanced", relationship=name, errors=len(ctx.errors))

                report = SyncReport.from_context(ctx, utc_now(), completed)

        except (RelationshipConfigError, IndexBootstrapError, StoreError, RetryExhaustedError, FetchError) as e:
            log.error("relationship_sync_failed", relationship=name, error=str(e), error_type=type(e).__name__)
            end_time = utc_now()
            if ctx is not None:
                report = SyncReport.from_context(ctx, end_time, completed=False)
                report.errors.append(str(e))
            else:
                report = SyncReport(
                    relationship=name,
                    duration_seconds=(end_time - start_time).total_seconds(),
                    start_time=start_time,
                    end_time=end_time,
                    errors=[str(e)],
                )

        log.info(
            "relationship_sync_finished",
            relationship=report.relationship,
            skipped=report.skipped,
            records_upserted=report.records_upserted,
            records_deleted=report.records_deleted,
            records_skipped=report.records_skipped,
            records_failed=report.records_failed,
            rows_repaired=report.rows_repaired,
            duration_seconds=report.duration_seconds,
            success=report.success,
        )

        if relationship is not None and relationship.external_hooks.post_run and not report.skipped:
            await self._call_hook(relationship.external_hooks.post_run, report)
        return report

    async def _disabled(self, relationship: RelationshipSpec) -> bool:
        if relationship.caching_disabled:
            log.info("relationship_caching_disabled", relationship=relationship.name)
            return True
        hook = relationship.external_hooks.pre_disable
        if hook and await self._call_hook(hook, relationship):
            log.info("relationship_disabled_by_hook", relationship=relationship.name, hook=hook)
            return True
        return False

    async def _call_hook(self, name: str, *args: Any) -> Any:
        try:
            return await self._hooks.call(name, *args)
        except Exception as e:
            log.error("hook_failed", hook=name, error=str(e))
            return None

    async def _begin(
        self,
        relationship: RelationshipSpec,
        ordered: list[OrderedResource],
        start_time: datetime,
        since: datetime | None,
        reset: bool,
    ) -> PassContext:
        index = relationship.index_name
        await self._schema.ensure_index(index, ordered)

        state = await self._state_store.get_state(index)
        effective_since = self._state_store.effective_since(state, since=since, reset=reset)
        await self._state_store.mark_started(state, start_time)

        ctx = PassContext(
            relationship=relationship,
            ordered_resources=ordered,
            index_name=index,
            since=effective_since,
            previous_ended_at=EPOCH if reset else state.last_ended_at,
            began_at=start_time,
            full_resync=effective_since == EPOCH,
        )
        log.info(
            "relationship_sync_started",
            relationship=relationship.name,
            index=index,
            since=effective_since.isoformat(),
            full_resync=ctx.full_resync,
            resources=[resource.name for resource in ordered],
        )
        return ctx

    async def _sync_resource(self, ctx: PassContext, resource: OrderedResource) -> bool:
        """Apply every change of one alias, then sweep its rows. False when fetching failed."""
        try:
            async for fetched in self._fetcher.fetch_changes(ctx, resource):
                await self._apply(ctx, resource, fetched)
        except FetchError as e:
            log.error("resource_fetch_failed", resource=resource.name, url=e.url, error=str(e))
            ctx.record_error(f"fetching {resource.name} failed: {e}")
            return False

        await self._store.refresh(ctx.index_name)
        await self._repairer.repair(ctx, resource)
        return True

    async def _apply(self, ctx: PassContext, resource: OrderedResource, fetched: FetchedRecord) -> None:
        try:
            record = await self._projector.project(ctx, resource, fetched)
            if record is None:
                ctx.records_skipped += 1
                return
            await self._synchronizer.merge(ctx, resource, record)
        except RelationshipConfigError:
            raise
        except Exception as e:
            ctx.records_failed += 1
            ctx.record_error(f"{resource.name} {fetched.identity}: {e}")
            log.error(
                "record_sync_failed",
                resource=resource.name,
                identity=fetched.identity,
                error=str(e),
                error_type=type(e).__name__,
            )
