"""Post-pass sweep repairing rows whose joined columns went stale."""

from typing import Any

import structlog

from fhir_report_cache.ingestion.fhir_client import FhirClient
from fhir_report_cache.models.records import FetchedRecord, PassContext
from fhir_report_cache.models.relationship import OrderedResource
from fhir_report_cache.processing.field_projector import FieldProjector
from fhir_report_cache.storage import queries
from fhir_report_cache.storage.document_store import ElasticsearchStore
from fhir_report_cache.storage.index_schema import LAST_UPDATED_FIELD
from fhir_report_cache.sync.document_synchronizer import DocumentSynchronizer
from fhir_report_cache.utils.errors import FetchError, RelationshipConfigError

log = structlog.stdlib.get_logger()

DEFAULT_BATCH_SIZE = 100


def links_back_to_parent(resource: OrderedResource) -> bool:
    """Whether the child points at its parent, rather than the parent at the child."""
    return resource.link_to is not None and "." not in resource.link_to


class ConsistencyRepairer:
    """
    Finds rows where a link column and the joined alias disagree and
    re-merges the records that should fill them.

    Two kinds of rows are repaired, both limited to rows written since the
    previous pass ended:

    - missing: the link column is set but the alias identity is absent
    - divergent: both are set but differ (forward links only, since a child
      linking back to its parent never carries the parent identity)
    """

    def __init__(
        self,
        fhir_client: FhirClient,
        store: ElasticsearchStore,
        projector: FieldProjector,
        synchronizer: DocumentSynchronizer,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ):
        self._fhir_client = fhir_client
        self._store = store
        self._projector = projector
        self._synchronizer = synchronizer
        self._batch_size = batch_size

    async def repair(self, ctx: PassContext, resource: OrderedResource) -> int:
        """
        Repair the rows of one non-root alias.

        Returns:
            Number of records merged again
        """
        if resource.is_root:
            return 0

        reverse = links_back_to_parent(resource)
        missing = await self._missing_link_values(ctx, resource)
        divergent = [] if reverse else await self._divergent_link_values(ctx, resource)
        link_values = list(dict.fromkeys(missing + divergent))
        if not link_values:
            return 0

        log.info(
            "repairing_rows",
            index=ctx.index_name,
            resource=resource.name,
            missing=len(missing),
            divergent=len(divergent),
        )

        if reverse and not resource.link_element_search_parameter:
            log.warning(
                "repair_skipped_without_search_parameter",
                index=ctx.index_name,
                resource=resource.name,
                link_values=len(link_values),
            )
            return 0

        repaired = 0
        for start in range(0, len(link_values), self._batch_size):
            batch = link_values[start : start + self._batch_size]
            try:
                records = await self._fetch(resource, batch, reverse)
            except FetchError as e:
                log.error("repair_fetch_failed", resource=resource.name, error=str(e))
                ctx.record_error(f"repair of {resource.name} failed: {e}")
                continue

            for fetched in records:
                try:
                    projected = await self._projector.project(ctx, resource, fetched)
                    if projected is None:
                        continue
                    await self._synchronizer.merge(ctx, resource, projected)
                    repaired += 1
                except RelationshipConfigError:
                    raise
                except Exception as e:
                    ctx.records_failed += 1
                    ctx.record_error(f"repair of {fetched.identity} failed: {e}")
                    log.error("record_repair_failed", resource=resource.name, identity=fetched.identity, error=str(e))

        await self._store.refresh(ctx.index_name)
        ctx.rows_repaired += repaired
        log.info("rows_repaired", index=ctx.index_name, resource=resource.name, records=repaired)
        return repaired

    async def _missing_link_values(self, ctx: PassContext, resource: OrderedResource) -> list[str]:
        query = queries.all_of(
            queries.exists(resource.link_column),
            queries.updated_after(LAST_UPDATED_FIELD, ctx.previous_ended_at),
            must_not=[queries.exists(resource.name)],
        )
        rows = await self._store.search_all(ctx.index_name, {"query": query})
        return self._link_values(rows, resource)

    async def _divergent_link_values(self, ctx: PassContext, resource: OrderedResource) -> list[str]:
        query = queries.all_of(
            queries.exists(resource.link_column),
            queries.exists(resource.name),
            queries.updated_after(LAST_UPDATED_FIELD, ctx.previous_ended_at),
        )
        rows = await self._store.search_all(ctx.index_name, {"query": query})
        rows = [row for row in rows if row["_source"][resource.link_column] != row["_source"][resource.name]]
        return self._link_values(rows, resource)

    @staticmethod
    def _link_values(rows: list[dict[str, Any]], resource: OrderedResource) -> list[str]:
        values: list[str] = []
        for row in rows:
            value = row["_source"].get(resource.link_column)
            if value and value not in values:
                values.append(str(value))
        return values

    async def _fetch(self, resource: OrderedResource, link_values: list[str], reverse: bool) -> list[FetchedRecord]:
        if reverse:
            params = {resource.link_element_search_parameter: ",".join(link_values)}
        else:
            params = {"_id": ",".join(value.split("/")[-1] for value in link_values)}

        records: list[FetchedRecord] = []
        url: str | None = self._fhir_client.url(resource.resource, params=params)
        while url:
            bundle = await self._fhir_client.get_bundle(url)
            for entry in bundle.get("entry", []):
                body = entry.get("resource")
                if not body or body.get("resourceType") != resource.resource:
                    continue
                records.append(
                    FetchedRecord(
                        resource_type=body["resourceType"],
                        id=body["id"],
                        version_id=(body.get("meta") or {}).get("versionId"),
                        body=body,
                    )
                )
            url = next(
                (link.get("url") for link in bundle.get("link", []) if link.get("relation") == "next"),
                None,
            )
        return records
