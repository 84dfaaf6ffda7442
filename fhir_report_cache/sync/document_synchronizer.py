"""Merging of projected records into report index rows."""

import hashlib
from itertools import product
from typing import Any

import structlog

from fhir_report_cache.models.records import (
    DenormalizedRecord,
    PassContext,
    PatchOperation,
    format_timestamp,
    utc_now,
)
from fhir_report_cache.models.relationship import OrderedResource
from fhir_report_cache.processing.dependency_resolver import descendants, resource_columns
from fhir_report_cache.storage import queries
from fhir_report_cache.storage.document_store import ElasticsearchStore
from fhir_report_cache.storage.index_schema import LAST_UPDATED_FIELD
from fhir_report_cache.storage.queries import Query

log = structlog.stdlib.get_logger()

LINK_SEPARATOR = ","


def is_link_column(column: str) -> bool:
    return column.startswith("__") and column.endswith("_link")


def linked_alias(column: str) -> str:
    """Alias whose rows are joined through a ``__<alias>_link`` column."""
    return column[2 : -len("_link")]


def composite_id(values: list[str]) -> str:
    """Document id for a composite key, independent of the key order."""
    return hashlib.sha256("|".join(sorted(values)).encode("utf-8")).hexdigest()


class DocumentSynchronizer:
    """Applies one projected record to the rows of a report index.

    Rows are never read and rewritten whole; every change is a partial
    patch applied by update-by-query so concurrent row writes only touch
    their own columns.
    """

    def __init__(self, store: ElasticsearchStore):
        """
        Initialize document synchronizer.

        Args:
            store: Store holding the report indices
        """
        self._store = store

    async def merge(self, ctx: PassContext, resource: OrderedResource, record: DenormalizedRecord) -> None:
        """
        Merge one projected record into the index of the pass.

        Raises:
            StoreError: If the store rejects a write
            RetryExhaustedError: If a write keeps conflicting or being throttled
        """
        if resource.is_root and record.deleted:
            deleted = await self._store.delete_by_query(
                ctx.index_name, queries.terms(resource.name, [record.identity])
            )
            ctx.records_deleted += 1
            log.info("root_record_deleted", index=ctx.index_name, identity=record.identity, rows=deleted)
            return

        if record.deleted:
            await self._retract(ctx, resource, record)
            ctx.records_deleted += 1
        else:
            await self._retire_stale_variants(ctx, resource, record)
            for variant, pins in self.fan_out(record):
                await self._upsert(ctx, resource, variant, pins)
            ctx.records_upserted += 1

        if not resource.is_root and not record.is_first_version:
            await self._clean_broken_links(ctx, resource, record)

    @staticmethod
    def link_values_of(value: Any) -> list[str]:
        """Every value held by a link column, split on the fan-out separator."""
        if value is None:
            return []
        return [part for part in str(value).split(LINK_SEPARATOR) if part]

    def fan_out(self, record: DenormalizedRecord) -> list[tuple[DenormalizedRecord, list[Query]]]:
        """
        Split a record holding several values in a link column.

        Each variant carries one value per link column plus the clauses that
        pin the rows it may touch to that value.
        """
        multi = {
            column: self.link_values_of(fields_value)
            for column, fields_value in record.fields.items()
            if is_link_column(column) and isinstance(fields_value, str) and LINK_SEPARATOR in fields_value
        }
        if not multi:
            return [(record, [])]

        columns = list(multi)
        variants = []
        for combination in product(*(multi[column] for column in columns)):
            overrides = dict(zip(columns, combination))
            pins = [queries.value_or_missing(column, value) for column, value in overrides.items()]
            variants.append((record.with_fields(**overrides), pins))
        log.debug("record_fanned_out", identity=record.identity, variants=len(variants))
        return variants

    def build_patch(self, ctx: PassContext, record: DenormalizedRecord) -> list[PatchOperation]:
        """Column changes for a record; a nulled link column also nulls the rows it joined."""
        patch: list[PatchOperation] = []
        nulled: set[str] = set()
        for column, value in record.fields.items():
            if value is None:
                patch.append(PatchOperation.null(column))
                nulled.add(column)
                if is_link_column(column):
                    for cascaded in self._subtree_columns(ctx, linked_alias(column)):
                        if cascaded not in nulled and cascaded not in record.fields:
                            patch.append(PatchOperation.null(cascaded))
                            nulled.add(cascaded)
            else:
                patch.append(PatchOperation.set(column, value))
        patch.append(self._stamp())
        return patch

    def null_patch(self, ctx: PassContext, resource: OrderedResource) -> list[PatchOperation]:
        """Null every column of ``resource`` and of the aliases below it."""
        columns = self._subtree_columns(ctx, resource.name)
        return [PatchOperation.null(column) for column in columns] + [self._stamp()]

    def match_query(self, resource: OrderedResource, record: DenormalizedRecord) -> Query | None:
        """Rows a record belongs to; None for a child that links nowhere."""
        if resource.is_root:
            return queries.terms(resource.name, [record.identity])
        if not record.link_values:
            return None
        return queries.terms(resource.link_column, record.link_values)

    async def _upsert(
        self,
        ctx: PassContext,
        resource: OrderedResource,
        record: DenormalizedRecord,
        pins: list[Query],
    ) -> None:
        match = self.match_query(resource, record)
        if match is None:
            log.debug("record_not_linked", resource=resource.name, identity=record.identity)
            return

        patch = self.build_patch(ctx, record)
        own = queries.term(record.identity_field, record.identity)

        if resource.multiple and not resource.is_root:
            rows = await self._store.search_all(ctx.index_name, {"query": queries.all_of(match, *pins)})
            unclaimed = await self._add_new_rows(ctx, resource, record, rows)
            updated = 0
            if unclaimed:
                claim = queries.all_of(
                    queries.terms(resource.link_column, unclaimed),
                    *pins,
                    must_not=[queries.exists(record.identity_field)],
                )
                updated += await self._store.update_by_query(ctx.index_name, claim, patch)
            updated += await self._store.update_by_query(
                ctx.index_name, queries.all_of(match, own, *pins), patch
            )
        else:
            updated = await self._store.update_by_query(ctx.index_name, queries.all_of(match, *pins), patch)

        if updated:
            return
        if resource.is_root:
            await self._insert_root(ctx, record, pins)
        elif pins:
            await self._clone_for_variant(ctx, resource, record, match)

    async def _add_new_rows(
        self,
        ctx: PassContext,
        resource: OrderedResource,
        record: DenormalizedRecord,
        rows: list[dict[str, Any]],
    ) -> list[str]:
        """
        Give the record a row of its own under every parent it links to.

        A parent whose rows are all taken by sibling records gets a new row
        cloned from one of them. Returns the link values whose parent still
        has a row without any record of this alias, for claiming.
        """
        unclaimed: list[str] = []
        for link_value in record.link_values:
            parent_rows = [row for row in rows if row["_source"].get(resource.link_column) == link_value]
            if not parent_rows:
                continue
            holders = {row["_source"].get(record.identity_field) for row in parent_rows}
            if record.identity in holders:
                continue
            if None in holders or "" in holders:
                unclaimed.append(link_value)
                continue

            document = self._clone(ctx, resource, parent_rows[0]["_source"], record)
            await self._store.insert(ctx.index_name, document)
            log.info(
                "row_added",
                index=ctx.index_name,
                resource=resource.name,
                identity=record.identity,
                parent=link_value,
            )
        return unclaimed

    async def _clone_for_variant(
        self, ctx: PassContext, resource: OrderedResource, record: DenormalizedRecord, match: Query
    ) -> None:
        # A fanned-out variant with no row yet copies a row of a sibling variant
        own = queries.term(record.identity_field, record.identity)
        rows = await self._store.search_all(ctx.index_name, {"query": queries.all_of(match, own)})
        if not rows:
            rows = await self._store.search_all(ctx.index_name, {"query": match})
        if not rows:
            return
        document = self._clone(ctx, resource, rows[0]["_source"], record)
        await self._store.insert(ctx.index_name, document)
        log.info("variant_row_added", index=ctx.index_name, resource=resource.name, identity=record.identity)

    async def _insert_root(self, ctx: PassContext, record: DenormalizedRecord, pins: list[Query]) -> None:
        document = {column: value for column, value in record.fields.items() if value is not None}
        document[LAST_UPDATED_FIELD] = format_timestamp(utc_now())

        doc_id = None
        if pins:
            keys = [record.identity] + [
                str(value) for column, value in record.fields.items() if is_link_column(column) and value
            ]
            doc_id = composite_id(keys)
        await self._store.insert(ctx.index_name, document, doc_id=doc_id)
        log.info("root_row_inserted", index=ctx.index_name, identity=record.identity, doc_id=doc_id)

    async def _retract(self, ctx: PassContext, resource: OrderedResource, record: DenormalizedRecord) -> None:
        """Remove a deleted or filtered-out child record from the rows holding it."""
        match = self.match_query(resource, record)
        own = queries.term(record.identity_field, record.identity)
        query = queries.all_of(match, own) if match is not None else own

        if resource.multiple:
            rows = await self._store.search_all(ctx.index_name, {"query": query})
            await self._retire_rows(ctx, resource, rows)
        else:
            await self._store.update_by_query(
                ctx.index_name, query, self.null_patch(ctx, resource), conflicts_proceed=True
            )
        log.info("child_record_retracted", index=ctx.index_name, resource=resource.name, identity=record.identity)

    async def _retire_stale_variants(
        self, ctx: PassContext, resource: OrderedResource, record: DenormalizedRecord
    ) -> None:
        """
        Retire rows of the record that hold a link value it no longer has.

        Runs before the variants are written, while the stale rows can still
        be told apart by their link column. A stale row that only differs
        from another row of the record by the dropped link is deleted;
        otherwise the link column and the aliases it joined are nulled.
        """
        own = queries.term(record.identity_field, record.identity)
        for column, value in record.fields.items():
            if not is_link_column(column):
                continue
            current = self.link_values_of(value)
            rows = await self._store.search_all(
                ctx.index_name,
                {
                    "query": queries.all_of(
                        own,
                        queries.exists(column),
                        must_not=[queries.terms(column, current)] if current else [],
                    )
                },
            )
            if not rows:
                continue

            log.info(
                "stale_link_rows_found",
                index=ctx.index_name,
                resource=resource.name,
                identity=record.identity,
                column=column,
                rows=len(rows),
            )
            cleared = [column] + [
                cascaded
                for cascaded in self._subtree_columns(ctx, linked_alias(column))
                if cascaded != column
            ]
            dropped = set(cleared) | {LAST_UPDATED_FIELD}
            for row in rows:
                if row["_id"] in ctx.deleted_duplicates:
                    continue
                siblings_query = own
                parent = None if resource.is_root else row["_source"].get(resource.link_column)
                if parent:
                    siblings_query = queries.all_of(own, queries.term(resource.link_column, parent))
                siblings = await self._store.search_all(ctx.index_name, {"query": siblings_query})

                remainder = self._remainder(row["_source"], dropped)
                duplicate = any(
                    sibling["_id"] != row["_id"]
                    and sibling["_id"] not in ctx.deleted_duplicates
                    and self._remainder(sibling["_source"], dropped) == remainder
                    for sibling in siblings
                )
                if duplicate:
                    await self._store.delete_by_query(ctx.index_name, queries.ids([row["_id"]]))
                    ctx.deleted_duplicates.add(row["_id"])
                    log.info("stale_variant_deleted", index=ctx.index_name, column=column, doc_id=row["_id"])
                else:
                    patch = [PatchOperation.null(name) for name in cleared] + [self._stamp()]
                    await self._store.update_by_query(
                        ctx.index_name, queries.ids([row["_id"]]), patch, conflicts_proceed=True
                    )
                    log.info("stale_variant_cleared", index=ctx.index_name, column=column, doc_id=row["_id"])

    async def _clean_broken_links(
        self, ctx: PassContext, resource: OrderedResource, record: DenormalizedRecord
    ) -> None:
        """Retract the record from rows of parents it no longer links to."""
        own = queries.term(record.identity_field, record.identity)
        stale_links = [queries.terms(resource.link_column, record.link_values)] if record.link_values else []
        rows = await self._store.search_all(
            ctx.index_name, {"query": queries.all_of(own, must_not=stale_links)}
        )
        if not rows:
            return

        log.info(
            "broken_links_found",
            index=ctx.index_name,
            resource=resource.name,
            identity=record.identity,
            rows=len(rows),
        )
        if resource.multiple:
            await self._retire_rows(ctx, resource, rows)
        else:
            await self._store.update_by_query(
                ctx.index_name,
                queries.ids(row["_id"] for row in rows),
                self.null_patch(ctx, resource),
                conflicts_proceed=True,
            )

    async def _retire_rows(self, ctx: PassContext, resource: OrderedResource, rows: list[dict[str, Any]]) -> None:
        """
        Retire rows of a many-per-parent alias.

        A row whose remainder (the row without this alias's columns) equals
        another row of the same parent is a duplicate and is deleted.
        Otherwise it is the parent's last row and only the alias columns are
        truncated to null.
        """
        dropped = set(self._subtree_columns(ctx, resource.name)) | {LAST_UPDATED_FIELD}
        for row in rows:
            if row["_id"] in ctx.deleted_duplicates:
                continue

            remainder = self._remainder(row["_source"], dropped)
            parent = row["_source"].get(resource.link_column)
            siblings = []
            if parent:
                siblings = await self._store.search_all(
                    ctx.index_name, {"query": queries.term(resource.link_column, parent)}
                )

            duplicate = any(
                sibling["_id"] != row["_id"]
                and sibling["_id"] not in ctx.deleted_duplicates
                and self._remainder(sibling["_source"], dropped) == remainder
                for sibling in siblings
            )
            if duplicate:
                await self._store.delete_by_query(ctx.index_name, queries.ids([row["_id"]]))
                ctx.deleted_duplicates.add(row["_id"])
                log.info("duplicate_row_deleted", index=ctx.index_name, resource=resource.name, doc_id=row["_id"])
            else:
                await self._store.update_by_query(
                    ctx.index_name,
                    queries.ids([row["_id"]]),
                    self.null_patch(ctx, resource),
                    conflicts_proceed=True,
                )
                log.info("row_truncated", index=ctx.index_name, resource=resource.name, doc_id=row["_id"])

    def _clone(
        self,
        ctx: PassContext,
        resource: OrderedResource,
        source: dict[str, Any],
        record: DenormalizedRecord,
    ) -> dict[str, Any]:
        dropped = set(self._subtree_columns(ctx, resource.name))
        document = {column: value for column, value in source.items() if column not in dropped}
        document.update((column, value) for column, value in record.fields.items() if value is not None)
        document[LAST_UPDATED_FIELD] = format_timestamp(utc_now())
        return document

    def _subtree_columns(self, ctx: PassContext, alias: str) -> list[str]:
        try:
            resource = ctx.resource(alias)
        except KeyError:
            return []
        return resource_columns([resource] + descendants(ctx.ordered_resources, alias))

    @staticmethod
    def _remainder(source: dict[str, Any], dropped: set[str]) -> dict[str, Any]:
        return {
            column: value
            for column, value in source.items()
            if column not in dropped and value is not None
        }

    @staticmethod
    def _stamp() -> PatchOperation:
        return PatchOperation.set(LAST_UPDATED_FIELD, format_timestamp(utc_now()))
