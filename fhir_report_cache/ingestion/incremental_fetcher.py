"""Incremental retrieval of changed FHIR records."""

import re
from typing import Any, AsyncIterator

import httpx
import structlog

from fhir_report_cache.ingestion.fhir_client import FhirClient
from fhir_report_cache.models.records import FetchedRecord, PassContext, format_timestamp
from fhir_report_cache.models.relationship import OrderedResource
from fhir_report_cache.utils.errors import CursorExpiredError

log = structlog.stdlib.get_logger()

DEFAULT_PAGE_SIZE = 200
MAX_CURSOR_RECOVERIES = 5

# Type/id with an optional /_history/version suffix, anywhere in an entry URL
ENTRY_REFERENCE = re.compile(r"(?:^|/)([A-Z][A-Za-z]+)/([A-Za-z0-9\-.]{1,64})(?:/_history/([^/?]+))?/?(?:\?|$)")
ETAG_VERSION = re.compile(r'^(?:W/)?"?([^"]+)"?$')


class IncrementalFetcher:
    """Pages through the changes of one resource type since the pass watermark."""

    def __init__(self, fhir_client: FhirClient, page_size: int = DEFAULT_PAGE_SIZE):
        self._fhir_client = fhir_client
        self._page_size = page_size

    def changes_url(self, ctx: PassContext, resource: OrderedResource, offset: int = 0) -> str:
        """
        Build the changes query for one page.

        A full resync with an initial filter searches the type with that
        filter; every other pass reads the type history since the watermark.
        """
        params: dict[str, Any] = {"_count": self._page_size}
        if offset:
            params["_getpagesoffset"] = offset

        if ctx.full_resync and resource.initial_filter:
            url = httpx.URL(self._fhir_client.url(resource.resource))
            url = url.copy_merge_params(httpx.QueryParams(resource.initial_filter))
            return str(url.copy_merge_params(params))

        params = {"_since": format_timestamp(ctx.since), **params}
        return self._fhir_client.url(resource.resource, "_history", params=params)

    async def fetch_changes(
        self, ctx: PassContext, resource: OrderedResource
    ) -> AsyncIterator[FetchedRecord]:
        """
        Yield changed records of ``resource`` in server page order.

        Each identity is yielded once per call, at its first occurrence.
        Deletion entries are resolved to the last version that existed before
        the delete, flagged as deleted.

        Raises:
            FetchError: When a page cannot be fetched; records of earlier
                pages have already been yielded
        """
        seen: set[str] = set()
        offset = 0
        recoveries = 0
        total: int | None = None
        url: str | None = self.changes_url(ctx, resource)

        log.info(
            "fetching_changes",
            resource=resource.name,
            resource_type=resource.resource,
            since=format_timestamp(ctx.since),
            full_resync=ctx.full_resync,
        )

        while url:
            try:
                bundle = await self._fhir_client.get_bundle(url)
            except CursorExpiredError:
                recoveries += 1
                if recoveries > MAX_CURSOR_RECOVERIES:
                    raise
                log.warning(
                    "paging_cursor_expired",
                    resource=resource.name,
                    offset=offset,
                    recoveries=recoveries,
                )
                url = self.changes_url(ctx, resource, offset)
                continue

            total = bundle.get("total", total)
            entries = bundle.get("entry", [])
            offset += len(entries)
            next_url = next(
                (link.get("url") for link in bundle.get("link", []) if link.get("relation") == "next"),
                None,
            )

            log.info(
                "changes_page_fetched",
                resource=resource.name,
                entries=len(entries),
                offset=offset,
                total=total,
            )

            fresh = 0
            for entry in entries:
                record = await self._to_record(entry, resource)
                if record is None:
                    continue
                if record.identity in seen:
                    continue
                seen.add(record.identity)
                fresh += 1
                yield record

            if next_url:
                url = next_url
            elif entries and self._has_more(total, offset, len(entries), fresh):
                # servers without paging cursors are walked by offset
                url = self.changes_url(ctx, resource, offset)
            else:
                url = None

    def _has_more(self, total: int | None, offset: int, page_entries: int, fresh: int) -> bool:
        if total is not None:
            return offset < total
        if page_entries < self._page_size:
            return False
        if not fresh:
            # the server ignores _getpagesoffset and keeps answering the same page
            log.warning("offset_paging_stalled", offset=offset, entries=page_entries)
            return False
        return True

    async def _to_record(self, entry: dict[str, Any], resource: OrderedResource) -> FetchedRecord | None:
        body = entry.get("resource")
        request = entry.get("request") or {}

        if body and body.get("resourceType") and request.get("method", "").upper() != "DELETE":
            if body["resourceType"] != resource.resource:
                return None
            return FetchedRecord(
                resource_type=body["resourceType"],
                id=body["id"],
                version_id=(body.get("meta") or {}).get("versionId"),
                body=body,
            )

        return await self._deleted_record(entry, resource)

    async def _deleted_record(self, entry: dict[str, Any], resource: OrderedResource) -> FetchedRecord | None:
        request = entry.get("request") or {}
        response = entry.get("response") or {}

        reference = None
        for candidate in (request.get("url"), entry.get("fullUrl"), response.get("location")):
            if candidate:
                reference = ENTRY_REFERENCE.search(candidate)
                if reference:
                    break
        if reference is None:
            log.warning("unidentifiable_history_entry", resource=resource.name, entry=entry)
            return None

        resource_type, resource_id, version_id = reference.groups()
        if resource_type != resource.resource:
            return None
        if version_id is None and response.get("etag"):
            etag = ETAG_VERSION.match(response["etag"])
            version_id = etag.group(1) if etag else None

        previous = await self._previous_version(resource_type, resource_id, version_id)
        if previous is None:
            log.warning(
                "deleted_record_without_history",
                reference=f"{resource_type}/{resource_id}",
                version_id=version_id,
            )
            return None

        log.info("deleted_record_resolved", reference=f"{resource_type}/{resource_id}", version_id=version_id)
        return FetchedRecord(
            resource_type=resource_type,
            id=resource_id,
            version_id=version_id,
            body=previous,
            deleted=True,
        )

    async def _previous_version(
        self, resource_type: str, resource_id: str, deleted_version: str | None
    ) -> dict[str, Any] | None:
        if deleted_version and deleted_version.isdigit() and int(deleted_version) > 1:
            previous = await self._fhir_client.vread(
                resource_type, resource_id, str(int(deleted_version) - 1)
            )
            if previous is not None:
                return previous

        bundle = await self._fhir_client.history(resource_type, resource_id)
        for entry in bundle.get("entry", []):
            body = entry.get("resource")
            if body and (entry.get("request") or {}).get("method", "").upper() != "DELETE":
                return body
        return None
