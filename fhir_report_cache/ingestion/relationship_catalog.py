"""Retrieval and decoding of report relationship definitions."""

from typing import Any

import structlog
from pydantic import ValidationError

from fhir_report_cache.ingestion.fhir_client import FhirClient
from fhir_report_cache.models.relationship import (
    DisplayFormat,
    ExternalHooks,
    FieldMapping,
    LinkSpec,
    RelationshipSpec,
)
from fhir_report_cache.utils.errors import RelationshipConfigError

log = structlog.stdlib.get_logger()

STRUCTURE_DEFINITION_BASE = "http://ihris.org/fhir/StructureDefinition"
REPORT_DETAILS_URL = f"{STRUCTURE_DEFINITION_BASE}/iHRISReportDetails"
REPORT_LINK_URL = f"{STRUCTURE_DEFINITION_BASE}/iHRISReportLink"
REPORT_ELEMENT_URL = f"{STRUCTURE_DEFINITION_BASE}/iHRISReportElement"
RELATIONSHIP_CODE = "iHRISRelationship"


def flatten_complex(extensions: list[dict[str, Any]]) -> dict[str, Any]:
    """
    Collapse a complex extension into ``{url: value}``.

    The value of each entry is whatever ``value[x]`` (or nested ``extension``)
    it carries. Repeated urls collect into a list; a nested extension list
    is always wrapped in a list so repeated complex children stay separate.
    """
    results: dict[str, Any] = {}
    for extension in extensions:
        url = extension.get("url")
        value: Any = ""
        for key, candidate in extension.items():
            if key != "url":
                value = candidate

        if url in results:
            if isinstance(results[url], list):
                results[url].append(value)
            else:
                results[url] = [results[url], value]
        elif isinstance(value, list):
            results[url] = [value]
        else:
            results[url] = value
    return results


def format_label(label: str) -> str:
    """Turn a spaced label such as ``"first name"`` into ``"FirstName"``."""
    words = label.split(" ")
    if len(words) == 1:
        return label
    return "".join(word[:1].upper() + word[1:] for word in label.lower().split(" ") if word)


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return bool(value)


def _as_list(value: Any) -> list[Any]:
    if value is None or value == "":
        return []
    return value if isinstance(value, list) else [value]


class RelationshipCatalog:
    """Fetches relationship definitions stored as Basic resources on the FHIR server."""

    def __init__(self, fhir_client: FhirClient):
        self._fhir_client = fhir_client

    async def fetch_definitions(self, relationship_ids: list[str] | None = None) -> list[dict[str, Any]]:
        """
        Fetch raw relationship definitions in catalog order.

        Args:
            relationship_ids: Only fetch these ids (all definitions when empty)

        Returns:
            Basic resources carrying report extensions

        Raises:
            FetchError: If the catalog cannot be read
        """
        params: dict[str, Any] = {"code": RELATIONSHIP_CODE}
        if relationship_ids:
            params["_id"] = ",".join(relationship_ids)

        log.info("fetching_relationships", relationship_ids=relationship_ids or "all")

        definitions: list[dict[str, Any]] = []
        url: str | None = self._fhir_client.url("Basic", params=params)
        while url:
            bundle = await self._fhir_client.get_bundle(url)
            for entry in bundle.get("entry", []):
                resource = entry.get("resource")
                if resource and resource.get("resourceType") == "Basic":
                    definitions.append(resource)
            url = next(
                (link.get("url") for link in bundle.get("link", []) if link.get("relation") == "next"),
                None,
            )

        log.info("relationships_fetched", count=len(definitions))
        return definitions

    def decode(self, definition: dict[str, Any]) -> RelationshipSpec:
        """
        Decode a Basic resource into a RelationshipSpec.

        Raises:
            RelationshipConfigError: If the definition is incomplete or invalid
        """
        definition_id = definition.get("id", "<unknown>")
        extensions = definition.get("extension", [])

        details = next((ext for ext in extensions if ext.get("url") == REPORT_DETAILS_URL), None)
        if details is None:
            raise RelationshipConfigError(definition_id, "missing report details extension")

        try:
            flat = flatten_complex(details.get("extension", []))
            relationship = RelationshipSpec(
                id=definition.get("id"),
                name=flat.get("name"),
                resource=flat.get("resource"),
                field_mappings=self._decode_elements(flat.get(REPORT_ELEMENT_URL)),
                filter_expression=flat.get("filter") or None,
                query=flat.get("query") or None,
                caching_disabled=_as_bool(flat.get("cachingDisabled", False)),
                initial_filter=flat.get("initialFilter") or None,
                external_hooks=ExternalHooks(
                    pre_disable=flat.get("preDisable") or None,
                    post_run=flat.get("postRun") or None,
                ),
                links=[
                    self._decode_link(ext.get("extension", []))
                    for ext in extensions
                    if ext.get("url") == REPORT_LINK_URL
                ],
            )
        except ValidationError as e:
            log.error("invalid_relationship_definition", relationship_id=definition_id, error=str(e))
            raise RelationshipConfigError(definition_id, f"invalid definition: {e}") from e

        log.debug(
            "relationship_decoded",
            relationship_id=definition_id,
            name=relationship.name,
            links=len(relationship.links),
        )
        return relationship

    def _decode_link(self, extensions: list[dict[str, Any]]) -> LinkSpec:
        flat = flatten_complex(extensions)
        return LinkSpec(
            name=flat.get("name"),
            resource=flat.get("resource"),
            link_to=flat.get("linkTo"),
            link_element=flat.get("linkElement"),
            link_element_search_parameter=flat.get("linkElementSearchParameter") or None,
            multiple=_as_bool(flat.get("multiple", False)),
            query=flat.get("query") or None,
            field_mappings=self._decode_elements(flat.get(REPORT_ELEMENT_URL)),
        )

    def _decode_elements(self, elements: Any) -> list[FieldMapping]:
        mappings: list[FieldMapping] = []
        for element in _as_list(elements):
            flat = flatten_complex(element)
            display_format = None
            if flat.get("displayformat"):
                display = flatten_complex(flat["displayformat"][0])
                display_format = DisplayFormat(
                    format=display.get("format", "%s"),
                    paths=[path.strip() for path in display.get("order", "").split(",") if path.strip()],
                )
            mappings.append(
                FieldMapping(
                    output_name=format_label(flat.get("label", "")),
                    path=flat.get("name") or None,
                    function=flat.get("function") or None,
                    function_inputs=[
                        name.strip() for name in flat.get("functionInputs", "").split(",") if name.strip()
                    ],
                    display_format=display_format,
                    auto_generated=_as_bool(flat.get("autoGenerated", False)),
                    value_modifier=flat.get("valueModifier") or None,
                    type=flat.get("type") or None,
                )
            )
        return mappings
