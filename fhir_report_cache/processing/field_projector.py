"""Projection of FHIR records into report columns."""

import json
import re
from typing import Any, Protocol

import structlog

from fhir_report_cache.models.records import DenormalizedRecord, FetchedRecord, PassContext
from fhir_report_cache.models.relationship import (
    DisplayFormat,
    FieldMapping,
    FieldType,
    OrderedResource,
)
from fhir_report_cache.processing.hooks import HookRegistry, UnknownHookError
from fhir_report_cache.processing.path_evaluator import (
    FhirPathEvaluator,
    PathEvaluator,
    PathExpressionError,
)
from fhir_report_cache.processing.value_modifier import ValueModifierError, apply_value_modifier
from fhir_report_cache.utils.errors import FetchError, RelationshipConfigError

log = structlog.stdlib.get_logger()

MAX_EXTENSION_DEPTH = 8

INTEGER_TEXT = re.compile(r"-?(0|[1-9]\d*)")
DECIMAL_TEXT = re.compile(r"-?(0|[1-9]\d*)\.\d+")


class ReferenceReader(Protocol):
    async def read(self, reference: str) -> dict[str, Any] | None: ...


class RowReader(Protocol):
    async def search_all(self, index: str, query: dict[str, Any]) -> list[dict[str, Any]]: ...


def split_top_level(expression: str) -> list[str]:
    """Split a composite expression on commas that are not inside brackets or quotes."""
    parts: list[str] = []
    depth = 0
    quoted = False
    current: list[str] = []
    for char in expression:
        if char == "'":
            quoted = not quoted
        elif not quoted and char in "([":
            depth += 1
        elif not quoted and char in ")]":
            depth -= 1
        elif not quoted and depth == 0 and char == ",":
            parts.append("".join(current).strip())
            current = []
            continue
        current.append(char)
    parts.append("".join(current).strip())
    return [part for part in parts if part]


def find_extension_value(extensions: list[Any], url: str, max_depth: int = MAX_EXTENSION_DEPTH) -> Any:
    """
    Value of the extension named ``url``, searching nested extensions too.

    Walks the extension tree in document order with an explicit stack; the
    last match wins. Nesting deeper than ``max_depth`` is not searched.
    """
    result: Any = None
    stack = [(iter(extensions), 0)]
    while stack:
        entries, depth = stack[-1]
        extension = next(entries, None)
        if extension is None:
            stack.pop()
            continue
        if not isinstance(extension, dict):
            continue

        value: Any = None
        for key, candidate in extension.items():
            if key != "url":
                value = candidate

        if extension.get("url") == url:
            result = value
        if isinstance(value, list) and depth + 1 < max_depth:
            stack.append((iter(value), depth + 1))
    return result


def coerce_value(value: Any, field_type: FieldType | None) -> Any:
    """
    Cast a projected value for indexing.

    Without an explicit type, text that round-trips through a number parse
    becomes an int (no fractional part) or a float; anything else is kept.
    """
    if value is None:
        return None

    if isinstance(value, bool):
        text = "true" if value else "false"
    else:
        text = str(value)

    if field_type in (FieldType.TEXT, FieldType.KEYWORD):
        return text
    if field_type == FieldType.INTEGER:
        try:
            return int(float(text))
        except ValueError:
            log.warning("value_not_integer", value=text)
            return None
    if field_type == FieldType.DECIMAL:
        try:
            return float(text)
        except ValueError:
            log.warning("value_not_decimal", value=text)
            return None

    if not isinstance(value, str):
        return value
    if INTEGER_TEXT.fullmatch(value) and str(int(value)) == value:
        return int(value)
    if DECIMAL_TEXT.fullmatch(value) and str(float(value)) == value:
        return float(value)
    return value


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == []


def _text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class FieldProjector:
    """Evaluates an ordered resource's field mappings against one source record."""

    def __init__(
        self,
        reference_reader: ReferenceReader,
        row_reader: RowReader,
        hooks: HookRegistry | None = None,
        evaluator: PathEvaluator | None = None,
    ):
        """
        Initialize field projector.

        Args:
            reference_reader: Reads referenced records (usually the FhirClient)
            row_reader: Reads stored report rows (usually the ElasticsearchStore)
            hooks: Registered external field functions
            evaluator: FHIRPath evaluator, fhirpathpy by default
        """
        self._reference_reader = reference_reader
        self._row_reader = row_reader
        self._hooks = hooks or HookRegistry()
        self._evaluate = evaluator or FhirPathEvaluator()

    async def project(
        self, ctx: PassContext, resource: OrderedResource, fetched: FetchedRecord
    ) -> DenormalizedRecord | None:
        """
        Project one record for one alias.

        A record failing the alias filter is marked deleted so its previous
        contribution gets retracted; when it is the record's first version
        during a full resync there is nothing to retract and None is returned.

        Raises:
            RelationshipConfigError: For invalid filters or unknown functions
        """
        body = fetched.body
        deleted = fetched.deleted
        if not deleted and not self.passes_filter(ctx, resource, body):
            if fetched.is_first_version and ctx.full_resync:
                log.debug("record_filtered_out", resource=resource.name, identity=fetched.identity)
                return None
            log.info("record_no_longer_matches_filter", resource=resource.name, identity=fetched.identity)
            deleted = True

        fields: dict[str, Any] = {}
        for mapping in resource.field_mappings:
            fields[mapping.output_name] = await self._project_field(
                ctx, resource, mapping, fetched, fields
            )
        fields[resource.name] = fetched.identity

        return DenormalizedRecord(
            identity_field=resource.name,
            identity=fetched.identity,
            fields=fields,
            link_values=[] if resource.is_root else self.link_values(ctx, resource, body),
            deleted=deleted,
            version_id=fetched.version_id,
        )

    def passes_filter(self, ctx: PassContext, resource: OrderedResource, body: dict[str, Any]) -> bool:
        """Whether ``body`` belongs in the report according to the alias filters."""
        try:
            if resource.filter_expression:
                values = self._evaluate(body, resource.filter_expression)
                if not values or any(value is False for value in values):
                    return False

            for clause in (resource.query or "").split("&"):
                if not clause:
                    continue
                path, _, expected = clause.partition("=")
                values = self._evaluate(body, path.strip())
                if expected.strip() not in {_text(value) for value in values}:
                    return False
        except PathExpressionError as e:
            raise RelationshipConfigError(ctx.relationship.name, f"invalid filter on '{resource.name}': {e}") from e
        return True

    def link_values(self, ctx: PassContext, resource: OrderedResource, body: dict[str, Any]) -> list[str]:
        """Identities of the parent records this child points at."""
        element = resource.link_element or ""
        prefix = f"{resource.resource}."
        if element.startswith(prefix):
            element = element[len(prefix):]

        try:
            values = self._evaluate(body, element)
        except PathExpressionError as e:
            raise RelationshipConfigError(
                ctx.relationship.name, f"invalid link element on '{resource.name}': {e}"
            ) from e

        links: list[str] = []
        for value in values:
            if isinstance(value, dict):
                value = value.get("reference")
            if _is_empty(value):
                continue
            link = f"{resource.resource}/{value}" if element == "id" else str(value)
            if link not in links:
                links.append(link)
        return links

    async def _project_field(
        self,
        ctx: PassContext,
        resource: OrderedResource,
        mapping: FieldMapping,
        fetched: FetchedRecord,
        fields: dict[str, Any],
    ) -> Any:
        body = fetched.body
        if mapping.function:
            value = await self._call_function(ctx, resource, mapping, fetched.identity, fields)
        elif mapping.path:
            value = await self._extract_path(ctx, resource, mapping, body)
        else:
            value = self.render_display(body, mapping.display_format)

        if mapping.value_modifier:
            try:
                value = apply_value_modifier(mapping.value_modifier, value, fields)
            except ValueModifierError as e:
                raise RelationshipConfigError(
                    ctx.relationship.name, f"invalid value modifier on '{mapping.output_name}': {e}"
                ) from e

        return coerce_value(value, mapping.type)

    async def _extract_path(
        self, ctx: PassContext, resource: OrderedResource, mapping: FieldMapping, body: dict[str, Any]
    ) -> Any:
        parts = split_top_level(mapping.path or "")
        rendered: list[Any] = []
        for part in parts:
            try:
                values = self._evaluate(body, part)
            except PathExpressionError as e:
                log.error("field_path_failed", resource=resource.name, field=mapping.output_name, error=str(e))
                values = []

            if not values and body.get("extension"):
                fallback = find_extension_value(body["extension"], part)
                values = [] if _is_empty(fallback) else [fallback]

            if mapping.auto_generated:
                value = self._link_text(values, part, body)
            else:
                value = await self._normalize(ctx, mapping, values[-1] if values else None)
                if part == "id" and not _is_empty(value):
                    value = f"{body.get('resourceType')}/{value}"

            if not _is_empty(value):
                rendered.append(value)

        if not rendered:
            return None
        if len(parts) == 1:
            return rendered[0]
        return " ".join(_text(value) for value in rendered)

    def _link_text(self, values: list[Any], path: str, body: dict[str, Any]) -> str | None:
        """Every value of a link-id column, comma joined; references stay raw."""
        links: list[str] = []
        for value in values:
            if isinstance(value, list):
                value = value[-1] if value else None
            if isinstance(value, dict):
                value = value.get("reference")
            if _is_empty(value):
                continue
            link = f"{body.get('resourceType')}/{value}" if path == "id" else _text(value)
            if link not in links:
                links.append(link)
        return ",".join(links) or None

    async def _normalize(self, ctx: PassContext, mapping: FieldMapping, value: Any) -> Any:
        if isinstance(value, list):
            value = value[-1] if value else None
        if isinstance(value, dict):
            if value.get("reference"):
                return await self._display_reference(ctx, value["reference"], mapping.display_format)
            return json.dumps(value)
        return value

    async def _display_reference(
        self, ctx: PassContext, reference: str, display_format: DisplayFormat | None
    ) -> str:
        if reference.startswith("#") or "://" in reference:
            return reference

        if reference not in ctx.reference_cache:
            try:
                ctx.reference_cache[reference] = await self._reference_reader.read(reference)
            except FetchError as e:
                log.warning("reference_dereference_failed", reference=reference, error=str(e))
                return reference

        referenced = ctx.reference_cache[reference]
        if referenced is None:
            return reference
        return self.render_display(referenced, display_format) or reference

    def render_display(self, record: dict[str, Any], display_format: DisplayFormat | None) -> str | None:
        """
        Human readable text for a record.

        With a display format, the first value of each path is substituted
        into the template in order. Otherwise the record's name (plain or
        HumanName) or title is used.
        """
        if display_format is not None:
            values = []
            for path in display_format.paths:
                try:
                    found = self._evaluate(record, path)
                except PathExpressionError as e:
                    log.error("display_path_failed", path=path, error=str(e))
                    found = []
                values.append(_text(found[0]) if found else "")
            try:
                text = display_format.format % tuple(values)
            except (TypeError, ValueError):
                text = " ".join(values)
            return text.strip() or None

        name = record.get("name")
        if isinstance(name, str):
            return name
        if isinstance(name, dict):
            name = [name]
        if isinstance(name, list) and name and isinstance(name[0], dict):
            human = name[0]
            if human.get("text"):
                return human["text"]
            parts = list(human.get("given", [])) + ([human["family"]] if human.get("family") else [])
            if parts:
                return " ".join(parts)
        title = record.get("title")
        return title if isinstance(title, str) else None

    async def _call_function(
        self,
        ctx: PassContext,
        resource: OrderedResource,
        mapping: FieldMapping,
        identity: str,
        fields: dict[str, Any],
    ) -> Any:
        inputs = dict(fields)
        missing = [column for column in mapping.function_inputs if _is_empty(fields.get(column))]
        if missing:
            stored = await self._stored_row(ctx, resource, identity)
            inputs = {**stored, **{key: value for key, value in fields.items() if not _is_empty(value)}}
            log.debug(
                "function_inputs_from_stored_row",
                function=mapping.function,
                missing=missing,
                found=bool(stored),
            )

        try:
            return await self._hooks.call(mapping.function, inputs)
        except UnknownHookError as e:
            raise RelationshipConfigError(
                ctx.relationship.name, f"field '{mapping.output_name}' uses unregistered function {e}"
            ) from e

    async def _stored_row(self, ctx: PassContext, resource: OrderedResource, identity: str) -> dict[str, Any]:
        hits = await self._row_reader.search_all(
            ctx.index_name, {"query": {"terms": {f"{resource.name}.keyword": [identity]}}}
        )
        return dict(hits[0]["_source"]) if hits else {}
