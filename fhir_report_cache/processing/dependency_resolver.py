"""Resolution of a relationship's links into a parent-first processing order."""

import structlog

from fhir_report_cache.models.relationship import (
    FieldMapping,
    LinkSpec,
    OrderedResource,
    RelationshipSpec,
)
from fhir_report_cache.utils.errors import RelationshipConfigError

log = structlog.stdlib.get_logger()


class DependencyResolver:
    """Orders relationship nodes so that every parent precedes its children."""

    def resolve(self, relationship: RelationshipSpec) -> list[OrderedResource]:
        """
        Expand a relationship into its ordered resources.

        The root comes first. Links are appended by repeated passes over the
        unresolved links, each pass adding every link whose parent alias is
        already ordered. A pass that adds nothing means the remaining links
        point at aliases that do not exist.

        Args:
            relationship: Decoded relationship definition

        Returns:
            Ordered resources, root first, with synthetic link-id columns

        Raises:
            RelationshipConfigError: On duplicate aliases or unresolvable links
        """
        self._check_unique_aliases(relationship)

        link_columns = self._link_columns(relationship)

        ordered = [
            OrderedResource(
                name=relationship.name,
                resource=relationship.resource,
                query=relationship.query,
                filter_expression=relationship.filter_expression,
                initial_filter=relationship.initial_filter,
                field_mappings=relationship.field_mappings + link_columns.get(relationship.name, []),
            )
        ]
        known = {relationship.name}
        pending: list[LinkSpec] = list(relationship.links)
        passes = 0

        while pending:
            passes += 1
            progressed = False
            for link in list(pending):
                if link.parent_alias not in known:
                    continue
                ordered.append(self._to_ordered(link, link_columns.get(link.name, [])))
                known.add(link.name)
                pending.remove(link)
                progressed = True

            if not progressed:
                unresolved = ", ".join(f"{link.name} -> {link.link_to}" for link in pending)
                log.error(
                    "unresolvable_links",
                    relationship=relationship.name,
                    unresolved=unresolved,
                    passes=passes,
                )
                raise RelationshipConfigError(
                    relationship.name, f"links point at unknown aliases: {unresolved}"
                )

        log.info(
            "relationship_resolved",
            relationship=relationship.name,
            order=[resource.name for resource in ordered],
            passes=passes,
        )
        return ordered

    def _check_unique_aliases(self, relationship: RelationshipSpec) -> None:
        seen = {relationship.name}
        for link in relationship.links:
            if link.name in seen:
                raise RelationshipConfigError(
                    relationship.name, f"alias '{link.name}' is defined more than once"
                )
            seen.add(link.name)

    def _link_columns(self, relationship: RelationshipSpec) -> dict[str, list[FieldMapping]]:
        """Synthesize the __<child>_link columns, keyed by the parent alias that holds them."""
        columns: dict[str, list[FieldMapping]] = {}
        for link in relationship.links:
            segments = link.link_to.split(".")
            path = "id" if len(segments) == 1 else ".".join(segments[1:])
            columns.setdefault(link.parent_alias, []).append(
                FieldMapping(
                    output_name=f"__{link.name}_link",
                    path=path,
                    auto_generated=True,
                )
            )
        return columns

    def _to_ordered(self, link: LinkSpec, link_columns: list[FieldMapping]) -> OrderedResource:
        return OrderedResource(
            name=link.name,
            resource=link.resource,
            link_to=link.link_to,
            link_element=link.link_element,
            link_element_search_parameter=link.link_element_search_parameter,
            multiple=link.multiple,
            query=link.query,
            field_mappings=link.field_mappings + link_columns,
        )


def descendants(ordered: list[OrderedResource], name: str) -> list[OrderedResource]:
    """
    Every resource below ``name`` in the link tree, depth first.

    Uses an explicit stack with a visited set, so a misconfigured cycle ends
    the walk instead of recursing forever.
    """
    children: dict[str, list[OrderedResource]] = {}
    for resource in ordered:
        if resource.parent_alias is not None:
            children.setdefault(resource.parent_alias, []).append(resource)

    found: list[OrderedResource] = []
    visited = {name}
    stack = list(reversed(children.get(name, [])))
    while stack:
        resource = stack.pop()
        if resource.name in visited:
            continue
        visited.add(resource.name)
        found.append(resource)
        stack.extend(reversed(children.get(resource.name, [])))
    return found


def resource_columns(resources: list[OrderedResource]) -> list[str]:
    """Columns owned by the given resources: their mappings plus their identity columns."""
    columns: list[str] = []
    for resource in resources:
        for mapping in resource.field_mappings:
            if mapping.output_name not in columns:
                columns.append(mapping.output_name)
        if resource.name not in columns:
            columns.append(resource.name)
    return columns


def key_columns(ordered: list[OrderedResource]) -> list[str]:
    """Columns matched by exact value: every alias and every link-id column."""
    columns: list[str] = []
    for resource in ordered:
        columns.append(resource.name)
        columns.extend(
            mapping.output_name for mapping in resource.field_mappings if mapping.auto_generated
        )
    return columns
