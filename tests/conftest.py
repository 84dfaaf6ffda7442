"""Shared fixtures: an in-memory Elasticsearch and an in-memory FHIR reader."""

import itertools
from typing import Any

import httpx
import pytest

from fhir_report_cache.ingestion.fhir_client import FhirClient
from fhir_report_cache.models.records import PassContext, PatchAction, PatchOperation, utc_now
from fhir_report_cache.models.relationship import FieldMapping, LinkSpec, RelationshipSpec
from fhir_report_cache.processing.dependency_resolver import DependencyResolver
from fhir_report_cache.processing.field_projector import FieldProjector
from fhir_report_cache.processing.hooks import HookRegistry


def _keyword(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _field(name: str) -> str:
    return name[: -len(".keyword")] if name.endswith(".keyword") else name


class FakeStore:
    """Understands the query subset emitted on report indices."""

    def __init__(self) -> None:
        self.indices: dict[str, dict[str, dict[str, Any]]] = {}
        self.mappings: dict[str, dict[str, Any]] = {}
        self.cluster_settings: dict[str, Any] = {}
        self.refreshes: list[str] = []
        self._ids = itertools.count(1)

    def rows(self, index: str) -> list[dict[str, Any]]:
        return [dict(source) for source in self.indices.get(index, {}).values()]

    async def index_exists(self, index: str) -> bool:
        return index in self.indices

    async def create_index(self, index: str, body: dict[str, Any]) -> None:
        self.indices.setdefault(index, {})
        self.mappings[index] = body

    async def put_cluster_settings(self, settings: dict[str, Any]) -> None:
        self.cluster_settings.update(settings)

    async def search_all(self, index: str, query: dict[str, Any]) -> list[dict[str, Any]]:
        documents = self.indices.get(index, {})
        return [
            {"_id": doc_id, "_source": dict(source)}
            for doc_id, source in documents.items()
            if self.matches(doc_id, source, query.get("query", {"match_all": {}}))
        ]

    async def update_by_query(
        self,
        index: str,
        query: dict[str, Any],
        patch: list[PatchOperation],
        conflicts_proceed: bool = False,
    ) -> int:
        updated = 0
        for doc_id, source in self.indices.get(index, {}).items():
            if not self.matches(doc_id, source, query):
                continue
            for operation in patch:
                source[operation.column] = None if operation.action == PatchAction.NULL else operation.value
            updated += 1
        return updated

    async def delete_by_query(self, index: str, query: dict[str, Any]) -> int:
        documents = self.indices.get(index, {})
        doomed = [doc_id for doc_id, source in documents.items() if self.matches(doc_id, source, query)]
        for doc_id in doomed:
            del documents[doc_id]
        return len(doomed)

    async def insert(self, index: str, document: dict[str, Any], doc_id: str | None = None) -> str:
        doc_id = doc_id or f"doc-{next(self._ids)}"
        self.indices.setdefault(index, {})[doc_id] = dict(document)
        return doc_id

    async def get_document(self, index: str, doc_id: str) -> dict[str, Any] | None:
        document = self.indices.get(index, {}).get(doc_id)
        return dict(document) if document is not None else None

    async def put_document(self, index: str, doc_id: str, document: dict[str, Any]) -> None:
        await self.insert(index, document, doc_id=doc_id)

    async def refresh(self, index: str) -> None:
        self.refreshes.append(index)

    def matches(self, doc_id: str, source: dict[str, Any], query: dict[str, Any]) -> bool:
        kind, body = next(iter(query.items()))
        if kind == "match_all":
            return True
        if kind == "ids":
            return doc_id in body["values"]
        if kind == "exists":
            return source.get(body["field"]) not in (None, [])
        if kind == "term":
            field, value = next(iter(body.items()))
            current = source.get(_field(field))
            return current is not None and _keyword(current) == _keyword(value)
        if kind == "terms":
            field, values = next(iter(body.items()))
            current = source.get(_field(field))
            return current is not None and _keyword(current) in {_keyword(value) for value in values}
        if kind == "range":
            field, bounds = next(iter(body.items()))
            current = source.get(field)
            return current is not None and ("gt" not in bounds or current > bounds["gt"])
        if kind == "bool":
            must = all(self.matches(doc_id, source, clause) for clause in body.get("must", []))
            must_not = any(self.matches(doc_id, source, clause) for clause in body.get("must_not", []))
            should = body.get("should", [])
            minimum = body.get("minimum_should_match", 0)
            should_ok = sum(self.matches(doc_id, source, clause) for clause in should) >= minimum
            return must and not must_not and should_ok
        raise AssertionError(f"unsupported query {kind}")


class FakeFhir:
    """Reference reader serving resources from a dict."""

    def __init__(self, resources: dict[str, dict[str, Any]] | None = None):
        self.resources = dict(resources or {})
        self.reads: list[str] = []

    async def read(self, reference: str) -> dict[str, Any] | None:
        self.reads.append(reference)
        return self.resources.get(reference)


def staff_relationship(multiple_roles: bool = True) -> RelationshipSpec:
    """Practitioners with their roles and each role's location."""
    return RelationshipSpec(
        id="staff",
        name="staff",
        resource="Practitioner",
        field_mappings=[
            FieldMapping(output_name="family", path="name.family"),
            FieldMapping(output_name="given", path="name.given"),
        ],
        links=[
            LinkSpec(
                name="role",
                resource="PractitionerRole",
                link_to="staff",
                link_element="PractitionerRole.practitioner.reference",
                link_element_search_parameter="practitioner",
                multiple=multiple_roles,
                field_mappings=[FieldMapping(output_name="jobTitle", path="code.text")],
            ),
            LinkSpec(
                name="location",
                resource="Location",
                link_to="role.location.reference",
                link_element="Location.id",
                field_mappings=[FieldMapping(output_name="facility", path="name")],
            ),
        ],
    )


def make_context(relationship: RelationshipSpec, full_resync: bool = False) -> PassContext:
    return PassContext(
        relationship=relationship,
        ordered_resources=DependencyResolver().resolve(relationship),
        index_name=relationship.index_name,
        began_at=utc_now(),
        full_resync=full_resync,
    )


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def fhir() -> FakeFhir:
    return FakeFhir()


@pytest.fixture
def projector(fhir: FakeFhir, store: FakeStore) -> FieldProjector:
    return FieldProjector(fhir, store, hooks=HookRegistry())


FHIR_BASE = "http://fhir.test/fhir"


def bundle(resources: list[dict[str, Any]], kind: str = "searchset") -> dict[str, Any]:
    return {"resourceType": "Bundle", "type": kind, "entry": [{"resource": resource} for resource in resources]}


class FhirServer:
    """MockTransport handler answering catalog, history, search and read requests."""

    def __init__(self) -> None:
        self.definitions: list[dict[str, Any]] = []
        self.current: dict[str, dict[str, Any]] = {}
        self.changes: dict[str, list[dict[str, Any]]] = {}
        self.failing: set[str] = set()
        self.requests: list[httpx.URL] = []

    def put(self, resource: dict[str, Any]) -> None:
        """Store ``resource`` and list it in its type history."""
        reference = f"{resource['resourceType']}/{resource['id']}"
        self.current[reference] = resource
        self.changes.setdefault(resource["resourceType"], []).append(
            {"resource": resource, "request": {"method": "PUT", "url": reference}}
        )

    def client(self) -> FhirClient:
        return FhirClient(FHIR_BASE, client=httpx.AsyncClient(transport=httpx.MockTransport(self)))

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request.url)
        parts = request.url.path[len("/fhir/") :].split("/")
        resource_type = parts[0]
        if resource_type in self.failing:
            return httpx.Response(500, json={"resourceType": "OperationOutcome"})

        if resource_type == "Basic":
            return httpx.Response(200, json=bundle(self.definitions))
        if parts[1:] == ["_history"]:
            entries = self.changes.get(resource_type, [])
            return httpx.Response(200, json={"resourceType": "Bundle", "type": "history", "entry": entries})
        if len(parts) == 2:
            resource = self.current.get(f"{resource_type}/{parts[1]}")
            if resource is None:
                return httpx.Response(404, json={"resourceType": "OperationOutcome"})
            return httpx.Response(200, json=resource)
        return httpx.Response(200, json=bundle(self._search(resource_type, request.url.params)))

    def _search(self, resource_type: str, params: httpx.QueryParams) -> list[dict[str, Any]]:
        matches = []
        for reference, resource in self.current.items():
            if not reference.startswith(f"{resource_type}/"):
                continue
            if all(self._matches(resource, name, value) for name, value in params.items() if name != "_count"):
                matches.append(resource)
        return matches

    @staticmethod
    def _matches(resource: dict[str, Any], name: str, value: str) -> bool:
        wanted = value.split(",")
        if name == "_id":
            return resource["id"] in wanted
        return (resource.get(name) or {}).get("reference") in wanted
