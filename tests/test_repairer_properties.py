"""Tests for the post-pass repair sweep."""

import pytest
from conftest import FakeStore, FhirServer, make_context, staff_relationship

from fhir_report_cache.models.records import FetchedRecord
from fhir_report_cache.processing.field_projector import FieldProjector
from fhir_report_cache.sync.consistency_repairer import ConsistencyRepairer, links_back_to_parent
from fhir_report_cache.sync.document_synchronizer import DocumentSynchronizer


def fetched(body: dict) -> FetchedRecord:
    return FetchedRecord(resource_type=body["resourceType"], id=body["id"], version_id="1", body=body)


PRACTITIONER = {"resourceType": "Practitioner", "id": "p1", "name": [{"family": "Doe", "given": ["Jane"]}]}
ROLE = {
    "resourceType": "PractitionerRole",
    "id": "r1",
    "practitioner": {"reference": "Practitioner/p1"},
    "code": [{"text": "Nurse"}],
    "location": [{"reference": "Location/l1"}],
}


class Repair:
    def __init__(self, relationship=None):
        self.server = FhirServer()
        self.store = FakeStore()
        client = self.server.client()
        self.projector = FieldProjector(client, self.store)
        self.synchronizer = DocumentSynchronizer(self.store)
        self.repairer = ConsistencyRepairer(client, self.store, self.projector, self.synchronizer, batch_size=2)
        self.ctx = make_context(relationship or staff_relationship())
        self.store.indices[self.ctx.index_name] = {}

    async def apply(self, alias: str, body: dict) -> None:
        resource = self.ctx.resource(alias)
        record = await self.projector.project(self.ctx, resource, fetched(body))
        await self.synchronizer.merge(self.ctx, resource, record)

    async def repair(self, alias: str) -> int:
        return await self.repairer.repair(self.ctx, self.ctx.resource(alias))

    def rows(self):
        return self.store.rows(self.ctx.index_name)


def test_reverse_links_are_detected_structurally():
    ctx = make_context(staff_relationship())

    assert links_back_to_parent(ctx.resource("role"))
    assert not links_back_to_parent(ctx.resource("location"))
    assert not links_back_to_parent(ctx.resource("staff"))


@pytest.mark.asyncio
async def test_missing_forward_link_is_filled_from_the_server():
    repair = Repair()
    await repair.apply("staff", PRACTITIONER)
    await repair.apply("role", ROLE)
    repair.server.put({"resourceType": "Location", "id": "l1", "name": "Ward A"})

    repaired = await repair.repair("location")

    assert repaired == 1
    assert repair.ctx.rows_repaired == 1
    (row,) = repair.rows()
    assert row["location"] == "Location/l1"
    assert row["facility"] == "Ward A"
    assert repair.server.requests[-1].params["_id"] == "l1"
    assert repair.store.refreshes[-1] == repair.ctx.index_name


@pytest.mark.asyncio
async def test_divergent_forward_link_is_refilled():
    repair = Repair()
    await repair.apply("staff", PRACTITIONER)
    await repair.apply("role", ROLE)
    await repair.apply("location", {"resourceType": "Location", "id": "l1", "name": "Ward A"})
    (doc_id,) = repair.store.indices[repair.ctx.index_name]
    repair.store.indices[repair.ctx.index_name][doc_id]["__location_link"] = "Location/l2"
    repair.server.put({"resourceType": "Location", "id": "l2", "name": "Ward B"})

    assert await repair.repair("location") == 1

    (row,) = repair.rows()
    assert row["location"] == "Location/l2"
    assert row["facility"] == "Ward B"


@pytest.mark.asyncio
async def test_missed_child_is_found_through_its_search_parameter():
    repair = Repair()
    await repair.apply("staff", PRACTITIONER)
    repair.server.put(ROLE)

    assert await repair.repair("role") == 1

    (row,) = repair.rows()
    assert row["role"] == "PractitionerRole/r1"
    assert row["jobTitle"] == "Nurse"
    assert repair.server.requests[-1].params["practitioner"] == "Practitioner/p1"


@pytest.mark.asyncio
async def test_reverse_link_without_search_parameter_is_skipped():
    relationship = staff_relationship()
    relationship.links[0].link_element_search_parameter = None
    repair = Repair(relationship)
    await repair.apply("staff", PRACTITIONER)

    assert await repair.repair("role") == 0
    assert repair.server.requests == []


@pytest.mark.asyncio
async def test_consistent_rows_need_no_requests():
    repair = Repair()
    await repair.apply("staff", PRACTITIONER)
    await repair.apply("role", ROLE)
    await repair.apply("location", {"resourceType": "Location", "id": "l1", "name": "Ward A"})

    assert await repair.repair("location") == 0
    assert await repair.repair("staff") == 0
    assert repair.server.requests == []


@pytest.mark.asyncio
async def test_fetch_failure_is_recorded_and_the_sweep_goes_on():
    repair = Repair()
    await repair.apply("staff", PRACTITIONER)
    await repair.apply("role", ROLE)
    repair.server.failing.add("Location")

    assert await repair.repair("location") == 0
    assert len(repair.ctx.errors) == 1
    assert "location" in repair.ctx.errors[0]
