"""Property-based tests for projecting FHIR records into report columns.

**Feature: fhir-report-cache, Property 4: Text that round-trips through a number becomes that number**
**Feature: fhir-report-cache, Property 5: Extension fallback finds the last match at any depth**
"""

import pytest
import structlog
from conftest import FakeFhir, FakeStore, make_context
from hypothesis import given, settings
from hypothesis import strategies as st

from fhir_report_cache.models.records import FetchedRecord
from fhir_report_cache.models.relationship import (
    DisplayFormat,
    FieldMapping,
    FieldType,
    LinkSpec,
    RelationshipSpec,
)
from fhir_report_cache.processing.field_projector import (
    FieldProjector,
    coerce_value,
    find_extension_value,
    split_top_level,
)
from fhir_report_cache.processing.hooks import HookRegistry
from fhir_report_cache.processing.path_evaluator import PathExpressionError
from fhir_report_cache.utils.errors import RelationshipConfigError

log = structlog.stdlib.get_logger()

JANE = {
    "resourceType": "Practitioner",
    "id": "p1",
    "meta": {"versionId": "1"},
    "active": True,
    "gender": "female",
    "name": [{"family": "Doe", "given": ["Jane"]}],
}


def fetched(body: dict, deleted: bool = False) -> FetchedRecord:
    return FetchedRecord(
        resource_type=body["resourceType"],
        id=body["id"],
        version_id=body.get("meta", {}).get("versionId"),
        body=body,
        deleted=deleted,
    )


def relationship(*mappings: FieldMapping, **overrides) -> RelationshipSpec:
    return RelationshipSpec(
        name="staff",
        resource="Practitioner",
        field_mappings=list(mappings),
        links=[
            LinkSpec(
                name="role",
                resource="PractitionerRole",
                link_to="staff",
                link_element="PractitionerRole.practitioner.reference",
                field_mappings=[
                    FieldMapping(output_name="practitionerName", path="practitioner"),
                    FieldMapping(output_name="jobTitle", path="code.text"),
                ],
            )
        ],
        **overrides,
    )


async def project(projector: FieldProjector, spec: RelationshipSpec, body: dict, alias: str = "staff", **ctx_args):
    ctx = make_context(spec, **ctx_args)
    return await projector.project(ctx, ctx.resource(alias), fetched(body))


@pytest.mark.asyncio
async def test_identity_column_is_last_and_link_column_is_qualified(projector: FieldProjector):
    spec = relationship(FieldMapping(output_name="family", path="name.family"))

    record = await project(projector, spec, JANE)

    assert list(record.fields) == ["family", "__role_link", "staff"]
    assert record.fields["staff"] == "Practitioner/p1"
    assert record.fields["__role_link"] == "Practitioner/p1"
    assert record.identity_field == "staff"
    assert record.link_values == []


@pytest.mark.asyncio
async def test_composite_path_joins_values_with_a_space(projector: FieldProjector):
    spec = relationship(FieldMapping(output_name="fullName", path="name.given, name.family"))

    record = await project(projector, spec, JANE)

    assert record.fields["fullName"] == "Jane Doe"


@pytest.mark.asyncio
async def test_display_format_renders_the_record_itself(projector: FieldProjector):
    spec = relationship(
        FieldMapping(
            output_name="label",
            display_format=DisplayFormat(format="%s, %s", paths=["name.family", "name.given"]),
        )
    )

    record = await project(projector, spec, JANE)

    assert record.fields["label"] == "Doe, Jane"


@pytest.mark.asyncio
async def test_reference_is_shown_by_name_and_read_once_per_pass(fhir: FakeFhir, store: FakeStore):
    fhir.resources["Practitioner/p1"] = JANE
    projector = FieldProjector(fhir, store)
    spec = relationship()
    ctx = make_context(spec)
    role = {
        "resourceType": "PractitionerRole",
        "id": "r1",
        "practitioner": {"reference": "Practitioner/p1"},
        "code": [{"text": "Nurse"}],
    }

    first = await projector.project(ctx, ctx.resource("role"), fetched(role))
    second = await projector.project(ctx, ctx.resource("role"), fetched({**role, "id": "r2"}))

    assert first.fields["practitionerName"] == "Jane Doe"
    assert second.fields["practitionerName"] == "Jane Doe"
    assert first.link_values == ["Practitioner/p1"]
    assert fhir.reads == ["Practitioner/p1"]


@pytest.mark.asyncio
async def test_missing_reference_falls_back_to_the_reference_text(projector: FieldProjector):
    spec = relationship()
    ctx = make_context(spec)
    role = {"resourceType": "PractitionerRole", "id": "r1", "practitioner": {"reference": "Practitioner/gone"}}

    record = await projector.project(ctx, ctx.resource("role"), fetched(role))

    assert record.fields["practitionerName"] == "Practitioner/gone"
    assert record.fields["jobTitle"] is None


@pytest.mark.asyncio
async def test_extension_fallback_and_value_modifier(projector: FieldProjector):
    spec = relationship(
        FieldMapping(output_name="nickname", path="nickname"),
        FieldMapping(output_name="sex", path="gender", value_modifier="value=male:M:value=female:F:U"),
    )
    body = {**JANE, "extension": [{"url": "nickname", "valueString": "JJ"}]}

    record = await project(projector, spec, body)

    assert record.fields["nickname"] == "JJ"
    assert record.fields["sex"] == "F"


@pytest.mark.asyncio
async def test_explicit_type_wins_over_automatic_coercion(projector: FieldProjector):
    spec = relationship(
        FieldMapping(output_name="payrollAuto", path="payroll"),
        FieldMapping(output_name="payrollKeyword", path="payroll", type=FieldType.KEYWORD),
    )
    body = {**JANE, "extension": [{"url": "payroll", "valueString": "1984"}]}

    record = await project(projector, spec, body)

    assert record.fields["payrollAuto"] == 1984
    assert record.fields["payrollKeyword"] == "1984"


@pytest.mark.asyncio
async def test_function_receives_computed_columns():
    hooks = HookRegistry({"initials": lambda fields: fields["given"][0] + fields["family"][0]})
    projector = FieldProjector(FakeFhir(), FakeStore(), hooks=hooks)
    spec = relationship(
        FieldMapping(output_name="family", path="name.family"),
        FieldMapping(output_name="given", path="name.given"),
        FieldMapping(output_name="initials", function="initials", function_inputs=["given", "family"]),
    )

    record = await project(projector, spec, JANE)

    assert record.fields["initials"] == "JD"


@pytest.mark.asyncio
async def test_function_with_missing_inputs_reads_the_stored_row(store: FakeStore):
    seen = {}

    async def ward(fields):
        seen.update(fields)
        return f"{fields['department']}-{fields['family']}"

    await store.insert("staff", {"staff": "Practitioner/p1", "department": "ICU", "family": "Old"})
    projector = FieldProjector(FakeFhir(), store, hooks=HookRegistry({"ward": ward}))
    spec = relationship(
        FieldMapping(output_name="family", path="name.family"),
        FieldMapping(output_name="ward", function="ward", function_inputs=["department"]),
    )

    record = await project(projector, spec, JANE)

    # computed columns win over stored ones
    assert record.fields["ward"] == "ICU-Doe"
    assert seen["department"] == "ICU"


@pytest.mark.asyncio
async def test_unregistered_function_is_a_configuration_error(projector: FieldProjector):
    spec = relationship(FieldMapping(output_name="x", function="nowhere"))

    with pytest.raises(RelationshipConfigError):
        await project(projector, spec, JANE)


@pytest.mark.asyncio
async def test_malformed_value_modifier_is_a_configuration_error(projector: FieldProjector):
    spec = relationship(FieldMapping(output_name="sex", path="gender", value_modifier="female:F"))

    with pytest.raises(RelationshipConfigError, match="sex"):
        await project(projector, spec, JANE)


@pytest.mark.asyncio
async def test_filtered_first_version_is_skipped_on_full_resync(projector: FieldProjector):
    spec = relationship(filter_expression="active = true")
    inactive = {**JANE, "active": False}

    assert await project(projector, spec, inactive, full_resync=True) is None


@pytest.mark.asyncio
async def test_filtered_record_is_retracted_on_incremental_pass(projector: FieldProjector):
    spec = relationship(filter_expression="active = true")
    inactive = {**JANE, "active": False, "meta": {"versionId": "4"}}

    record = await project(projector, spec, inactive)

    assert record is not None
    assert record.deleted is True


@pytest.mark.asyncio
async def test_legacy_query_filter(projector: FieldProjector):
    spec = relationship(query="gender=female&active=true")

    kept = await project(projector, spec, JANE, full_resync=True)
    dropped = await project(projector, spec, {**JANE, "gender": "male"}, full_resync=True)

    assert kept is not None and kept.deleted is False
    assert dropped is None


@pytest.mark.asyncio
async def test_broken_filter_is_a_configuration_error():
    def broken(record, expression):
        raise PathExpressionError(expression, ValueError("bad token"))

    projector = FieldProjector(FakeFhir(), FakeStore(), evaluator=broken)
    spec = relationship(filter_expression="active = = true")

    with pytest.raises(RelationshipConfigError):
        await project(projector, spec, JANE)


def test_split_top_level_respects_brackets_and_quotes():
    assert split_top_level("name.given, name.family") == ["name.given", "name.family"]
    assert split_top_level("name.where(use = 'a,b').text, id") == ["name.where(use = 'a,b').text", "id"]
    assert split_top_level("iif(active, 'y', 'n')") == ["iif(active, 'y', 'n')"]


@given(st.integers(min_value=-(10**12), max_value=10**12))
def test_property_4_integer_text_becomes_integer(number: int):
    """Property 4: Text that round-trips through a number becomes that number.

    **Feature: fhir-report-cache, Property 4: Text that round-trips through a number becomes that number**
    """
    assert coerce_value(str(number), None) == number
    assert coerce_value(str(number), FieldType.KEYWORD) == str(number)


@pytest.mark.parametrize(
    ("text", "expected"),
    [("2.5", 2.5), ("0.1", 0.1), ("007", "007"), ("2.50", "2.50"), ("nan", "nan"), ("1e5", "1e5"), ("", "")],
)
def test_automatic_coercion_examples(text: str, expected):
    assert coerce_value(text, None) == expected


@given(
    values=st.lists(st.text(min_size=1, max_size=10), min_size=1, max_size=4),
    depth=st.integers(min_value=0, max_value=5),
)
@settings(max_examples=50)
def test_property_5_extension_fallback_last_match_wins(values: list[str], depth: int):
    """Property 5: Extension fallback finds the last match at any depth.

    *For any* list of same-named extensions nested at any depth below the
    guard, the value of the last one in document order is found.

    **Feature: fhir-report-cache, Property 5: Extension fallback finds the last match at any depth**
    """
    log.info("test_property_5_extension_fallback_last_match_wins", values=len(values), depth=depth)

    matches = [{"url": "target", "valueString": value} for value in values]
    extensions = matches
    for level in range(depth):
        extensions = [{"url": f"wrapper-{level}", "extension": extensions}]

    assert find_extension_value(extensions, "target") == values[-1]


def test_extension_fallback_stops_at_the_depth_guard():
    extensions = [{"url": "target", "valueString": "deep"}]
    for level in range(10):
        extensions = [{"url": f"wrapper-{level}", "extension": extensions}]

    assert find_extension_value(extensions, "target", max_depth=4) is None
    assert find_extension_value(extensions, "target", max_depth=12) == "deep"
