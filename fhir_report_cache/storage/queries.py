"""Builders for the Elasticsearch query subset used on report indices.

Columns are matched on their ``keyword`` subfield, so values compare exactly.
"""

from datetime import datetime
from typing import Any, Iterable

from fhir_report_cache.models.records import format_timestamp

Query = dict[str, Any]


def terms(column: str, values: Iterable[Any]) -> Query:
    return {"terms": {f"{column}.keyword": list(values)}}


def term(column: str, value: Any) -> Query:
    return {"term": {f"{column}.keyword": value}}


def exists(column: str) -> Query:
    return {"exists": {"field": column}}


def ids(doc_ids: Iterable[str]) -> Query:
    return {"ids": {"values": list(doc_ids)}}


def updated_after(column: str, moment: datetime) -> Query:
    return {"range": {column: {"gt": format_timestamp(moment)}}}


def all_of(*must: Query, must_not: Iterable[Query] = ()) -> Query:
    """Documents matching every ``must`` clause and no ``must_not`` clause."""
    clauses: dict[str, Any] = {"must": list(must)}
    excluded = list(must_not)
    if excluded:
        clauses["must_not"] = excluded
    return {"bool": clauses}


def value_or_missing(column: str, value: Any) -> Query:
    """Documents whose column holds ``value`` or nothing at all."""
    return {
        "bool": {
            "should": [term(column, value), all_of(must_not=[exists(column)])],
            "minimum_should_match": 1,
        }
    }
