"""Models for records moving through one synchronization pass."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from fhir_report_cache.models.relationship import OrderedResource, RelationshipSpec

EPOCH = datetime(1970, 1, 1)
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S"


def format_timestamp(value: datetime) -> str:
    """Render a timestamp the way both FHIR _since and the sync index expect it."""
    return value.strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    """Parse a stored timestamp, dropping any timezone designator."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def utc_now() -> datetime:
    """Current UTC time without timezone, like every stored timestamp."""
    return datetime.now(timezone.utc).replace(tzinfo=None, microsecond=0)


class SyncState(BaseModel):
    """Watermarks of one report index."""

    index: str = Field(default=..., description="Report index name")
    last_began_at: datetime = Field(default=EPOCH, description="Start of the last completed pass")
    last_ended_at: datetime = Field(default=EPOCH, description="End of the last completed pass")
    last_attempted_at: datetime | None = Field(default=None, description="Start of the latest pass")

    def to_document(self) -> dict[str, Any]:
        document = {
            "lastBeganAt": format_timestamp(self.last_began_at),
            "lastEndedAt": format_timestamp(self.last_ended_at),
        }
        if self.last_attempted_at is not None:
            document["lastAttemptedAt"] = format_timestamp(self.last_attempted_at)
        return document

    @classmethod
    def from_document(cls, index: str, document: dict[str, Any]) -> "SyncState":
        # lastIndexingTime is the single watermark written by older cache versions
        legacy = document.get("lastIndexingTime")
        began = document.get("lastBeganAt") or legacy
        ended = document.get("lastEndedAt") or legacy
        attempted = document.get("lastAttemptedAt")
        return cls(
            index=index,
            last_began_at=parse_timestamp(began) if began else EPOCH,
            last_ended_at=parse_timestamp(ended) if ended else EPOCH,
            last_attempted_at=parse_timestamp(attempted) if attempted else None,
        )


class FetchedRecord(BaseModel):
    """One entry of a changes page."""

    resource_type: str
    id: str
    version_id: str | None = None
    body: dict[str, Any] = Field(default_factory=dict)
    deleted: bool = False

    @property
    def identity(self) -> str:
        return f"{self.resource_type}/{self.id}"

    @property
    def is_first_version(self) -> bool:
        return self.version_id in (None, "1")


class DenormalizedRecord(BaseModel):
    """Column values projected from one source record for one alias.

    ``fields`` keeps insertion order; the identity column is always last.
    """

    identity_field: str
    identity: str
    fields: dict[str, Any] = Field(default_factory=dict)
    link_values: list[str] = Field(default_factory=list)
    deleted: bool = False
    version_id: str | None = None

    @property
    def is_first_version(self) -> bool:
        return self.version_id in (None, "1")

    def with_fields(self, **overrides: Any) -> "DenormalizedRecord":
        fields = dict(self.fields)
        fields.update(overrides)
        # keep the identity column last
        fields[self.identity_field] = fields.pop(self.identity_field, self.identity)
        return self.model_copy(update={"fields": fields})


class PatchAction(str, Enum):
    SET = "set"
    NULL = "null"


class PatchOperation(BaseModel):
    """A single column change applied by an update-by-query."""

    column: str
    action: PatchAction
    value: Any = None

    @classmethod
    def set(cls, column: str, value: Any) -> "PatchOperation":
        return cls(column=column, action=PatchAction.SET, value=value)

    @classmethod
    def null(cls, column: str) -> "PatchOperation":
        return cls(column=column, action=PatchAction.NULL)


class PassContext(BaseModel):
    """State of one relationship's synchronization pass.

    Created by the coordinator for each relationship and handed to every
    component call; nothing in here outlives the pass.
    """

    relationship: RelationshipSpec
    ordered_resources: list[OrderedResource]
    index_name: str
    since: datetime = EPOCH
    previous_ended_at: datetime = EPOCH
    began_at: datetime
    full_resync: bool = False
    deleted_duplicates: set[str] = Field(default_factory=set)
    reference_cache: dict[str, dict[str, Any] | None] = Field(default_factory=dict)
    records_upserted: int = 0
    records_deleted: int = 0
    records_skipped: int = 0
    records_failed: int = 0
    rows_repaired: int = 0
    errors: list[str] = Field(default_factory=list)

    def resource(self, name: str) -> OrderedResource:
        for ordered in self.ordered_resources:
            if ordered.name == name:
                return ordered
        raise KeyError(name)

    def record_error(self, message: str) -> None:
        self.errors.append(message)
