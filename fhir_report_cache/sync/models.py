"""Data models for synchronization results."""

from datetime import datetime

from pydantic import BaseModel, Field

from fhir_report_cache.models.records import PassContext


class SyncReport(BaseModel):
    """Report of one relationship's synchronization pass."""

    relationship: str = Field(..., description="Relationship (and index) name")
    records_upserted: int = Field(default=0, ge=0, description="Records merged into rows")
    records_deleted: int = Field(default=0, ge=0, description="Records retracted from rows")
    records_skipped: int = Field(default=0, ge=0, description="Records filtered out on first sight")
    records_failed: int = Field(default=0, ge=0, description="Records that could not be merged")
    rows_repaired: int = Field(default=0, ge=0, description="Records merged again by the repair sweep")
    skipped: bool = Field(default=False, description="Relationship was not synchronized at all")
    completed: bool = Field(default=False, description="Every resource was processed")
    duration_seconds: float = Field(default=0.0, ge=0.0, description="Pass duration in seconds")
    start_time: datetime = Field(..., description="Pass start timestamp")
    end_time: datetime = Field(..., description="Pass end timestamp")
    errors: list[str] = Field(default_factory=list, description="Errors encountered during the pass")

    @property
    def total_changes(self) -> int:
        """Get total number of records applied."""
        return self.records_upserted + self.records_deleted

    @property
    def success(self) -> bool:
        """Check if the pass completed without errors."""
        return self.completed and len(self.errors) == 0

    @classmethod
    def from_context(cls, ctx: PassContext, end_time: datetime, completed: bool) -> "SyncReport":
        return cls(
            relationship=ctx.relationship.name,
            records_upserted=ctx.records_upserted,
            records_deleted=ctx.records_deleted,
            records_skipped=ctx.records_skipped,
            records_failed=ctx.records_failed,
            rows_repaired=ctx.rows_repaired,
            completed=completed,
            duration_seconds=(end_time - ctx.began_at).total_seconds(),
            start_time=ctx.began_at,
            end_time=end_time,
            errors=list(ctx.errors),
        )
