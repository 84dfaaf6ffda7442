"""Per-index watermark tracking in the sync state index."""

from datetime import datetime, timedelta

import structlog

from fhir_report_cache.models.records import EPOCH, SyncState
from fhir_report_cache.storage.document_store import ElasticsearchStore
from fhir_report_cache.storage.index_schema import SYNC_STATE_INDEX

log = structlog.stdlib.get_logger()

# The next pass starts reading this long before the current one began
CLOCK_SKEW_MARGIN = timedelta(minutes=1)


class SyncStateStore:
    """Manages the sync state document of each report index."""

    def __init__(self, store: ElasticsearchStore, index: str = SYNC_STATE_INDEX):
        """
        Initialize sync state store.

        Args:
            store: Elasticsearch store holding the state documents
            index: Index of the state documents, one per report index
        """
        self._store = store
        self._index = index

    async def get_state(self, index: str) -> SyncState:
        """
        Load the state of a report index, creating it on first use.

        Args:
            index: Report index name

        Returns:
            Stored state, or an epoch state when none existed
        """
        document = await self._store.get_document(self._index, index)
        if document is None:
            state = SyncState(index=index)
            await self._store.put_document(self._index, index, state.to_document())
            log.info("sync_state_created", index=index)
            return state

        state = SyncState.from_document(index, document)
        log.info(
            "sync_state_loaded",
            index=index,
            last_began_at=state.last_began_at.isoformat(),
            last_ended_at=state.last_ended_at.isoformat(),
        )
        return state

    def effective_since(self, state: SyncState, since: datetime | None = None, reset: bool = False) -> datetime:
        """Lower bound of the changes to read, after reset and override."""
        if reset:
            return EPOCH
        if since is not None:
            return since
        return state.last_began_at

    async def mark_started(self, state: SyncState, started_at: datetime) -> SyncState:
        """Record that a pass over the index has begun."""
        state = state.model_copy(update={"last_attempted_at": started_at})
        await self._store.put_document(self._index, state.index, state.to_document())
        return state

    async def mark_completed(self, state: SyncState, started_at: datetime, ended_at: datetime) -> SyncState:
        """
        Advance the watermarks after every resource of the pass completed.

        The new lower bound is taken a minute before the pass started so that
        records written under a slightly skewed source clock are read again.
        """
        state = state.model_copy(
            update={
                "last_began_at": started_at - CLOCK_SKEW_MARGIN,
                "last_ended_at": ended_at,
            }
        )
        await self._store.put_document(self._index, state.index, state.to_document())
        log.info(
            "sync_state_saved",
            index=state.index,
            last_began_at=state.last_began_at.isoformat(),
            last_ended_at=state.last_ended_at.isoformat(),
        )
        return state
