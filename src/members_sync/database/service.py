"""High-level document store service used by the sync engine."""

from datetime import datetime
from typing import List, Optional, Dict, Any
from contextlib import contextmanager

from .database import DatabaseManager, get_db_manager
from .operations import (
    get_member_cache_repository,
    get_activity_repository,
    get_sync_state_repository,
    get_field_schema_repository,
    get_sync_run_log_repository
)
from .models import (
    CachedMember, ActivityEvent, SyncState, FieldSchemaEntry,
    SyncRunLogResponse, RunStatus
)
from ..utils.logging import get_logger, log_execution_time


logger = get_logger("database.service")


SYNC_STATE_ID = "caspio-members-sync"


class CacheStore:
    """Document store boundary for the members cache.

    Every public method runs in its own transaction. ``upsert_members`` is
    the atomic batch write: either every document of the call is committed
    or none is.
    """

    def __init__(self, db_manager: Optional[DatabaseManager] = None, state_id: str = SYNC_STATE_ID):
        self.db_manager = db_manager or get_db_manager()
        self.state_id = state_id

    @contextmanager
    def transaction(self):
        """Context manager for database transactions."""
        with self.db_manager.session_scope() as session:
            yield session

    # Sync state

    @log_execution_time
    def get_sync_state(self) -> Optional[SyncState]:
        """Read the persisted sync state, or None before the first run."""
        with self.transaction() as session:
            row = get_sync_state_repository(session).get(self.state_id)
            return SyncState.model_validate(row) if row else None

    @log_execution_time
    def save_sync_state(self, state: SyncState) -> None:
        """Persist the sync state in a single transaction."""
        with self.transaction() as session:
            get_sync_state_repository(session).save(self.state_id, state)

    # Field schema cache

    @log_execution_time
    def get_field_schema(self, table_name: str) -> Optional[FieldSchemaEntry]:
        """Read the cached remote column list for a table."""
        with self.transaction() as session:
            row = get_field_schema_repository(session).get(table_name)
            return FieldSchemaEntry.model_validate(row) if row else None

    @log_execution_time
    def save_field_schema(self, table_name: str, fields: List[str]) -> None:
        """Replace the cached column list of one table."""
        with self.transaction() as session:
            get_field_schema_repository(session).save(table_name, fields)

    # Member documents

    @log_execution_time
    def upsert_members(self, members: List[CachedMember]) -> Dict[str, Dict[str, Any]]:
        """Atomically merge-write a batch of member documents.

        Returns:
            Previous documents of the members that already existed
        """
        if not members:
            return {}
        with self.transaction() as session:
            return get_member_cache_repository(session).upsert_many(members)

    @log_execution_time
    def get_member(self, client_key: str) -> Optional[Dict[str, Any]]:
        """Read one cached member document."""
        with self.transaction() as session:
            row = get_member_cache_repository(session).get_by_key(client_key)
            return dict(row.document) if row else None

    @log_execution_time
    def get_members(self, client_keys: List[str]) -> Dict[str, Dict[str, Any]]:
        """Read cached member documents keyed by client key."""
        with self.transaction() as session:
            rows = get_member_cache_repository(session).get_many(client_keys)
            return {key: dict(row.document) for key, row in rows.items()}

    @log_execution_time
    def find_members_by_search_key(self, token: str, limit: int = 100) -> List[Dict[str, Any]]:
        """Find member documents whose search tokens contain ``token``."""
        with self.transaction() as session:
            rows = get_member_cache_repository(session).find_by_search_key(token, limit)
            return [dict(row.document) for row in rows]

    @log_execution_time
    def count_members(self) -> int:
        """Number of cached members."""
        with self.transaction() as session:
            return get_member_cache_repository(session).count()

    # Activity events

    @log_execution_time
    def add_activities(self, events: List[ActivityEvent]) -> int:
        """Atomically append a batch of activity events."""
        if not events:
            return 0
        with self.transaction() as session:
            return get_activity_repository(session).add_many(events)

    @log_execution_time
    def get_recent_activities(self, client_key: Optional[str] = None, limit: int = 50) -> List[ActivityEvent]:
        """Recent activity events, newest first."""
        with self.transaction() as session:
            rows = get_activity_repository(session).get_recent(client_key, limit)
            return [ActivityEvent.model_validate(row) for row in rows]

    # Sync run log

    @log_execution_time
    def log_sync_run(
        self,
        started_at: datetime,
        requested_mode: str,
        status: RunStatus,
        **details: Any
    ) -> int:
        """Record a finished run. Returns the run log id."""
        with self.transaction() as session:
            run_log = get_sync_run_log_repository(session).create(
                started_at=started_at,
                requested_mode=requested_mode,
                status=status.value,
                **details
            )
            return run_log.id

    @log_execution_time
    def get_sync_history(self, limit: int = 10) -> List[SyncRunLogResponse]:
        """Recent sync runs, newest first."""
        with self.transaction() as session:
            rows = get_sync_run_log_repository(session).get_recent(limit)
            return [SyncRunLogResponse.model_validate(row) for row in rows]


# Global store instance
_cache_store: Optional[CacheStore] = None


def get_cache_store() -> CacheStore:
    """Get the global cache store instance."""
    global _cache_store
    if _cache_store is None:
        _cache_store = CacheStore()
    return _cache_store
