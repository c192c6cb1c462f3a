"""Database package for the members cache."""

from .models import (
    Base,
    SyncMode,
    ActivityPriority,
    RunStatus,

    # SQLAlchemy models
    MemberCacheModel,
    MemberSearchKeyModel,
    MemberActivityModel,
    SyncStateModel,
    FieldSchemaCacheModel,
    SyncRunLogModel,

    # Pydantic models
    CachedMember,
    ActivityEvent,
    SyncRunSummary,
    SyncState,
    FieldSchemaEntry,
    SyncRunLogResponse
)

from .database import (
    DatabaseManager,
    get_db_manager,
    init_database,
    close_database
)

from .service import (
    CacheStore,
    SYNC_STATE_ID,
    get_cache_store
)

__all__ = [
    # Enums and base
    "Base",
    "SyncMode",
    "ActivityPriority",
    "RunStatus",

    # SQLAlchemy models
    "MemberCacheModel",
    "MemberSearchKeyModel",
    "MemberActivityModel",
    "SyncStateModel",
    "FieldSchemaCacheModel",
    "SyncRunLogModel",

    # Pydantic models
    "CachedMember",
    "ActivityEvent",
    "SyncRunSummary",
    "SyncState",
    "FieldSchemaEntry",
    "SyncRunLogResponse",

    # Database management
    "DatabaseManager",
    "get_db_manager",
    "init_database",
    "close_database",

    # Store
    "CacheStore",
    "SYNC_STATE_ID",
    "get_cache_store"
]
