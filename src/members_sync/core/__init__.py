"""Core sync pipeline for the members cache."""

from .normalizer import (
    NormalizedRecord,
    find_field,
    normalize_member,
    normalize_staff_name,
    build_search_keys
)
from .schema_resolver import SchemaResolver, extract_field_names
from .fetcher import PaginatedFetcher, FetchResult, build_where_clause
from .upserter import CacheUpserter, UpsertBatchResult, UpsertedMember, PersistenceError
from .change_detector import (
    ActivityEmitter,
    ActivityEmissionError,
    TRACKED_FIELDS,
    detect_member_change,
    build_sync_summary_event
)
from .sync_engine import (
    MembersSyncEngine,
    SyncRunResult,
    ModeDecision,
    SyncEngineError,
    InvalidSyncModeError,
    parse_mode,
    select_effective_mode,
    field_selection_signature
)

__all__ = [
    # Normalization
    "NormalizedRecord",
    "find_field",
    "normalize_member",
    "normalize_staff_name",
    "build_search_keys",

    # Remote reads
    "SchemaResolver",
    "extract_field_names",
    "PaginatedFetcher",
    "FetchResult",
    "build_where_clause",

    # Writes
    "CacheUpserter",
    "UpsertBatchResult",
    "UpsertedMember",
    "PersistenceError",

    # Change detection
    "ActivityEmitter",
    "ActivityEmissionError",
    "TRACKED_FIELDS",
    "detect_member_change",
    "build_sync_summary_event",

    # Coordinator
    "MembersSyncEngine",
    "SyncRunResult",
    "ModeDecision",
    "SyncEngineError",
    "InvalidSyncModeError",
    "parse_mode",
    "select_effective_mode",
    "field_selection_signature"
]
