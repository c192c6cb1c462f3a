"""Database operations and repository classes."""

from datetime import datetime
from typing import List, Optional, Dict, Any

from sqlalchemy.orm import Session
from sqlalchemy import desc

from .models import (
    MemberCacheModel, MemberSearchKeyModel, MemberActivityModel,
    SyncStateModel, FieldSchemaCacheModel, SyncRunLogModel,
    CachedMember, ActivityEvent, SyncState
)
from ..utils.logging import get_logger, log_execution_time
from ..utils.timestamps import utc_now


logger = get_logger("database.operations")


class MemberCacheRepository:
    """Repository for cached member documents and their search tokens."""

    def __init__(self, session: Session):
        self.session = session

    @log_execution_time
    def get_by_key(self, client_key: str) -> Optional[MemberCacheModel]:
        """Get a cached member by client key."""
        return self.session.get(MemberCacheModel, client_key)

    @log_execution_time
    def get_many(self, client_keys: List[str]) -> Dict[str, MemberCacheModel]:
        """Get cached members by client key, keyed by client key."""
        if not client_keys:
            return {}
        rows = self.session.query(MemberCacheModel).filter(
            MemberCacheModel.client_key.in_(client_keys)
        ).all()
        return {row.client_key: row for row in rows}

    @log_execution_time
    def upsert_many(self, members: List[CachedMember]) -> Dict[str, Dict[str, Any]]:
        """Merge-write member documents.

        Each stored document becomes the previous document updated with the
        new one, so fields absent from the new document are kept. Search
        token rows are replaced with the member's current tokens.

        Returns:
            The documents as they were before this call, for members that
            already existed.
        """
        keys = list(dict.fromkeys(member.client_key for member in members))
        rows = self.get_many(keys)
        previous = {key: dict(row.document or {}) for key, row in rows.items()}

        tokens_by_key: Dict[str, List[str]] = {}
        for member in members:
            document = member.to_document()
            row = rows.get(member.client_key)

            if row is None:
                row = MemberCacheModel(
                    client_key=member.client_key,
                    document=document,
                    date_modified=member.date_modified,
                    cached_at=member.cached_at
                )
                self.session.add(row)
                rows[member.client_key] = row
            else:
                merged = dict(row.document or {})
                merged.update(document)
                row.document = merged
                if member.date_modified:
                    row.date_modified = member.date_modified
                row.cached_at = member.cached_at

            tokens_by_key[member.client_key] = list(member.search_keys)

        self.session.query(MemberSearchKeyModel).filter(
            MemberSearchKeyModel.client_key.in_(list(tokens_by_key))
        ).delete(synchronize_session=False)
        self.session.add_all(
            MemberSearchKeyModel(client_key=key, token=token)
            for key, tokens in tokens_by_key.items()
            for token in tokens
        )
        self.session.flush()

        logger.debug(
            "Member documents upserted",
            total=len(keys),
            existing=len(previous),
            created=len(keys) - len(previous)
        )
        return previous

    @log_execution_time
    def find_by_search_key(self, token: str, limit: int = 100) -> List[MemberCacheModel]:
        """Get members whose search tokens contain the given token."""
        return self.session.query(MemberCacheModel).join(
            MemberSearchKeyModel,
            MemberSearchKeyModel.client_key == MemberCacheModel.client_key
        ).filter(
            MemberSearchKeyModel.token == token.strip().lower()
        ).order_by(MemberCacheModel.client_key).limit(limit).all()

    @log_execution_time
    def count(self) -> int:
        """Count cached members."""
        return self.session.query(MemberCacheModel).count()


class ActivityRepository:
    """Repository for member activity events."""

    def __init__(self, session: Session):
        self.session = session

    @log_execution_time
    def add_many(self, events: List[ActivityEvent]) -> int:
        """Append activity events. Returns the number written."""
        rows = [
            MemberActivityModel(
                id=event.id,
                client_key=event.client_key,
                activity_type=event.activity_type,
                category=event.category,
                title=event.title,
                description=event.description,
                field_changed=event.field_changed,
                old_value=event.old_value,
                new_value=event.new_value,
                changed_fields=list(event.changed_fields),
                priority=getattr(event.priority, "value", event.priority),
                requires_notification=event.requires_notification,
                source=event.source,
                changed_by=event.changed_by,
                created_at=event.created_at
            )
            for event in events
        ]
        self.session.add_all(rows)
        self.session.flush()
        return len(rows)

    @log_execution_time
    def get_recent(self, client_key: Optional[str] = None, limit: int = 50) -> List[MemberActivityModel]:
        """Get recent activity events, optionally for one member."""
        query = self.session.query(MemberActivityModel)
        if client_key:
            query = query.filter(MemberActivityModel.client_key == client_key)
        return query.order_by(desc(MemberActivityModel.created_at)).limit(limit).all()


class SyncStateRepository:
    """Repository for the sync state singleton."""

    def __init__(self, session: Session):
        self.session = session

    @log_execution_time
    def get(self, state_id: str) -> Optional[SyncStateModel]:
        """Get the stored sync state row."""
        return self.session.get(SyncStateModel, state_id)

    @log_execution_time
    def save(self, state_id: str, state: SyncState) -> SyncStateModel:
        """Create or replace the sync state row."""
        row = self.get(state_id)
        if row is None:
            row = SyncStateModel(id=state_id)
            self.session.add(row)

        row.last_sync_at = state.last_sync_at
        row.last_run_at = state.last_run_at
        row.last_mode = state.last_mode.value if state.last_mode else None
        row.last_select_signature = state.last_select_signature
        row.last_run_by = state.last_run_by
        row.last_run_summary = state.last_run_summary.model_dump()
        row.updated_at = utc_now()

        self.session.flush()
        logger.info(
            "Sync state saved",
            state_id=state_id,
            last_sync_at=state.last_sync_at,
            last_mode=row.last_mode
        )
        return row


class FieldSchemaRepository:
    """Repository for the remote field schema cache."""

    def __init__(self, session: Session):
        self.session = session

    @log_execution_time
    def get(self, table_name: str) -> Optional[FieldSchemaCacheModel]:
        """Get the cached field list for a remote table."""
        return self.session.get(FieldSchemaCacheModel, table_name)

    @log_execution_time
    def save(self, table_name: str, fields: List[str]) -> FieldSchemaCacheModel:
        """Replace the cached field list of one remote table."""
        row = self.get(table_name)
        if row is None:
            row = FieldSchemaCacheModel(table_name=table_name)
            self.session.add(row)

        row.fields = list(fields)
        row.updated_at = utc_now()
        self.session.flush()

        logger.info("Field schema cached", table_name=table_name, field_count=len(fields))
        return row


class SyncRunLogRepository:
    """Repository for sync run logs."""

    def __init__(self, session: Session):
        self.session = session

    @log_execution_time
    def create(
        self,
        started_at: datetime,
        requested_mode: str,
        status: str,
        **details: Any
    ) -> SyncRunLogModel:
        """Record a finished sync run."""
        run_log = SyncRunLogModel(
            started_at=started_at,
            requested_mode=requested_mode,
            status=status,
            **details
        )

        if run_log.completed_at and run_log.duration_seconds is None:
            run_log.duration_seconds = (run_log.completed_at - started_at).total_seconds()

        self.session.add(run_log)
        self.session.flush()

        logger.info("Sync run logged", sync_run_id=run_log.id, status=status)
        return run_log

    @log_execution_time
    def get_recent(self, limit: int = 10) -> List[SyncRunLogModel]:
        """Get the most recent sync runs."""
        return self.session.query(SyncRunLogModel).order_by(
            desc(SyncRunLogModel.started_at), desc(SyncRunLogModel.id)
        ).limit(limit).all()


# Repository factory functions

def get_member_cache_repository(session: Session) -> MemberCacheRepository:
    """Get member cache repository instance."""
    return MemberCacheRepository(session)


def get_activity_repository(session: Session) -> ActivityRepository:
    """Get activity repository instance."""
    return ActivityRepository(session)


def get_sync_state_repository(session: Session) -> SyncStateRepository:
    """Get sync state repository instance."""
    return SyncStateRepository(session)


def get_field_schema_repository(session: Session) -> FieldSchemaRepository:
    """Get field schema repository instance."""
    return FieldSchemaRepository(session)


def get_sync_run_log_repository(session: Session) -> SyncRunLogRepository:
    """Get sync run log repository instance."""
    return SyncRunLogRepository(session)
