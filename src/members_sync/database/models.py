"""Database models for the members cache."""

import uuid
from datetime import datetime
from typing import Optional, Dict, Any, List
from enum import Enum

from sqlalchemy import Column, Integer, String, DateTime, JSON, Boolean, Text, Float, ForeignKey
from sqlalchemy.orm import declarative_base
from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..utils.timestamps import ensure_utc, utc_now


Base = declarative_base()


class SyncMode(str, Enum):
    """Requested or effective sync mode."""
    INCREMENTAL = "incremental"
    FULL = "full"


class ActivityPriority(str, Enum):
    """Priority attached to an activity event."""
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class RunStatus(str, Enum):
    """Outcome of a sync run."""
    SUCCESS = "success"
    FAILED = "failed"


# SQLAlchemy Models (Database Tables)

class MemberCacheModel(Base):
    """One cached member document keyed by the remote client key."""

    __tablename__ = "members_cache"

    client_key = Column(String(100), primary_key=True)
    document = Column(JSON, nullable=False)
    date_modified = Column(DateTime(timezone=True), nullable=True, index=True)
    cached_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    def __repr__(self):
        return f"<MemberCacheModel(client_key='{self.client_key}')>"


class MemberSearchKeyModel(Base):
    """Search token rows used for 'contains token' staff-assignment lookups."""

    __tablename__ = "member_search_keys"

    client_key = Column(String(100), ForeignKey("members_cache.client_key"), primary_key=True)
    token = Column(String(100), primary_key=True, index=True)


class MemberActivityModel(Base):
    """Append-only activity events produced by the change detector."""

    __tablename__ = "member_activities"

    id = Column(String(32), primary_key=True)
    client_key = Column(String(100), nullable=True, index=True)
    activity_type = Column(String(50), nullable=False, index=True)
    category = Column(String(50), nullable=False)
    title = Column(String(500), nullable=False)
    description = Column(Text, nullable=False)
    field_changed = Column(String(100), nullable=False)
    old_value = Column(Text, nullable=True)
    new_value = Column(Text, nullable=True)
    changed_fields = Column(JSON, nullable=True)
    priority = Column(String(20), nullable=False)
    requires_notification = Column(Boolean, default=False, nullable=False)
    source = Column(String(50), nullable=False)
    changed_by = Column(String(100), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False, index=True)

    def __repr__(self):
        return f"<MemberActivityModel(id={self.id}, client_key='{self.client_key}', type='{self.activity_type}')>"


class SyncStateModel(Base):
    """Singleton row holding the sync watermark and last-run information."""

    __tablename__ = "sync_state"

    id = Column(String(100), primary_key=True)
    last_sync_at = Column(DateTime(timezone=True), nullable=True)
    last_run_at = Column(DateTime(timezone=True), nullable=True)
    last_mode = Column(String(20), nullable=True)
    last_select_signature = Column(String(100), nullable=True)
    last_run_by = Column(String(100), nullable=True)
    last_run_summary = Column(JSON, nullable=True)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)


class FieldSchemaCacheModel(Base):
    """Known remote column names, one row per remote table."""

    __tablename__ = "field_schema_cache"

    table_name = Column(String(200), primary_key=True)
    fields = Column(JSON, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)


class SyncRunLogModel(Base):
    """History of sync runs, successful or not."""

    __tablename__ = "sync_run_logs"

    id = Column(Integer, primary_key=True, index=True)
    started_at = Column(DateTime(timezone=True), nullable=False, index=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    requested_mode = Column(String(20), nullable=False)
    effective_mode = Column(String(20), nullable=True)
    status = Column(String(20), nullable=False)
    fetched = Column(Integer, default=0, nullable=False)
    upserted = Column(Integer, default=0, nullable=False)
    skipped_missing_id = Column(Integer, default=0, nullable=False)
    events_emitted = Column(Integer, default=0, nullable=False)
    truncated = Column(Boolean, default=False, nullable=False)
    error_message = Column(Text, nullable=True)
    duration_seconds = Column(Float, nullable=True)
    run_by = Column(String(100), nullable=True)

    def __repr__(self):
        return f"<SyncRunLogModel(id={self.id}, status='{self.status}')>"


# Pydantic Models (Documents/Transfer Objects)

class CachedMember(BaseModel):
    """Canonical cached member document."""

    client_key: str
    first_name: str = ""
    last_name: str = ""
    member_name: str = ""
    county: str = ""
    city: str = ""
    mco: str = ""
    calaim_status: str = ""
    kaiser_status: str = ""
    kaiser_id_status: str = ""
    pathway: str = ""
    hold_for_social_worker: str = ""
    kaiser_user_assignment: str = ""
    social_worker_assigned: str = ""
    sw_id: str = ""
    rcfe_name: str = ""
    rcfe_address: str = ""
    rcfe_city: str = ""
    rcfe_county: str = ""
    birth_date: str = ""
    next_step_due_date: str = ""
    kaiser_next_step_date: str = ""
    date_created: str = ""
    date_modified: Optional[datetime] = None
    search_keys: List[str] = Field(default_factory=list)
    cached_at: datetime = Field(default_factory=utc_now)
    raw_fields: Dict[str, Any] = Field(default_factory=dict)

    def to_document(self) -> Dict[str, Any]:
        """Flatten into the stored document: raw remote columns plus canonical fields."""
        document = dict(self.raw_fields)
        document.update(self.model_dump(mode="json", exclude={"raw_fields"}))
        return document


class ActivityEvent(BaseModel):
    """A detected change on a tracked member field."""

    model_config = ConfigDict(from_attributes=True, use_enum_values=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    client_key: Optional[str] = None
    activity_type: str
    category: str
    title: str
    description: str
    field_changed: str
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    changed_fields: List[str] = Field(default_factory=list)
    priority: ActivityPriority = ActivityPriority.NORMAL
    requires_notification: bool = False
    source: str = "caspio_sync"
    changed_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)

    @field_validator("created_at")
    @classmethod
    def created_at_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)


class SyncRunSummary(BaseModel):
    """Counts reported for a run."""

    fetched: int = 0
    upserted: int = 0
    skipped_missing_id: int = 0
    events_emitted: int = 0
    truncated: bool = False


class SyncState(BaseModel):
    """Persisted coordinator state, passed explicitly through a run."""

    model_config = ConfigDict(from_attributes=True)

    last_sync_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    last_mode: Optional[SyncMode] = None
    last_select_signature: Optional[str] = None
    last_run_by: Optional[str] = None
    last_run_summary: SyncRunSummary = Field(default_factory=SyncRunSummary)

    @field_validator("last_sync_at", "last_run_at")
    @classmethod
    def timestamps_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    @field_validator("last_run_summary", mode="before")
    @classmethod
    def summary_default(cls, v):
        return v or {}


class FieldSchemaEntry(BaseModel):
    """Cached remote column list for one table."""

    model_config = ConfigDict(from_attributes=True)

    table_name: str
    fields: List[str] = Field(default_factory=list)
    updated_at: Optional[datetime] = None

    @field_validator("updated_at")
    @classmethod
    def updated_at_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)


class SyncRunLogResponse(BaseModel):
    """One entry of the sync history."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    started_at: datetime
    completed_at: Optional[datetime] = None
    requested_mode: str
    effective_mode: Optional[str] = None
    status: str
    fetched: int
    upserted: int
    skipped_missing_id: int
    events_emitted: int
    truncated: bool
    error_message: Optional[str] = None
    duration_seconds: Optional[float] = None
    run_by: Optional[str] = None
