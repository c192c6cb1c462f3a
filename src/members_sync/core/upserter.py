"""Chunked merge-writes of normalized members into the cache."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from .normalizer import normalize_member
from ..config.schema import SyncFieldsConfig
from ..database.models import CachedMember
from ..database.service import CacheStore
from ..utils.logging import get_logger, log_execution_time
from ..utils.timestamps import ensure_utc, utc_now


class PersistenceError(Exception):
    """Raised when a chunk cannot be committed.

    Chunks committed before the failure stay committed; the counts here
    describe them and ``committed`` holds the members of the failing page
    that were already written.
    """

    def __init__(
        self,
        message: str,
        written: int = 0,
        skipped_missing_key: int = 0,
        committed: Optional[List["UpsertedMember"]] = None
    ):
        super().__init__(message)
        self.written = written
        self.skipped_missing_key = skipped_missing_key
        self.committed = committed or []


@dataclass
class UpsertedMember:
    """A written member and its document as it was before the write."""

    member: CachedMember
    previous: Optional[Dict[str, Any]] = None

    @property
    def existed(self) -> bool:
        return self.previous is not None


@dataclass
class UpsertBatchResult:
    """Outcome of one upsert_batch call."""

    written: int = 0
    skipped_missing_key: int = 0
    members: List[UpsertedMember] = field(default_factory=list)


class CacheUpserter:
    """Writes pages of raw records into the cache in bounded atomic chunks.

    Totals and the modification watermark accumulate across calls, so one
    instance serves a whole sync run.
    """

    def __init__(
        self,
        store: CacheStore,
        config: SyncFieldsConfig,
        chunk_size: int = 400,
        cached_at: Optional[datetime] = None,
        watermark_start: Optional[datetime] = None
    ):
        if chunk_size < 1:
            raise ValueError("chunk_size must be positive")
        self.store = store
        self.config = config
        self.chunk_size = chunk_size
        self.cached_at = cached_at or utc_now()
        self.watermark_start = ensure_utc(watermark_start)
        self.max_modified: Optional[datetime] = None
        self.total_written = 0
        self.total_skipped_missing_key = 0
        self.logger = get_logger(self.__class__.__name__)

    def _observe(self, modified_at: Optional[datetime]) -> None:
        if modified_at and (self.max_modified is None or modified_at > self.max_modified):
            self.max_modified = modified_at

    def watermark(self, now: Optional[datetime] = None) -> datetime:
        """New watermark, never below ``watermark_start``.

        The highest modification time written so far; when no written
        record carried one, the run time ``now``.
        """
        candidate = self.max_modified or ensure_utc(now) or utc_now()
        if self.watermark_start and self.watermark_start > candidate:
            return self.watermark_start
        return candidate

    @log_execution_time
    def upsert_batch(self, records: List[Dict[str, Any]]) -> UpsertBatchResult:
        """Normalize and write a page of raw records.

        Raises:
            PersistenceError: If a chunk fails; later chunks are not attempted
        """
        result = UpsertBatchResult()
        normalized = []
        for raw in records:
            record = normalize_member(raw, self.config, self.cached_at)
            if record.skipped:
                result.skipped_missing_key += 1
            else:
                normalized.append(record)

        self.total_skipped_missing_key += result.skipped_missing_key
        if result.skipped_missing_key:
            self.logger.info("Skipped records without client key", count=result.skipped_missing_key)

        for start in range(0, len(normalized), self.chunk_size):
            chunk = normalized[start:start + self.chunk_size]
            members = [record.member for record in chunk]

            try:
                previous = self.store.upsert_members(members)
            except Exception as e:
                self.logger.error(
                    "Cache chunk write failed",
                    chunk_start=start,
                    chunk_size=len(chunk),
                    written_so_far=self.total_written,
                    error=str(e)
                )
                raise PersistenceError(
                    f"Failed to write cache chunk at offset {start}: {e}",
                    written=self.total_written,
                    skipped_missing_key=self.total_skipped_missing_key,
                    committed=result.members
                ) from e

            for record in chunk:
                self._observe(record.modified_at)
                result.members.append(UpsertedMember(record.member, previous.get(record.client_key)))

            result.written += len(chunk)
            self.total_written += len(chunk)
            self.logger.debug("Cache chunk committed", chunk_start=start, chunk_size=len(chunk))

        return result
