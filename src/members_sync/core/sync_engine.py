"""Sync coordinator for the Caspio members cache."""

import hashlib
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set, Union

from .change_detector import ActivityEmitter, build_sync_summary_event, detect_member_change
from .fetcher import PaginatedFetcher
from .schema_resolver import SchemaResolver
from .upserter import CacheUpserter, PersistenceError, UpsertedMember
from ..api_clients.base import AuthError, RemoteFetchError
from ..api_clients.caspio import CaspioClient
from ..auth.token_provider import RemoteCredentials
from ..config.loader import load_fields_config
from ..config.schema import SyncFieldsConfig
from ..config.settings import AppSettings, get_settings
from ..database.models import ActivityEvent, RunStatus, SyncMode, SyncRunSummary, SyncState
from ..database.service import CacheStore, get_cache_store
from ..utils.logging import bind_sync_context, clear_sync_context, get_logger, log_async_execution_time
from ..utils.timestamps import isoformat_or_none, utc_now


UNFILTERED_SIGNATURE = "unfiltered"


class SyncEngineError(Exception):
    """Base error for sync engine failures."""
    pass


class InvalidSyncModeError(SyncEngineError, ValueError):
    """Raised for a mode other than 'incremental' or 'full'."""
    pass


def parse_mode(mode: Union[str, SyncMode, None]) -> SyncMode:
    """Parse a requested mode; None means incremental."""
    if mode is None:
        return SyncMode.INCREMENTAL
    if isinstance(mode, SyncMode):
        return mode
    try:
        return SyncMode(str(mode).strip().lower())
    except ValueError:
        raise InvalidSyncModeError(f"Invalid mode '{mode}', expected 'incremental' or 'full'")


def field_selection_signature(fields: Optional[List[str]]) -> str:
    """Stable fingerprint of a field selection, independent of order and casing."""
    if fields is None:
        return UNFILTERED_SIGNATURE
    canonical = ",".join(sorted(name.strip().lower() for name in fields))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]


@dataclass
class ModeDecision:
    """Effective mode of a run and why."""

    mode: SyncMode
    since: Optional[datetime]
    reason: str


def select_effective_mode(
    requested: SyncMode,
    state: Optional[SyncState],
    signature: str
) -> ModeDecision:
    """Pick the mode a run actually uses.

    Incremental runs fall back to full when there is no watermark yet or
    when the field selection differs from the one the cache was built
    with. An unfiltered run cannot tell whether the selection changed, so
    it never forces a full run on that ground.
    """
    if state is None or state.last_sync_at is None:
        return ModeDecision(SyncMode.FULL, None, "no previous watermark")

    if requested == SyncMode.FULL:
        return ModeDecision(SyncMode.FULL, None, "full sync requested")

    if signature != UNFILTERED_SIGNATURE:
        if state.last_select_signature is None:
            return ModeDecision(SyncMode.FULL, None, "no stored field selection signature")
        if state.last_select_signature != signature:
            return ModeDecision(SyncMode.FULL, None, "field selection changed")

    return ModeDecision(SyncMode.INCREMENTAL, state.last_sync_at, "incremental since last watermark")


@dataclass
class SyncRunResult:
    """Result of one sync run."""

    success: bool
    requested_mode: SyncMode
    mode: Optional[SyncMode] = None
    reason: Optional[str] = None
    since: Optional[datetime] = None
    last_sync_at: Optional[datetime] = None
    fetched: int = 0
    upserted: int = 0
    skipped_missing_id: int = 0
    events_emitted: int = 0
    truncated: bool = False
    error_message: Optional[str] = None
    sync_duration: Optional[float] = None

    def to_response(self) -> Dict[str, Any]:
        """JSON body returned to the caller."""
        if not self.success:
            return {
                "success": False,
                "error": self.error_message or "Failed to sync members cache",
                "mode": (self.mode or self.requested_mode).value,
                "fetched": self.fetched,
                "upserted": self.upserted,
                "skippedMissingId": self.skipped_missing_id,
            }
        return {
            "success": True,
            "mode": self.mode.value,
            "since": isoformat_or_none(self.since),
            "lastSyncAt": isoformat_or_none(self.last_sync_at),
            "fetched": self.fetched,
            "upserted": self.upserted,
            "skippedMissingId": self.skipped_missing_id,
            "eventsEmitted": self.events_emitted,
            "truncated": self.truncated,
        }


class MembersSyncEngine:
    """Runs one members sync end to end.

    Token, field resolution, paging, chunked upserts and change detection
    happen in sequence on the calling task. The sync state is read once at
    the start and written once at the end of a successful run; a failed run
    leaves it untouched.
    """

    def __init__(
        self,
        store: Optional[CacheStore] = None,
        fields_config: Optional[SyncFieldsConfig] = None,
        client_factory: Optional[Callable[[], CaspioClient]] = None,
        settings: Optional[AppSettings] = None
    ):
        """Initialize sync engine.

        Args:
            store: Document store; the global store by default
            fields_config: Field configuration; loaded from settings by default
            client_factory: Builds the remote client for a run
            settings: Application settings
        """
        self.settings = settings or get_settings()
        self.store = store or get_cache_store()
        self.fields_config = fields_config or load_fields_config(
            self.settings.sync.fields_config_path,
            table_name=self.settings.caspio.members_table
        )
        self.client_factory = client_factory or self._default_client
        self.logger = get_logger(self.__class__.__name__)

        self.logger.info(
            "Sync engine initialized",
            table=self.fields_config.table_name,
            page_size=self.settings.sync.page_size,
            max_pages=self.settings.sync.max_pages
        )

    def _default_client(self) -> CaspioClient:
        return CaspioClient(
            RemoteCredentials.from_settings(),
            timeout_seconds=self.settings.caspio.request_timeout_seconds
        )

    def _load_state(self) -> Optional[SyncState]:
        try:
            return self.store.get_sync_state()
        except Exception as e:
            raise PersistenceError(f"Failed to read sync state: {e}") from e

    @log_async_execution_time
    async def run(
        self,
        mode: Union[str, SyncMode, None] = SyncMode.INCREMENTAL,
        caller_id: Optional[str] = None
    ) -> SyncRunResult:
        """Run a sync.

        Args:
            mode: 'incremental' (default) or 'full'
            caller_id: Verified identity of whoever triggered the run

        Returns:
            SyncRunResult; ``success`` is False when the run failed

        Raises:
            InvalidSyncModeError: If ``mode`` is not a known mode
        """
        requested = parse_mode(mode)
        started_at = utc_now()
        result = SyncRunResult(success=False, requested_mode=requested)
        bind_sync_context(sync_run_id=uuid.uuid4().hex[:12], caller_id=caller_id)

        self.logger.info("Starting members sync", requested_mode=requested.value)

        try:
            await self._perform_sync(requested, caller_id, started_at, result)
            result.success = True

        except (AuthError, RemoteFetchError) as e:
            result.error_message = str(e)
            self.logger.error("Members sync failed", error_type=type(e).__name__, error=str(e))

        except PersistenceError as e:
            result.error_message = str(e)
            result.upserted = max(result.upserted, e.written)
            result.skipped_missing_id = max(result.skipped_missing_id, e.skipped_missing_key)
            self.logger.error(
                "Members sync failed while persisting",
                error=str(e),
                upserted=result.upserted
            )

        except Exception as e:
            result.error_message = f"Unexpected error during sync: {e}"
            self.logger.error("Members sync failed with unexpected error", error=str(e), exc_info=True)

        finally:
            result.sync_duration = (utc_now() - started_at).total_seconds()
            self._log_run(result, started_at, caller_id)

        self.logger.info(
            "Members sync completed",
            success=result.success,
            mode=result.mode.value if result.mode else None,
            fetched=result.fetched,
            upserted=result.upserted,
            skipped_missing_id=result.skipped_missing_id,
            events_emitted=result.events_emitted,
            truncated=result.truncated,
            duration=f"{result.sync_duration:.2f}s"
        )
        clear_sync_context()
        return result

    async def _perform_sync(
        self,
        requested: SyncMode,
        caller_id: Optional[str],
        started_at: datetime,
        result: SyncRunResult
    ) -> None:
        sync_settings = self.settings.sync
        state = self._load_state()

        async with self.client_factory() as client:
            await client.authenticate()

            resolver = SchemaResolver(client, self.store, self.fields_config)
            fields = await resolver.resolve_fields()
            signature = field_selection_signature(fields)

            decision = select_effective_mode(requested, state, signature)
            result.mode = decision.mode
            result.reason = decision.reason
            result.since = decision.since

            self.logger.info(
                "Sync mode selected",
                requested_mode=requested.value,
                effective_mode=decision.mode.value,
                reason=decision.reason,
                since=isoformat_or_none(decision.since),
                signature=signature
            )

            # unfiltered mode requests everything and relies on idempotent merges
            fetch_since = decision.since if fields is not None else None

            upserter = CacheUpserter(
                self.store,
                self.fields_config,
                chunk_size=sync_settings.chunk_size,
                cached_at=started_at,
                watermark_start=state.last_sync_at if state else None
            )
            emitter = ActivityEmitter(self.store, batch_size=sync_settings.event_batch_size)
            fetcher = PaginatedFetcher(
                client,
                self.fields_config.table_name,
                page_size=sync_settings.page_size,
                max_pages=sync_settings.max_pages
            )

            diffed_keys: Set[str] = set()
            diff_changes = decision.mode == SyncMode.INCREMENTAL
            async for page in fetcher.iter_pages(fetch_since, self.fields_config.watermark_field, fields):
                result.fetched += len(page)
                try:
                    batch = upserter.upsert_batch(page)
                except PersistenceError as e:
                    # chunks that did commit are diffed before the run fails
                    if diff_changes:
                        result.events_emitted += self._emit_changes(e.committed, diffed_keys, caller_id, emitter)
                    raise
                finally:
                    result.upserted = upserter.total_written
                    result.skipped_missing_id = upserter.total_skipped_missing_key

                if diff_changes:
                    result.events_emitted += self._emit_changes(batch.members, diffed_keys, caller_id, emitter)

            result.truncated = fetcher.progress.truncated if fetcher.progress else False

        if decision.mode == SyncMode.FULL:
            summary_event = build_sync_summary_event(
                decision.mode.value,
                fetched=result.fetched,
                upserted=result.upserted,
                skipped_missing_key=result.skipped_missing_id,
                changed_by=caller_id
            )
            result.events_emitted += emitter.emit([summary_event])

        result.last_sync_at = upserter.watermark(now=started_at)

        if fields is None and state is not None:
            stored_signature = state.last_select_signature
        else:
            stored_signature = signature

        new_state = SyncState(
            last_sync_at=result.last_sync_at,
            last_run_at=started_at,
            last_mode=decision.mode,
            last_select_signature=stored_signature,
            last_run_by=caller_id,
            last_run_summary=SyncRunSummary(
                fetched=result.fetched,
                upserted=result.upserted,
                skipped_missing_id=result.skipped_missing_id,
                events_emitted=result.events_emitted,
                truncated=result.truncated
            )
        )
        try:
            self.store.save_sync_state(new_state)
        except Exception as e:
            raise PersistenceError(
                f"Failed to save sync state: {e}",
                written=result.upserted,
                skipped_missing_key=result.skipped_missing_id
            ) from e

    def _emit_changes(
        self,
        written: List[UpsertedMember],
        diffed_keys: Set[str],
        caller_id: Optional[str],
        emitter: ActivityEmitter
    ) -> int:
        """Diff written members against their previous documents; one event per member per run."""
        events: List[ActivityEvent] = []
        for item in written:
            if item.member.client_key in diffed_keys:
                continue
            event = detect_member_change(item.previous, item.member, caller_id)
            if event:
                diffed_keys.add(item.member.client_key)
                events.append(event)
        return emitter.emit(events)

    def _log_run(self, result: SyncRunResult, started_at: datetime, caller_id: Optional[str]) -> None:
        """Record the run in the sync history."""
        try:
            self.store.log_sync_run(
                started_at=started_at,
                requested_mode=result.requested_mode.value,
                status=RunStatus.SUCCESS if result.success else RunStatus.FAILED,
                effective_mode=result.mode.value if result.mode else None,
                completed_at=utc_now(),
                fetched=result.fetched,
                upserted=result.upserted,
                skipped_missing_id=result.skipped_missing_id,
                events_emitted=result.events_emitted,
                truncated=result.truncated,
                error_message=result.error_message,
                duration_seconds=result.sync_duration,
                run_by=caller_id
            )
        except Exception as e:
            self.logger.warning("Failed to record sync run", error=str(e))
