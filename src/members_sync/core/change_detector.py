"""Detection of tracked-field changes and activity event emission."""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..database.models import ActivityEvent, ActivityPriority, CachedMember
from ..database.service import CacheStore
from ..utils.logging import get_logger


ACTIVITY_SOURCE = "caspio_sync"
MAX_DESCRIBED_CHANGES = 3


class ActivityEmissionError(Exception):
    """Raised internally when an activity batch cannot be written."""
    pass


@dataclass(frozen=True)
class TrackedField:
    """How a change on one member field is reported."""

    name: str
    label: str
    activity_type: str
    category: str
    priority: ActivityPriority
    requires_notification: bool


# Order matters: the first changed field in this list names the event.
TRACKED_FIELDS: List[TrackedField] = [
    TrackedField("kaiser_status", "Kaiser status", "status_change", "kaiser",
                 ActivityPriority.HIGH, True),
    TrackedField("calaim_status", "CalAIM status", "authorization_change", "authorization",
                 ActivityPriority.HIGH, True),
    TrackedField("pathway", "Pathway", "pathway_change", "pathway",
                 ActivityPriority.HIGH, True),
    TrackedField("hold_for_social_worker", "Hold for social worker", "status_change", "assignment",
                 ActivityPriority.HIGH, True),
    TrackedField("kaiser_user_assignment", "Staff assignment", "assignment_change", "assignment",
                 ActivityPriority.NORMAL, False),
    TrackedField("social_worker_assigned", "Social worker", "assignment_change", "assignment",
                 ActivityPriority.NORMAL, False),
    TrackedField("rcfe_name", "RCFE", "form_update", "kaiser",
                 ActivityPriority.NORMAL, False),
]


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _display(value: str) -> str:
    return value if value else "(blank)"


def changed_tracked_fields(previous: Dict[str, Any], member: CachedMember) -> List[TrackedField]:
    """Tracked fields whose stringified values differ, in priority order."""
    return [
        tracked for tracked in TRACKED_FIELDS
        if _as_text(previous.get(tracked.name)) != _as_text(getattr(member, tracked.name, None))
    ]


def detect_member_change(
    previous: Optional[Dict[str, Any]],
    member: CachedMember,
    changed_by: Optional[str] = None
) -> Optional[ActivityEvent]:
    """Build the activity event for one member, if a tracked field changed.

    Args:
        previous: Cached document before this run's write; None for new members
        member: Member as written this run
        changed_by: Caller who triggered the run

    Returns:
        One event named after the highest-priority changed field, or None
    """
    if previous is None:
        return None

    changed = changed_tracked_fields(previous, member)
    if not changed:
        return None

    primary = changed[0]
    old_value = _as_text(previous.get(primary.name))
    new_value = _as_text(getattr(member, primary.name))

    summaries = [
        f"{tracked.label}: {_display(_as_text(previous.get(tracked.name)))} → "
        f"{_display(_as_text(getattr(member, tracked.name)))}"
        for tracked in changed[:MAX_DESCRIBED_CHANGES]
    ]
    description = f"{primary.label} changed: " + "; ".join(summaries)
    if len(changed) > MAX_DESCRIBED_CHANGES:
        description += f" (+{len(changed) - MAX_DESCRIBED_CHANGES} more)"

    subject = member.member_name or member.client_key
    return ActivityEvent(
        client_key=member.client_key,
        activity_type=primary.activity_type,
        category=primary.category,
        title=f"{primary.label} updated for {subject}",
        description=description,
        field_changed=primary.name,
        old_value=old_value,
        new_value=new_value,
        changed_fields=[tracked.name for tracked in changed],
        priority=primary.priority,
        requires_notification=primary.requires_notification,
        source=ACTIVITY_SOURCE,
        changed_by=changed_by
    )


def build_sync_summary_event(
    mode: str,
    fetched: int,
    upserted: int,
    skipped_missing_key: int,
    changed_by: Optional[str] = None
) -> ActivityEvent:
    """The single low-priority event a full resync records instead of diffs."""
    return ActivityEvent(
        client_key=None,
        activity_type="sync_summary",
        category="system",
        title=f"Members cache {mode} sync completed",
        description=(
            f"Fetched {fetched} members, upserted {upserted}, "
            f"skipped {skipped_missing_key} without client key"
        ),
        field_changed="sync",
        changed_fields=[],
        priority=ActivityPriority.LOW,
        requires_notification=False,
        source=ACTIVITY_SOURCE,
        changed_by=changed_by
    )


class ActivityEmitter:
    """Best-effort writer for activity events.

    Events go out in their own batches, separate from cache writes. A
    failed batch is logged and dropped; it never fails the sync.
    """

    def __init__(self, store: CacheStore, batch_size: int = 400):
        self.store = store
        self.batch_size = max(1, batch_size)
        self.logger = get_logger(self.__class__.__name__)

    def emit(self, events: List[ActivityEvent]) -> int:
        """Write events; returns how many were stored."""
        written = 0
        for start in range(0, len(events), self.batch_size):
            batch = events[start:start + self.batch_size]
            try:
                written += self.store.add_activities(batch)
            except Exception as e:
                error = ActivityEmissionError(f"Failed to write {len(batch)} activity events: {e}")
                self.logger.warning("Activity batch dropped", batch_start=start, error=str(error))

        if written:
            self.logger.info("Activity events emitted", count=written)
        return written
