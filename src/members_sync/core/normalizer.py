"""Mapping of raw Caspio member records into cached member documents."""

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from ..config.schema import SyncFieldsConfig
from ..database.models import CachedMember
from ..utils.timestamps import parse_timestamp, utc_now


MAX_SEARCH_KEYS = 30
MIN_TOKEN_LENGTH = 3

# canonical field -> remote column names, first non-empty wins
MEMBER_FIELD_MAP: Dict[str, tuple] = {
    "first_name": ("Senior_First", "memberFirstName"),
    "last_name": ("Senior_Last", "memberLastName"),
    "county": ("Member_County", "memberCounty"),
    "city": ("MemberCity", "Member_City"),
    "mco": ("CalAIM_MCO",),
    "calaim_status": ("CalAIM_Status",),
    "kaiser_status": ("Kaiser_Status",),
    "kaiser_id_status": ("Kaiser_ID_Status",),
    "pathway": ("Pathway",),
    "hold_for_social_worker": ("Hold_For_Social_Worker",),
    "kaiser_user_assignment": ("Kaiser_User_Assignment", "Staff_Assigned"),
    "social_worker_assigned": ("Social_Worker_Assigned",),
    "sw_id": ("SW_ID",),
    "rcfe_name": ("RCFE_Name",),
    "rcfe_address": ("RCFE_Address",),
    "rcfe_city": ("RCFE_City",),
    "rcfe_county": ("RCFE_County",),
    "birth_date": ("Birth_Date",),
    "next_step_due_date": ("Next_Step_Due_Date",),
    "kaiser_next_step_date": ("Kaiser_Next_Step_Date",),
    "date_created": ("Date_Created",),
}

SEARCH_KEY_SOURCES = ("social_worker_assigned", "kaiser_user_assignment", "sw_id")

_EMAIL_RE = re.compile(r"[a-z0-9._%+\-]+@[a-z0-9.\-]+\.[a-z]{2,}")
_EMAIL_LOCAL_SPLIT_RE = re.compile(r"[._+\-]+")
_WORD_SPLIT_RE = re.compile(r"[^a-z0-9]+")
_TRAILING_NUMBER_RE = re.compile(r"\s+\d+$")


@dataclass
class NormalizedRecord:
    """Outcome of normalizing one raw record.

    ``client_key`` is empty and ``member`` is None when the record has no
    usable primary key; such records are counted and skipped.
    """

    client_key: str
    member: Optional[CachedMember]
    modified_at: Optional[datetime] = None

    @property
    def skipped(self) -> bool:
        return self.member is None


def find_field(raw: Dict[str, Any], *names: str) -> Any:
    """Look up the first non-empty value among ``names``, ignoring key casing."""
    if not raw:
        return None

    lowered = None
    for name in names:
        value = raw.get(name)
        if value is None:
            if lowered is None:
                lowered = {str(key).lower(): val for key, val in raw.items()}
            value = lowered.get(name.lower())
        if value is None or (isinstance(value, str) and not value.strip()):
            continue
        return value
    return None


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def normalize_staff_name(name: Any) -> str:
    """Title-case a staff name and drop a trailing numeric id ("jane doe 121")."""
    text = " ".join(_as_text(name).lower().split())
    if not text:
        return ""
    titled = " ".join(word[:1].upper() + word[1:] for word in text.split(" "))
    return _TRAILING_NUMBER_RE.sub("", titled).strip()


def normalize_calaim_status(status: Any) -> str:
    text = _as_text(status)
    return "Authorized" if text.lower() == "authorized" else text


def build_search_keys(values: Iterable[Any], limit: int = MAX_SEARCH_KEYS) -> List[str]:
    """Derive lowercase lookup tokens from staff-assignment values.

    E-mail addresses contribute the pieces of their local part; the rest of
    the text is split into words. Tokens shorter than three characters are
    dropped, duplicates keep their first position, and at most ``limit``
    tokens are returned.
    """
    tokens: List[str] = []
    for value in values:
        text = " ".join(_as_text(value).lower().split())
        if not text:
            continue

        for email in _EMAIL_RE.findall(text):
            local_part = email.split("@", 1)[0]
            tokens.extend(_EMAIL_LOCAL_SPLIT_RE.split(local_part))
            text = text.replace(email, " ")

        tokens.extend(_WORD_SPLIT_RE.split(text))

    keys: List[str] = []
    seen = set()
    for token in tokens:
        if len(token) < MIN_TOKEN_LENGTH or token in seen:
            continue
        seen.add(token)
        keys.append(token)
        if len(keys) >= limit:
            break
    return keys


def extract_modified_at(raw: Dict[str, Any], config: SyncFieldsConfig) -> Optional[datetime]:
    """Parse the record's modification timestamp, if any."""
    return parse_timestamp(find_field(raw, config.watermark_field, *config.watermark_aliases))


def normalize_member(
    raw: Dict[str, Any],
    config: SyncFieldsConfig,
    cached_at: Optional[datetime] = None
) -> NormalizedRecord:
    """Map one raw remote record into a cached member document.

    Args:
        raw: Record as returned by the records endpoint
        config: Field configuration (key and watermark columns)
        cached_at: Write timestamp shared by the whole run

    Returns:
        NormalizedRecord; ``member`` is None when no primary key resolves
    """
    client_key = _as_text(find_field(raw, config.key_field, *config.key_aliases))
    if not client_key:
        return NormalizedRecord(client_key="", member=None)

    values = {
        field: _as_text(find_field(raw, *names))
        for field, names in MEMBER_FIELD_MAP.items()
    }
    search_keys = build_search_keys(values[source] for source in SEARCH_KEY_SOURCES)

    values["calaim_status"] = normalize_calaim_status(values["calaim_status"])
    values["social_worker_assigned"] = normalize_staff_name(values["social_worker_assigned"])

    modified_at = extract_modified_at(raw, config)

    raw_fields = dict(raw)
    raw_fields[config.key_field] = client_key
    calaim_column = next(
        (key for key in raw_fields if str(key).lower() == "calaim_status"), None
    )
    if calaim_column and values["calaim_status"]:
        raw_fields[calaim_column] = values["calaim_status"]

    member = CachedMember(
        client_key=client_key,
        member_name=f"{values['first_name']} {values['last_name']}".strip(),
        date_modified=modified_at,
        search_keys=search_keys,
        cached_at=cached_at or utc_now(),
        raw_fields=raw_fields,
        **values
    )
    return NormalizedRecord(client_key=client_key, member=member, modified_at=modified_at)
