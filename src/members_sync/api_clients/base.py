"""Remote API error types and error-body classification."""

import re
from typing import Optional

from ..auth.token_provider import AuthError


class RemoteRequestError(Exception):
    """Raised by the HTTP client for any non-success response or network failure."""

    def __init__(self, message: str, status: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status = status
        self.body = body or ""


class RateLimitError(RemoteRequestError):
    """Raised when the remote API answers 429."""

    def __init__(self, message: str, retry_after: Optional[int] = None, body: str = ""):
        super().__init__(message, status=429, body=body)
        self.retry_after = retry_after


class RemoteFetchError(Exception):
    """Raised when paginated fetching fails after the degrading-retry ladder."""
    pass


class SchemaResolutionError(Exception):
    """Raised when remote column discovery or the schema cache write fails.

    Never escapes the schema resolver: the sync degrades to unfiltered mode.
    """
    pass


_SCHEMA_REJECTION_PATTERNS = [
    re.compile(r"invalid\s+(column|field)"),
    re.compile(r"unknown\s+(column|field)"),
    re.compile(r"(column|field)\s+name"),
    re.compile(r"(column|field)\b.*\b(not\s+found|does\s+not\s+exist|doesn't\s+exist)"),
]


def is_schema_rejection(error_body: Optional[str]) -> bool:
    """Tell whether an error body says the request referenced a bad column.

    The records endpoint rejects ``q.select``/``q.where`` clauses naming
    columns the table does not have with messages such as
    ``"Invalid column name 'Kaiser_Status'"``. Only this kind of rejection
    justifies retrying the page at reduced precision.
    """
    if not error_body:
        return False
    text = str(error_body).lower()
    return any(pattern.search(text) for pattern in _SCHEMA_REJECTION_PATTERNS)
