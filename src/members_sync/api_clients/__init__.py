"""API clients package for the Caspio integration."""

from .base import (
    AuthError,
    RemoteRequestError,
    RateLimitError,
    RemoteFetchError,
    SchemaResolutionError,
    is_schema_rejection
)

from .caspio import CaspioClient

__all__ = [
    # Errors and classification
    "AuthError",
    "RemoteRequestError",
    "RateLimitError",
    "RemoteFetchError",
    "SchemaResolutionError",
    "is_schema_rejection",

    # Client
    "CaspioClient"
]
