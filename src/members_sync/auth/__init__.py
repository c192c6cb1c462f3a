"""Authentication module for the Caspio REST API."""

from .token_provider import AuthError, RemoteCredentials, get_access_token

__all__ = ["AuthError", "RemoteCredentials", "get_access_token"]
