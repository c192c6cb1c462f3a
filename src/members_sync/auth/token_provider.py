"""
Bearer token provider for the Caspio REST API.

Caspio uses the OAuth client-credentials grant: the client id and secret are
posted as form data to the token endpoint and an access token comes back.
Tokens are not persisted; each sync run asks for a fresh one.
"""

import asyncio
import re
from dataclasses import dataclass
from typing import Optional

import aiohttp
import structlog

from ..config.settings import get_settings

logger = structlog.get_logger(__name__)


class AuthError(Exception):
    """Raised when the token exchange fails or credentials are missing."""
    pass


@dataclass(frozen=True)
class RemoteCredentials:
    """Connection details for the remote record store."""

    base_url: str
    client_id: str
    client_secret: str
    token_path: str = "/oauth/token"

    @property
    def token_url(self) -> str:
        return f"{self.base_url}{self.token_path}"

    @classmethod
    def from_settings(cls) -> "RemoteCredentials":
        """Build credentials from CASPIO_* settings.

        Raises:
            AuthError: If the client id or secret is not configured
        """
        caspio = get_settings().caspio
        if not caspio.client_id or not caspio.client_secret or not caspio.base_url:
            raise AuthError("Caspio credentials not configured")

        base_url = re.sub(r"/rest/v2/?$", "", caspio.base_url.rstrip("/"))
        return cls(
            base_url=base_url,
            client_id=caspio.client_id,
            client_secret=caspio.client_secret,
            token_path=caspio.token_path,
        )


async def get_access_token(
    credentials: RemoteCredentials,
    session: Optional[aiohttp.ClientSession] = None
) -> str:
    """
    Exchange client credentials for a bearer token.

    Args:
        credentials: Remote connection details
        session: Optional session to reuse; a short-lived one is created otherwise

    Returns:
        The access token string

    Raises:
        AuthError: If the token endpoint rejects the credentials or is unreachable
    """
    own_session = session is None
    if own_session:
        session = aiohttp.ClientSession()

    data = {
        "grant_type": "client_credentials",
        "client_id": credentials.client_id,
        "client_secret": credentials.client_secret,
    }
    headers = {"Content-Type": "application/x-www-form-urlencoded"}

    logger.info("Requesting Caspio access token", client_id=credentials.client_id[:8] + "...")

    try:
        async with session.post(credentials.token_url, data=data, headers=headers) as response:
            if response.status != 200:
                response_text = await response.text()
                logger.error(
                    "Token exchange rejected",
                    status=response.status,
                    response=response_text[:500]
                )
                raise AuthError(f"Failed to get Caspio token: {response.status} {response_text}")

            token_data = await response.json(content_type=None)

    except asyncio.TimeoutError:
        logger.error("Token request timed out", token_url=credentials.token_url)
        raise AuthError(f"Token request timed out: {credentials.token_url}")
    except aiohttp.ClientError as e:
        logger.error("Token endpoint unreachable", error=str(e))
        raise AuthError(f"Token endpoint unreachable: {e}")
    except ValueError as e:
        raise AuthError(f"Token endpoint returned invalid JSON: {e}")
    finally:
        if own_session:
            await session.close()

    access_token = token_data.get("access_token") if isinstance(token_data, dict) else None
    if not access_token:
        raise AuthError("Token response did not contain an access_token")

    logger.info("Obtained Caspio access token", expires_in=token_data.get("expires_in"))
    return access_token
