"""Caspio REST API v2 client for the members table."""

import asyncio
from typing import List, Dict, Any, Optional

import aiohttp

from .base import AuthError, RemoteRequestError, RateLimitError
from ..auth.token_provider import RemoteCredentials, get_access_token
from ..utils.logging import get_logger


class CaspioClient:
    """Thin async client over the Caspio table endpoints used by the sync."""

    def __init__(
        self,
        credentials: RemoteCredentials,
        timeout_seconds: int = 60,
        session: Optional[aiohttp.ClientSession] = None
    ):
        """Initialize the client.

        Args:
            credentials: Remote connection details
            timeout_seconds: Total timeout per HTTP request
            session: Optional externally managed session
        """
        self.credentials = credentials
        self.base_url = credentials.base_url.rstrip('/')
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.session = session
        self._owns_session = session is None
        self.access_token: Optional[str] = None
        self.logger = get_logger(self.__class__.__name__)

    async def __aenter__(self):
        """Async context manager entry."""
        if not self.session:
            self.session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    async def close(self):
        if self.session and self._owns_session:
            await self.session.close()
        self.session = None

    async def authenticate(self) -> str:
        """Fetch a bearer token for this run.

        Raises:
            AuthError: If the token exchange fails
        """
        if not self.session:
            self.session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True

        self.access_token = await get_access_token(self.credentials, self.session)
        self.logger.info("Caspio authentication successful")
        return self.access_token

    async def _make_api_request(self, path: str, params: Optional[Dict[str, str]] = None) -> Any:
        """Make an authenticated GET request and return the decoded JSON body."""
        if not self.access_token:
            raise AuthError("Client is not authenticated")

        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Accept": "application/json"
        }
        url = f"{self.base_url}{path}"

        try:
            async with self.session.get(url, params=params, headers=headers) as response:
                if response.status == 429:
                    retry_after = response.headers.get("Retry-After")
                    raise RateLimitError(
                        "Rate limit exceeded",
                        retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None,
                        body=await response.text()
                    )
                if response.status != 200:
                    error_text = await response.text()
                    raise RemoteRequestError(
                        f"API request failed: {response.status} - {error_text[:500]}",
                        status=response.status,
                        body=error_text
                    )

                return await response.json(content_type=None)

        except asyncio.TimeoutError:
            raise RemoteRequestError(f"Request timed out after {self.timeout.total}s: {path}")
        except aiohttp.ClientError as e:
            raise RemoteRequestError(f"Network error: {e}")
        except ValueError as e:
            raise RemoteRequestError(f"Invalid JSON in response: {e}")

    async def get_table_definition(self, table: str, path_template: str) -> Any:
        """Fetch a schema/introspection payload for a table."""
        path = path_template.format(table=table)
        self.logger.debug("Requesting table definition", table=table, path=path)
        return await self._make_api_request(path)

    async def fetch_records_page(
        self,
        table: str,
        page_number: int,
        page_size: int,
        where: Optional[str] = None,
        select: Optional[List[str]] = None
    ) -> List[Dict[str, Any]]:
        """Fetch one page of records.

        Args:
            table: Remote table name
            page_number: 1-based page number
            page_size: Records per page
            where: Optional ``q.where`` clause
            select: Optional list of columns for ``q.select``

        Returns:
            The records in the ``Result`` array (empty list if absent)
        """
        params: Dict[str, str] = {}
        if where:
            params["q.where"] = where
        params["q.pageSize"] = str(page_size)
        params["q.pageNumber"] = str(page_number)
        if select:
            params["q.select"] = ",".join(select)

        data = await self._make_api_request(f"/rest/v2/tables/{table}/records", params)
        page = data.get("Result") if isinstance(data, dict) else None
        return page if isinstance(page, list) else []
