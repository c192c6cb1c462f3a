"""Paginated retrieval of member records with a degrading retry ladder."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional

from ..api_clients.base import (
    AuthError, RemoteRequestError, RemoteFetchError, is_schema_rejection
)
from ..api_clients.caspio import CaspioClient
from ..utils.logging import get_logger
from ..utils.timestamps import to_remote_comparable


def build_where_clause(watermark_field: str, since: datetime) -> str:
    """``Date_Modified>'2024-05-01T13:45:00'`` style filter."""
    return f"{watermark_field}>'{to_remote_comparable(since)}'"


@dataclass
class FetchProgress:
    """Running state of one paginated fetch."""

    use_where: bool
    use_select: bool
    pages: int = 0
    fetched: int = 0
    truncated: bool = False
    where_dropped: bool = False
    select_dropped: bool = False
    restarted: bool = False


@dataclass
class FetchResult:
    """All records of a fetch plus how it went."""

    records: List[Dict[str, Any]] = field(default_factory=list)
    pages: int = 0
    truncated: bool = False
    where_dropped: bool = False
    select_dropped: bool = False
    restarted: bool = False


class PaginatedFetcher:
    """Walks the records endpoint page by page.

    A page that the remote rejects for naming a bad column is retried
    without ``select``, then without ``where``. A dropped clause stays
    dropped for the rest of the fetch. Any other failure is fatal.
    """

    def __init__(
        self,
        client: CaspioClient,
        table_name: str,
        page_size: int = 1000,
        max_pages: int = 50
    ):
        self.client = client
        self.table_name = table_name
        self.page_size = page_size
        self.max_pages = max_pages
        self.progress: Optional[FetchProgress] = None
        self.logger = get_logger(self.__class__.__name__)

    async def _fetch_page(
        self,
        page_number: int,
        where: Optional[str],
        select_fields: Optional[List[str]]
    ) -> List[Dict[str, Any]]:
        progress = self.progress
        while True:
            try:
                return await self.client.fetch_records_page(
                    self.table_name,
                    page_number,
                    self.page_size,
                    where=where if progress.use_where else None,
                    select=select_fields if progress.use_select else None
                )
            except AuthError as e:
                raise RemoteFetchError(f"Page {page_number} request not authenticated: {e}") from e
            except RemoteRequestError as e:
                if is_schema_rejection(e.body) or is_schema_rejection(str(e)):
                    if progress.use_select:
                        progress.use_select = False
                        progress.select_dropped = True
                        self.logger.warning(
                            "Remote rejected field selection, retrying without select",
                            page=page_number,
                            status=e.status
                        )
                        continue
                    if progress.use_where:
                        progress.use_where = False
                        progress.where_dropped = True
                        self.logger.warning(
                            "Remote rejected watermark filter, retrying unfiltered",
                            page=page_number,
                            status=e.status
                        )
                        continue

                self.logger.error(
                    "Page fetch failed",
                    page=page_number,
                    status=e.status,
                    error=str(e)
                )
                raise RemoteFetchError(f"Failed to fetch page {page_number}: {e}") from e

    async def iter_pages(
        self,
        since: Optional[datetime],
        watermark_field: str,
        select_fields: Optional[List[str]] = None
    ) -> AsyncIterator[List[Dict[str, Any]]]:
        """Yield non-empty pages in fetch order.

        Args:
            since: Only fetch records modified after this time; None for all
            watermark_field: Column the ``where`` filter compares
            select_fields: Columns to request; None for all

        Raises:
            RemoteFetchError: On any failure the ladder cannot absorb
        """
        where = build_where_clause(watermark_field, since) if since else None
        self.progress = FetchProgress(use_where=where is not None, use_select=bool(select_fields))
        progress = self.progress

        self.logger.info(
            "Starting paginated fetch",
            table=self.table_name,
            where=where,
            select_count=len(select_fields) if select_fields else 0,
            page_size=self.page_size
        )

        page_number = 1
        while page_number <= self.max_pages:
            filtered = progress.use_where
            page = await self._fetch_page(page_number, where, select_fields)

            if filtered and not progress.use_where and page_number > 1:
                # earlier pages were filtered; start over so the unfiltered pass is complete
                self.logger.warning("Restarting fetch from page 1 without filter", dropped_at_page=page_number)
                progress.restarted = True
                page_number = 1
                continue

            progress.pages += 1
            progress.fetched += len(page)
            self.logger.debug("Fetched page", page=page_number, records=len(page))

            if page:
                yield page
            if len(page) < self.page_size:
                self.logger.info("Paginated fetch complete", pages=progress.pages, fetched=progress.fetched)
                return
            page_number += 1

        progress.truncated = True
        self.logger.warning(
            "Page cap reached, result truncated",
            max_pages=self.max_pages,
            fetched=progress.fetched
        )

    async def fetch_records(
        self,
        since: Optional[datetime],
        watermark_field: str,
        select_fields: Optional[List[str]] = None
    ) -> FetchResult:
        """Collect every page into one FetchResult."""
        result = FetchResult()
        async for page in self.iter_pages(since, watermark_field, select_fields):
            result.records.extend(page)

        progress = self.progress
        result.pages = progress.pages
        result.truncated = progress.truncated
        result.where_dropped = progress.where_dropped
        result.select_dropped = progress.select_dropped
        result.restarted = progress.restarted
        return result
