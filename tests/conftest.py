"""Shared fixtures for the members sync tests."""

import sys
import os
from typing import Any, Dict, List, Optional

import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from members_sync.api_clients.base import AuthError, RemoteRequestError
from members_sync.config.schema import SyncFieldsConfig
from members_sync.database import DatabaseManager, CacheStore
from members_sync.utils.timestamps import parse_timestamp


TEST_FIELDS = [
    "Client_ID2",
    "Senior_First",
    "Senior_Last",
    "CalAIM_Status",
    "Kaiser_Status",
    "Pathway",
    "Hold_For_Social_Worker",
    "Kaiser_User_Assignment",
    "Social_Worker_Assigned",
    "RCFE_Name",
    "Date_Modified",
]


def make_record(client_id: Optional[str], modified: str, **overrides: Any) -> Dict[str, Any]:
    """Raw remote member record."""
    record = {
        "Client_ID2": client_id,
        "Senior_First": "Jane",
        "Senior_Last": "Smith",
        "CalAIM_Status": "Pending",
        "Kaiser_Status": "T2038 Requested",
        "Pathway": "SNF Transition",
        "Hold_For_Social_Worker": "",
        "Kaiser_User_Assignment": "jane.doe@example.org",
        "Social_Worker_Assigned": "maria lopez 121",
        "RCFE_Name": "Sunrise Villa",
        "Date_Modified": modified,
    }
    record.update(overrides)
    return record


class FakeCaspioClient:
    """In-memory stand-in for CaspioClient that honours paging, where and select."""

    def __init__(
        self,
        records: List[Dict[str, Any]],
        fields: Optional[List[str]] = None,
        reject_select: bool = False,
        reject_where: bool = False,
        fail_auth: bool = False,
        fail_status: Optional[int] = None
    ):
        self.records = records
        self.fields = fields
        self.reject_select = reject_select
        self.reject_where = reject_where
        self.fail_auth = fail_auth
        self.fail_status = fail_status
        self.requests: List[Dict[str, Any]] = []
        self.closed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.closed = True

    async def authenticate(self) -> str:
        if self.fail_auth:
            raise AuthError("Failed to get Caspio token: 401 invalid_client")
        return "test-token"

    async def get_table_definition(self, table: str, path_template: str) -> Any:
        if self.fields is None:
            raise RemoteRequestError("API request failed: 404 - Not Found", status=404, body="Not Found")
        return {"Result": [{"Name": name, "Type": "STRING"} for name in self.fields]}

    async def fetch_records_page(
        self,
        table: str,
        page_number: int,
        page_size: int,
        where: Optional[str] = None,
        select: Optional[List[str]] = None
    ) -> List[Dict[str, Any]]:
        self.requests.append({"page": page_number, "where": where, "select": select})

        if self.fail_status:
            raise RemoteRequestError(
                f"API request failed: {self.fail_status} - Server Error",
                status=self.fail_status,
                body="Internal Server Error"
            )
        if select and self.reject_select:
            raise RemoteRequestError("API request failed: 400", status=400, body="Invalid column name 'Kaiser_Status'")
        if where and self.reject_where:
            raise RemoteRequestError("API request failed: 400", status=400, body="Unknown field Date_Modified in where clause")

        records = self.records
        if where:
            since = parse_timestamp(where.split(">", 1)[1].strip("'"))
            records = [
                record for record in records
                if parse_timestamp(record.get("Date_Modified")) and parse_timestamp(record.get("Date_Modified")) > since
            ]

        start = (page_number - 1) * page_size
        page = records[start:start + page_size]
        if select:
            page = [{key: value for key, value in record.items() if key in select} for record in page]
        return [dict(record) for record in page]


@pytest.fixture
def db_manager():
    """In-memory database with all tables."""
    manager = DatabaseManager("sqlite:///:memory:")
    manager.create_tables()
    yield manager
    manager.engine.dispose()


@pytest.fixture
def store(db_manager):
    """Cache store over the in-memory database."""
    return CacheStore(db_manager)


@pytest.fixture
def fields_config():
    """Small field configuration matching make_record."""
    return SyncFieldsConfig(
        select_fields=list(TEST_FIELDS),
        critical_fields=["Client_ID2", "Date_Modified", "Kaiser_Status"]
    )
