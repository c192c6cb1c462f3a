"""Discovery of the remote member table's columns."""

from typing import Any, List, Optional

from ..api_clients.base import RemoteRequestError, SchemaResolutionError
from ..api_clients.caspio import CaspioClient
from ..config.schema import SyncFieldsConfig
from ..database.service import CacheStore
from ..utils.logging import get_logger, log_async_execution_time


_NAME_KEYS = ("Name", "name", "FieldName", "ColumnName")
_LIST_KEYS = ("Result", "Fields", "Columns", "fields", "columns")


def extract_field_names(payload: Any) -> List[str]:
    """Pull column names out of a table-definition response.

    Handles lists of names, lists of objects carrying the name under one of
    the usual keys, and those lists wrapped in ``Result``/``Fields``/``Columns``.
    """
    if isinstance(payload, dict):
        for key in _LIST_KEYS:
            if key in payload:
                names = extract_field_names(payload[key])
                if names:
                    return names
        return []

    if not isinstance(payload, list):
        return []

    names: List[str] = []
    for item in payload:
        if isinstance(item, str):
            name = item
        elif isinstance(item, dict):
            name = next((item[key] for key in _NAME_KEYS if item.get(key)), None)
        else:
            name = None
        if name and str(name).strip():
            names.append(str(name).strip())
    return names


class SchemaResolver:
    """Decides which configured fields can safely be requested.

    The cached column list is refreshed when it is empty or when it lacks a
    critical field. A failed refresh keeps whatever cache existed; with no
    usable list at all the sync runs unfiltered.
    """

    def __init__(self, client: CaspioClient, store: CacheStore, config: SyncFieldsConfig):
        self.client = client
        self.store = store
        self.config = config
        self.logger = get_logger(self.__class__.__name__)

    def _read_cache(self) -> List[str]:
        try:
            entry = self.store.get_field_schema(self.config.table_name)
        except Exception as e:
            self.logger.warning("Field schema cache unreadable", error=str(e))
            return []
        return list(entry.fields) if entry else []

    def is_stale(self, cached_fields: List[str]) -> bool:
        """A non-empty cache missing any critical field is stale."""
        known = {name.lower() for name in cached_fields}
        return any(name.lower() not in known for name in self.config.critical_fields)

    async def discover_fields(self) -> List[str]:
        """Ask the schema endpoints in order; the first non-empty answer wins.

        Raises:
            SchemaResolutionError: If no endpoint yields a column list
        """
        errors = []
        for path_template in self.config.schema_paths:
            try:
                payload = await self.client.get_table_definition(self.config.table_name, path_template)
            except RemoteRequestError as e:
                self.logger.debug("Schema endpoint failed", path=path_template, status=e.status)
                errors.append(f"{path_template}: {e}")
                continue

            names = extract_field_names(payload)
            if names:
                self.logger.info(
                    "Discovered remote fields",
                    table=self.config.table_name,
                    path=path_template,
                    field_count=len(names)
                )
                return names
            errors.append(f"{path_template}: no columns in response")

        raise SchemaResolutionError(
            f"Could not discover fields for {self.config.table_name}: " + "; ".join(errors)
        )

    def _write_cache(self, fields: List[str]) -> None:
        try:
            self.store.save_field_schema(self.config.table_name, fields)
        except Exception as e:
            error = SchemaResolutionError(f"Failed to cache field schema: {e}")
            self.logger.warning("Field schema cache write failed", error=str(error))

    @log_async_execution_time
    async def resolve_fields(self, desired_fields: Optional[List[str]] = None) -> Optional[List[str]]:
        """Intersect the desired fields with what the remote table has.

        Returns:
            The supported desired fields in desired order with the remote's
            casing, or None when the sync must run unfiltered
        """
        desired = list(desired_fields if desired_fields is not None else self.config.select_fields)
        cached = self._read_cache()
        available = cached

        if not cached or self.is_stale(cached):
            self.logger.info(
                "Refreshing field schema",
                table=self.config.table_name,
                cached_count=len(cached),
                stale=bool(cached)
            )
            try:
                available = await self.discover_fields()
            except SchemaResolutionError as e:
                self.logger.warning("Field discovery failed", error=str(e), keeping_cache=bool(cached))
                available = cached
            else:
                self._write_cache(available)

        if not available:
            self.logger.warning("No field schema available, running unfiltered", table=self.config.table_name)
            return None

        by_lower = {}
        for name in available:
            by_lower.setdefault(name.lower(), name)

        resolved = [by_lower[name.lower()] for name in desired if name.lower() in by_lower]
        if not resolved:
            self.logger.warning("No desired fields exist remotely, running unfiltered")
            return None

        missing = [name for name in desired if name.lower() not in by_lower]
        if missing:
            self.logger.info("Skipping fields absent from remote table", missing=missing)
        return resolved
