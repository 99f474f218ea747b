"""In-process record store.

Backs the test suite and offline demos. Tables can be given an explicit
column set to emulate an institution whose schema lags behind the fields the
scanner knows about, and unique keys to emulate storage constraints.
"""

import copy
import itertools
from datetime import datetime
from typing import Any, Callable, Iterable, Mapping

from src.attendance.errors import (
    NoMatchingRow,
    PersistenceError,
    SchemaDrift,
    UniqueViolation,
)
from src.attendance.logging import get_logger
from src.attendance.models import ATTENDANCE_TABLE, STUDENTS_TABLE
from src.attendance.store.base import Row

log = get_logger(__name__)

DEFAULT_UNIQUE_KEYS: dict[str, tuple[str, ...]] = {
    ATTENDANCE_TABLE: ("boleta", "sesion_id"),
    STUDENTS_TABLE: ("boleta",),
}


class MemoryStore:
    """Dict-backed implementation of the RecordStore protocol."""

    def __init__(
        self,
        columns: Mapping[str, Iterable[str]] | None = None,
        unique_keys: Mapping[str, tuple[str, ...]] | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.tables: dict[str, list[Row]] = {}
        self.columns = {table: set(cols) for table, cols in (columns or {}).items()}
        self.unique_keys = dict(DEFAULT_UNIQUE_KEYS if unique_keys is None else unique_keys)
        self.clock = clock
        self._ids = itertools.count(1)
        self.inserts: list[tuple[str, Row]] = []

    def seed(self, table: str, rows: Iterable[Mapping[str, Any]]) -> None:
        """Load rows without schema or uniqueness checks."""
        target = self.tables.setdefault(table, [])
        for row in rows:
            stored = dict(row)
            stored.setdefault("id", next(self._ids))
            stored.setdefault("created_at", self.clock().isoformat())
            target.append(stored)

    def rows(self, table: str) -> list[Row]:
        return copy.deepcopy(self.tables.get(table, []))

    def _matching(self, table: str, filters: Mapping[str, Any] | None) -> list[Row]:
        filters = filters or {}
        return [
            row
            for row in self.tables.get(table, [])
            if all(row.get(col) == value for col, value in filters.items())
        ]

    def _check_columns(self, table: str, values: Mapping[str, Any]) -> None:
        known = self.columns.get(table)
        if known is None:
            return
        for column in values:
            if column not in known:
                raise SchemaDrift(table, column)

    async def select(
        self,
        table: str,
        filters: Mapping[str, Any] | None = None,
        *,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Row]:
        rows = list(enumerate(self._matching(table, filters)))
        if order_by:
            # insertion position breaks ties so "newest first" holds for equal stamps
            rows.sort(key=lambda item: (str(item[1].get(order_by, "")), item[0]), reverse=descending)
        result = [copy.deepcopy(row) for _, row in rows]
        if limit is not None:
            result = result[:limit]
        return result

    async def select_one(self, table: str, filters: Mapping[str, Any]) -> Row:
        rows = self._matching(table, filters)
        if not rows:
            raise NoMatchingRow(f"No row in {table!r} matches {dict(filters)}")
        if len(rows) > 1:
            raise PersistenceError(f"{len(rows)} rows in {table!r} match {dict(filters)}")
        return copy.deepcopy(rows[0])

    async def insert(self, table: str, row: Mapping[str, Any]) -> Row:
        self._check_columns(table, row)

        key = self.unique_keys.get(table)
        if key and all(col in row for col in key):
            for existing in self.tables.get(table, []):
                if all(existing.get(col) == row[col] for col in key):
                    raise UniqueViolation(
                        f"Duplicate key {tuple(row[c] for c in key)} in {table!r}"
                    )

        stored = dict(row)
        stored.setdefault("id", next(self._ids))
        stored.setdefault("created_at", self.clock().isoformat())
        self.tables.setdefault(table, []).append(stored)
        self.inserts.append((table, copy.deepcopy(stored)))
        log.debug("memory_store_insert", table=table, id=stored["id"])
        return copy.deepcopy(stored)

    async def update(
        self, table: str, values: Mapping[str, Any], filters: Mapping[str, Any]
    ) -> list[Row]:
        self._check_columns(table, values)
        updated = []
        for row in self._matching(table, filters):
            row.update(values)
            updated.append(copy.deepcopy(row))
        return updated
