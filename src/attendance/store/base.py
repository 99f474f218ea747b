"""Record store port used by the attendance engine.

The engine never talks to a database directly. It reads, inserts and updates
rows in named tables through this protocol, and relies on the distinguishable
NoMatchingRow / SchemaDrift / UniqueViolation errors to decide between
create-or-use paths.
"""

from typing import Any, Mapping, Protocol

Row = dict[str, Any]


class RecordStore(Protocol):
    async def select(
        self,
        table: str,
        filters: Mapping[str, Any] | None = None,
        *,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Row]:
        """Return rows whose columns equal every value in ``filters``."""
        ...

    async def select_one(self, table: str, filters: Mapping[str, Any]) -> Row:
        """Return the single matching row.

        Raises:
            NoMatchingRow: If no row matches.
            PersistenceError: If more than one row matches.
        """
        ...

    async def insert(self, table: str, row: Mapping[str, Any]) -> Row:
        """Insert a row and return it as stored (with generated columns).

        Raises:
            SchemaDrift: If the row references a column the table lacks.
            UniqueViolation: If the row conflicts with a uniqueness constraint.
        """
        ...

    async def update(
        self, table: str, values: Mapping[str, Any], filters: Mapping[str, Any]
    ) -> list[Row]:
        """Apply ``values`` to every row matching ``filters``; return updated rows."""
        ...
