"""Schema-tolerant writes for institutions whose storage schema lags behind.

Scraped credentials carry more fields (CURP, program, verification hash,
origin URL, audit stamps) than some deployments have columns for. These
helpers drop whichever optional column the store rejects and try again, so
scan logic never has to know which schema version it is talking to.
"""

from typing import Any, Collection, Mapping

from src.attendance.errors import SchemaDrift
from src.attendance.logging import get_logger
from src.attendance.store.base import RecordStore, Row

log = get_logger(__name__)


def _drop_column(
    payload: dict[str, Any], error: SchemaDrift, required: Collection[str]
) -> None:
    """Remove the rejected column or re-raise when it cannot be dropped."""
    if error.column in required or error.column not in payload:
        log.error(
            "schema_drift_unrecoverable",
            table=error.table,
            column=error.column,
            required=error.column in required,
        )
        raise error
    del payload[error.column]
    log.warning("schema_drift_column_dropped", table=error.table, column=error.column)


async def insert_tolerating_drift(
    store: RecordStore,
    table: str,
    row: Mapping[str, Any],
    *,
    required: Collection[str] = (),
) -> tuple[Row, list[str]]:
    """Insert ``row``, dropping unknown optional columns until the store accepts it.

    Args:
        store: Record store to write to.
        table: Target table.
        row: Column values to insert.
        required: Columns that must not be dropped.

    Returns:
        The stored row and the list of columns that were dropped.

    Raises:
        SchemaDrift: If a required column is unknown to the store.
        PersistenceError: Any other store failure, unchanged.
    """
    payload = dict(row)
    dropped: list[str] = []
    while True:
        try:
            stored = await store.insert(table, payload)
        except SchemaDrift as e:
            _drop_column(payload, e, required)
            dropped.append(e.column)
            continue
        return stored, dropped


async def update_tolerating_drift(
    store: RecordStore,
    table: str,
    values: Mapping[str, Any],
    filters: Mapping[str, Any],
    *,
    required: Collection[str] = (),
) -> tuple[list[Row], list[str]]:
    """Update matching rows, dropping unknown optional columns from ``values``.

    Returns:
        The updated rows and the list of columns that were dropped. When every
        column is dropped nothing is written and no rows are returned.
    """
    payload = dict(values)
    dropped: list[str] = []
    while payload:
        try:
            rows = await store.update(table, payload, filters)
        except SchemaDrift as e:
            _drop_column(payload, e, required)
            dropped.append(e.column)
            continue
        return rows, dropped
    return [], dropped
