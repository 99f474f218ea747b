"""Record store port and adapters."""

from src.attendance.store.base import RecordStore, Row
from src.attendance.store.compat import insert_tolerating_drift, update_tolerating_drift
from src.attendance.store.memory import MemoryStore
from src.attendance.store.postgrest import PostgrestStore

__all__ = [
    "RecordStore",
    "Row",
    "MemoryStore",
    "PostgrestStore",
    "insert_tolerating_drift",
    "update_tolerating_drift",
]
