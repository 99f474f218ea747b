"""Rolling list of the most recent attendance results, newest first."""

from typing import Iterator

from src.attendance.models import AttendanceEntry


class AttendanceLedger:
    def __init__(self, limit: int = 25) -> None:
        self.limit = limit
        self._entries: list[AttendanceEntry] = []

    def add(self, entry: AttendanceEntry) -> None:
        self._entries = [entry, *self._entries][: self.limit]

    def clear(self) -> None:
        self._entries = []

    @property
    def entries(self) -> list[AttendanceEntry]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[AttendanceEntry]:
        return iter(list(self._entries))
