"""Subject listing and daily session resolution.

A session is one calendar day of a subject's class. The scanner needs exactly
one to attach attendance to, so the resolver adopts today's newest session
for the subject or creates one on first use. Sessions are never deleted here.
"""

from datetime import date, datetime
from typing import Callable

from pydantic import ValidationError

from src.attendance.config import AttendanceConfig
from src.attendance.errors import PersistenceError
from src.attendance.logging import get_logger
from src.attendance.models import (
    SCHEDULES_TABLE,
    SESSIONS_TABLE,
    SUBJECTS_TABLE,
    Instructor,
    Session,
    Subject,
    WeeklyScheduleEntry,
)
from src.attendance.store.base import RecordStore, Row

log = get_logger(__name__)


def iso_weekday(day: date) -> int:
    """Weekday number with Monday = 1 and Sunday = 7."""
    return day.isoweekday()


def _hydrate(row: Row, subject: Subject, duration: int) -> Session:
    try:
        session = Session.from_row(row)
    except ValidationError as e:
        raise PersistenceError(f"Malformed session row: {e}") from e
    return session.model_copy(
        update={"subject_name": subject.name, "duration_minutes": duration}
    )


class SubjectCatalog:
    """Active subjects owned by an instructor."""

    def __init__(self, store: RecordStore) -> None:
        self.store = store

    async def list_active(self, instructor: Instructor) -> list[Subject]:
        rows = await self.store.select(
            SUBJECTS_TABLE,
            {"profesor_id": instructor.id, "activo": True},
            order_by="created_at",
            descending=True,
        )
        log.debug("subjects_loaded", instructor_id=instructor.id, count=len(rows))
        try:
            return [Subject.from_row(row) for row in rows]
        except ValidationError as e:
            raise PersistenceError(f"Malformed subject row: {e}") from e

    @staticmethod
    def default_selection(subjects: list[Subject], previous_id: int | None = None) -> Subject | None:
        """Keep the previous selection while it is still listed, else the newest subject."""
        if not subjects:
            return None
        for subject in subjects:
            if subject.id == previous_id:
                return subject
        return subjects[0]


class SessionResolver:
    """Resolves the session that scanned attendance is recorded against.

    Holds the last resolved session so repeated resolution for the same
    subject and day only refreshes its duration. Not safe for concurrent
    resolution; the scanner serializes calls per subject selection.
    """

    def __init__(
        self,
        store: RecordStore,
        config: AttendanceConfig,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.store = store
        self.config = config
        self.clock = clock
        self.current: Session | None = None

    async def class_duration(self, subject_id: int, day: date) -> int:
        """Scheduled duration for the subject on ``day``'s weekday, in minutes."""
        rows = await self.store.select(
            SCHEDULES_TABLE,
            {"materia_id": subject_id, "dia_semana": iso_weekday(day)},
            limit=1,
        )
        if not rows:
            return self.config.default_class_duration_minutes
        try:
            return WeeklyScheduleEntry.from_row(rows[0]).duration_minutes
        except ValidationError as e:
            raise PersistenceError(f"Malformed schedule row: {e}") from e

    async def ensure_session(
        self, subject: Subject, instructor: Instructor
    ) -> tuple[Session, bool]:
        """Return today's session for ``subject``, creating it if needed.

        Returns:
            The session and whether it differs from the previously resolved one.

        Raises:
            PersistenceError: Any store failure, unchanged. The cached session
                is cleared so the next call starts over.
        """
        try:
            return await self._ensure_session(subject, instructor)
        except Exception:
            self.current = None
            raise

    async def _ensure_session(
        self, subject: Subject, instructor: Instructor
    ) -> tuple[Session, bool]:
        now = self.clock()
        today = now.date()
        duration = await self.class_duration(subject.id, today)

        previous = self.current
        if (
            previous is not None
            and previous.subject_id == subject.id
            and previous.session_date == today
        ):
            if previous.duration_minutes != duration:
                self.current = previous.model_copy(update={"duration_minutes": duration})
            log.debug("session_reused", session_id=previous.id, duration=duration)
            return self.current, False

        existing = await self.store.select(
            SESSIONS_TABLE,
            {"materia_id": subject.id, "fecha": today.isoformat()},
            order_by="created_at",
            descending=True,
            limit=1,
        )
        if existing:
            session = _hydrate(existing[0], subject, duration)
            changed = previous is None or previous.id != session.id
            self.current = session
            log.info("session_adopted", session_id=session.id, subject_id=subject.id, changed=changed)
            return session, changed

        row = await self.store.insert(
            SESSIONS_TABLE,
            {
                "materia_id": subject.id,
                "fecha": today.isoformat(),
                "tema": self.config.session_topic,
                "hora_inicio": now.strftime("%H:%M:%S"),
                "estado": self.config.session_status,
                "created_by": instructor.id,
            },
        )
        session = _hydrate(row, subject, duration)
        self.current = session
        log.info(
            "session_created",
            session_id=session.id,
            subject_id=subject.id,
            start_time=row.get("hora_inicio"),
            duration=duration,
        )
        return session, True
