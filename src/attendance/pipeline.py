"""Scan processing pipeline: one decoded QR payload to one attendance record.

Steps, in order:
  1. extract the student identifier from the credential (scraping if needed)
  2. reject credentials whose scraped identifier disagrees with the lookup one
  3. find the student, creating it from the credential when unknown
  4. sync changed profile fields from the scraped page
  5. require an active enrollment, provisioning one when none exists
  6. reject duplicates for (student, session)
  7. classify arrival time against the session window
  8. insert the attendance record

Every failure ends the scan with a typed ScanFeedback and a cooldown; nothing
here pauses the session. Student and enrollment auto-provisioning keep the
behaviour instructors rely on today; whether it stays long term is a product
decision, not a technical one.
"""

import hashlib
import math
from datetime import datetime
from typing import Any, Callable

from pydantic import ValidationError

from src.attendance.config import AttendanceConfig
from src.attendance.credentials import split_full_name
from src.attendance.errors import (
    AttendanceError,
    DuplicateAttendance,
    EnrollmentFailed,
    EnrollmentInactive,
    InconsistentCredential,
    InvalidCredential,
    NoMatchingRow,
    PersistenceError,
    SessionWindowClosed,
    StudentRegistrationFailed,
    UniqueViolation,
    UntrustedSource,
)
from src.attendance.extractor import CredentialExtractor
from src.attendance.logging import bind_scan_context, clear_scan_context, get_logger
from src.attendance.models import (
    ATTENDANCE_TABLE,
    ENROLLMENTS_TABLE,
    STUDENTS_TABLE,
    AttendanceEntry,
    AttendanceRecord,
    AttendanceStatus,
    Enrollment,
    EnrollmentStatus,
    FeedbackType,
    Instructor,
    ScanFeedback,
    ScanOutcome,
    ScannedCredential,
    Session,
    Student,
)
from src.attendance.store.base import RecordStore, Row
from src.attendance.store.compat import insert_tolerating_drift, update_tolerating_drift

log = get_logger(__name__)

STUDENT_REQUIRED_COLUMNS = ("boleta", "nombre")

# Student columns refreshed from a scraped credential, in summary order
SYNCED_COLUMNS = (
    "nombre",
    "apellido",
    "carrera",
    "escuela",
    "hash_verificacion",
    "original_url",
)

PROCESSING_FEEDBACK = ScanFeedback(
    type=FeedbackType.INFO,
    title="Procesando credencial...",
    message="Validando código QR y sincronizando datos del estudiante.",
)

SCAN_FAILED_FEEDBACK = ScanFeedback(
    type=FeedbackType.ERROR,
    title=AttendanceError.title,
    message="No se pudo registrar la asistencia. Inténtalo de nuevo.",
)


def placeholder_curp(identifier: str) -> str:
    """Deterministic 18-character CURP stand-in for students created without one."""
    return f"XEXX{identifier[:6]}HXXXXX{identifier[-2:]}"


def verification_hash(identifier: str, full_name: str, now: datetime) -> str:
    """SHA-256 of identifier, full name and the scan instant in epoch milliseconds."""
    payload = f"{identifier}{full_name}{int(now.timestamp() * 1000)}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def elapsed_minutes(session: Session, now: datetime) -> int:
    """Whole minutes between the session's start time today and ``now``.

    A session stored without a start time counts as starting now.
    """
    start_time = session.start_time if session.start_time is not None else now.time()
    start = datetime.combine(now.date(), start_time, tzinfo=now.tzinfo)
    return math.floor((now - start).total_seconds() / 60)


def classify_arrival(
    elapsed: int, duration: int, late_threshold: int
) -> tuple[AttendanceStatus, int]:
    """Classify an arrival ``elapsed`` minutes after class start.

    Returns:
        (status, minutes late); minutes late is 0 when on time.

    Raises:
        SessionWindowClosed: If elapsed is negative or exceeds the duration.
    """
    if elapsed < 0 or elapsed > duration:
        raise SessionWindowClosed(
            f"No se puede registrar, la clase de {duration} min ya finalizó o no ha empezado.",
            elapsed_minutes=elapsed,
            duration_minutes=duration,
        )
    if elapsed <= late_threshold:
        return AttendanceStatus.ON_TIME, 0
    return AttendanceStatus.LATE, elapsed


def _student(row: Row) -> Student:
    try:
        return Student.from_row(row)
    except ValidationError as e:
        raise PersistenceError(f"Malformed student row: {e}") from e


class ScanPipeline:
    """Validates and persists one scanned credential at a time."""

    def __init__(
        self,
        store: RecordStore,
        extractor: CredentialExtractor,
        config: AttendanceConfig,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.store = store
        self.extractor = extractor
        self.config = config
        self.clock = clock

    def cooldown_for(self, error: AttendanceError) -> float:
        if isinstance(error, (InvalidCredential, UntrustedSource)):
            return self.config.cooldown_rejected
        if isinstance(error, (InconsistentCredential, DuplicateAttendance, EnrollmentInactive)):
            return self.config.cooldown_warning
        return self.config.cooldown_failure

    def failure_outcome(self) -> ScanOutcome:
        """Outcome for a scan that failed outside the known error taxonomy."""
        return ScanOutcome(feedback=SCAN_FAILED_FEEDBACK, cooldown=self.config.cooldown_failure)

    async def process(
        self, raw: str, session: Session, instructor: Instructor
    ) -> ScanOutcome:
        """Run one scan and describe its outcome.

        Every failure becomes an outcome with feedback and a cooldown; only
        cancellation propagates.
        """
        bind_scan_context(session_id=session.id, instructor_id=instructor.id)
        try:
            entry, notes = await self._record(raw, session, instructor)
        except AttendanceError as e:
            log.warning("scan_rejected", reason=type(e).__name__, detail=str(e))
            return ScanOutcome(
                feedback=ScanFeedback(type=e.feedback_type, title=e.title, message=str(e)),
                cooldown=self.cooldown_for(e),
            )
        except Exception:
            # malformed store rows, undecodable responses and the like
            log.exception("scan_failed_unexpectedly")
            return self.failure_outcome()
        finally:
            clear_scan_context("session_id", "instructor_id", "identifier")

        on_time = entry.status == AttendanceStatus.ON_TIME
        if on_time:
            message = f"{entry.display_name} registrado como presente."
        else:
            message = f"{entry.display_name} llegó con {entry.minutes_late} minutos de tardanza."
        if notes:
            message = "\n".join([message, *notes])

        return ScanOutcome(
            feedback=ScanFeedback(
                type=FeedbackType.SUCCESS if on_time else FeedbackType.WARNING,
                title="Asistencia registrada" if on_time else "Tardanza registrada",
                message=message,
            ),
            cooldown=self.config.cooldown_on_time if on_time else self.config.cooldown_late,
            entry=entry,
        )

    async def _record(
        self, raw: str, session: Session, instructor: Instructor
    ) -> tuple[AttendanceEntry, list[str]]:
        now = self.clock()
        notes: list[str] = []
        sync_summary = None

        credential = await self.extractor.extract(raw)
        identifier = credential.identifier
        bind_scan_context(identifier=identifier)
        log.info("scan_started", scraped=credential.profile is not None)

        consistent = (
            credential.profile is None or credential.profile.identifier == identifier
        )
        digest = None
        if credential.profile and consistent:
            digest = verification_hash(identifier, credential.profile.full_name, now)

        student_row, created = await self._find_or_create_student(
            credential, digest, instructor, now, use_profile=consistent
        )
        if not consistent:
            raise InconsistentCredential(
                "La credencial escaneada no coincide con la boleta registrada."
            )
        if created:
            notes.append("Alumno registrado automáticamente.")
        elif credential.profile:
            sync_summary = await self._sync_profile(
                student_row, credential, digest, instructor, now
            )
            if sync_summary:
                notes.append(sync_summary)
        student = _student(student_row)
        display_name = (
            student.display_name
            or (credential.profile.full_name if credential.profile else "")
            or identifier
        )

        if await self._ensure_enrollment(identifier, session, instructor, display_name):
            notes.append(f"{display_name} ha sido inscrito en esta materia.")

        existing = await self.store.select(
            ATTENDANCE_TABLE, {"boleta": identifier, "sesion_id": session.id}, limit=1
        )
        if existing:
            raise DuplicateAttendance(
                f"{display_name} ya tiene asistencia registrada en esta sesión."
            )

        duration = session.duration_minutes
        if duration is None:
            duration = self.config.default_class_duration_minutes
        elapsed = elapsed_minutes(session, now)
        status, minutes_late = classify_arrival(
            elapsed, duration, self.config.late_threshold_minutes
        )

        record = AttendanceRecord(
            student_id=identifier,
            subject_id=session.subject_id,
            session_id=session.id,
            recorded_at=now,
            status=status,
            minutes_late=minutes_late,
            created_by=instructor.id,
        )
        try:
            await self.store.insert(ATTENDANCE_TABLE, record.to_row())
        except UniqueViolation as e:
            # another device recorded the same student first
            raise DuplicateAttendance(
                f"{display_name} ya tiene asistencia registrada en esta sesión."
            ) from e

        log.info(
            "attendance_recorded",
            status=status.value,
            minutes_late=minutes_late,
            elapsed=elapsed,
        )
        entry = AttendanceEntry(
            id=f"{session.id}-{identifier}-{int(now.timestamp() * 1000)}",
            identifier=identifier,
            display_name=display_name,
            status=status,
            minutes_late=minutes_late,
            timestamp=now,
            summary=sync_summary,
        )
        return entry, notes

    async def _find_or_create_student(
        self,
        credential: ScannedCredential,
        digest: str | None,
        instructor: Instructor,
        now: datetime,
        use_profile: bool = True,
    ) -> tuple[Row, bool]:
        """Stored row for the credential's boleta, inserting one if absent.

        With ``use_profile`` False the scraped page belongs to someone else,
        so a new row gets placeholder data instead of the page's fields.
        """
        identifier = credential.identifier
        try:
            return await self.store.select_one(STUDENTS_TABLE, {"boleta": identifier}), False
        except NoMatchingRow:
            pass

        profile = credential.profile if use_profile else None
        if profile:
            given_name, family_name = split_full_name(profile.full_name)
        else:
            given_name, family_name = f"Alumno {identifier}", ""

        student = Student(
            identifier=identifier,
            given_name=given_name,
            family_name=family_name,
            curp=placeholder_curp(identifier),
            program=profile.program if profile else None,
            school=profile.school if profile else None,
            verification_hash=digest,
            origin_url=credential.url,
        )
        row: dict[str, Any] = student.to_row()
        row["created_by"] = instructor.id
        row["created_at"] = now.isoformat()

        try:
            stored, dropped = await insert_tolerating_drift(
                self.store, STUDENTS_TABLE, row, required=STUDENT_REQUIRED_COLUMNS
            )
        except UniqueViolation:
            # created concurrently by another instructor
            return await self.store.select_one(STUDENTS_TABLE, {"boleta": identifier}), False
        except PersistenceError as e:
            log.error("student_create_failed", error=str(e))
            raise StudentRegistrationFailed(
                f"No se pudo registrar la boleta {identifier}: {e}"
            ) from e

        log.info("student_created", placeholder=profile is None, dropped_columns=dropped)
        return stored, True

    async def _sync_profile(
        self,
        row: Row,
        credential: ScannedCredential,
        digest: str | None,
        instructor: Instructor,
        now: datetime,
    ) -> str | None:
        """Update stored student fields that differ from the scraped credential.

        Written values are applied to ``row`` as well.
        """
        profile = credential.profile
        given_name, family_name = split_full_name(profile.full_name)
        scraped = {
            "nombre": given_name,
            "apellido": family_name,
            "carrera": profile.program,
            "escuela": profile.school,
            "hash_verificacion": digest,
            "original_url": credential.url,
        }

        changes = {
            column: scraped[column]
            for column in SYNCED_COLUMNS
            if column in row and scraped[column] and row[column] != scraped[column]
        }
        if not changes:
            return None

        values = {**changes, "updated_at": now.isoformat(), "updated_by": instructor.id}
        _, dropped = await update_tolerating_drift(
            self.store, STUDENTS_TABLE, values, {"boleta": credential.identifier}
        )
        written = [column for column in changes if column not in dropped]
        log.info("student_synced", fields=written, dropped_columns=dropped)
        if not written:
            return None
        row.update({column: changes[column] for column in written})
        return f"Datos sincronizados ({', '.join(written)})"

    async def _ensure_enrollment(
        self,
        identifier: str,
        session: Session,
        instructor: Instructor,
        display_name: str,
    ) -> bool:
        """Require an active enrollment; return True when one was just created."""
        rows = await self.store.select(
            ENROLLMENTS_TABLE,
            {"boleta": identifier, "materia_id": session.subject_id},
            order_by="created_at",
            descending=True,
        )
        enrollments = [Enrollment.from_row(row) for row in rows]
        if any(e.is_active for e in enrollments):
            return False
        if enrollments:
            log.info("enrollment_inactive", status=enrollments[0].status)
            raise EnrollmentInactive(
                f"{display_name} está dado de baja en esta materia "
                f"({enrollments[0].status})."
            )

        try:
            await self.store.insert(
                ENROLLMENTS_TABLE,
                {
                    "boleta": identifier,
                    "materia_id": session.subject_id,
                    "estado_inscripcion": EnrollmentStatus.ACTIVE.value,
                    "created_by": instructor.id,
                },
            )
        except PersistenceError as e:
            log.error("enrollment_create_failed", error=str(e))
            raise EnrollmentFailed(
                f"No se pudo inscribir a {display_name} en la materia."
            ) from e
        log.info("enrollment_created", subject_id=session.subject_id)
        return True
