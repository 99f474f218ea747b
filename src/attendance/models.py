"""Pydantic models for attendance capture.

Persistent records mirror the institution's storage tables (materias,
horarios, sesiones, estudiantes, inscripciones, asistencias). Attributes use
English names aliased to the Spanish storage columns; from_row()/to_row()
convert between models and store rows.
"""

from datetime import date, datetime, time
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

SUBJECTS_TABLE = "materias"
SCHEDULES_TABLE = "horarios"
SESSIONS_TABLE = "sesiones"
STUDENTS_TABLE = "estudiantes"
ENROLLMENTS_TABLE = "inscripciones"
ATTENDANCE_TABLE = "asistencias"


class FeedbackType(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class AttendanceStatus(str, Enum):
    ON_TIME = "presente"
    LATE = "tardanza"


class EnrollmentStatus(str, Enum):
    ACTIVE = "activa"
    INACTIVE = "inactiva"
    WITHDRAWN = "baja_definitiva"


class ScannerPhase(str, Enum):
    IDLE = "idle"
    PREPARING = "preparing"
    SCANNING = "scanning"
    PROCESSING = "processing"
    COOLDOWN = "cooldown"
    OFFLINE = "offline"
    ERROR = "error"


class StoreModel(BaseModel):
    """Base for models persisted as store rows."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @classmethod
    def from_row(cls, row: dict[str, Any]):
        return cls.model_validate(row)

    def to_row(self, *, exclude_none: bool = True) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=exclude_none)


class Instructor(StoreModel):
    """Authenticated instructor, passed explicitly into engine entry points."""

    id: str
    given_name: str = Field(default="", alias="nombre")
    family_name: str = Field(default="", alias="apellido")
    active: bool = Field(default=True, alias="activo")


class Subject(StoreModel):
    id: int
    name: str = Field(alias="nombre")
    code: str | None = Field(default=None, alias="codigo")
    group: str | None = Field(default=None, alias="grupo")


class WeeklyScheduleEntry(StoreModel):
    subject_id: int = Field(alias="materia_id")
    weekday: int = Field(alias="dia_semana", ge=1, le=7)  # 1 = Monday
    duration_minutes: int = Field(alias="duracion_minutos")


class Session(StoreModel):
    """One calendar-day class meeting used as the attendance scope.

    subject_name and duration_minutes are resolved at runtime and are not
    written back to the store. start_time may be missing on sessions created
    outside the scanner.
    """

    id: int
    subject_id: int = Field(alias="materia_id")
    session_date: date = Field(alias="fecha")
    topic: str | None = Field(default=None, alias="tema")
    start_time: time | None = Field(default=None, alias="hora_inicio")
    status: str = Field(default="impartida", alias="estado")
    subject_name: str = Field(default="", alias="materia_nombre")
    duration_minutes: int | None = Field(default=None, alias="duracion_minutos")


class Student(StoreModel):
    identifier: str = Field(alias="boleta")
    given_name: str = Field(default="", alias="nombre")
    family_name: str = Field(default="", alias="apellido")
    curp: str | None = None
    program: str | None = Field(default=None, alias="carrera")
    school: str | None = Field(default=None, alias="escuela")
    verification_hash: str | None = Field(default=None, alias="hash_verificacion")
    origin_url: str | None = Field(default=None, alias="original_url")
    active: bool = Field(default=True, alias="activo")

    @property
    def display_name(self) -> str:
        return f"{self.given_name} {self.family_name}".strip()


class Enrollment(StoreModel):
    id: int | None = None
    student_id: str = Field(alias="boleta")
    subject_id: int = Field(alias="materia_id")
    status: str = Field(default=EnrollmentStatus.ACTIVE.value, alias="estado_inscripcion")

    @property
    def is_active(self) -> bool:
        return self.status == EnrollmentStatus.ACTIVE.value


class AttendanceRecord(StoreModel):
    student_id: str = Field(alias="boleta")
    subject_id: int = Field(alias="materia_id")
    session_id: int = Field(alias="sesion_id")
    recorded_at: datetime = Field(alias="fecha_sesion")
    status: AttendanceStatus = Field(alias="estado")
    minutes_late: int = Field(default=0, alias="minutos_tardanza")
    created_by: str | None = None


# --- Transient scan values ---------------------------------------------------


class ScrapedProfile(BaseModel):
    """Fields recovered from an institutional credential page."""

    identifier: str  # "Boleta", 8-10 digits as printed
    full_name: str
    program: str | None = None
    school: str | None = None


class ScannedCredential(BaseModel):
    raw: str
    url: str | None = None
    profile: ScrapedProfile | None = None
    identifier: str  # identifier used for the student lookup


class ScanFeedback(BaseModel):
    type: FeedbackType
    title: str
    message: str


class AttendanceEntry(BaseModel):
    """One row of the rolling recent-attendance list shown to the instructor."""

    id: str
    identifier: str
    display_name: str
    status: AttendanceStatus
    minutes_late: int = 0
    timestamp: datetime
    summary: str | None = None


class ScanOutcome(BaseModel):
    feedback: ScanFeedback
    cooldown: float  # seconds before scanning is re-armed
    entry: AttendanceEntry | None = None
