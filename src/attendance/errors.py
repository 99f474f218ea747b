"""Error hierarchy for credential scanning and attendance capture.

Every error that can end a scan carries the severity and title of the
feedback it produces, so the pipeline turns an exception into a ScanFeedback
directly. Storage errors are split so callers can tell "no row" and "unknown
column" apart from genuine failures, and so tenacity retry decorators can
classify transient transport failures:

    @retry(retry=retry_if_exception_type(TransientError), stop=stop_after_attempt(3))
    def _request(...):
        ...
"""

from src.attendance.models import FeedbackType


class AttendanceError(Exception):
    """Base exception for all attendance capture errors."""

    feedback_type: FeedbackType = FeedbackType.ERROR
    title: str = "Error al registrar asistencia"


# --- Credential extraction ---------------------------------------------------


class CredentialError(AttendanceError):
    """The scanned credential could not be turned into a student identifier."""

    pass


class InvalidCredential(CredentialError):
    """Raw QR payload does not contain a valid 10-digit identifier."""

    title = "Código inválido"


class UntrustedSource(CredentialError):
    """QR payload is a URL outside the institutional allow-list."""

    title = "URL no permitida"


class NetworkUnavailable(CredentialError):
    """No network path available for the credential page request."""

    title = "Sin conexión"


class FetchFailed(CredentialError):
    """Credential page returned a non-2xx status or an empty/blocked body."""

    title = "Credencial no disponible"


class UnparsableCredential(CredentialError):
    """Credential page markup is missing the identifier or the full name."""

    title = "Credencial ilegible"


class InconsistentCredential(CredentialError):
    """Scraped identifier differs from the identifier used for lookup."""

    feedback_type = FeedbackType.WARNING
    title = "Datos inconsistentes"


# --- Attendance rules --------------------------------------------------------


class EnrollmentInactive(AttendanceError):
    """Student is enrolled in the subject but the enrollment is not active."""

    title = "Inscripción inactiva"


class DuplicateAttendance(AttendanceError):
    """Attendance already recorded for this student in this session."""

    feedback_type = FeedbackType.WARNING
    title = "Registro duplicado"


class SessionWindowClosed(AttendanceError):
    """Scan happened before the class started or after it ended."""

    title = "Clase no iniciada o terminada"

    def __init__(self, message: str, elapsed_minutes: int, duration_minutes: int):
        super().__init__(message)
        self.elapsed_minutes = elapsed_minutes
        self.duration_minutes = duration_minutes


# --- Persistence -------------------------------------------------------------


class PersistenceError(AttendanceError):
    """Generic record store failure."""

    pass


class NoMatchingRow(PersistenceError):
    """A single-row lookup found nothing."""

    pass


class SchemaDrift(PersistenceError):
    """Insert referenced a column the store's schema does not have.

    Handled by dropping the column and retrying; only surfaces when the
    column cannot be dropped.
    """

    def __init__(self, table: str, column: str, message: str | None = None):
        super().__init__(message or f"Unknown column {column!r} in {table!r}")
        self.table = table
        self.column = column


class UniqueViolation(PersistenceError):
    """Insert conflicted with a uniqueness constraint."""

    pass


class StudentRegistrationFailed(PersistenceError):
    """Unknown student could not be created from the scanned credential."""

    title = "Estudiante no registrado"


class EnrollmentFailed(PersistenceError):
    """Missing enrollment could not be provisioned."""

    title = "Error de inscripción"


class TransientError(PersistenceError):
    """Temporary transport failure that may succeed on retry.

    Examples: connection resets, timeouts, 503 Service Unavailable.
    """

    pass


# --- Scanner state machine ---------------------------------------------------


class InvalidTransition(AttendanceError):
    """Scanner was asked to move between phases that are not connected."""

    pass
