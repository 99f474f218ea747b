"""Scanner state machine and the caller-facing attendance surface.

Phases:
    idle        no subject selected
    preparing   today's session is being resolved
    scanning    camera armed, waiting for a decode
    processing  one decode is being validated and persisted
                (a cancelled scan returns straight to scanning)
    cooldown    outcome shown, camera re-armed after a delay
    offline     session resolution failed for lack of network/storage access
    error       session resolution failed for any other reason

Everything runs on one event loop. The phase itself is the mutual exclusion:
decodes that arrive outside ``scanning`` are dropped, never queued. Each
subject selection bumps a generation counter so late results from a
superseded resolution, scan or cooldown timer cannot touch the new context.
"""

import asyncio

from src.attendance.config import AttendanceConfig
from src.attendance.errors import (
    AttendanceError,
    InvalidTransition,
    NetworkUnavailable,
    TransientError,
)
from src.attendance.ledger import AttendanceLedger
from src.attendance.logging import get_logger
from src.attendance.models import (
    AttendanceEntry,
    FeedbackType,
    Instructor,
    ScanFeedback,
    ScannerPhase,
    ScanOutcome,
    Session,
    Subject,
)
from src.attendance.pipeline import (
    PROCESSING_FEEDBACK,
    SCAN_FAILED_FEEDBACK,
    ScanPipeline,
)
from src.attendance.sessions import SessionResolver

log = get_logger(__name__)

Phase = ScannerPhase

TRANSITIONS: dict[ScannerPhase, frozenset[ScannerPhase]] = {
    Phase.IDLE: frozenset({Phase.PREPARING}),
    Phase.PREPARING: frozenset(
        {Phase.SCANNING, Phase.OFFLINE, Phase.ERROR, Phase.PREPARING, Phase.IDLE}
    ),
    Phase.SCANNING: frozenset({Phase.PROCESSING, Phase.PREPARING, Phase.IDLE}),
    Phase.PROCESSING: frozenset(
        {Phase.COOLDOWN, Phase.SCANNING, Phase.PREPARING, Phase.IDLE}
    ),
    Phase.COOLDOWN: frozenset({Phase.SCANNING, Phase.PREPARING, Phase.IDLE}),
    Phase.OFFLINE: frozenset({Phase.PREPARING, Phase.IDLE}),
    Phase.ERROR: frozenset({Phase.PREPARING, Phase.IDLE}),
}

SELECT_SUBJECT_FEEDBACK = ScanFeedback(
    type=FeedbackType.WARNING,
    title="Selecciona una materia",
    message="Elige una materia para iniciar el registro de asistencia.",
)
READY_FEEDBACK = ScanFeedback(
    type=FeedbackType.INFO,
    title="Listo para escanear",
    message="Coloca el código QR dentro del marco.",
)
PREPARATION_FAILED_FEEDBACK = ScanFeedback(
    type=FeedbackType.ERROR,
    title="Error",
    message="No se pudo preparar la sesión para escanear",
)


class ScannerStateMachine:
    """Phase holder that only allows the transitions listed in TRANSITIONS."""

    def __init__(self, phase: ScannerPhase = Phase.IDLE) -> None:
        self.phase = phase

    def can(self, target: ScannerPhase) -> bool:
        return target in TRANSITIONS[self.phase]

    def transition(self, target: ScannerPhase) -> None:
        if not self.can(target):
            raise InvalidTransition(f"Cannot move scanner from {self.phase.value} to {target.value}")
        log.debug("scanner_transition", source=self.phase.value, target=target.value)
        self.phase = target


class AttendanceScanner:
    """One mounted scanning surface for one instructor.

    Exposes the values the UI consumes: ``scanning``, ``processing``,
    ``status`` (current feedback) and ``recent`` (rolling attendance list).
    """

    def __init__(
        self,
        instructor: Instructor,
        resolver: SessionResolver,
        pipeline: ScanPipeline,
        config: AttendanceConfig,
    ) -> None:
        self.instructor = instructor
        self.resolver = resolver
        self.pipeline = pipeline
        self.config = config
        self.state = ScannerStateMachine()
        self.subject: Subject | None = None
        self.session: Session | None = None
        self.feedback: ScanFeedback | None = None
        self.ledger = AttendanceLedger(config.recent_entries_limit)
        self._generation = 0
        self._resume_handle: asyncio.TimerHandle | None = None

    # --- caller-facing values ----------------------------------------------

    @property
    def phase(self) -> ScannerPhase:
        return self.state.phase

    @property
    def scanning(self) -> bool:
        return self.state.phase == Phase.SCANNING

    @property
    def processing(self) -> bool:
        return self.state.phase == Phase.PROCESSING

    @property
    def recent(self) -> list[AttendanceEntry]:
        return self.ledger.entries

    @property
    def status(self) -> ScanFeedback:
        """Current feedback, or a default derived from the phase."""
        if self.feedback is not None:
            return self.feedback
        if self.session is None or self.phase in (Phase.IDLE, Phase.PREPARING):
            return SELECT_SUBJECT_FEEDBACK
        if self.processing:
            return PROCESSING_FEEDBACK
        return READY_FEEDBACK

    # --- subject selection -------------------------------------------------

    async def select_subject(self, subject: Subject) -> Session | None:
        """Resolve today's session for ``subject`` and arm the camera.

        A later selection supersedes this one; the superseded call returns
        None without touching scanner state.
        """
        self._cancel_resume()
        self._generation += 1
        generation = self._generation
        self.subject = subject
        self.state.transition(Phase.PREPARING)
        log.info("scanner_preparing", subject_id=subject.id, instructor_id=self.instructor.id)

        try:
            session, changed = await self.resolver.ensure_session(subject, self.instructor)
        except AttendanceError as e:
            if generation != self._generation:
                return None
            offline = isinstance(e, (TransientError, NetworkUnavailable))
            log.error(
                "scanner_preparation_failed",
                subject_id=subject.id,
                offline=offline,
                error=str(e),
            )
            self._preparation_failed(Phase.OFFLINE if offline else Phase.ERROR)
            return None
        except Exception:
            if generation != self._generation:
                return None
            log.exception("scanner_preparation_failed", subject_id=subject.id, offline=False)
            self._preparation_failed(Phase.ERROR)
            return None

        if generation != self._generation:
            log.debug("scanner_preparation_superseded", subject_id=subject.id)
            return None

        previous = self.session
        if changed or previous is None or previous.id != session.id:
            self.ledger.clear()
            self.feedback = None
        elif self.feedback is PREPARATION_FAILED_FEEDBACK:
            self.feedback = None
        self.session = session
        self.state.transition(Phase.SCANNING)
        log.info("scanner_armed", session_id=session.id, duration=session.duration_minutes)
        return session

    def _preparation_failed(self, phase: ScannerPhase) -> None:
        self.session = None
        self.feedback = PREPARATION_FAILED_FEEDBACK
        self.state.transition(phase)

    async def retry(self) -> Session | None:
        """Manual retry after a failed preparation."""
        if self.phase not in (Phase.OFFLINE, Phase.ERROR) or self.subject is None:
            raise InvalidTransition(f"Nothing to retry from {self.phase.value}")
        return await self.select_subject(self.subject)

    def close(self) -> None:
        """Deselect the subject (or leave the screen): cancel timers and go idle."""
        self._cancel_resume()
        self._generation += 1
        self.subject = None
        self.session = None
        self.feedback = None
        if self.phase != Phase.IDLE:
            self.state.transition(Phase.IDLE)

    # --- scanning ----------------------------------------------------------

    async def handle_decode(self, payload: str) -> ScanOutcome | None:
        """Process one camera decode; returns None when the decode is dropped."""
        if self.phase != Phase.SCANNING or self.session is None:
            log.debug("decode_dropped", phase=self.phase.value)
            return None

        generation = self._generation
        session = self.session
        self.state.transition(Phase.PROCESSING)
        self.feedback = PROCESSING_FEEDBACK

        try:
            outcome = await self.pipeline.process(payload, session, self.instructor)
        except asyncio.CancelledError:
            if generation == self._generation and self.phase == Phase.PROCESSING:
                self.feedback = None
                self.state.transition(Phase.SCANNING)
            raise
        except Exception:
            log.exception("scan_processing_failed", session_id=session.id)
            outcome = ScanOutcome(
                feedback=SCAN_FAILED_FEEDBACK, cooldown=self.config.cooldown_failure
            )

        if generation != self._generation:
            log.info("scan_result_discarded", session_id=session.id, reason="subject_changed")
            return outcome

        if outcome.entry is not None:
            self.ledger.add(outcome.entry)
        self.feedback = outcome.feedback
        self.state.transition(Phase.COOLDOWN)
        self._schedule_resume(outcome.cooldown, generation)
        return outcome

    def _schedule_resume(self, delay: float, generation: int) -> None:
        self._cancel_resume()
        loop = asyncio.get_running_loop()
        self._resume_handle = loop.call_later(delay, self._resume, generation)

    def _resume(self, generation: int) -> None:
        self._resume_handle = None
        if generation != self._generation or self.phase != Phase.COOLDOWN:
            return
        self.state.transition(Phase.SCANNING)

    def _cancel_resume(self) -> None:
        if self._resume_handle is not None:
            self._resume_handle.cancel()
            self._resume_handle = None
