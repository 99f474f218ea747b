"""QR credential attendance capture.

Resolves the day's class session for a subject, extracts student identifiers
from scanned credentials (scraping the institutional credential page when the
QR carries a URL), and records deduplicated, time-classified attendance.
"""

from src.attendance.config import AttendanceConfig, get_config
from src.attendance.extractor import CredentialExtractor
from src.attendance.models import (
    AttendanceEntry,
    Instructor,
    ScanFeedback,
    ScannerPhase,
    ScanOutcome,
    Session,
    Subject,
)
from src.attendance.pipeline import ScanPipeline
from src.attendance.scanner import AttendanceScanner
from src.attendance.sessions import SessionResolver, SubjectCatalog
from src.attendance.store import RecordStore

__all__ = [
    "AttendanceConfig",
    "AttendanceEntry",
    "AttendanceScanner",
    "CredentialExtractor",
    "Instructor",
    "RecordStore",
    "ScanFeedback",
    "ScanOutcome",
    "ScanPipeline",
    "ScannerPhase",
    "Session",
    "SessionResolver",
    "Subject",
    "SubjectCatalog",
    "build_scanner",
    "get_config",
]


def build_scanner(
    store: RecordStore,
    instructor: Instructor,
    config: AttendanceConfig | None = None,
    extractor: CredentialExtractor | None = None,
) -> AttendanceScanner:
    """Wire resolver, extractor and pipeline into a ready scanner."""
    config = config or get_config()
    extractor = extractor or CredentialExtractor(config)
    return AttendanceScanner(
        instructor,
        SessionResolver(store, config),
        ScanPipeline(store, extractor, config),
        config,
    )
