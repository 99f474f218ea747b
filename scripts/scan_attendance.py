"""Take attendance for one subject by feeding decoded QR payloads on stdin.

Resolves (or creates) today's session for the chosen subject, then processes
one payload per input line, printing the feedback for each scan. Intended for
USB/keyboard-wedge QR readers and for replaying captured payloads.

Run with:  python scripts/scan_attendance.py --instructor-id <uuid> --subject 12
List:      python scripts/scan_attendance.py --instructor-id <uuid> --list-subjects
Replay:    python scripts/scan_attendance.py --instructor-id <uuid> < payloads.txt
JSON:      python scripts/scan_attendance.py --instructor-id <uuid> --json

Environment (.env): SUPABASE_URL, SUPABASE_KEY, optional SUPABASE_ACCESS_TOKEN
(the instructor's JWT, so row-level security applies to their rows).

Exit codes:
  0 = success
  1 = error (message on stderr)
"""

import argparse
import asyncio
import json
import os
import sys

from dotenv import load_dotenv

load_dotenv()

# Add project root to path for src imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from src.attendance import build_scanner  # noqa: E402
from src.attendance.config import get_config  # noqa: E402
from src.attendance.logging import setup_logging_from_config  # noqa: E402
from src.attendance.models import Instructor, ScannerPhase  # noqa: E402
from src.attendance.sessions import SubjectCatalog  # noqa: E402
from src.attendance.store import PostgrestStore  # noqa: E402

_SEVERITY_MARK = {
    "info": "·",
    "success": "✔",
    "warning": "!",
    "error": "✘",
}


def _log(msg: str) -> None:
    """Write diagnostic messages to stderr so stdout stays clean for JSON."""
    print(msg, file=sys.stderr)


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Record attendance from QR payloads read on stdin.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--instructor-id",
        default=os.getenv("INSTRUCTOR_ID", ""),
        help="Instructor (profesor) id; defaults to $INSTRUCTOR_ID.",
    )
    parser.add_argument(
        "--subject",
        type=int,
        default=None,
        help="Subject (materia) id. Defaults to the newest active subject.",
    )
    parser.add_argument(
        "--list-subjects",
        action="store_true",
        help="List the instructor's active subjects and exit.",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print one JSON object per scan outcome instead of text.",
    )
    return parser.parse_args()


async def _wait_until_armed(scanner) -> None:
    """Block until the cooldown after the previous scan has elapsed."""
    while scanner.phase == ScannerPhase.COOLDOWN:
        await asyncio.sleep(0.05)


async def main(args: argparse.Namespace) -> None:
    config = get_config()
    setup_logging_from_config(config)

    if not args.instructor_id:
        raise ValueError("--instructor-id (or INSTRUCTOR_ID) is required")

    store = PostgrestStore.from_config(config, os.getenv("SUPABASE_ACCESS_TOKEN"))
    instructor = Instructor(id=args.instructor_id)

    subjects = await SubjectCatalog(store).list_active(instructor)
    if args.list_subjects:
        for subject in subjects:
            details = " | ".join(
                part for part in (subject.code, f"Grupo {subject.group}" if subject.group else None) if part
            )
            print(f"{subject.id:>6}  {subject.name}" + (f"  ({details})" if details else ""))
        return

    subject = SubjectCatalog.default_selection(subjects, args.subject)
    if subject is None or (args.subject is not None and subject.id != args.subject):
        raise ValueError("No matching active subject for this instructor")

    scanner = build_scanner(store, instructor, config)
    session = await scanner.select_subject(subject)
    if session is None:
        raise RuntimeError(scanner.status.message)

    _log(
        f"Session {session.id} for {session.subject_name} "
        f"(start {session.start_time}, {session.duration_minutes} min). Waiting for scans..."
    )

    loop = asyncio.get_running_loop()
    while True:
        line = await loop.run_in_executor(None, sys.stdin.readline)
        if not line:
            break
        payload = line.strip()
        if not payload:
            continue

        await _wait_until_armed(scanner)
        outcome = await scanner.handle_decode(payload)
        if outcome is None:
            _log("  scanner busy, payload dropped")
            continue

        if args.json:
            print(json.dumps(outcome.model_dump(mode="json"), ensure_ascii=False), flush=True)
        else:
            mark = _SEVERITY_MARK[outcome.feedback.type.value]
            print(f"{mark} {outcome.feedback.title}: {outcome.feedback.message}", flush=True)

    _log(f"scan_attendance: done, {len(scanner.recent)} recorded this run")
    scanner.close()


if __name__ == "__main__":
    args = _parse_args()
    try:
        asyncio.run(main(args))
    except Exception as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)
