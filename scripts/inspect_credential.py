"""Run the credential extractor on one QR payload and print the result as JSON.

Useful when a credential format changes: shows which identifier, name,
program and school the parser recovers, without touching any records.

Usage:
    python scripts/inspect_credential.py "2023123456"
    python scripts/inspect_credential.py "https://servicios.dae.ipn.mx/vcred/?h=abc123"
    python scripts/inspect_credential.py --html saved_page.html
"""

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from src.attendance.config import get_config  # noqa: E402
from src.attendance.credentials import parse_student_html, split_full_name  # noqa: E402
from src.attendance.extractor import CredentialExtractor  # noqa: E402
from src.attendance.logging import setup_logging_from_config  # noqa: E402


async def main() -> None:
    parser = argparse.ArgumentParser(description="Inspect a scanned credential payload")
    parser.add_argument("payload", nargs="?", help="Decoded QR text (identifier or URL)")
    parser.add_argument("--html", type=Path, help="Parse a saved credential page instead")
    args = parser.parse_args()

    config = get_config()
    setup_logging_from_config(config)

    if args.html:
        profile = parse_student_html(
            args.html.read_text(encoding="utf-8"), config.institution_short_name
        )
        result = {"profile": profile.model_dump()}
    elif args.payload:
        credential = await CredentialExtractor(config).extract(args.payload)
        result = credential.model_dump()
        profile = credential.profile
    else:
        parser.error("give a payload or --html")
        return

    if profile:
        given_name, family_name = split_full_name(profile.full_name)
        result["given_name"] = given_name
        result["family_name"] = family_name

    print(json.dumps(result, indent=2, ensure_ascii=False))


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except Exception as e:
        print(f"ERROR: {type(e).__name__}: {e}", file=sys.stderr)
        sys.exit(1)
