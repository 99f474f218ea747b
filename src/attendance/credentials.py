"""Parsing helpers for scanned student credentials.

A credential QR either carries the 10-digit student identifier ("boleta")
as plain text or a URL to the institution's credential page. The page is
loosely structured HTML (sometimes HTML-escaped inside a script), so fields
are recovered with ordered regex fallbacks: the first pattern that matches
wins.

Page shapes seen in the wild:
  Boleta: 2023123456                      plain label
  Boleta&lt;/strong&gt;: 2023123456       escaped markup
  <div class='boleta'>2023123456</div>    card layout
"""

import re
from urllib.parse import SplitResult, parse_qs, quote, urlsplit

from src.attendance.errors import InvalidCredential, UnparsableCredential
from src.attendance.models import ScrapedProfile

IDENTIFIER_RE = re.compile(r"[0-9]{10}")

# Field value: everything up to a tag, an escaped tag or a line break
_VALUE = r"((?:(?!&lt;)[^<\n])+)"

BOLETA_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"Boleta:\s*([0-9]{8,10})", re.IGNORECASE),
    re.compile(r"Boleta&lt;/strong&gt;:\s*([0-9]{8,10})", re.IGNORECASE),
    re.compile(r"Boleta</strong>:\s*([0-9]{8,10})", re.IGNORECASE),
    re.compile(r"<div class=['\"]boleta['\"][^>]*>\s*([0-9]{8,10})\s*</div>", re.IGNORECASE),
)

NOMBRE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"Nombre:\s*" + _VALUE, re.IGNORECASE),
    re.compile(r"<div class=['\"]nombre['\"][^>]*>([^<]+)</div>", re.IGNORECASE),
)

CARRERA_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"Carrera:\s*" + _VALUE, re.IGNORECASE),
    re.compile(r"Programa\s+acad[eé]mico:\s*" + _VALUE, re.IGNORECASE),
    re.compile(r"<div class=['\"]carrera['\"][^>]*>([^<]+)</div>", re.IGNORECASE),
)

_ESCUELA_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"Escuela:\s*" + _VALUE, re.IGNORECASE),
    re.compile(r"(Unidad\s+Profesional(?:(?!&lt;)[^<\n])+)", re.IGNORECASE),
)
_ESCUELA_DIV = re.compile(r"<div class=['\"]escuela['\"][^>]*>([^<]+)</div>", re.IGNORECASE)
_ESCUELA_LABEL = re.compile(r"^(Y\s+)?Escuela:", re.IGNORECASE)

ENTITY_MAP: dict[str, str] = {
    "nbsp": " ",
    "amp": "&",
    "quot": '"',
    "lt": "<",
    "gt": ">",
    "aacute": "á",
    "eacute": "é",
    "iacute": "í",
    "oacute": "ó",
    "uacute": "ú",
    "uuml": "ü",
    "ntilde": "ñ",
    "Aacute": "Á",
    "Eacute": "É",
    "Iacute": "Í",
    "Oacute": "Ó",
    "Uacute": "Ú",
    "Uuml": "Ü",
    "Ntilde": "Ñ",
}

_NUMERIC_ENTITY = re.compile(r"&#(x[0-9a-fA-F]+|\d+);")
_NAMED_ENTITY = re.compile(r"&([A-Za-z]+);")


def _numeric_entity(match: re.Match[str]) -> str:
    code = match.group(1)
    try:
        return chr(int(code[1:], 16) if code[0] in "xX" else int(code))
    except (ValueError, OverflowError):
        return ""


def sanitize_text(text: str) -> str:
    """Decode HTML entities and collapse whitespace.

    Unknown named entities are removed.
    """
    text = _NUMERIC_ENTITY.sub(_numeric_entity, text)
    text = _NAMED_ENTITY.sub(
        lambda m: ENTITY_MAP.get(m.group(1), ENTITY_MAP.get(m.group(1).lower(), "")),
        text,
    )
    return re.sub(r"\s+", " ", text).strip()


def _extract_field(html: str, patterns: tuple[re.Pattern[str], ...]) -> str | None:
    for pattern in patterns:
        match = pattern.search(html)
        if match and match.group(1):
            value = sanitize_text(match.group(1))
            if value:
                return value
    return None


def parse_student_html(html: str, institution: str = "UPIICSA") -> ScrapedProfile:
    """Extract a student profile from credential page markup.

    Args:
        html: Raw response body of the credential page.
        institution: Short school name appended to the school field when absent.

    Raises:
        UnparsableCredential: If the identifier or the full name is missing.
    """
    identifier = _extract_field(html, BOLETA_PATTERNS)
    full_name = _extract_field(html, NOMBRE_PATTERNS)
    program = _extract_field(html, CARRERA_PATTERNS)

    escuela_patterns = _ESCUELA_PATTERNS + (
        re.compile(f"({re.escape(institution)})", re.IGNORECASE),
        _ESCUELA_DIV,
    )
    school = _extract_field(html, escuela_patterns)
    if school:
        school = _ESCUELA_LABEL.sub("", school).strip()
        if institution not in school:
            school = f"{school} ({institution})"

    if not identifier or not full_name:
        raise UnparsableCredential(
            "No se pudo extraer boleta o nombre del HTML de credencial"
        )

    return ScrapedProfile(
        identifier=identifier,
        full_name=full_name,
        program=program,
        school=school or institution,
    )


def split_full_name(full_name: str) -> tuple[str, str]:
    """Split a full name into (given names, family names).

    The last two tokens are the family names (paternal and maternal); any
    tokens before them are given names.
    """
    parts = full_name.split()
    if not parts:
        return "", ""
    if len(parts) == 1:
        return parts[0], ""
    if len(parts) == 2:
        return parts[0], parts[1]
    return " ".join(parts[:-2]), " ".join(parts[-2:])


def parse_url(raw: str) -> SplitResult | None:
    """Return the parsed URL when ``raw`` is an absolute URL, else None."""
    try:
        parsed = urlsplit(raw)
    except ValueError:
        return None
    if not parsed.scheme or not parsed.netloc or " " in raw:
        return None
    return parsed


def is_allowed_url(url: SplitResult, allowed_domains: list[str]) -> bool:
    """True when the URL is https and its host is, or is under, an allowed domain."""
    if url.scheme.lower() != "https":
        return False
    host = (url.hostname or "").lower()
    return any(
        host == domain.lower() or host.endswith("." + domain.lower())
        for domain in allowed_domains
    )


def canonical_credential_url(url: SplitResult, endpoint: str, hash_param: str = "h") -> str:
    """Rewrite the URL to the canonical credential endpoint when it carries a hash."""
    values = parse_qs(url.query).get(hash_param)
    if values and values[0]:
        return f"{endpoint}?{hash_param}={quote(values[0], safe='')}"
    return url.geturl()


def url_identifier(url: SplitResult) -> str | None:
    """Identifier printed into the URL itself (``?boleta=``), if any."""
    values = parse_qs(url.query).get("boleta")
    return values[0].strip() if values and values[0].strip() else None


def extract_plain_identifier(raw: str) -> str:
    """Return the first run of 10 digits in a plain-text payload.

    Raises:
        InvalidCredential: If no 10-digit run is present.
    """
    match = IDENTIFIER_RE.search(raw)
    if not match:
        raise InvalidCredential("No se detectó una boleta válida dentro del código QR.")
    return match.group(0)


def validate_identifier(identifier: str | None) -> str:
    if not identifier or not IDENTIFIER_RE.fullmatch(identifier):
        raise InvalidCredential("No se detectó una boleta válida dentro del código QR.")
    return identifier
