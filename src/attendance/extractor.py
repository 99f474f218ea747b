"""Credential extraction: raw QR text to a validated student identifier.

Plain payloads are searched for a 10-digit identifier. URL payloads must
point at an allow-listed institutional host; the credential page is fetched
once (no automatic retries, the instructor simply scans again) and parsed
into a ScrapedProfile.
"""

import asyncio

import requests

from src.attendance.config import AttendanceConfig
from src.attendance.connectivity import Connectivity, SocketConnectivity, ensure_network
from src.attendance.credentials import (
    canonical_credential_url,
    extract_plain_identifier,
    is_allowed_url,
    parse_student_html,
    parse_url,
    url_identifier,
    validate_identifier,
)
from src.attendance.errors import FetchFailed, UntrustedSource
from src.attendance.logging import get_logger
from src.attendance.models import ScannedCredential, ScrapedProfile

log = get_logger(__name__)

# The credential service rejects clients that do not look like a mobile browser
CREDENTIAL_HEADERS: dict[str, str] = {
    "User-Agent": "Mozilla/5.0 (Linux; Android 10; Pixel 4) AppleWebKit/537.36",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "es-MX,es;q=0.8,en;q=0.6",
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
    "Referer": "https://servicios.dae.ipn.mx/",
    "Origin": "https://servicios.dae.ipn.mx",
}


class CredentialExtractor:
    """Turns decoded QR text into a ScannedCredential."""

    def __init__(
        self,
        config: AttendanceConfig,
        connectivity: Connectivity | None = None,
        http: requests.Session | None = None,
    ) -> None:
        self.config = config
        self.connectivity = connectivity or SocketConnectivity()
        self.http = http or requests.Session()

    async def extract(self, raw: str) -> ScannedCredential:
        """Resolve the student identifier carried by a scanned payload.

        Raises:
            InvalidCredential: No valid 10-digit identifier in the payload.
            UntrustedSource: URL host is not allow-listed or not https.
            NetworkUnavailable: No network path for the credential request.
            FetchFailed: Credential page returned an error or an empty body.
            UnparsableCredential: Credential page lacks identifier or name.
        """
        content = raw.strip()
        url = parse_url(content)

        if url is None:
            identifier = validate_identifier(extract_plain_identifier(content))
            log.debug("credential_plain", identifier=identifier)
            return ScannedCredential(raw=content, identifier=identifier)

        if not is_allowed_url(url, self.config.credential_allowed_domains):
            log.warning("credential_untrusted", host=url.hostname, scheme=url.scheme)
            raise UntrustedSource(
                "Usa una credencial institucional válida emitida por el IPN."
            )

        profile = await self.fetch_profile(
            canonical_credential_url(
                url, self.config.credential_endpoint, self.config.credential_hash_param
            )
        )
        # A boleta printed into the URL wins for lookup; the pipeline then
        # rejects the scan if the page disagrees with it.
        identifier = validate_identifier(url_identifier(url) or profile.identifier)
        log.info("credential_scraped", identifier=identifier, host=url.hostname)
        return ScannedCredential(
            raw=content, url=url.geturl(), profile=profile, identifier=identifier
        )

    async def fetch_profile(self, target_url: str) -> ScrapedProfile:
        """Fetch the credential page and parse the student profile from it."""
        await ensure_network(self.connectivity)

        try:
            response = await asyncio.to_thread(
                self.http.get,
                target_url,
                headers=CREDENTIAL_HEADERS,
                timeout=self.config.credential_timeout_seconds,
            )
        except requests.RequestException as e:
            log.warning("credential_fetch_error", url=target_url, error=str(e))
            raise FetchFailed(
                f"No se pudo obtener la información del estudiante. Detalle: {e}"
            ) from e

        if not 200 <= response.status_code < 300:
            log.warning("credential_fetch_status", url=target_url, status=response.status_code)
            raise FetchFailed(
                "No se pudo obtener la información del estudiante. "
                f"Detalle: Error HTTP {response.status_code}"
            )

        body_length = len(response.content or b"")
        if body_length < self.config.credential_min_body_length:
            log.warning("credential_fetch_blocked", url=target_url, length=body_length)
            raise FetchFailed(
                "No se pudo obtener la información del estudiante. "
                "Detalle: Contenido insuficiente o bloqueado"
            )

        return parse_student_html(response.text, self.config.institution_short_name)
