import asyncio

import pytest

from src.attendance.errors import (
    FetchFailed,
    InvalidCredential,
    NetworkUnavailable,
    UnparsableCredential,
    UntrustedSource,
)
from src.attendance.extractor import CREDENTIAL_HEADERS, CredentialExtractor

from tests.conftest import (
    CREDENTIAL_URL,
    FakeConnectivity,
    FakeHttp,
    FakeResponse,
    credential_page,
)


def test_plain_payload_resolves_identifier(extractor, http):
    credential = asyncio.run(extractor.extract("  2023123456\n"))

    assert credential.identifier == "2023123456"
    assert credential.profile is None
    assert credential.url is None
    assert http.requests == []


def test_plain_payload_without_identifier_is_invalid(extractor):
    with pytest.raises(InvalidCredential):
        asyncio.run(extractor.extract("abc"))


def test_url_payload_is_scraped(extractor, http, config):
    credential = asyncio.run(extractor.extract(CREDENTIAL_URL))

    assert credential.identifier == "2023123456"
    assert credential.url == CREDENTIAL_URL
    assert credential.profile.full_name == "Ana Torres Lopez"
    assert len(http.requests) == 1
    request = http.requests[0]
    assert request["url"] == "https://servicios.dae.ipn.mx/vcred/?h=abc123"
    assert request["headers"] == CREDENTIAL_HEADERS
    assert request["timeout"] == config.credential_timeout_seconds


def test_url_payload_is_rewritten_to_canonical_endpoint(extractor, http):
    asyncio.run(extractor.extract("https://www.upiicsa.ipn.mx/alumno?h=zz9&src=qr"))
    assert http.requests[0]["url"] == "https://servicios.dae.ipn.mx/vcred/?h=zz9"


@pytest.mark.parametrize(
    "payload",
    [
        "https://evil.example.com/vcred/?h=abc123",
        "https://evil.example.com/vcred/?h=abc123&boleta=2023123456",
        "http://servicios.dae.ipn.mx/vcred/?h=abc123",
    ],
)
def test_untrusted_url_is_rejected_without_fetching(extractor, http, payload):
    with pytest.raises(UntrustedSource):
        asyncio.run(extractor.extract(payload))
    assert http.requests == []


def test_offline_device_fails_before_fetching(config, http):
    extractor = CredentialExtractor(config, connectivity=FakeConnectivity(connected=False), http=http)
    with pytest.raises(NetworkUnavailable):
        asyncio.run(extractor.extract(CREDENTIAL_URL))
    assert http.requests == []


def test_missing_local_address_counts_as_offline(config, http):
    extractor = CredentialExtractor(config, connectivity=FakeConnectivity(address=None), http=http)
    with pytest.raises(NetworkUnavailable):
        asyncio.run(extractor.extract(CREDENTIAL_URL))


@pytest.mark.parametrize("status", [403, 404, 500, 503])
def test_non_success_status_fails_fetch(config, connectivity, status):
    http = FakeHttp(FakeResponse(status, credential_page()))
    extractor = CredentialExtractor(config, connectivity=connectivity, http=http)
    with pytest.raises(FetchFailed, match=str(status)):
        asyncio.run(extractor.extract(CREDENTIAL_URL))


def test_short_body_is_treated_as_blocked(config, connectivity):
    http = FakeHttp(FakeResponse(200, "<html>Boleta: 2023123456 Nombre: Ana</html>"))
    extractor = CredentialExtractor(config, connectivity=connectivity, http=http)
    with pytest.raises(FetchFailed, match="bloqueado"):
        asyncio.run(extractor.extract(CREDENTIAL_URL))


def test_transport_error_fails_fetch(config, connectivity, connection_error):
    extractor = CredentialExtractor(config, connectivity=connectivity, http=FakeHttp(connection_error))
    with pytest.raises(FetchFailed):
        asyncio.run(extractor.extract(CREDENTIAL_URL))


def test_page_without_name_is_unparsable(config, connectivity):
    page = credential_page().replace("Nombre:", "Alumno")
    extractor = CredentialExtractor(config, connectivity=connectivity, http=FakeHttp(FakeResponse(200, page)))
    with pytest.raises(UnparsableCredential):
        asyncio.run(extractor.extract(CREDENTIAL_URL))


def test_scraped_short_identifier_is_invalid(config, connectivity):
    page = credential_page(boleta="20231234")
    extractor = CredentialExtractor(config, connectivity=connectivity, http=FakeHttp(FakeResponse(200, page)))
    with pytest.raises(InvalidCredential):
        asyncio.run(extractor.extract(CREDENTIAL_URL))


def test_identifier_in_url_is_used_for_lookup(extractor):
    credential = asyncio.run(extractor.extract(CREDENTIAL_URL + "&boleta=2023999999"))

    assert credential.identifier == "2023999999"
    assert credential.profile.identifier == "2023123456"
