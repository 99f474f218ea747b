from datetime import datetime, timedelta

import pytest
import requests

from src.attendance.config import AttendanceConfig
from src.attendance.connectivity import NetworkState
from src.attendance.extractor import CredentialExtractor
from src.attendance.models import Instructor, Subject
from src.attendance.pipeline import ScanPipeline
from src.attendance.scanner import AttendanceScanner
from src.attendance.sessions import SessionResolver
from src.attendance.store.memory import MemoryStore

# Friday; the seeded weekly schedule has a 120 minute class on weekday 5
CLASS_START = datetime(2026, 10, 16, 9, 0, 0)

SUBJECT = Subject(id=7, name="Bases de Datos", code="BD-01", group="3CM1")
OTHER_SUBJECT = Subject(id=8, name="Redes", code="RD-02", group="3CM1")

CREDENTIAL_URL = "https://servicios.dae.ipn.mx/vcred/?h=abc123"


def credential_page(
    boleta: str = "2023123456",
    nombre: str = "Ana Torres Lopez",
    carrera: str = "Ingeniería en Informática",
    escuela: str = "Unidad Profesional Interdisciplinaria de Ingeniería y Ciencias Sociales",
) -> str:
    padding = "<!-- " + "x" * 200 + " -->"
    return (
        "<html><head><title>Credencial</title>" + padding + "</head><body>\n"
        f"<p>Boleta: {boleta}</p>\n"
        f"<p>Nombre: {nombre}</p>\n"
        f"<p>Carrera: {carrera}</p>\n"
        f"<p>Escuela: {escuela}</p>\n"
        "</body></html>"
    )


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


class FakeConnectivity:
    def __init__(self, connected: bool = True, address: str | None = "192.168.1.20") -> None:
        self.connected = connected
        self.address = address

    async def network_state(self) -> NetworkState:
        return NetworkState(connected=self.connected, address=self.address)


class FakeResponse:
    def __init__(self, status_code: int = 200, text: str = "") -> None:
        self.status_code = status_code
        self.text = text
        self.content = text.encode("utf-8")


class FakeHttp:
    """Stands in for requests.Session.get in the credential extractor."""

    def __init__(self, response: FakeResponse | Exception | None = None) -> None:
        self.response = response or FakeResponse(200, credential_page())
        self.requests: list[dict] = []

    def get(self, url, headers=None, timeout=None):
        self.requests.append({"url": url, "headers": headers, "timeout": timeout})
        if isinstance(self.response, Exception):
            raise self.response
        return self.response


@pytest.fixture()
def config() -> AttendanceConfig:
    return AttendanceConfig(
        _env_file=None,
        cooldown_on_time=0.02,
        cooldown_late=0.02,
        cooldown_rejected=0.02,
        cooldown_warning=0.02,
        cooldown_failure=0.02,
    )


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(CLASS_START)


@pytest.fixture()
def instructor() -> Instructor:
    return Instructor(id="prof-1", given_name="Laura", family_name="Méndez")


@pytest.fixture()
def store(clock) -> MemoryStore:
    store = MemoryStore(clock=clock)
    store.seed(
        "materias",
        [
            {"id": SUBJECT.id, "nombre": SUBJECT.name, "codigo": SUBJECT.code,
             "grupo": SUBJECT.group, "profesor_id": "prof-1", "activo": True,
             "created_at": "2026-08-01T10:00:00"},
            {"id": OTHER_SUBJECT.id, "nombre": OTHER_SUBJECT.name, "codigo": OTHER_SUBJECT.code,
             "grupo": OTHER_SUBJECT.group, "profesor_id": "prof-1", "activo": True,
             "created_at": "2026-08-02T10:00:00"},
        ],
    )
    store.seed("horarios", [{"materia_id": SUBJECT.id, "dia_semana": 5, "duracion_minutos": 120}])
    return store


@pytest.fixture()
def http() -> FakeHttp:
    return FakeHttp()


@pytest.fixture()
def connectivity() -> FakeConnectivity:
    return FakeConnectivity()


@pytest.fixture()
def extractor(config, connectivity, http) -> CredentialExtractor:
    return CredentialExtractor(config, connectivity=connectivity, http=http)


@pytest.fixture()
def resolver(store, config, clock) -> SessionResolver:
    return SessionResolver(store, config, clock=clock)


@pytest.fixture()
def pipeline(store, extractor, config, clock) -> ScanPipeline:
    return ScanPipeline(store, extractor, config, clock=clock)


@pytest.fixture()
def scanner(instructor, resolver, pipeline, config) -> AttendanceScanner:
    return AttendanceScanner(instructor, resolver, pipeline, config)


@pytest.fixture()
def connection_error() -> Exception:
    return requests.ConnectionError("connection reset by peer")
