import asyncio
import json

import pytest
import requests

from src.attendance.config import AttendanceConfig
from src.attendance.errors import (
    NoMatchingRow,
    PersistenceError,
    SchemaDrift,
    TransientError,
    UniqueViolation,
)
from src.attendance.store import (
    MemoryStore,
    PostgrestStore,
    insert_tolerating_drift,
    update_tolerating_drift,
)

# --- MemoryStore ------------------------------------------------------------


@pytest.fixture()
def memory() -> MemoryStore:
    store = MemoryStore()
    store.seed(
        "sesiones",
        [
            {"materia_id": 7, "fecha": "2026-10-16", "created_at": "2026-10-16T08:00:00"},
            {"materia_id": 7, "fecha": "2026-10-16", "created_at": "2026-10-16T09:00:00"},
            {"materia_id": 7, "fecha": "2026-10-16", "created_at": "2026-10-16T09:00:00"},
            {"materia_id": 8, "fecha": "2026-10-16", "created_at": "2026-10-16T10:00:00"},
        ],
    )
    return store


def test_memory_select_filters_orders_and_limits(memory):
    rows = asyncio.run(
        memory.select("sesiones", {"materia_id": 7}, order_by="created_at", descending=True)
    )
    # equal stamps: the later insert counts as newer
    assert [r["id"] for r in rows] == [3, 2, 1]

    newest = asyncio.run(
        memory.select("sesiones", {"materia_id": 7}, order_by="created_at", descending=True, limit=1)
    )
    assert [r["id"] for r in newest] == [3]

    assert asyncio.run(memory.select("sesiones", {"materia_id": 9})) == []
    assert asyncio.run(memory.select("missing")) == []


def test_memory_select_one(memory):
    assert asyncio.run(memory.select_one("sesiones", {"materia_id": 8}))["id"] == 4

    with pytest.raises(NoMatchingRow):
        asyncio.run(memory.select_one("sesiones", {"materia_id": 9}))

    with pytest.raises(PersistenceError) as excinfo:
        asyncio.run(memory.select_one("sesiones", {"materia_id": 7}))
    assert not isinstance(excinfo.value, NoMatchingRow)


def test_memory_returned_rows_are_copies(memory):
    row = asyncio.run(memory.select_one("sesiones", {"materia_id": 8}))
    row["fecha"] = "2000-01-01"

    assert memory.rows("sesiones")[3]["fecha"] == "2026-10-16"


def test_memory_insert_enforces_unique_keys():
    store = MemoryStore()
    asyncio.run(store.insert("asistencias", {"boleta": "2023123456", "sesion_id": 1}))
    asyncio.run(store.insert("asistencias", {"boleta": "2023123456", "sesion_id": 2}))

    with pytest.raises(UniqueViolation):
        asyncio.run(store.insert("asistencias", {"boleta": "2023123456", "sesion_id": 1}))
    assert len(store.rows("asistencias")) == 2


def test_memory_insert_rejects_unknown_columns():
    store = MemoryStore(columns={"estudiantes": {"boleta", "nombre"}})

    with pytest.raises(SchemaDrift) as excinfo:
        asyncio.run(store.insert("estudiantes", {"boleta": "2023123456", "nombre": "Ana", "curp": "X"}))
    assert excinfo.value.table == "estudiantes"
    assert excinfo.value.column == "curp"
    assert store.rows("estudiantes") == []


def test_memory_update(memory):
    updated = asyncio.run(memory.update("sesiones", {"estado": "cancelada"}, {"materia_id": 7}))

    assert len(updated) == 3
    assert all(r["estado"] == "cancelada" for r in memory.rows("sesiones")[:3])
    assert "estado" not in memory.rows("sesiones")[3]


# --- schema drift helpers ---------------------------------------------------


def test_insert_tolerating_drift_drops_optional_columns():
    store = MemoryStore(columns={"estudiantes": {"boleta", "nombre"}})

    stored, dropped = asyncio.run(
        insert_tolerating_drift(
            store,
            "estudiantes",
            {"boleta": "2023123456", "nombre": "Ana", "curp": "X", "carrera": "ISC"},
            required=("boleta", "nombre"),
        )
    )

    assert dropped == ["curp", "carrera"]
    assert stored["boleta"] == "2023123456"
    assert "curp" not in stored


def test_insert_tolerating_drift_keeps_required_columns():
    store = MemoryStore(columns={"estudiantes": {"boleta"}})

    with pytest.raises(SchemaDrift):
        asyncio.run(
            insert_tolerating_drift(
                store, "estudiantes", {"boleta": "2023123456", "nombre": "Ana"}, required=("nombre",)
            )
        )


def test_insert_tolerating_drift_passes_other_errors_through():
    store = MemoryStore()
    asyncio.run(store.insert("estudiantes", {"boleta": "2023123456"}))

    with pytest.raises(UniqueViolation):
        asyncio.run(insert_tolerating_drift(store, "estudiantes", {"boleta": "2023123456"}))


def test_update_tolerating_drift_with_every_column_unknown():
    store = MemoryStore(columns={"estudiantes": {"boleta", "nombre"}})
    store.seed("estudiantes", [{"boleta": "2023123456", "nombre": "Ana"}])

    rows, dropped = asyncio.run(
        update_tolerating_drift(
            store, "estudiantes", {"updated_at": "x", "updated_by": "y"}, {"boleta": "2023123456"}
        )
    )

    assert rows == []
    assert dropped == ["updated_at", "updated_by"]


# --- PostgrestStore ---------------------------------------------------------


class RestResponse:
    def __init__(self, status_code=200, body=None, reason="OK"):
        self.status_code = status_code
        self.reason = reason
        self.text = "" if body is None else json.dumps(body)
        self.content = self.text.encode("utf-8")

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        return json.loads(self.text)


class FakeRestSession:
    """Records requests and replays queued responses (or raises queued errors)."""

    def __init__(self, *responses):
        self.headers = {}
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append({"method": method, "url": url, **kwargs})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def rest_store(*responses, retry_attempts=2):
    session = FakeRestSession(*responses)
    store = PostgrestStore(
        "https://proj.supabase.co/",
        "anon-key",
        access_token="user-jwt",
        timeout=5,
        retry_attempts=retry_attempts,
        session=session,
    )
    return store, session


def test_postgrest_sets_auth_headers():
    _, session = rest_store()
    assert session.headers["apikey"] == "anon-key"
    assert session.headers["Authorization"] == "Bearer user-jwt"


def test_postgrest_select_translates_filters():
    store, session = rest_store(RestResponse(200, [{"id": 1}]))

    rows = asyncio.run(
        store.select(
            "sesiones",
            {"materia_id": 7, "activo": True},
            order_by="created_at",
            descending=True,
            limit=1,
        )
    )

    assert rows == [{"id": 1}]
    [call] = session.calls
    assert call["method"] == "GET"
    assert call["url"] == "https://proj.supabase.co/rest/v1/sesiones"
    assert call["timeout"] == 5
    assert call["params"] == {
        "select": "*",
        "materia_id": "eq.7",
        "activo": "eq.true",
        "order": "created_at.desc",
        "limit": "1",
    }


def test_postgrest_select_one_maps_no_rows():
    store, session = rest_store(
        RestResponse(406, {"code": "PGRST116", "message": "The result contains 0 rows"}, "Not Acceptable")
    )

    with pytest.raises(NoMatchingRow):
        asyncio.run(store.select_one("estudiantes", {"boleta": "2023123456"}))
    assert session.calls[0]["headers"] == {"Accept": "application/vnd.pgrst.object+json"}


@pytest.mark.parametrize(
    "code, message",
    [
        ("PGRST204", "Could not find the 'curp' column of 'estudiantes' in the schema cache"),
        ("42703", 'column "curp" of relation "estudiantes" does not exist'),
    ],
)
def test_postgrest_insert_maps_unknown_column(code, message):
    store, _ = rest_store(RestResponse(400, {"code": code, "message": message}, "Bad Request"))

    with pytest.raises(SchemaDrift) as excinfo:
        asyncio.run(store.insert("estudiantes", {"boleta": "2023123456", "curp": "X"}))
    assert excinfo.value.table == "estudiantes"
    assert excinfo.value.column == "curp"


def test_postgrest_insert_maps_unique_violation():
    store, _ = rest_store(
        RestResponse(409, {"code": "23505", "message": "duplicate key value violates unique constraint"})
    )
    with pytest.raises(UniqueViolation):
        asyncio.run(store.insert("asistencias", {"boleta": "2023123456", "sesion_id": 1}))


def test_postgrest_foreign_key_conflict_is_not_a_duplicate():
    store, _ = rest_store(
        RestResponse(409, {"code": "23503", "message": "insert violates foreign key constraint"})
    )
    with pytest.raises(PersistenceError) as excinfo:
        asyncio.run(store.insert("asistencias", {"boleta": "2023123456", "sesion_id": 99}))
    assert not isinstance(excinfo.value, UniqueViolation)


def test_postgrest_insert_returns_stored_row():
    store, session = rest_store(RestResponse(201, [{"id": 11, "boleta": "2023123456"}]))

    row = asyncio.run(store.insert("estudiantes", {"boleta": "2023123456"}))

    assert row == {"id": 11, "boleta": "2023123456"}
    assert session.calls[0]["json"] == {"boleta": "2023123456"}
    assert session.calls[0]["headers"] == {"Prefer": "return=representation"}


def test_postgrest_update_sends_filters_and_values():
    store, session = rest_store(RestResponse(200, [{"boleta": "2023123456", "carrera": "ISC"}]))

    rows = asyncio.run(store.update("estudiantes", {"carrera": "ISC"}, {"boleta": "2023123456"}))

    assert rows == [{"boleta": "2023123456", "carrera": "ISC"}]
    call = session.calls[0]
    assert call["method"] == "PATCH"
    assert call["params"] == {"boleta": "eq.2023123456"}
    assert call["json"] == {"carrera": "ISC"}


def test_postgrest_get_is_retried_on_server_error():
    store, session = rest_store(
        RestResponse(503, {"message": "upstream unavailable"}, "Service Unavailable"),
        RestResponse(200, [{"id": 1}]),
    )

    assert asyncio.run(store.select("materias")) == [{"id": 1}]
    assert len(session.calls) == 2


def test_postgrest_get_gives_up_after_configured_attempts():
    store, session = rest_store(
        requests.ConnectionError("reset"),
        requests.ConnectionError("reset"),
    )

    with pytest.raises(TransientError):
        asyncio.run(store.select("materias"))
    assert len(session.calls) == 2


def test_postgrest_insert_is_not_retried():
    store, session = rest_store(
        RestResponse(503, {"message": "upstream unavailable"}, "Service Unavailable"),
        RestResponse(201, [{"id": 1}]),
    )

    with pytest.raises(TransientError):
        asyncio.run(store.insert("asistencias", {"boleta": "2023123456"}))
    assert len(session.calls) == 1


def test_postgrest_drift_tolerant_insert():
    store, session = rest_store(
        RestResponse(
            400,
            {"code": "PGRST204", "message": "Could not find the 'hash_verificacion' column of 'estudiantes' in the schema cache"},
        ),
        RestResponse(201, [{"id": 3, "boleta": "2023123456"}]),
    )

    stored, dropped = asyncio.run(
        insert_tolerating_drift(
            store, "estudiantes", {"boleta": "2023123456", "hash_verificacion": "abc"}
        )
    )

    assert dropped == ["hash_verificacion"]
    assert stored["id"] == 3
    assert session.calls[1]["json"] == {"boleta": "2023123456"}


def test_postgrest_from_config_requires_credentials():
    with pytest.raises(ValueError):
        PostgrestStore.from_config(AttendanceConfig(_env_file=None, supabase_url="", supabase_key=""))

    store = PostgrestStore.from_config(
        AttendanceConfig(_env_file=None, supabase_url="https://proj.supabase.co", supabase_key="k")
    )
    assert store.rest_url == "https://proj.supabase.co/rest/v1"
    assert store.session.headers["Authorization"] == "Bearer k"
