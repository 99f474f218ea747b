"""Supabase / PostgREST record store.

Talks to the REST API Supabase exposes under /rest/v1 using requests. Row
level authorization is enforced server-side by the key in use; this adapter
only translates filters and maps PostgREST error payloads onto the engine's
storage errors:

    PGRST116             single-row request matched no rows -> NoMatchingRow
    PGRST204 / 42703     unknown column                       -> SchemaDrift
    23505                unique constraint violated           -> UniqueViolation
    5xx, timeouts        transport failure                    -> TransientError

Requests run in a worker thread so the scanner's event loop stays free while
a call is in flight.
"""

import asyncio
import re
from typing import Any, Mapping

import requests
from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from src.attendance.config import AttendanceConfig
from src.attendance.errors import (
    NoMatchingRow,
    PersistenceError,
    SchemaDrift,
    TransientError,
    UniqueViolation,
)
from src.attendance.logging import get_logger
from src.attendance.store.base import Row

log = get_logger(__name__)

# "Could not find the 'curp' column of 'estudiantes' in the schema cache"
_PGRST204_COLUMN = re.compile(r"the '([^']+)' column")
# 'column "curp" of relation "estudiantes" does not exist'
_UNDEFINED_COLUMN = re.compile(r'column "?([\w.]+)"? (?:of relation "?\w+"? )?does not exist')

# Methods safe to repeat after a transport failure
_IDEMPOTENT_METHODS: frozenset[str] = frozenset({"GET", "PATCH"})


def _eq_filters(filters: Mapping[str, Any] | None) -> dict[str, str]:
    params = {}
    for column, value in (filters or {}).items():
        if isinstance(value, bool):
            value = str(value).lower()
        params[column] = f"eq.{value}"
    return params


class PostgrestStore:
    """RecordStore implementation backed by Supabase's REST API."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        access_token: str | None = None,
        timeout: float = 15.0,
        retry_attempts: int = 3,
        session: requests.Session | None = None,
    ) -> None:
        """Initialize the store.

        Args:
            base_url: Supabase project URL (without /rest/v1).
            api_key: Project API key sent in the apikey header.
            access_token: Signed-in user's JWT; defaults to the API key.
            timeout: Per-request timeout in seconds.
            retry_attempts: Attempts for idempotent requests failing transiently.
            session: Optional requests session (shared connection pool).
        """
        self.rest_url = f"{base_url.rstrip('/')}/rest/v1"
        self.timeout = timeout
        self.retry_attempts = max(1, retry_attempts)
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "apikey": api_key,
                "Authorization": f"Bearer {access_token or api_key}",
                "Content-Type": "application/json",
            }
        )

    @classmethod
    def from_config(
        cls, config: AttendanceConfig, access_token: str | None = None
    ) -> "PostgrestStore":
        if not config.supabase_url or not config.supabase_key:
            raise ValueError("SUPABASE_URL and SUPABASE_KEY must be set")
        return cls(
            config.supabase_url,
            config.supabase_key,
            access_token=access_token,
            timeout=config.store_timeout_seconds,
            retry_attempts=config.store_retry_attempts,
        )

    # --- transport ---------------------------------------------------------

    def _raise_for_error(self, table: str, response: requests.Response) -> None:
        if response.ok:
            return

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        code = str(body.get("code") or "")
        message = str(body.get("message") or response.text or response.reason)

        if code == "PGRST116":
            raise NoMatchingRow(message)
        if code in ("PGRST204", "42703"):
            match = _PGRST204_COLUMN.search(message) or _UNDEFINED_COLUMN.search(message)
            if match:
                raise SchemaDrift(table, match.group(1).split(".")[-1], message)
        if code == "23505":
            raise UniqueViolation(message)
        if response.status_code >= 500:
            raise TransientError(f"HTTP {response.status_code} from {table}: {message}")

        log.error(
            "postgrest_request_failed",
            table=table,
            status=response.status_code,
            code=code,
            message=message,
        )
        raise PersistenceError(f"HTTP {response.status_code} from {table}: {message}")

    def _send(self, method: str, table: str, **kwargs: Any) -> requests.Response:
        try:
            response = self.session.request(
                method, f"{self.rest_url}/{table}", timeout=self.timeout, **kwargs
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            log.warning("postgrest_transport_error", table=table, error=str(e))
            raise TransientError(f"{method} {table} failed: {e}") from e
        self._raise_for_error(table, response)
        return response

    def _request(self, method: str, table: str, **kwargs: Any) -> Any:
        attempts = self.retry_attempts if method in _IDEMPOTENT_METHODS else 1
        retrying = Retrying(
            stop=stop_after_attempt(attempts),
            wait=wait_fixed(0.5),
            retry=retry_if_exception_type(TransientError),
            reraise=True,
        )
        response = retrying(self._send, method, table, **kwargs)
        if not response.content:
            return None
        return response.json()

    async def _call(self, method: str, table: str, **kwargs: Any) -> Any:
        return await asyncio.to_thread(self._request, method, table, **kwargs)

    # --- RecordStore -------------------------------------------------------

    async def select(
        self,
        table: str,
        filters: Mapping[str, Any] | None = None,
        *,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Row]:
        params = {"select": "*", **_eq_filters(filters)}
        if order_by:
            params["order"] = f"{order_by}.{'desc' if descending else 'asc'}"
        if limit is not None:
            params["limit"] = str(limit)
        return await self._call("GET", table, params=params) or []

    async def select_one(self, table: str, filters: Mapping[str, Any]) -> Row:
        params = {"select": "*", **_eq_filters(filters)}
        headers = {"Accept": "application/vnd.pgrst.object+json"}
        row = await self._call("GET", table, params=params, headers=headers)
        if not row:
            raise NoMatchingRow(f"No row in {table!r} matches {dict(filters)}")
        return row

    async def insert(self, table: str, row: Mapping[str, Any]) -> Row:
        headers = {"Prefer": "return=representation"}
        rows = await self._call("POST", table, json=dict(row), headers=headers)
        if not rows:
            raise PersistenceError(f"Insert into {table!r} returned no row")
        return rows[0] if isinstance(rows, list) else rows

    async def update(
        self, table: str, values: Mapping[str, Any], filters: Mapping[str, Any]
    ) -> list[Row]:
        headers = {"Prefer": "return=representation"}
        rows = await self._call(
            "PATCH", table, params=_eq_filters(filters), json=dict(values), headers=headers
        )
        return rows or []
