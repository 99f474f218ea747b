"""Attendance engine configuration loaded from environment variables.

Every magic number the scanner depends on (late threshold, default class
duration, cooldowns, credential endpoint) lives here so deployments can
override it without touching scan logic.
"""

from pydantic import Field
from pydantic_settings import BaseSettings


class AttendanceConfig(BaseSettings):
    """Attendance configuration loaded from environment variables.

    Settings are loaded from environment variables with sensible defaults.
    For local development, create a .env file in the project root.
    """

    # Supabase / PostgREST record store
    supabase_url: str = Field(
        default="",
        description="Supabase project URL (REST API lives under /rest/v1)",
    )
    supabase_key: str = Field(
        default="",
        description="Supabase anon or service key sent as apikey/Bearer token",
    )
    store_timeout_seconds: float = Field(
        default=15.0,
        description="Timeout for a single record store request",
    )
    store_retry_attempts: int = Field(
        default=3,
        description="Attempts for record store requests failing transiently",
    )

    # Class timing
    late_threshold_minutes: int = Field(
        default=15,
        description="Minutes after class start still counted as on time",
    )
    default_class_duration_minutes: int = Field(
        default=90,
        description="Class duration used when no weekly schedule entry exists",
    )
    session_topic: str = Field(
        default="Asistencia",
        description="Topic label for sessions created by the scanner",
    )
    session_status: str = Field(
        default="impartida",
        description="Status stamped on sessions created by the scanner",
    )

    # Credential scraping
    credential_allowed_domains: list[str] = Field(
        default=[
            "servicios.dae.ipn.mx",
            "dae.ipn.mx",
            "upiicsa.ipn.mx",
            "ipn.mx",
        ],
        description="Hosts (and their subdomains) trusted as credential sources",
    )
    credential_endpoint: str = Field(
        default="https://servicios.dae.ipn.mx/vcred/",
        description="Canonical credential page, queried with the hash parameter",
    )
    credential_hash_param: str = Field(
        default="h",
        description="Query parameter carrying the credential hash",
    )
    credential_min_body_length: int = Field(
        default=200,
        description="Responses shorter than this are treated as blocked",
    )
    credential_timeout_seconds: float = Field(
        default=10.0,
        description="Timeout for the credential page request",
    )
    institution_short_name: str = Field(
        default="UPIICSA",
        description="Short school name appended to scraped school fields",
    )

    # Scanner cooldowns (seconds before the camera is re-armed)
    cooldown_on_time: float = Field(default=0.8)
    cooldown_late: float = Field(default=1.3)
    cooldown_rejected: float = Field(
        default=0.9,
        description="Unreadable or untrusted credentials",
    )
    cooldown_warning: float = Field(
        default=1.1,
        description="Duplicates, inconsistent credentials, enrollment problems",
    )
    cooldown_failure: float = Field(
        default=1.5,
        description="Class not in session and storage failures",
    )
    recent_entries_limit: int = Field(
        default=25,
        description="Maximum entries kept in the recent attendance list",
    )

    # Logging
    log_json: bool = Field(
        default=False,
        description="Output logs in JSON format (for production)",
    )
    log_level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    model_config = {
        "env_prefix": "",
        "case_sensitive": False,
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


# Singleton pattern
_config: AttendanceConfig | None = None


def get_config() -> AttendanceConfig:
    """Get the attendance configuration singleton.

    Returns:
        AttendanceConfig: Attendance configuration instance
    """
    global _config
    if _config is None:
        _config = AttendanceConfig()
    return _config
