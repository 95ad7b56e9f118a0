"""PostgreSQL connection helpers."""

from datetime import datetime
from zoneinfo import ZoneInfo

import psycopg2
import psycopg2.extras
from psycopg2.extensions import make_dsn

EASTERN = ZoneInfo("America/New_York")

# Npgsql keyword -> libpq keyword
_NPGSQL_KEYWORDS = {
    "host": "host",
    "server": "host",
    "port": "port",
    "database": "dbname",
    "username": "user",
    "user id": "user",
    "userid": "user",
    "user": "user",
    "password": "password",
    "ssl mode": "sslmode",
    "sslmode": "sslmode",
    "timeout": "connect_timeout",
    "application name": "application_name",
}


def to_libpq_dsn(connection_string: str) -> str:
    """Accept an Npgsql ``Key=Value;`` string, a libpq DSN or a URI.

    Npgsql keywords without a libpq equivalent (pooling, command timeout,
    ...) are dropped.
    """
    value = connection_string.strip()
    if value.startswith(("postgres://", "postgresql://")) or ";" not in value:
        return value

    params = {}
    for part in value.split(";"):
        if "=" not in part:
            continue
        name, _, setting = part.partition("=")
        keyword = _NPGSQL_KEYWORDS.get(name.strip().lower())
        if keyword:
            setting = setting.strip()
            if keyword == "sslmode":
                setting = setting.lower()
            params[keyword] = setting
    return make_dsn(**params)


def connect(connection_string: str, command_timeout: int = 300, connect_timeout: int = 15):
    """Open a connection whose statements are bounded by ``command_timeout``."""
    return psycopg2.connect(
        to_libpq_dsn(connection_string),
        connect_timeout=connect_timeout,
        options=f"-c statement_timeout={int(command_timeout) * 1000}",
        cursor_factory=psycopg2.extras.RealDictCursor,
        application_name="copy-recording-processor",
    )


def eastern_now() -> datetime:
    """Current US/Eastern wall-clock time without tzinfo, as the tables store it."""
    return datetime.now(EASTERN).replace(tzinfo=None)
