"""Database connection strings loaded once per process from Secrets Manager."""

import json
import logging
import threading
from typing import Dict, Optional, Tuple

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from common.exceptions import ConfigurationError
from common.logger import get_logger, log_with_context

logger = get_logger(__name__)

KNOWN_COUNTRIES = ("US", "CA")
ROLES = ("Reader", "Writer")
DEFAULT_COUNTRY = "US"


def _role(writer: bool) -> str:
    return "Writer" if writer else "Reader"


def create_secrets_client(timeout_seconds: int):
    """Secrets Manager client with bounded connect/read time."""
    return boto3.client(
        "secretsmanager",
        config=Config(
            connect_timeout=timeout_seconds,
            read_timeout=timeout_seconds,
            retries={"max_attempts": 3, "mode": "standard"},
        ),
    )


class SecretConnectionCache:
    """Process-wide cache of ``{COUNTRY}{Role}Connection`` strings.

    ``ensure_loaded`` performs at most one successful fetch per process.
    Concurrent first callers serialize on a lock and re-check the loaded
    flag under it. A failed fetch leaves the flag unset so the next caller
    retries.
    """

    def __init__(self, secret_id: str, secrets_client=None, timeout_seconds: int = 30):
        self.secret_id = secret_id
        self._client = secrets_client
        self._timeout_seconds = timeout_seconds
        self._connections: Dict[str, str] = {}
        self._loaded = False
        self._lock = threading.Lock()

    @property
    def loaded(self) -> bool:
        return self._loaded

    def _secrets_client(self):
        if self._client is None:
            self._client = create_secrets_client(self._timeout_seconds)
        return self._client

    def ensure_loaded(self, request_id: str = "") -> Tuple[bool, Optional[Exception]]:
        """Load the connection strings unless already loaded."""
        if self._loaded:
            return True, None

        with self._lock:
            if self._loaded:
                return True, None
            try:
                connections = self._fetch()
            except ConfigurationError as e:
                log_with_context(
                    logger, logging.ERROR, str(e),
                    request_id=request_id, event="Secret.Exception", error=e,
                )
                return False, e
            except Exception as e:
                error = ConfigurationError(
                    f"Unexpected error loading secret '{self.secret_id}': {e}"
                )
                log_with_context(
                    logger, logging.ERROR, str(error),
                    request_id=request_id, event="Secret.Exception", error=e,
                )
                return False, error

            self._connections.update(connections)
            self._loaded = True

        log_with_context(
            logger,
            logging.INFO,
            f"Secret '{self.secret_id}' loaded with {len(connections)} connection entries",
            request_id=request_id,
            event="Secret.Success",
        )
        return True, None

    def _fetch(self) -> Dict[str, str]:
        if not self.secret_id:
            raise ConfigurationError("SECRET_ID environment variable is not set")

        try:
            response = self._secrets_client().get_secret_value(SecretId=self.secret_id)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code == "ResourceNotFoundException":
                raise ConfigurationError(
                    f"Secret '{self.secret_id}' not found",
                    details={"error_code": code},
                ) from e
            raise ConfigurationError(
                f"Secrets Manager error: {e}", details={"error_code": code}
            ) from e
        except BotoCoreError as e:
            raise ConfigurationError(f"Secrets Manager request failed: {e}") from e

        secret_string = response.get("SecretString") or ""
        if not secret_string.strip():
            raise ConfigurationError(f"Secret '{self.secret_id}' has an empty secret string")

        try:
            document = json.loads(secret_string)
        except ValueError as e:
            raise ConfigurationError(f"Secret '{self.secret_id}' is not valid JSON: {e}") from e
        if not isinstance(document, dict):
            raise ConfigurationError(f"Secret '{self.secret_id}' is not a JSON object")

        connections = {}
        for country in KNOWN_COUNTRIES:
            for role in ROLES:
                value = document.get(f"ConnectionStrings_{country}{role}Connection")
                if isinstance(value, str) and value.strip():
                    connections[f"{country}{role}Connection"] = value
        return connections

    def resolve(self, country: str, writer: bool = False) -> Optional[str]:
        """Connection string for a country and role, falling back to US."""
        normalized = (country or "").strip().upper() or DEFAULT_COUNTRY
        role = _role(writer)

        connection = self._connections.get(f"{normalized}{role}Connection")
        if connection:
            return connection
        if normalized != DEFAULT_COUNTRY:
            return self._connections.get(f"{DEFAULT_COUNTRY}{role}Connection")
        return None
