"""Configuration loaded from environment variables."""

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class ProcessorConfig:
    """Processor configuration from Lambda environment variables."""

    # Secrets
    secret_id: str = ""
    secrets_manager_timeout_seconds: int = 30

    # DynamoDB key mapping
    kms_map_table: str = ""
    kms_create_request_table: str = ""

    # Database
    record_status_procedure: str = ""
    db_command_timeout_seconds: int = 300
    db_connect_timeout_seconds: int = 15
    source_storage_type: str = "azure"
    storage_config_encryption_key: str = ""
    audit_actor: str = "AzureToAWS.Lambda"

    # S3 destination
    us_bucket_name: str = ""
    ca_bucket_name: str = ""
    callrecordings_prefix: str = "callrecordings"

    # Azure source
    source_timeout_seconds: int = 60

    # Key-wait deferral
    queue_url: str = ""
    kms_key_retry_delay_minutes: int = 60
    max_kms_key_deferrals: int = 4

    # Diagnostics
    verbose_logging: bool = False

    @property
    def deferral_enabled(self) -> bool:
        return bool(self.queue_url and self.kms_create_request_table)

    @classmethod
    def from_env(cls) -> "ProcessorConfig":
        """Load configuration from environment variables."""
        return cls(
            secret_id=os.environ.get("SECRET_ID", ""),
            secrets_manager_timeout_seconds=int(
                os.environ.get("SECRETS_MANAGER_TIMEOUT_SECONDS", "30")
            ),
            kms_map_table=os.environ.get("KMS_MAP_TABLE", ""),
            kms_create_request_table=os.environ.get("KMS_CREATE_REQUEST_TABLE", ""),
            record_status_procedure=os.environ.get("RECORD_STATUS_PROCEDURE", ""),
            db_command_timeout_seconds=int(
                os.environ.get("DB_COMMAND_TIMEOUT_SECONDS", "300")
            ),
            db_connect_timeout_seconds=int(
                os.environ.get("DB_CONNECT_TIMEOUT_SECONDS", "15")
            ),
            source_storage_type=os.environ.get("SOURCE_STORAGE_TYPE", "azure"),
            storage_config_encryption_key=os.environ.get(
                "STORAGE_CONFIG_ENCRYPTION_KEY", ""
            ),
            audit_actor=os.environ.get("AUDIT_ACTOR", "AzureToAWS.Lambda"),
            us_bucket_name=os.environ.get("US_S3_BUCKET_NAME", ""),
            ca_bucket_name=os.environ.get("CA_S3_BUCKET_NAME", ""),
            callrecordings_prefix=os.environ.get(
                "CALLRECORDINGS_PREFIX", "callrecordings"
            ),
            source_timeout_seconds=int(os.environ.get("SOURCE_TIMEOUT_SECONDS", "60")),
            queue_url=os.environ.get("QUEUE_URL", ""),
            kms_key_retry_delay_minutes=int(
                os.environ.get("KMS_KEY_RETRY_DELAY_MINUTES", "60")
            ),
            max_kms_key_deferrals=int(os.environ.get("MAX_KMS_KEY_DEFERRALS", "4")),
            verbose_logging=_env_bool("VERBOSE_LOGGING"),
        )
