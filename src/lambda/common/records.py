"""Call recording lookups, source storage configuration and location updates."""

import json
import logging
from typing import Optional, Tuple

from psycopg2 import sql

from common.exceptions import ConfigurationError, PersistenceError
from common.field_crypto import decrypt_field
from common.logger import get_logger, log_with_context
from common.models import (
    KeyVaultConfig,
    RecordingLocator,
    RecordingUpdate,
    StorageConfig,
    StorageRow,
)

logger = get_logger(__name__)

CALL_RECORDING_QUERY = """
    SELECT cd.calldetailid, cd.calldate, cd.programcode,
           cr.audiofile, cr.audiofilelocation, cr.isazurecloudaudio
      FROM dbo.call_details cd
      JOIN dbo.call_recording_details cr ON cr.calldetailid = cd.calldetailid
     WHERE cd.calldetailid = %(call_detail_id)s
"""

STORAGE_QUERY = """
    SELECT storageid, storagetype, countryid, json, defaultstorage, activeind,
           createddate, updateddate, bucketname
      FROM dbo.storage
     WHERE lower(storagetype) = %(storage_type)s
       AND defaultstorage
       AND activeind
"""

# Fields of the storage document that are encrypted at rest
_ENCRYPTED_BLOB_FIELDS = ("accountname", "accountkey", "connectionstring")
_ENCRYPTED_VAULT_FIELDS = ("clientid", "clientsecret")


def find_call_recording(
    conn, call_detail_id: int, audio_file: Optional[str] = None
) -> Tuple[Optional[RecordingLocator], Optional[Exception]]:
    """First joined recording row for a call, ordered by audio file name.

    Returns ``(None, None)`` when nothing matches.
    """
    query = CALL_RECORDING_QUERY
    params = {"call_detail_id": call_detail_id}

    normalized = (audio_file or "").strip()
    if normalized:
        query += " AND lower(cr.audiofile) = %(audio_file)s"
        params["audio_file"] = normalized.lower()
    query += " ORDER BY cr.audiofile ASC LIMIT 1"

    try:
        with conn.cursor() as cur:
            cur.execute(query, params)
            row = cur.fetchone()
    except Exception as e:
        log_with_context(
            logger, logging.ERROR,
            f"Call recording lookup failed CallDetailID={call_detail_id}",
            event="CallDetails.Exception", error=e,
        )
        return None, e

    if row is None:
        return None, None

    return RecordingLocator(
        call_detail_id=row["calldetailid"],
        program_code=row["programcode"],
        audio_file=row["audiofile"],
        audio_file_location=row["audiofilelocation"],
        is_source_cloud_audio=row["isazurecloudaudio"],
        call_date=row["calldate"],
    ), None


def get_active_storage(
    conn, storage_type: str = "azure", country_id: Optional[int] = None
) -> Tuple[Optional[StorageRow], Optional[Exception]]:
    """The active default storage row, most recently updated first."""
    query = STORAGE_QUERY
    params = {"storage_type": storage_type.lower()}
    if country_id is not None:
        query += " AND countryid = %(country_id)s"
        params["country_id"] = country_id
    query += " ORDER BY COALESCE(updateddate, createddate) DESC LIMIT 1"

    try:
        with conn.cursor() as cur:
            cur.execute(query, params)
            row = cur.fetchone()
    except Exception as e:
        log_with_context(
            logger, logging.ERROR, "Active storage lookup failed",
            event="Storage.Exception", error=e,
        )
        return None, e

    if row is None:
        return None, None

    document = row["json"]
    if not isinstance(document, str):
        # jsonb columns arrive already decoded
        document = json.dumps(document)

    return StorageRow(
        storage_id=row["storageid"],
        storage_type=row["storagetype"],
        country_id=row["countryid"],
        json=document,
        default_storage=row["defaultstorage"],
        active=row["activeind"],
        created_date=row.get("createddate"),
        updated_date=row.get("updateddate"),
        bucket_name=row.get("bucketname"),
    ), None


def _lower_keys(section) -> dict:
    if not isinstance(section, dict):
        return {}
    return {str(k).lower(): v for k, v in section.items()}


def _lookup_section(document: dict, name: str) -> Optional[dict]:
    for key, value in document.items():
        if str(key).lower() == name:
            return _lower_keys(value)
    return None


def _decrypted(section: dict, name: str, key: str, encrypted: tuple) -> str:
    value = section.get(name) or ""
    if value and name in encrypted:
        return decrypt_field(value, key)
    return value


def parse_storage_config(
    row: StorageRow, encryption_key: str
) -> Tuple[Optional[StorageConfig], Optional[Exception]]:
    """Parse and decrypt the storage row's document.

    Property names match case-insensitively. An empty document yields
    ``(None, None)``; anything malformed yields a ``ConfigurationError``.
    """
    if not row.json or not row.json.strip():
        return None, None

    try:
        document = json.loads(row.json)
        if not isinstance(document, dict):
            raise ConfigurationError("Storage document is not a JSON object")

        blob = _lookup_section(document, "msazureblob")
        if not blob:
            raise ConfigurationError("Storage document has no MSAzureBlob section")

        config = StorageConfig(
            endpoint=blob.get("endpoint") or "",
            account_name=_decrypted(blob, "accountname", encryption_key, _ENCRYPTED_BLOB_FIELDS),
            account_key=_decrypted(blob, "accountkey", encryption_key, _ENCRYPTED_BLOB_FIELDS),
            connection_string=_decrypted(
                blob, "connectionstring", encryption_key, _ENCRYPTED_BLOB_FIELDS
            ),
        )
        if not config.connection_string and not (config.account_name and config.account_key):
            raise ConfigurationError(
                "MSAzureBlob needs a ConnectionString or AccountName and AccountKey"
            )

        vault = _lookup_section(document, "msazurekeyvault")
        if vault:
            config = StorageConfig(
                endpoint=config.endpoint,
                account_name=config.account_name,
                account_key=config.account_key,
                connection_string=config.connection_string,
                key_vault=KeyVaultConfig(
                    client_id=_decrypted(vault, "clientid", encryption_key, _ENCRYPTED_VAULT_FIELDS),
                    client_secret=_decrypted(
                        vault, "clientsecret", encryption_key, _ENCRYPTED_VAULT_FIELDS
                    ),
                    tenant_id=vault.get("tenantid") or "",
                    vault_uri=vault.get("keyvaulturi") or "",
                ),
            )
        return config, None
    except ValueError as e:
        log_with_context(
            logger, logging.ERROR,
            f"Storage config parse failed StorageID={row.storage_id}",
            event="Storage.Exception", error=e,
        )
        return None, ConfigurationError(
            f"Storage document for StorageID={row.storage_id} is not valid JSON: {e}"
        )
    except ConfigurationError as e:
        log_with_context(
            logger, logging.ERROR,
            f"Storage config parse failed StorageID={row.storage_id}",
            event="Storage.Exception", error=e,
        )
        return None, e


def parse_procedure_setting(setting: str) -> Tuple[str, bool]:
    """Split ``"procedure_name|Role"`` into the name and a writer flag."""
    parts = [p.strip() for p in (setting or "").split("|")]
    name = parts[0] if parts else ""
    role = parts[1] if len(parts) > 1 and parts[1] else "Writer"
    if not name:
        raise ConfigurationError("RECORD_STATUS_PROCEDURE is not configured")
    return name, role.lower() == "writer"


def update_recording_details(
    conn, procedure_name: str, update: RecordingUpdate
) -> Tuple[bool, Optional[Exception]]:
    """Call the status procedure with the update serialized as jsonb."""
    procedure = sql.SQL(".").join(sql.Identifier(part) for part in procedure_name.split("."))
    statement = sql.SQL("CALL {}(%s::jsonb)").format(procedure)

    try:
        with conn.cursor() as cur:
            cur.execute(statement, (update.to_json(),))
        conn.commit()
        return True, None
    except Exception as e:
        conn.rollback()
        log_with_context(
            logger, logging.ERROR,
            f"Stored procedure failure CallDetailID={update.call_detail_id}",
            request_id=update.request_id, event="Status.Update.Exception", error=e,
        )
        return False, PersistenceError(
            f"Recording details update failed for CallDetailID={update.call_detail_id}: {e}"
        )
