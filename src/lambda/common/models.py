"""Typed records passed between pipeline stages."""

import enum
import json
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from common.exceptions import ParseError


class Status(str, enum.Enum):
    INPROGRESS = "INPROGRESS"
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"
    KMSKEYWAIT = "KMSKEYWAIT"


@dataclass(frozen=True)
class TransferRequest:
    """One queue message: which recording to move."""

    call_detail_id: int
    country_code: str
    audio_file: str
    request_id: str = ""

    @classmethod
    def from_body(cls, body: str) -> "TransferRequest":
        """Parse a queue message body.

        Raises:
            ParseError: body is not a JSON object, CallDetailID is not an
                integer or digit string, AudioFile is not a non-blank
                string, or CountryCode is present but not a string.
        """
        try:
            payload = json.loads(body)
        except (TypeError, ValueError) as e:
            raise ParseError(f"Message body is not valid JSON: {e}") from e
        if not isinstance(payload, dict):
            raise ParseError("Message body is not a JSON object")

        raw_id = payload.get("CallDetailID")
        if isinstance(raw_id, int) and not isinstance(raw_id, bool):
            call_detail_id = raw_id
        elif isinstance(raw_id, str) and raw_id.strip().isascii() and raw_id.strip().isdigit():
            call_detail_id = int(raw_id.strip())
        else:
            raise ParseError(f"CallDetailID is not an integer: {raw_id!r}")

        audio_file = payload.get("AudioFile")
        if not isinstance(audio_file, str) or not audio_file.strip():
            raise ParseError(
                f"AudioFile is missing or not a string: {audio_file!r}",
                details={"CallDetailID": call_detail_id},
            )
        audio_file = audio_file.strip()

        country = payload.get("CountryCode")
        if country is not None and not isinstance(country, str):
            raise ParseError(
                f"CountryCode is not a string: {country!r}",
                details={"CallDetailID": call_detail_id},
            )
        country = (country or "").strip().upper() or "US"

        return cls(
            call_detail_id=call_detail_id,
            country_code=country,
            audio_file=audio_file,
            request_id=str(payload.get("RequestId") or ""),
        )


@dataclass(frozen=True)
class RecordingLocator:
    """Joined call_details / call_recording_details row."""

    call_detail_id: int
    program_code: Optional[str]
    audio_file: Optional[str]
    audio_file_location: Optional[str]
    is_source_cloud_audio: Optional[bool]
    call_date: Optional[datetime]


@dataclass(frozen=True)
class StorageRow:
    """Row of dbo.storage holding a storage configuration document."""

    storage_id: int
    storage_type: str
    country_id: int
    json: str
    default_storage: bool
    active: bool
    created_date: Optional[datetime] = None
    updated_date: Optional[datetime] = None
    bucket_name: Optional[str] = None


@dataclass(frozen=True)
class KeyVaultConfig:
    client_id: str
    client_secret: str
    tenant_id: str
    vault_uri: str = ""

    @property
    def complete(self) -> bool:
        return bool(self.client_id and self.client_secret and self.tenant_id)


@dataclass(frozen=True)
class StorageConfig:
    """Decrypted source storage account settings."""

    endpoint: str
    account_name: str
    account_key: str
    connection_string: str
    key_vault: Optional[KeyVaultConfig] = None

    @property
    def account_url(self) -> str:
        """Blob service URL; ``endpoint`` is used only when it is a full https URL."""
        endpoint = (self.endpoint or "").strip()
        if endpoint.lower().startswith("https://"):
            return endpoint
        return f"https://{self.account_name}.blob.core.windows.net"


@dataclass(frozen=True)
class KeyMapping:
    program_code: str
    key_arn: str
    key_alias: str = ""
    client_code: str = ""
    target_region: str = ""


@dataclass
class UploadResult:
    """What the destination upload produced, filled in as far as it got."""

    bucket: str = ""
    key: str = ""
    location: str = ""
    source_md5: str = ""
    dest_md5: str = ""
    size: int = 0


@dataclass
class RecordingUpdate:
    """Payload of the recording status stored procedure."""

    call_detail_id: int
    audio_file: str
    audio_file_location: str
    s3_md5: str
    s3_size_bytes: int
    status: Status
    request_id: str = ""
    error_description: Optional[str] = None

    def to_json(self) -> str:
        return json.dumps({
            "CallDetailID": self.call_detail_id,
            "AudioFile": self.audio_file,
            "AudioFileLocation": self.audio_file_location,
            "S3Md5": self.s3_md5,
            "S3SizeBytes": self.s3_size_bytes,
            "Status": self.status.value,
            "ErrorDescription": self.error_description,
            "RequestId": self.request_id,
        })
