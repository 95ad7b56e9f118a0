"""Azure Blob source: plain or client-side-encrypted downloads and cleanup.

Encrypted blobs carry their envelope under the ``encryptiondata`` metadata
key. The wrapped content key is unwrapped by the Key Vault key named in the
envelope, and the blob SDK decrypts the body while downloading.
"""

import io
import json
import logging
from typing import Optional, Tuple

from azure.core.exceptions import ResourceNotFoundError
from azure.identity import ClientSecretCredential
from azure.keyvault.keys.crypto import CryptographyClient, KeyWrapAlgorithm
from azure.storage.blob import BlobServiceClient

from common.exceptions import ConfigurationError, TransferError
from common.logger import get_logger, log_with_context
from common.models import StorageConfig

logger = get_logger(__name__)

ENCRYPTION_METADATA_KEY = "encryptiondata"
ENCRYPTION_VERSION = "2.0"


class KeyVaultKeyWrapper:
    """Key-encryption-key backed by an Azure Key Vault key.

    Implements the ``get_kid`` / ``unwrap_key`` / ``get_key_wrap_algorithm``
    interface the blob SDK expects from a download ``key_encryption_key``.
    """

    def __init__(self, key_id: str, credential, algorithm: str = "RSA-OAEP", **client_kwargs):
        self.key_id = key_id
        self.algorithm = algorithm
        self._client = CryptographyClient(key_id, credential, **client_kwargs)

    def get_kid(self) -> str:
        return self.key_id

    def get_key_wrap_algorithm(self) -> str:
        return self.algorithm

    def unwrap_key(self, key: bytes, algorithm: str) -> bytes:
        return self._client.unwrap_key(KeyWrapAlgorithm(algorithm), key).key


def read_wrapped_key(metadata: Optional[dict]) -> Optional[dict]:
    """The ``WrappedContentKey`` section of a blob's encryption envelope.

    Returns None when the blob is not client-side encrypted.

    Raises:
        TransferError: the envelope exists but cannot be parsed.
    """
    raw = None
    for name, value in (metadata or {}).items():
        if name.lower() == ENCRYPTION_METADATA_KEY:
            raw = value
            break
    if not raw:
        return None

    try:
        envelope = json.loads(raw)
    except ValueError as e:
        raise TransferError(f"Blob encryption metadata is not valid JSON: {e}") from e

    wrapped = envelope.get("WrappedContentKey") if isinstance(envelope, dict) else None
    if not isinstance(wrapped, dict):
        raise TransferError("Blob encryption metadata has no WrappedContentKey")
    if not (wrapped.get("KeyId") or "").strip():
        return None
    return wrapped


class SourceBlobStore:
    """Reads and deletes recordings in the source storage account."""

    def __init__(self, storage_config: StorageConfig, timeout_seconds: int = 60):
        self.config = storage_config
        self.timeout_seconds = timeout_seconds

    def _transport_kwargs(self) -> dict:
        return {
            "connection_timeout": self.timeout_seconds,
            "read_timeout": self.timeout_seconds,
        }

    def _service_client(self, **options) -> BlobServiceClient:
        options.update(self._transport_kwargs())
        if self.config.connection_string:
            return BlobServiceClient.from_connection_string(
                self.config.connection_string, **options
            )
        return BlobServiceClient(
            account_url=self.config.account_url,
            credential={
                "account_name": self.config.account_name,
                "account_key": self.config.account_key,
            },
            **options,
        )

    def _key_encryption_key(self, wrapped: dict) -> KeyVaultKeyWrapper:
        vault = self.config.key_vault
        if vault is None or not vault.complete:
            raise ConfigurationError(
                "Blob is client-side encrypted but MSAzureKeyVault settings are incomplete"
            )
        credential = ClientSecretCredential(
            tenant_id=vault.tenant_id,
            client_id=vault.client_id,
            client_secret=vault.client_secret,
        )
        return KeyVaultKeyWrapper(
            wrapped["KeyId"],
            credential,
            algorithm=wrapped.get("Algorithm") or "RSA-OAEP",
            **self._transport_kwargs(),
        )

    def _download(self, container: str, blob_name: str, **options) -> io.BytesIO:
        blob_client = self._service_client(**options).get_blob_client(
            container=container, blob=blob_name
        )
        buffer = io.BytesIO()
        downloader = blob_client.download_blob(timeout=self.timeout_seconds)
        downloader.readinto(buffer)
        buffer.seek(0)
        return buffer

    def download_decrypted(
        self, container: str, blob_name: str, request_id: str = ""
    ) -> Tuple[Optional[io.BytesIO], Optional[Exception]]:
        """Download a blob, decrypting it when it carries an envelope."""
        if not container or not container.strip():
            return None, TransferError("Source container name is empty")
        if not blob_name or not blob_name.strip():
            return None, TransferError("Source blob name is empty")

        try:
            probe = self._service_client().get_blob_client(container=container, blob=blob_name)
            properties = probe.get_blob_properties(timeout=self.timeout_seconds)
            wrapped = read_wrapped_key(properties.metadata)

            if wrapped is None:
                log_with_context(
                    logger, logging.INFO,
                    f"Plain download {container}/{blob_name}",
                    request_id=request_id, event="Azure.Download.Plain",
                )
                return self._download(container, blob_name), None

            kek = self._key_encryption_key(wrapped)
            log_with_context(
                logger, logging.INFO,
                f"Decrypting download {container}/{blob_name}",
                request_id=request_id, event="Azure.Download.Decrypt",
                key_id=wrapped["KeyId"],
            )
            stream = self._download(
                container,
                blob_name,
                require_encryption=True,
                encryption_version=ENCRYPTION_VERSION,
                key_encryption_key=kek,
                key_resolver_function=lambda kid: kek if kid == kek.get_kid() else None,
            )
            return stream, None
        except (TransferError, ConfigurationError) as e:
            return None, e
        except Exception as e:
            log_with_context(
                logger, logging.ERROR,
                f"Source download failed {container}/{blob_name}",
                request_id=request_id, event="Azure.Stream.Exception", error=e,
            )
            return None, TransferError(
                f"Failed to download {container}/{blob_name}: {e}",
                details={"container": container, "blob": blob_name},
            )

    def delete(
        self, container: str, blob_name: str, request_id: str = ""
    ) -> Tuple[bool, Optional[Exception]]:
        """Best-effort delete; a blob that is already gone counts as deleted."""
        try:
            blob_client = self._service_client().get_blob_client(
                container=container, blob=blob_name
            )
            blob_client.delete_blob(timeout=self.timeout_seconds)
            return True, None
        except ResourceNotFoundError:
            log_with_context(
                logger, logging.INFO,
                f"Blob already absent {container}/{blob_name}",
                request_id=request_id, event="Azure.File.Delete.NotFound",
            )
            return True, None
        except Exception as e:
            return False, TransferError(f"Failed to delete {container}/{blob_name}: {e}")
