"""Per-message pipeline: source blob -> verified S3 object -> audited status.

Stages run strictly in order and never retry locally; redelivery is the
queue's job. A failing stage finalizes the audit trail with ERROR and stops.
"""

import enum
import logging
from contextlib import closing
from typing import Callable, Optional

import boto3

from common import database
from common.audit import AuditTrail
from common.config import ProcessorConfig
from common.destination_store import DestinationUploader
from common.exceptions import (
    ConfigurationError,
    KeyDeferredError,
    KeyResolutionError,
    ParseError,
    PersistenceError,
    RecordLookupError,
)
from common.key_map import EncryptionKeyMapCache
from common.logger import get_logger, log_with_context
from common.models import RecordingUpdate, Status, TransferRequest
from common.queue import defer_message, receive_count
from common.records import (
    find_call_recording,
    get_active_storage,
    parse_procedure_setting,
    parse_storage_config,
    update_recording_details,
)
from common.secret_cache import SecretConnectionCache
from common.source_store import SourceBlobStore

logger = get_logger(__name__)


class Stage(str, enum.Enum):
    RECEIVED = "RECEIVED"
    PARSED = "PARSED"
    SECRETS_READY = "SECRETS_READY"
    LOOKED_UP = "LOOKED_UP"
    STORAGE_RESOLVED = "STORAGE_RESOLVED"
    KEY_RESOLVED = "KEY_RESOLVED"
    DOWNLOADED = "DOWNLOADED"
    UPLOADED_VERIFIED = "UPLOADED_VERIFIED"
    LOCATION_PERSISTED = "LOCATION_PERSISTED"
    SOURCE_DELETED = "SOURCE_DELETED"
    AUDIT_FINALIZED = "AUDIT_FINALIZED"
    DROPPED = "DROPPED"


class MessageProcessor:
    def __init__(
        self,
        config: ProcessorConfig,
        connections: SecretConnectionCache,
        key_map: EncryptionKeyMapCache,
        uploader: DestinationUploader,
        audit: AuditTrail,
        connect: Callable = database.connect,
        source_store_factory: Callable = SourceBlobStore,
        sqs_client=None,
    ):
        self.config = config
        self.connections = connections
        self.key_map = key_map
        self.uploader = uploader
        self.audit = audit
        self._connect = connect
        self._source_store_factory = source_store_factory
        self.sqs_client = sqs_client

    @classmethod
    def from_config(cls, config: ProcessorConfig) -> "MessageProcessor":
        """Wire the process-wide caches and clients from configuration."""
        connections = SecretConnectionCache(
            config.secret_id, timeout_seconds=config.secrets_manager_timeout_seconds
        )
        return cls(
            config=config,
            connections=connections,
            key_map=EncryptionKeyMapCache(
                config.kms_map_table, create_request_table=config.kms_create_request_table
            ),
            uploader=DestinationUploader(
                {"US": config.us_bucket_name, "CA": config.ca_bucket_name},
                prefix=config.callrecordings_prefix,
            ),
            audit=AuditTrail(
                connections,
                actor=config.audit_actor,
                command_timeout=config.db_command_timeout_seconds,
                connect_timeout=config.db_connect_timeout_seconds,
            ),
            sqs_client=boto3.client("sqs") if config.deferral_enabled else None,
        )

    def _transition(self, stage: Stage, request_id: str = "", **fields) -> Stage:
        log_with_context(
            logger, logging.INFO, f"Stage {stage.value}",
            request_id=request_id, event=f"Stage.{stage.value}", stage=stage.value, **fields,
        )
        return stage

    def _fail(self, request: TransferRequest, stage: Stage, error: Exception) -> Stage:
        log_with_context(
            logger, logging.ERROR, f"{stage.value} failed: {error}",
            request_id=request.request_id, event=f"Stage.{stage.value}.Failure",
            error=error, call_detail_id=request.call_detail_id,
            audio_file=request.audio_file,
        )
        finalized = self.audit.finalize(request, error)
        return self._transition(
            Stage.AUDIT_FINALIZED, request.request_id,
            status=Status.ERROR.value, committed=finalized,
        )

    def _open(self, connection_string: str):
        return closing(self._connect(
            connection_string,
            command_timeout=self.config.db_command_timeout_seconds,
            connect_timeout=self.config.db_connect_timeout_seconds,
        ))

    def process(self, record: dict) -> Stage:
        """Run one SQS record through the pipeline and return its final stage.

        Raises only for conditions the queue must see as a failed message
        (key-wait deferral, deferrals exhausted) or unexpected faults.
        """
        self._transition(Stage.RECEIVED, message_id=record.get("messageId"))

        try:
            request = TransferRequest.from_body(record.get("body"))
        except ParseError as e:
            log_with_context(
                logger, logging.ERROR, f"Failed to parse queue message: {e}",
                event="SQS.Message.Failed", error=e, message_id=record.get("messageId"),
            )
            return self._transition(Stage.DROPPED, message_id=record.get("messageId"))

        rid = request.request_id
        self._transition(
            Stage.PARSED, rid,
            call_detail_id=request.call_detail_id, audio_file=request.audio_file,
            country_code=request.country_code,
        )

        loaded, error = self.connections.ensure_loaded(rid)
        if not loaded:
            return self._fail(request, Stage.SECRETS_READY, error)
        self._transition(Stage.SECRETS_READY, rid)

        reader = self.connections.resolve(request.country_code, writer=False)
        if not reader:
            return self._fail(request, Stage.LOOKED_UP, ConfigurationError(
                f"Database connection string not configured for countrycode:{request.country_code} Reader"
            ))

        try:
            with self._open(reader) as conn:
                locator, error = find_call_recording(
                    conn, request.call_detail_id, request.audio_file
                )
                if error is not None:
                    return self._fail(request, Stage.LOOKED_UP, PersistenceError(
                        f"Call recording lookup failed CallDetailID={request.call_detail_id}: {error}"
                    ))
                if locator is None:
                    return self._fail(request, Stage.LOOKED_UP, RecordLookupError(
                        f"No joined call detail found CallDetailID={request.call_detail_id} "
                        f"AudioFile={request.audio_file}"
                    ))
                self._transition(
                    Stage.LOOKED_UP, rid,
                    program_code=locator.program_code,
                    audio_file_location=locator.audio_file_location,
                    is_source_cloud_audio=locator.is_source_cloud_audio,
                )

                storage_row, error = get_active_storage(conn, self.config.source_storage_type)
        except Exception as e:
            return self._fail(request, Stage.LOOKED_UP, PersistenceError(
                f"Reader database access failed: {e}"
            ))

        if storage_row is None:
            return self._fail(request, Stage.STORAGE_RESOLVED, error or ConfigurationError(
                f"Default {self.config.source_storage_type} storage configuration not found"
            ))
        storage_config, error = parse_storage_config(
            storage_row, self.config.storage_config_encryption_key
        )
        if storage_config is None:
            return self._fail(request, Stage.STORAGE_RESOLVED, error or ConfigurationError(
                f"Storage document for StorageID={storage_row.storage_id} is empty"
            ))
        self._transition(
            Stage.STORAGE_RESOLVED, rid,
            storage_id=storage_row.storage_id, endpoint=storage_config.endpoint,
        )

        mapping, error = self.key_map.resolve(locator.program_code, rid)
        if mapping is None:
            return self._handle_missing_key(record, request, locator.program_code, error)
        self._transition(
            Stage.KEY_RESOLVED, rid,
            key_alias=mapping.key_alias, client_code=mapping.client_code,
            target_region=mapping.target_region,
        )

        source = self._source_store_factory(storage_config, self.config.source_timeout_seconds)
        stream, error = source.download_decrypted(
            locator.audio_file_location, locator.audio_file, rid
        )
        if error is not None:
            return self._fail(request, Stage.DOWNLOADED, error)
        self._transition(Stage.DOWNLOADED, rid)

        result, error = self.uploader.upload_and_verify(
            stream,
            request.country_code,
            locator.audio_file,
            mapping.key_arn,
            mapping.client_code,
            mapping.target_region,
            locator.call_date,
            request_id=rid,
        )
        if error is not None:
            return self._fail(request, Stage.UPLOADED_VERIFIED, error)
        self._transition(
            Stage.UPLOADED_VERIFIED, rid,
            bucket=result.bucket, key=result.key, size=result.size, md5=result.dest_md5,
        )

        update = RecordingUpdate(
            call_detail_id=locator.call_detail_id,
            audio_file=locator.audio_file,
            audio_file_location=result.location,
            s3_md5=result.dest_md5,
            s3_size_bytes=result.size,
            status=Status.SUCCESS,
            request_id=rid,
        )
        updated, error = self._persist_location(request, update)
        if not updated:
            stage = self._fail(request, Stage.LOCATION_PERSISTED, error)
            deleted, delete_error = self.uploader.delete_object(
                result.bucket, result.key, mapping.target_region, rid
            )
            if not deleted:
                log_with_context(
                    logger, logging.ERROR,
                    f"Uploaded object left in place Bucket={result.bucket} Key={result.key}",
                    request_id=rid, event="AWS.S3.Delete.Failure", error=delete_error,
                )
            return stage
        self._transition(Stage.LOCATION_PERSISTED, rid, location=result.location)

        if not self.audit.finalize(request, None):
            log_with_context(
                logger, logging.ERROR, "Success status could not be recorded",
                request_id=rid, event="Status_Update_SUCCESS.Failure",
            )

        deleted, error = source.delete(locator.audio_file_location, locator.audio_file, rid)
        if not deleted:
            log_with_context(
                logger, logging.WARNING,
                f"Source file deletion unsuccessful AudioFileLocation={locator.audio_file_location}",
                request_id=rid, event="Azure.File.Delete.Failure", error=error,
            )
            return Stage.LOCATION_PERSISTED
        return self._transition(Stage.SOURCE_DELETED, rid)

    def _persist_location(self, request: TransferRequest, update: RecordingUpdate):
        try:
            procedure, writer = parse_procedure_setting(self.config.record_status_procedure)
        except ConfigurationError as e:
            return False, e

        connection_string = self.connections.resolve(request.country_code, writer=writer)
        if not connection_string:
            return False, ConfigurationError(
                f"Database connection string not configured for countrycode:{request.country_code}"
            )

        try:
            with self._open(connection_string) as conn:
                return update_recording_details(conn, procedure, update)
        except Exception as e:
            return False, PersistenceError(f"Recording details update failed: {e}")

    def _handle_missing_key(
        self,
        record: dict,
        request: TransferRequest,
        program_code: Optional[str],
        error: Exception,
    ) -> Stage:
        """Finalize as ERROR, or park the message until the key exists."""
        if not self.config.deferral_enabled or self.sqs_client is None:
            return self._fail(request, Stage.KEY_RESOLVED, error)

        attempt = receive_count(record)
        if attempt > self.config.max_kms_key_deferrals:
            # Only the first delivery past the limit writes the ERROR audit row.
            if attempt == self.config.max_kms_key_deferrals + 1:
                self._fail(request, Stage.KEY_RESOLVED, error)
            else:
                log_with_context(
                    logger, logging.WARNING,
                    f"Redelivered after deferrals exhausted; already finalized Attempt={attempt}",
                    request_id=request.request_id, event="KMS.Key.Deferral.Exhausted",
                    program_code=program_code,
                )
            raise KeyResolutionError(
                f"KMS key not created after {attempt - 1} deferrals for ProgramCode={program_code}",
                details={"program_code": program_code, "attempt": attempt},
            )

        posted, post_error = self.key_map.request_key_creation(program_code, request.request_id)
        if not posted:
            return self._fail(request, Stage.KEY_RESOLVED, post_error)

        self.audit.mark_key_wait(request, error)
        defer_message(
            self.sqs_client,
            self.config.queue_url,
            record,
            self.config.kms_key_retry_delay_minutes * 60,
            request.request_id,
        )
        raise KeyDeferredError(
            f"KMS key not ready for program {program_code}; deferred",
            details={"program_code": program_code, "attempt": attempt},
        )
