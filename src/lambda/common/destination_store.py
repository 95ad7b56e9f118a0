"""S3 destination: KMS-encrypted upload with read-back MD5 verification."""

import base64
import hashlib
import io
import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Tuple

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

from common.exceptions import (
    ConfigurationError,
    IntegrityError,
    RecordingTransferError,
)
from common.logger import get_logger, log_with_context
from common.models import UploadResult

logger = get_logger(__name__)

CONTENT_TYPE = "audio/wav"
STORAGE_CLASS = "INTELLIGENT_TIERING"

# Read size when hashing
CHUNK_SIZE = 8 * 1024 * 1024


def create_s3_client(region: str = ""):
    """S3 client pinned to ``region`` (SDK default region when empty)."""
    kwargs = {"config": Config(signature_version="s3v4")}
    if region:
        kwargs["region_name"] = region
    return boto3.client("s3", **kwargs)


def _classify_s3_error(e: ClientError, operation: str) -> Exception:
    """Map a botocore ClientError onto the pipeline's exception hierarchy."""
    error_code = e.response.get("Error", {}).get("Code", "")
    message = f"S3 {operation} failed: {e}"
    details = {"error_code": error_code, "operation": operation}

    if error_code in ("AccessDenied", "403", "NoSuchBucket", "KMS.NotFoundException"):
        return ConfigurationError(message, details=details)
    return RecordingTransferError(message, details=details)


def md5_digest(stream) -> Tuple[str, str, io.IOBase]:
    """MD5 of a stream as ``(hex, base64, readable_stream)``.

    A non-seekable stream is consumed into memory and the in-memory copy is
    returned in its place. A seekable stream is hashed from the start and
    left at its original position.
    """
    if not stream.seekable():
        buffered = io.BytesIO(stream.read())
        stream.close()
        stream = buffered

    original_position = stream.tell()
    stream.seek(0)
    md5 = hashlib.md5(usedforsecurity=False)
    for chunk in iter(lambda: stream.read(CHUNK_SIZE), b""):
        md5.update(chunk)
    stream.seek(original_position)

    digest = md5.digest()
    return digest.hex(), base64.b64encode(digest).decode("ascii"), stream


def build_object_key(prefix: str, client_code: str, file_name: str, call_date: Optional[datetime]) -> Tuple[str, str]:
    """``(key, key_prefix)`` partitioned by client and call minute."""
    moment = call_date or datetime.now(timezone.utc)
    key_prefix = f"{prefix}/{client_code}/{moment:%Y}/{moment:%m}/{moment:%d}/{moment:%H}/{moment:%M}"
    return f"{key_prefix}/{file_name}", key_prefix


class DestinationUploader:
    """Uploads recordings to the country's bucket and proves the bytes landed.

    Holds the primary S3 client plus one lazily created client per other
    region; clients live for the rest of the process.
    """

    def __init__(
        self,
        bucket_by_country: Dict[str, str],
        prefix: str = "callrecordings",
        s3_client=None,
        client_factory: Callable = create_s3_client,
    ):
        self.bucket_by_country = {k.upper(): v for k, v in bucket_by_country.items()}
        self.prefix = prefix
        self._client_factory = client_factory
        self._primary = s3_client
        self._regional: Dict[str, object] = {}
        self._lock = threading.Lock()

    def bucket_for(self, country_code: str) -> str:
        country = (country_code or "").strip().upper()
        if country == "CA":
            return self.bucket_by_country.get("CA", "")
        return self.bucket_by_country.get("US", "")

    def client_for_region(self, region: str, request_id: str = ""):
        """The S3 client bound to ``region``."""
        if self._primary is None:
            self._primary = self._client_factory()
        if not region or self._primary.meta.region_name == region:
            return self._primary

        with self._lock:
            client = self._regional.get(region)
            if client is None:
                client = self._client_factory(region)
                self._regional[region] = client
                log_with_context(
                    logger, logging.INFO,
                    f"S3 client created with region: {region}",
                    request_id=request_id, event=f"S3.Client.{region}",
                )
        return client

    def upload_and_verify(
        self,
        stream,
        country_code: str,
        file_name: str,
        key_arn: str,
        client_code: str,
        target_region: str,
        call_date: Optional[datetime] = None,
        request_id: str = "",
    ) -> Tuple[UploadResult, Optional[Exception]]:
        result = UploadResult()

        if stream is None or not stream.readable():
            return result, RecordingTransferError("Source stream is not readable")

        result.bucket = self.bucket_for(country_code)
        if not result.bucket:
            return result, ConfigurationError(
                "Resolved bucket name empty (check US_S3_BUCKET_NAME / CA_S3_BUCKET_NAME)",
                details={"country_code": country_code},
            )

        result.key, key_prefix = build_object_key(self.prefix, client_code, file_name, call_date)
        result.location = f"{result.bucket}/{key_prefix}"

        try:
            result.source_md5, md5_b64, stream = md5_digest(stream)
            s3 = self.client_for_region(target_region, request_id)

            log_with_context(
                logger, logging.INFO,
                f"Uploading to S3 Bucket={result.bucket} Key={result.key}",
                request_id=request_id, event="S3.Info",
                kms_key=key_arn or "None", md5=result.source_md5,
            )
            stream.seek(0)
            put_kwargs = {
                "Bucket": result.bucket,
                "Key": result.key,
                "Body": stream,
                "ContentType": CONTENT_TYPE,
                "ContentMD5": md5_b64,
                "StorageClass": STORAGE_CLASS,
            }
            if key_arn:
                put_kwargs["ServerSideEncryption"] = "aws:kms"
                put_kwargs["SSEKMSKeyId"] = key_arn
            s3.put_object(**put_kwargs)

            response = s3.get_object(Bucket=result.bucket, Key=result.key)
            body = response["Body"].read()
            result.dest_md5 = hashlib.md5(body, usedforsecurity=False).hexdigest()
            result.size = response.get("ContentLength", len(body))

            if result.dest_md5.lower() != result.source_md5.lower():
                error = IntegrityError(
                    f"MD5 mismatch Source={result.source_md5} S3={result.dest_md5} "
                    f"Bucket={result.bucket} Key={result.key}",
                    details={"bucket": result.bucket, "key": result.key, "size": result.size},
                )
                log_with_context(
                    logger, logging.ERROR, str(error),
                    request_id=request_id, event="S3.Md5.Fail", error=error,
                )
                return result, error

            log_with_context(
                logger, logging.INFO,
                f"Upload verified MD5={result.source_md5} Size={result.size}",
                request_id=request_id, event="S3.Upload.Details",
                bucket=result.bucket, key=result.key,
            )
            return result, None
        except ClientError as e:
            error = _classify_s3_error(e, "upload")
            log_with_context(
                logger, logging.ERROR, str(error),
                request_id=request_id, event="S3.Upload.Fail", error=e,
            )
            return result, error
        except Exception as e:
            log_with_context(
                logger, logging.ERROR, f"S3 upload failed: {e}",
                request_id=request_id, event="S3.Upload.Fail", error=e,
            )
            return result, e
        finally:
            if stream.seekable():
                stream.seek(0)

    def delete_object(
        self, bucket: str, key: str, target_region: str = "", request_id: str = ""
    ) -> Tuple[bool, Optional[Exception]]:
        """Remove an uploaded object; a missing object counts as deleted."""
        if not bucket or not key:
            return False, ValueError("Bucket or Key is empty")

        try:
            self.client_for_region(target_region, request_id).delete_object(Bucket=bucket, Key=key)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                return True, None
            log_with_context(
                logger, logging.ERROR, f"Failed Bucket={bucket} Key={key}",
                request_id=request_id, event="S3.Delete.Failure", error=e,
            )
            return False, _classify_s3_error(e, "delete_object")

        log_with_context(
            logger, logging.INFO, f"Deleted Bucket={bucket} Key={key}",
            request_id=request_id, event="S3.Delete.Success",
        )
        return True, None
