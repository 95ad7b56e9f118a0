"""Tests for the S3 destination uploader."""

import hashlib
import io
from datetime import datetime
from unittest.mock import MagicMock

import boto3
from botocore.exceptions import ClientError

from common.destination_store import (
    DestinationUploader,
    build_object_key,
    md5_digest,
)
from common.exceptions import ConfigurationError, IntegrityError

PAYLOAD = b"RIFF" + b"\x00" * 4096 + b"WAVE"
CALL_DATE = datetime(2024, 3, 5, 14, 7, 30)


class _OneShotStream(io.RawIOBase):
    """Readable stream that cannot seek."""

    def __init__(self, data):
        self._inner = io.BytesIO(data)

    def readable(self):
        return True

    def seekable(self):
        return False

    def readinto(self, buffer):
        chunk = self._inner.read(len(buffer))
        buffer[:len(chunk)] = chunk
        return len(chunk)


def _uploader(s3_client, **kwargs):
    return DestinationUploader(
        {"US": "us-recordings", "CA": "ca-recordings"}, s3_client=s3_client, **kwargs
    )


class TestMd5Digest:
    def test_seekable_stream_position_restored(self):
        stream = io.BytesIO(PAYLOAD)
        stream.seek(10)
        hex_digest, b64_digest, same = md5_digest(stream)
        assert hex_digest == hashlib.md5(PAYLOAD).hexdigest()
        assert same is stream
        assert stream.tell() == 10
        assert len(b64_digest) == 24

    def test_non_seekable_stream_buffered(self):
        hex_digest, _, buffered = md5_digest(_OneShotStream(PAYLOAD))
        assert hex_digest == hashlib.md5(PAYLOAD).hexdigest()
        assert buffered.seekable()
        assert buffered.read() == PAYLOAD


class TestBuildObjectKey:
    def test_partitioned_by_client_and_minute(self):
        key, prefix = build_object_key("callrecordings", "ABC", "rec.wav", CALL_DATE)
        assert prefix == "callrecordings/ABC/2024/03/05/14/07"
        assert key == "callrecordings/ABC/2024/03/05/14/07/rec.wav"


class TestBucketFor:
    def test_country_routing(self):
        uploader = _uploader(MagicMock())
        assert uploader.bucket_for("CA") == "ca-recordings"
        assert uploader.bucket_for("ca") == "ca-recordings"
        assert uploader.bucket_for("US") == "us-recordings"
        assert uploader.bucket_for("MX") == "us-recordings"
        assert uploader.bucket_for("") == "us-recordings"


class TestUploadAndVerify:
    def test_upload_verified(self, setup_destination_buckets):
        s3 = setup_destination_buckets
        result, error = _uploader(s3).upload_and_verify(
            io.BytesIO(PAYLOAD), "US", "rec.wav", "", "ABC", "", CALL_DATE,
        )

        assert error is None
        assert result.bucket == "us-recordings"
        assert result.key == "callrecordings/ABC/2024/03/05/14/07/rec.wav"
        assert result.location == "us-recordings/callrecordings/ABC/2024/03/05/14/07"
        assert result.source_md5 == result.dest_md5 == hashlib.md5(PAYLOAD).hexdigest()
        assert result.size == len(PAYLOAD)

        head = s3.head_object(Bucket="us-recordings", Key=result.key)
        assert head["ContentType"] == "audio/wav"
        assert head["StorageClass"] == "INTELLIGENT_TIERING"

    def test_kms_encryption_requested(self, setup_destination_buckets):
        s3 = setup_destination_buckets
        key_arn = boto3.client("kms", region_name="us-east-1").create_key()["KeyMetadata"]["Arn"]

        result, error = _uploader(s3).upload_and_verify(
            io.BytesIO(PAYLOAD), "CA", "rec.wav", key_arn, "ABC", "", CALL_DATE,
        )

        assert error is None
        assert result.bucket == "ca-recordings"
        head = s3.head_object(Bucket="ca-recordings", Key=result.key)
        assert head["ServerSideEncryption"] == "aws:kms"
        assert head["SSEKMSKeyId"] == key_arn

    def test_non_seekable_source(self, setup_destination_buckets):
        result, error = _uploader(setup_destination_buckets).upload_and_verify(
            _OneShotStream(PAYLOAD), "US", "rec.wav", "", "ABC", "", CALL_DATE,
        )
        assert error is None
        assert result.size == len(PAYLOAD)

    def test_corrupted_read_back(self):
        s3 = MagicMock()
        s3.meta.region_name = "us-east-1"
        s3.get_object.return_value = {"Body": io.BytesIO(b"corrupted"), "ContentLength": 9}

        result, error = _uploader(s3).upload_and_verify(
            io.BytesIO(PAYLOAD), "US", "rec.wav", "", "ABC", "", CALL_DATE,
        )

        assert isinstance(error, IntegrityError)
        assert "MD5 mismatch" in str(error)
        assert result.source_md5 != result.dest_md5

    def test_missing_bucket_name(self):
        uploader = DestinationUploader({"US": ""}, s3_client=MagicMock())
        _, error = uploader.upload_and_verify(io.BytesIO(PAYLOAD), "US", "rec.wav", "", "ABC", "")
        assert isinstance(error, ConfigurationError)

    def test_access_denied_is_configuration_error(self):
        s3 = MagicMock()
        s3.meta.region_name = "us-east-1"
        s3.put_object.side_effect = ClientError(
            {"Error": {"Code": "AccessDenied", "Message": "x"}}, "PutObject"
        )
        _, error = _uploader(s3).upload_and_verify(
            io.BytesIO(PAYLOAD), "US", "rec.wav", "", "ABC", "", CALL_DATE,
        )
        assert isinstance(error, ConfigurationError)

    def test_unreadable_stream(self):
        _, error = _uploader(MagicMock()).upload_and_verify(None, "US", "rec.wav", "", "ABC", "")
        assert error is not None


class TestClientForRegion:
    def test_regional_client_created_once(self):
        primary = MagicMock()
        primary.meta.region_name = "us-east-1"
        factory = MagicMock(side_effect=lambda region="": MagicMock(name=f"s3-{region}"))
        uploader = _uploader(primary, client_factory=factory)

        assert uploader.client_for_region("") is primary
        assert uploader.client_for_region("us-east-1") is primary
        west = uploader.client_for_region("us-west-2")
        assert uploader.client_for_region("us-west-2") is west
        assert factory.call_count == 1


class TestCanadianUploads:
    def test_regional_client_reused_across_messages(self, setup_destination_buckets):
        created = []

        def factory(region=""):
            created.append(region)
            return boto3.client("s3", region_name=region or "us-east-1")

        uploader = _uploader(setup_destination_buckets, client_factory=factory)
        for name in ("first.wav", "second.wav"):
            result, error = uploader.upload_and_verify(
                io.BytesIO(PAYLOAD), "CA", name, "", "ABC", "ca-central-1", CALL_DATE,
            )
            assert error is None
            assert result.bucket == "ca-recordings"

        assert created == ["ca-central-1"]


class TestDeleteObject:
    def test_deletes_and_tolerates_missing(self, setup_destination_buckets):
        s3 = setup_destination_buckets
        s3.put_object(Bucket="us-recordings", Key="a/rec.wav", Body=b"x")
        uploader = _uploader(s3)

        assert uploader.delete_object("us-recordings", "a/rec.wav") == (True, None)
        assert uploader.delete_object("us-recordings", "a/rec.wav") == (True, None)
        assert s3.list_objects_v2(Bucket="us-recordings").get("KeyCount") == 0

    def test_empty_arguments(self):
        deleted, error = _uploader(MagicMock()).delete_object("", "key")
        assert deleted is False
        assert error is not None
