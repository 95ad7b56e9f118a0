"""Shared fixtures for recording migration tests."""

import json
import os
import sys
from datetime import datetime
from unittest.mock import MagicMock

import boto3
import pytest
from moto import mock_aws

# Add lambda source to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src", "lambda"))

STORAGE_KEY = "0123456789abcdef0123456789abcdef"


@pytest.fixture(autouse=True)
def aws_env(monkeypatch):
    """Set AWS and processor environment variables for testing."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")

    monkeypatch.setenv("SECRET_ID", "callrecordings/db")
    monkeypatch.setenv("KMS_MAP_TABLE", "kms-key-map")
    monkeypatch.setenv("RECORD_STATUS_PROCEDURE", "dbo.usp_update_recording_details|Writer")
    monkeypatch.setenv("US_S3_BUCKET_NAME", "us-recordings")
    monkeypatch.setenv("CA_S3_BUCKET_NAME", "ca-recordings")
    monkeypatch.setenv("STORAGE_CONFIG_ENCRYPTION_KEY", STORAGE_KEY)
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")


@pytest.fixture
def mock_context():
    """Create a mock Lambda context."""
    ctx = MagicMock()
    ctx.aws_request_id = "test-request-id-12345"
    ctx.function_name = "test-function"
    ctx.memory_limit_in_mb = 512
    ctx.invoked_function_arn = "arn:aws:lambda:us-east-1:000000000000:function:test"
    return ctx


@pytest.fixture
def s3_client():
    """Create a moto-mocked S3 client."""
    with mock_aws():
        client = boto3.client("s3", region_name="us-east-1")
        yield client


@pytest.fixture
def setup_destination_buckets(s3_client):
    """Create the US and CA destination buckets."""
    s3_client.create_bucket(Bucket="us-recordings")
    s3_client.create_bucket(Bucket="ca-recordings")
    return s3_client


@pytest.fixture
def dynamodb_client():
    """Create a moto-mocked DynamoDB client with the key map tables."""
    with mock_aws():
        client = boto3.client("dynamodb", region_name="us-east-1")
        for table in ("kms-key-map", "kms-create-request"):
            client.create_table(
                TableName=table,
                KeySchema=[{"AttributeName": "programcode", "KeyType": "HASH"}],
                AttributeDefinitions=[{"AttributeName": "programcode", "AttributeType": "S"}],
                BillingMode="PAY_PER_REQUEST",
            )
        yield client


@pytest.fixture
def secrets_client():
    """Create a moto-mocked Secrets Manager client."""
    with mock_aws():
        client = boto3.client("secretsmanager", region_name="us-east-1")
        yield client


@pytest.fixture
def connection_secret(secrets_client):
    """Store a secret with US reader/writer and CA reader connection strings."""
    secrets_client.create_secret(
        Name="callrecordings/db",
        SecretString=json.dumps({
            "ConnectionStrings_USReaderConnection": "Host=us-ro;Database=calls;Username=app;Password=pw",
            "ConnectionStrings_USWriterConnection": "Host=us-rw;Database=calls;Username=app;Password=pw",
            "ConnectionStrings_CAReaderConnection": "Host=ca-ro;Database=calls;Username=app;Password=pw",
            "ConnectionStrings_CAWriterConnection": "",
        }),
    )
    return secrets_client


@pytest.fixture
def sqs_record():
    """Build an SQS event record for a transfer request."""
    def _build(call_detail_id=1001, audio_file="rec-1001.wav", country="US",
               request_id="req-1", receive_count="1", message_id="msg-1"):
        body = {
            "CallDetailID": call_detail_id,
            "AudioFile": audio_file,
            "CountryCode": country,
            "RequestId": request_id,
        }
        return {
            "messageId": message_id,
            "receiptHandle": f"handle-{message_id}",
            "body": json.dumps(body),
            "attributes": {"ApproximateReceiveCount": receive_count},
        }
    return _build


@pytest.fixture
def call_recording_row():
    """A joined call_details / call_recording_details row as RealDictCursor returns it."""
    return {
        "calldetailid": 1001,
        "calldate": datetime(2024, 3, 5, 14, 7, 30),
        "programcode": "ABC-US-01",
        "audiofile": "rec-1001.wav",
        "audiofilelocation": "recordings",
        "isazurecloudaudio": True,
    }
