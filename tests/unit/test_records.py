"""Tests for recording lookups, storage parsing and status updates."""

import json
from datetime import datetime
from unittest.mock import MagicMock

import pytest
from psycopg2 import sql

from common.exceptions import ConfigurationError, PersistenceError
from common.field_crypto import encrypt_field
from common.models import RecordingUpdate, Status, StorageRow
from common.records import (
    find_call_recording,
    get_active_storage,
    parse_procedure_setting,
    parse_storage_config,
    update_recording_details,
)

KEY = "0123456789abcdef0123456789abcdef"


def _conn(row=None, execute_error=None):
    conn = MagicMock()
    cursor = conn.cursor.return_value.__enter__.return_value
    cursor.fetchone.return_value = row
    if execute_error is not None:
        cursor.execute.side_effect = execute_error
    return conn, cursor


def _storage_row(document):
    return StorageRow(
        storage_id=3,
        storage_type="azure",
        country_id=1,
        json=document if isinstance(document, str) else json.dumps(document),
        default_storage=True,
        active=True,
    )


class TestFindCallRecording:
    def test_returns_locator(self, call_recording_row):
        conn, cursor = _conn(call_recording_row)
        locator, error = find_call_recording(conn, 1001, "REC-1001.wav")

        assert error is None
        assert locator.program_code == "ABC-US-01"
        assert locator.audio_file_location == "recordings"
        assert locator.call_date == datetime(2024, 3, 5, 14, 7, 30)

        query, params = cursor.execute.call_args[0]
        assert "lower(cr.audiofile)" in query
        assert query.rstrip().endswith("ORDER BY cr.audiofile ASC LIMIT 1")
        assert params == {"call_detail_id": 1001, "audio_file": "rec-1001.wav"}

    def test_without_audio_file_filter(self, call_recording_row):
        conn, cursor = _conn(call_recording_row)
        find_call_recording(conn, 1001)
        query, params = cursor.execute.call_args[0]
        assert "lower(cr.audiofile)" not in query
        assert params == {"call_detail_id": 1001}

    def test_no_row(self):
        conn, _ = _conn(None)
        assert find_call_recording(conn, 1) == (None, None)

    def test_query_failure(self):
        conn, _ = _conn(execute_error=RuntimeError("timeout"))
        locator, error = find_call_recording(conn, 1)
        assert locator is None
        assert isinstance(error, RuntimeError)


class TestGetActiveStorage:
    def test_most_recent_first(self):
        conn, cursor = _conn({
            "storageid": 3, "storagetype": "Azure", "countryid": 1,
            "json": {"MSAzureBlob": {}}, "defaultstorage": True, "activeind": True,
            "createddate": None, "updateddate": None, "bucketname": None,
        })
        row, error = get_active_storage(conn, "Azure")

        assert error is None
        assert row.storage_id == 3
        assert json.loads(row.json) == {"MSAzureBlob": {}}
        query, params = cursor.execute.call_args[0]
        assert "ORDER BY COALESCE(updateddate, createddate) DESC" in query
        assert params == {"storage_type": "azure"}

    def test_country_filter(self):
        conn, cursor = _conn(None)
        assert get_active_storage(conn, country_id=2) == (None, None)
        assert cursor.execute.call_args[0][1]["country_id"] == 2


class TestParseStorageConfig:
    def test_decrypts_fields_case_insensitively(self):
        row = _storage_row({
            "msAzureBlob": {
                "EndPoint": "https://acct.blob.core.windows.net",
                "AccountName": encrypt_field("acct", KEY),
                "accountKey": encrypt_field("a2V5", KEY),
            },
            "MSAZUREKEYVAULT": {
                "ClientId": encrypt_field("client", KEY),
                "ClientSecret": encrypt_field("shh", KEY),
                "TenantId": "tenant",
                "KeyVaultUri": "https://vault.vault.azure.net",
            },
        })
        config, error = parse_storage_config(row, KEY)

        assert error is None
        assert config.account_name == "acct"
        assert config.account_key == "a2V5"
        assert config.connection_string == ""
        assert config.key_vault.client_id == "client"
        assert config.key_vault.client_secret == "shh"
        assert config.key_vault.tenant_id == "tenant"
        assert config.key_vault.complete

    def test_connection_string_only(self):
        row = _storage_row({"MSAzureBlob": {"ConnectionString": encrypt_field("UseDevelopmentStorage=true", KEY)}})
        config, error = parse_storage_config(row, KEY)
        assert config.connection_string == "UseDevelopmentStorage=true"
        assert config.key_vault is None

    def test_empty_document(self):
        assert parse_storage_config(_storage_row("  "), KEY) == (None, None)

    @pytest.mark.parametrize("document", [
        "{not json",
        "[]",
        {"Other": {}},
        {"MSAzureBlob": {"Endpoint": "https://x"}},
    ])
    def test_malformed(self, document):
        config, error = parse_storage_config(_storage_row(document), KEY)
        assert config is None
        assert isinstance(error, ConfigurationError)

    def test_undecryptable_field(self):
        row = _storage_row({"MSAzureBlob": {"ConnectionString": "plain-text"}})
        config, error = parse_storage_config(row, KEY)
        assert config is None
        assert isinstance(error, ConfigurationError)


class TestParseProcedureSetting:
    def test_name_and_role(self):
        assert parse_procedure_setting("dbo.usp_update|Reader") == ("dbo.usp_update", False)

    def test_role_defaults_to_writer(self):
        assert parse_procedure_setting("dbo.usp_update") == ("dbo.usp_update", True)

    def test_empty(self):
        with pytest.raises(ConfigurationError):
            parse_procedure_setting("")


class TestUpdateRecordingDetails:
    def _update(self):
        return RecordingUpdate(
            call_detail_id=1001, audio_file="rec.wav", audio_file_location="us-recordings/x",
            s3_md5="abc", s3_size_bytes=3, status=Status.SUCCESS, request_id="req-1",
        )

    def test_calls_procedure_and_commits(self):
        conn, cursor = _conn()
        updated, error = update_recording_details(conn, "dbo.usp_update", self._update())

        assert updated is True
        assert error is None
        statement, params = cursor.execute.call_args[0]
        assert isinstance(statement, sql.Composed)
        assert json.loads(params[0])["S3Md5"] == "abc"
        conn.commit.assert_called_once()

    def test_failure_rolls_back(self):
        conn, _ = _conn(execute_error=RuntimeError("procedure missing"))
        updated, error = update_recording_details(conn, "dbo.usp_update", self._update())

        assert updated is False
        assert isinstance(error, PersistenceError)
        conn.rollback.assert_called_once()
        conn.commit.assert_not_called()
