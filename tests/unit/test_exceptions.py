"""Tests for custom exception hierarchy."""

import pytest

from common.exceptions import (
    ConfigurationError,
    IntegrityError,
    KeyDeferredError,
    KeyResolutionError,
    ParseError,
    PersistenceError,
    RecordingTransferError,
    RecordLookupError,
    TransferError,
)


class TestExceptionHierarchy:
    def test_base_error(self):
        err = RecordingTransferError("test")
        assert isinstance(err, Exception)
        assert str(err) == "test"
        assert err.details == {}

    def test_base_error_with_details(self):
        err = RecordingTransferError("test", details={"key": "value"})
        assert err.details == {"key": "value"}

    @pytest.mark.parametrize("cls", [
        ConfigurationError, ParseError, RecordLookupError, KeyResolutionError,
        TransferError, IntegrityError, PersistenceError,
    ])
    def test_stage_errors_share_base(self, cls):
        assert isinstance(cls("boom"), RecordingTransferError)

    def test_deferred_is_key_resolution_error(self):
        err = KeyDeferredError("waiting", details={"attempt": 2})
        assert isinstance(err, KeyResolutionError)
        assert err.details["attempt"] == 2
