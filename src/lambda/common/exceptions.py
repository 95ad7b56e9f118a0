"""Exception hierarchy for the recording migration pipeline."""


class RecordingTransferError(Exception):
    """Base exception for all recording migration failures."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class ConfigurationError(RecordingTransferError):
    """Missing connection string, bucket mapping or key vault settings."""
    pass


class ParseError(RecordingTransferError):
    """Queue message body could not be parsed. Dropped, never audited."""
    pass


class RecordLookupError(RecordingTransferError):
    """No call recording row matches the request."""
    pass


class KeyResolutionError(RecordingTransferError):
    """No KMS key mapping exists for the recording's program code."""
    pass


class KeyDeferredError(KeyResolutionError):
    """Message was deferred until the program's KMS key is created."""
    pass


class TransferError(RecordingTransferError):
    """Source download or client-side decryption failed."""
    pass


class IntegrityError(RecordingTransferError):
    """Destination object digest does not match the source digest."""
    pass


class PersistenceError(RecordingTransferError):
    """Database update or audit transaction failed."""
    pass
