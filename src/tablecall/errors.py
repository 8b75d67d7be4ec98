"""Exception types for webhook ingestion and extraction."""

MAX_DETAIL_CHARS = 1000


class TableCallError(Exception):
    """Base class for errors raised by this package."""


class AuthError(TableCallError):
    """Webhook signature missing or invalid."""


class MalformedPayload(TableCallError):
    """Webhook body is not JSON or does not match the envelope shape."""


class ExtractionError(TableCallError):
    """Extraction service failed, timed out, or returned unusable output."""

    def __init__(self, message: str):
        super().__init__(message)
        self.detail = message[:MAX_DETAIL_CHARS]


class StorageError(TableCallError):
    """The call store rejected or failed a read or write."""


class StaleWriteError(TableCallError):
    """A guarded update lost the race against a concurrent writer."""
