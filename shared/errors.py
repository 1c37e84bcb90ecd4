"""Exception taxonomy for the FromCafe sync engine."""

from typing import Optional


class SyncError(Exception):
    """Base exception for sync failures."""

    error_code = "sync_failed"


class ConfigError(SyncError):
    """Raised when configuration is missing or invalid."""

    error_code = "config_error"


class SourceUnavailableError(SyncError):
    """Raised when note source credentials are missing or rejected."""

    error_code = "source_unavailable"


class NoteSourceError(SyncError):
    """Raised when a call to the note source fails."""


class RateLimitError(NoteSourceError):
    """Raised when the note source throttles us.

    Callers should present a "try again later" message rather than retrying
    immediately.
    """

    error_code = "rate_limited"

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class ContentConversionError(SyncError):
    """Raised when a note's markup cannot be converted."""


class ImageStoreError(SyncError):
    """Raised when an image cannot be stored."""
