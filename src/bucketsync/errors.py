"""
Exception hierarchy for bucketsync.

Storage backends wrap vendor-specific errors (botocore ``ClientError``) into
these types at the provider boundary so the sync engine, the transfer
routines and the CLI never need to inspect vendor payloads.
"""

from typing import Any, Optional


class BucketSyncError(Exception):
    """Base exception for all bucketsync errors."""

    pass


class ValidationError(BucketSyncError):
    """
    Raised when command arguments fail validation.

    Reasons may include:
    - Include and exclude patterns given together
    - Source and destination both local
    - Local source missing or not a directory
    - Negative concurrency or unknown sync type

    Always raised before any I/O against the storage backend.
    """

    pass


class ConfigurationError(BucketSyncError):
    """
    Raised when configuration cannot be loaded or is inconsistent.

    Reasons may include:
    - Missing configuration file passed explicitly
    - Non-integer values for thread counts or part sizes
    """

    pass


class StorageServiceError(BucketSyncError):
    """
    Raised when the storage service rejects a request.

    Carries the service error ``code`` (e.g. ``NoSuchUpload``) and the HTTP
    ``status_code`` when known.
    """

    def __init__(self, message: str, code: str = "", status_code: Optional[int] = None):
        super().__init__(message)
        self.code = code
        self.status_code = status_code


class ObjectNotFoundError(StorageServiceError):
    """Raised when an object or bucket does not exist (HTTP 404)."""

    pass


class ListingError(BucketSyncError):
    """Raised when an entry listing fails for a reason other than a vanished entry."""

    pass


class ComparisonError(BucketSyncError):
    """Raised from the decision stream when the merge of two listings cannot continue."""

    pass


class TransferError(BucketSyncError):
    """Raised when a single upload, download, copy or delete fails."""

    pass


class InvalidPartError(BucketSyncError, ValueError):
    """Raised when a part completion carries an out-of-range number or an empty tag."""

    pass


class SyncInterruptedError(BucketSyncError):
    """
    Raised when a sync aborts on a fatal error.

    The partial counts gathered before the abort are available on ``result``.
    """

    def __init__(self, message: str, result: Any = None):
        super().__init__(message)
        self.result = result


class RetryableError(BucketSyncError):
    """Raised after all retry attempts have been exhausted."""

    def __init__(self, message: str, last_exception: Exception, attempts: int):
        self.message = message
        self.last_exception = last_exception
        self.attempts = attempts
        super().__init__(
            f"{message} (after {attempts} attempts). "
            f"Last error: {type(last_exception).__name__}: {str(last_exception)}"
        )


MULTIPART_RESTART_CODES = frozenset({"NoSuchUpload", "InvalidPart", "InvalidPartOrder"})


def is_not_exist(error: BaseException) -> bool:
    """Return True if ``error`` means the entry vanished (local or remote)."""
    if isinstance(error, (FileNotFoundError, ObjectNotFoundError)):
        return True
    if isinstance(error, RetryableError):
        return is_not_exist(error.last_exception)
    return False


def needs_multipart_restart(error: BaseException) -> bool:
    """Return True if a multipart transfer must start over with a new upload id."""
    return isinstance(error, StorageServiceError) and error.code in MULTIPART_RESTART_CODES
