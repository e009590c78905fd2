"""Exception hierarchy shared by the codec, fetchers and downloader."""

from __future__ import annotations


class BlobTransferError(Exception):
    """Base class for every error raised by blob_transfer."""


class ConfigurationError(BlobTransferError):
    """A required key, resolver or policy is missing or unsupported."""


class KeyNotFoundError(BlobTransferError):
    """No key encryption key could be found for the blob's key id."""

    def __init__(self, key_id: str) -> None:
        self.key_id = key_id
        super().__init__(f"no key available for key id {key_id!r}")


class IntegrityError(BlobTransferError):
    """Decrypted data or its metadata failed validation."""


class SourceIntegrityError(IntegrityError):
    """A downloaded sub-range did not match its transactional checksum."""


class InvalidArgumentError(BlobTransferError, ValueError):
    """A range, size or concurrency argument is out of bounds."""


class RangeAlignmentError(InvalidArgumentError):
    """A range size is in bounds but not aligned to what the service allows."""


class OperationCanceledError(BlobTransferError):
    """The operation observed its cancellation signal."""


class ConsistencyError(BlobTransferError):
    """The blob changed (ETag mismatch) while it was being read."""


class FetchError(BlobTransferError):
    """A single range fetch failed.

    Attributes:
        status_code: HTTP status returned by the service, if any.
        transient: Whether retrying the same request may succeed.
    """

    def __init__(
        self, message: str, *, status_code: int | None = None, transient: bool
    ) -> None:
        self.status_code = status_code
        self.transient = transient
        super().__init__(message)


class TransientDownloadError(BlobTransferError):
    """Retries were exhausted on a sub-range that kept failing transiently."""

    def __init__(self, index: int, attempts: int) -> None:
        self.index = index
        self.attempts = attempts
        super().__init__(
            f"sub-range {index} failed after {attempts} attempts; retries exhausted"
        )
