from __future__ import annotations

from typing import Optional


class GlacierUpError(Exception):
    """Base class for glacierup errors."""


# Local input / programming errors
class ReadError(GlacierUpError):
    """Reading the archive failed at ``offset``."""

    def __init__(self, offset: int, cause: Optional[BaseException] = None, message: Optional[str] = None):
        self.offset = offset
        self.cause = cause
        if message is None:
            message = f"read failed at byte offset {offset}"
            if cause is not None:
                message += f": {cause}"
        super().__init__(message)


class EmptyInputError(GlacierUpError):
    pass


class PartSizeError(GlacierUpError, ValueError):
    pass


class UploadCancelled(GlacierUpError):
    pass


# Service side
class ServiceError(GlacierUpError):
    """Error reported by the storage collaborator.

    ``retryable`` is decided by the collaborator: throttling and transient
    server failures are retryable, auth/not-found/bad-request are not.
    """

    def __init__(self, message: str, *, retryable: bool = False, cause: Optional[BaseException] = None, code: Optional[str] = None):
        super().__init__(message)
        self.retryable = retryable
        self.cause = cause
        self.code = code


class ChecksumMismatchError(GlacierUpError):
    def __init__(self, expected: str, actual: str, byte_range=None):
        self.expected = expected
        self.actual = actual
        self.byte_range = byte_range
        where = f" for {byte_range}" if byte_range is not None else ""
        super().__init__(f"checksum mismatch{where}: sent {expected}, service computed {actual}")


class PartUploadError(GlacierUpError):
    def __init__(self, byte_range, cause: BaseException, attempts: int = 1):
        self.byte_range = byte_range
        self.cause = cause
        self.attempts = attempts
        super().__init__(f"upload of {byte_range} failed after {attempts} attempt(s): {cause}")


class UploadError(GlacierUpError):
    """Top-level failure of an archive upload; wraps the first fatal cause."""

    def __init__(self, message: str, *, cause: Optional[BaseException] = None, state=None, upload_id: Optional[str] = None):
        super().__init__(message)
        self.cause = cause
        self.state = state
        self.upload_id = upload_id
