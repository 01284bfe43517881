"""Exception hierarchy for pagesync.

Setup-time errors (``ManifestError``, ``ValidationError``) abort a sync pass
before any per-document work starts.  Per-document errors
(``ChangeDetectionError``, ``TransferError``) are collected into the pass
report so one bad document never blocks the rest of a batch.
``ConflictError`` is raised synchronously to callers of
``ConflictResolver.resolve()``.

Remote client failures (``RemoteError`` and subclasses) are raised by the
content service client and translated by the engine.
"""

from __future__ import annotations


class PageSyncError(Exception):
    """Base class for all pagesync errors."""


# ---------------------------------------------------------------------------
# Manifest
# ---------------------------------------------------------------------------


class ManifestError(PageSyncError):
    """The tracking manifest is missing, unreadable, or invalid."""

    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__(message)
        self.path = path


class ManifestNotFoundError(ManifestError):
    """No manifest exists yet; the sync root needs initialization."""


class ManifestCorruptError(ManifestError):
    """The manifest exists but cannot be parsed or fails validation."""


# ---------------------------------------------------------------------------
# Per-document errors
# ---------------------------------------------------------------------------


class ChangeDetectionError(PageSyncError):
    """Classifying a single document failed (usually the remote fetch)."""

    def __init__(self, document_id: str, message: str) -> None:
        super().__init__(f"{document_id}: {message}" if document_id else message)
        self.document_id = document_id
        self.message = message


class TransferError(PageSyncError):
    """A push or pull failed after all retry attempts."""

    def __init__(
        self, document_id: str, message: str, attempts: int = 1
    ) -> None:
        super().__init__(
            f"{document_id}: {message} (after {attempts} attempt(s))"
        )
        self.document_id = document_id
        self.attempts = attempts


class ConflictError(PageSyncError):
    """Conflict resolution preconditions are not met."""


class ValidationError(PageSyncError):
    """Engine configuration is malformed (e.g. impossible concurrency)."""


# ---------------------------------------------------------------------------
# Remote service
# ---------------------------------------------------------------------------


class RemoteError(PageSyncError):
    """The remote content service rejected or failed a request."""

    def __init__(
        self, message: str, status_code: int | None = None
    ) -> None:
        super().__init__(message)
        self.status_code = status_code


class RemoteNotFoundError(RemoteError):
    """The requested remote document does not exist."""


class VersionMismatchError(RemoteError):
    """An update asserted a version the remote document is no longer at."""

    def __init__(
        self,
        document_id: str,
        expected_version: int,
        status_code: int | None = 409,
    ) -> None:
        super().__init__(
            f"Version mismatch for {document_id}: expected to write "
            f"version {expected_version}",
            status_code=status_code,
        )
        self.document_id = document_id
        self.expected_version = expected_version
