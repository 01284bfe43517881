"""Pydantic models for the synchronization core.

Defines the data contracts used across all sync modules:

- ``TrackedDocument``: manifest entry for one remote document.
- ``ResolutionRecord`` / ``ConflictSnapshot``: conflict bookkeeping.
- ``ManifestData``: the persisted ledger.
- ``ChangeState`` / ``ChangeDetectionResult``: three-way classification.
- ``HierarchyNode``: tree view of the manifest.
- ``SyncAction``, ``DocumentResult``, ``SyncReport``: pass results.

Persisted and result models are frozen; updates go through
``model_copy(update=...)``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DocumentStatus(str, Enum):
    """Synchronization status of a tracked document."""

    SYNCED = "synced"
    MODIFIED = "modified"
    CONFLICTED = "conflicted"


class ResolutionStrategy(str, Enum):
    """How a conflicted document is resolved."""

    MANUAL = "manual"
    LOCAL_WINS = "local-wins"
    REMOTE_WINS = "remote-wins"


class ChangeState(str, Enum):
    """Result of comparing both sides against the manifest baseline."""

    UNCHANGED = "unchanged"
    LOCAL_ONLY = "local-only"
    REMOTE_ONLY = "remote-only"
    BOTH_CHANGED = "both-changed"


class PassState(str, Enum):
    """States of one sync pass."""

    IDLE = "idle"
    CLASSIFYING = "classifying"
    PARTITIONING = "partitioning"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Manifest records
# ---------------------------------------------------------------------------


class ResolutionRecord(BaseModel):
    """One conflict resolution, kept to avoid re-flagging the same divergence.

    Attributes:
        timestamp: When the resolution was applied.
        strategy: Strategy used.
        previous_local_hash: Local hash of the divergent pair.
        previous_remote_hash: Remote hash of the divergent pair.
    """

    timestamp: datetime = Field(default_factory=utcnow)
    strategy: ResolutionStrategy
    previous_local_hash: str | None = None
    previous_remote_hash: str | None = None

    model_config = {"frozen": True}


class ConflictSnapshot(BaseModel):
    """Both sides as observed when a document was flagged conflicted."""

    local_hash: str | None = None
    remote_hash: str | None = None
    remote_version: int | None = None
    detected_at: datetime = Field(default_factory=utcnow)

    model_config = {"frozen": True}


class TrackedDocument(BaseModel):
    """Manifest entry for one remotely hosted document.

    Attributes:
        id: Opaque remote identifier, unique across the manifest.
        parent_id: Remote id of the parent document, if any.
        space_id: Remote space the document lives in.
        title: Last known remote title.
        version: Remote version at the last successful sync.
        content_hash: Hash of the local text at the last successful sync.
        remote_hash: Hash of the remote content (local format) at last sync.
        local_path: Mirrored file, relative to the sync root.
        status: ``synced``, ``modified`` or ``conflicted``.
        last_modified: Time of the last local write.
        resolution_history: Applied conflict resolutions, oldest first.
        conflict: Observed divergence while ``status`` is ``conflicted``.
    """

    id: str
    parent_id: str | None = None
    space_id: str | None = None
    title: str
    version: int = Field(ge=0)
    content_hash: str
    remote_hash: str | None = None
    local_path: str
    status: DocumentStatus = DocumentStatus.SYNCED
    last_modified: datetime = Field(default_factory=utcnow)
    resolution_history: list[ResolutionRecord] = []
    conflict: ConflictSnapshot | None = None

    model_config = {"frozen": True}


class ManifestData(BaseModel):
    """The persisted ledger."""

    schema_version: int
    remote_base_url: str = ""
    last_sync_time: datetime | None = None
    documents: list[TrackedDocument] = []


# ---------------------------------------------------------------------------
# Derived views
# ---------------------------------------------------------------------------


class ChangeDetectionResult(BaseModel):
    """Classification of one document plus the state it was computed from.

    ``remote_content`` is already converted to local format.
    """

    document_id: str
    local_path: str
    state: ChangeState
    local_hash: str | None = None
    remote_hash: str | None = None
    remote_version: int
    remote_title: str | None = None
    remote_content: str | None = None
    base_hash: str
    base_version: int

    model_config = {"frozen": True}


class HierarchyNode(BaseModel):
    """A document in the tree view of the manifest."""

    id: str
    title: str
    parent_id: str | None = None
    children: list[HierarchyNode] = []
    depth: int = 0
    local_path: str = ""

    @property
    def is_index(self) -> bool:
        return bool(self.children)


# ---------------------------------------------------------------------------
# Pass results
# ---------------------------------------------------------------------------


class SyncAction(str, Enum):
    """Action taken (or intended, in a dry run) for one document."""

    SKIP = "skip"
    PUSH = "push"
    PULL = "pull"
    CREATE_REMOTE = "create_remote"
    CREATE_LOCAL = "create_local"
    CONFLICT = "conflict"
    RESOLVE = "resolve"


class DocumentResult(BaseModel):
    """Outcome for one document in a pass.

    Attributes:
        document_id: Remote id (empty for a failed remote create).
        local_path: Path relative to the sync root.
        action: Action performed or intended.
        success: Whether the action completed.
        error: Error message when ``success`` is False, or a note.
        version: Remote version after the action, when known.
    """

    document_id: str
    local_path: str
    action: SyncAction
    success: bool = True
    error: str | None = None
    version: int | None = None

    model_config = {"frozen": True}


class SyncReport(BaseModel):
    """Aggregate result of one pass.

    ``buckets`` maps each change bucket (``unchanged``, ``local_only``,
    ``remote_only``, ``conflicted``) to document ids.
    """

    dry_run: bool = False
    status: PassState = PassState.COMPLETED
    buckets: dict[str, list[str]] = {}
    results: list[DocumentResult] = []
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None

    model_config = {"frozen": True}

    @property
    def counts(self) -> dict[str, int]:
        """Number of documents per bucket."""
        return {name: len(ids) for name, ids in self.buckets.items()}

    @property
    def pushed(self) -> list[DocumentResult]:
        return [
            r
            for r in self.results
            if r.success
            and r.action in (SyncAction.PUSH, SyncAction.CREATE_REMOTE)
        ]

    @property
    def pulled(self) -> list[DocumentResult]:
        return [
            r
            for r in self.results
            if r.success
            and r.action in (SyncAction.PULL, SyncAction.CREATE_LOCAL)
        ]

    @property
    def conflicts(self) -> list[DocumentResult]:
        return [
            r for r in self.results if r.action == SyncAction.CONFLICT
        ]

    @property
    def resolved(self) -> list[DocumentResult]:
        return [
            r
            for r in self.results
            if r.success and r.action == SyncAction.RESOLVE
        ]

    @property
    def errors(self) -> list[DocumentResult]:
        """Results where success is False."""
        return [r for r in self.results if not r.success]

    def summary(self) -> str:
        """Format a short human-readable summary of the pass."""
        lines = [
            "Sync pass" + (" (dry run)" if self.dry_run else "")
            + f": {self.status.value}",
            f"  Pushed:    {len(self.pushed)}",
            f"  Pulled:    {len(self.pulled)}",
            f"  Resolved:  {len(self.resolved)}",
            f"  Conflicts: {len(self.conflicts)}",
            f"  Errors:    {len(self.errors)}",
        ]
        return "\n".join(lines)
