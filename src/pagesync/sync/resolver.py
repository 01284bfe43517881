"""Conflict resolution for documents changed on both sides.

Three strategies are supported:

- ``manual``: back up the local file and rewrite it with both versions
  between conflict markers.  The document stays ``conflicted`` until the
  user edits the file and calls ``finalize()``.
- ``local-wins``: keep the local file.  The version baseline is left
  behind the remote so the next pass sees the remote move, finds the
  resolution record, and pushes instead of pulling.
- ``remote-wins``: overwrite the local file with the remote content.

Every applied resolution is appended to the document's
``resolution_history`` so the same divergence is not flagged again.
"""

from __future__ import annotations

import difflib
import logging
import re

from pagesync.errors import ConflictError
from pagesync.file_handler import LocalFiles
from pagesync.sync.manifest import ManifestStore, content_hash
from pagesync.sync.models import (
    ConflictSnapshot,
    DocumentStatus,
    ResolutionRecord,
    ResolutionStrategy,
    TrackedDocument,
    utcnow,
)

logger = logging.getLogger(__name__)

LOCAL_MARKER = "<<<<<<< LOCAL"
SEPARATOR_MARKER = "======="
REMOTE_MARKER = ">>>>>>> REMOTE"

CONFLICT_MARKER_PATTERN = re.compile(
    r"^<{7}\s|^={7}\s*$|^>{7}\s", re.MULTILINE
)


def generate_conflict_markers(local_content: str, remote_content: str) -> str:
    """Wrap both versions in git-style conflict markers."""
    return (
        f"{LOCAL_MARKER}\n"
        f"{local_content.rstrip(chr(10))}\n"
        f"{SEPARATOR_MARKER}\n"
        f"{remote_content.rstrip(chr(10))}\n"
        f"{REMOTE_MARKER}\n"
    )


def has_conflict_markers(text: str) -> bool:
    return CONFLICT_MARKER_PATTERN.search(text) is not None


def format_diff(
    local_content: str,
    remote_content: str,
    local_label: str = "LOCAL",
    remote_label: str = "REMOTE",
) -> str:
    """Unified diff from the local to the remote version, for display."""
    return "".join(
        difflib.unified_diff(
            local_content.splitlines(keepends=True),
            remote_content.splitlines(keepends=True),
            fromfile=local_label,
            tofile=remote_label,
        )
    )


class ConflictResolver:
    """Apply resolution strategies to conflicted manifest entries.

    Args:
        manifest: Loaded manifest store.
        files: Local file collaborator.
        history_limit: Maximum resolution records kept per document.
    """

    def __init__(
        self,
        manifest: ManifestStore,
        files: LocalFiles,
        history_limit: int = 50,
    ) -> None:
        self.manifest = manifest
        self.files = files
        self.history_limit = history_limit

    # ------------------------------------------------------------------
    # History queries
    # ------------------------------------------------------------------

    def find_resolution(
        self,
        document_id: str,
        local_hash: str | None,
        remote_hash: str | None,
    ) -> ResolutionRecord | None:
        """Newest resolution recorded for exactly this ``(local, remote)`` pair."""
        document = self.manifest.get(document_id)
        if document is None or local_hash is None or remote_hash is None:
            return None
        for record in reversed(document.resolution_history):
            if (
                record.previous_local_hash == local_hash
                and record.previous_remote_hash == remote_hash
            ):
                return record
        return None

    def pending_local_resolution(
        self, document_id: str, local_hash: str | None
    ) -> ResolutionRecord | None:
        """Newest ``local-wins``/``manual`` record whose text is not pushed yet.

        The kept local text is still *local_hash* and the baseline remote
        hash has not caught up with it.  Any remote move since then must
        not be pulled over that text.
        """
        document = self.manifest.get(document_id)
        if (
            document is None
            or local_hash is None
            or not document.resolution_history
        ):
            return None
        record = document.resolution_history[-1]
        if (
            record.strategy == ResolutionStrategy.REMOTE_WINS
            or record.previous_local_hash != local_hash
            or document.remote_hash == local_hash
        ):
            return None
        return record

    def is_previously_resolved(
        self,
        document_id: str,
        local_hash: str | None,
        remote_hash: str | None,
    ) -> bool:
        return (
            self.find_resolution(document_id, local_hash, remote_hash)
            is not None
        )

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    def mark_conflicted(
        self,
        document: TrackedDocument,
        local_hash: str | None,
        remote_hash: str | None,
        remote_version: int | None,
    ) -> TrackedDocument:
        """Flag *document* as conflicted and record what was observed."""
        updated = document.model_copy(
            update={
                "status": DocumentStatus.CONFLICTED,
                "conflict": ConflictSnapshot(
                    local_hash=local_hash,
                    remote_hash=remote_hash,
                    remote_version=remote_version,
                ),
            }
        )
        self.manifest.upsert(updated)
        logger.warning(
            "Conflict: %s (%s) changed locally and remotely",
            document.id,
            document.local_path,
        )
        return updated

    def resolve(
        self,
        document_id: str,
        strategy: ResolutionStrategy | str,
        local_content: str | None = None,
        remote_content: str | None = None,
        remote_version: int | None = None,
    ) -> TrackedDocument:
        """Apply *strategy* to a tracked document.

        Args:
            document_id: Manifest id of the document.
            strategy: ``manual``, ``local-wins`` or ``remote-wins``.
            local_content: Current local text (required by ``manual`` and
                ``local-wins``).
            remote_content: Remote text already converted to local format
                (required by ``manual`` and ``remote-wins``).
            remote_version: Remote version the content was read at.

        Returns:
            The updated manifest entry.

        Raises:
            ConflictError: Unknown strategy, untracked id, or missing
                content for the chosen strategy.
        """
        try:
            strategy = ResolutionStrategy(strategy)
        except ValueError:
            raise ConflictError(
                f"Unknown resolution strategy: {strategy!r}"
            ) from None

        document = self.manifest.get(document_id)
        if document is None:
            raise ConflictError(f"Document {document_id} is not tracked")

        if strategy in (ResolutionStrategy.MANUAL, ResolutionStrategy.LOCAL_WINS):
            if local_content is None:
                raise ConflictError(
                    f"local_content is required for the {strategy.value} strategy"
                )
        if strategy in (ResolutionStrategy.MANUAL, ResolutionStrategy.REMOTE_WINS):
            if remote_content is None:
                raise ConflictError(
                    f"remote_content is required for the {strategy.value} strategy"
                )

        snapshot = document.conflict
        local_hash = (
            content_hash(local_content)
            if local_content is not None
            else (snapshot.local_hash if snapshot else None)
        )
        remote_hash = (
            content_hash(remote_content)
            if remote_content is not None
            else (snapshot.remote_hash if snapshot else document.remote_hash)
        )
        if remote_version is None and snapshot is not None:
            remote_version = snapshot.remote_version

        self.files.backup(document.local_path)

        if strategy == ResolutionStrategy.MANUAL:
            assert local_content is not None and remote_content is not None
            self.files.write_text(
                document.local_path,
                generate_conflict_markers(local_content, remote_content),
            )
            updated = document.model_copy(
                update={
                    "status": DocumentStatus.CONFLICTED,
                    "last_modified": utcnow(),
                    "conflict": ConflictSnapshot(
                        local_hash=local_hash,
                        remote_hash=remote_hash,
                        remote_version=remote_version,
                    ),
                }
            )
            self.manifest.upsert(updated)
            logger.info(
                "Conflict markers written to %s", document.local_path
            )
            return updated

        if strategy == ResolutionStrategy.LOCAL_WINS:
            assert local_content is not None
            changes = {
                "status": DocumentStatus.SYNCED,
                "content_hash": local_hash,
                "conflict": None,
            }
        else:
            assert remote_content is not None
            self.files.write_text(document.local_path, remote_content)
            changes = {
                "status": DocumentStatus.SYNCED,
                "content_hash": remote_hash,
                "remote_hash": remote_hash,
                "version": max(document.version, remote_version or 0),
                "last_modified": utcnow(),
                "conflict": None,
            }

        changes["resolution_history"] = self._append_history(
            document,
            ResolutionRecord(
                strategy=strategy,
                previous_local_hash=local_hash,
                previous_remote_hash=remote_hash,
            ),
        )
        updated = document.model_copy(update=changes)
        self.manifest.upsert(updated)
        logger.info(
            "Conflict resolved for %s using %s", document_id, strategy.value
        )
        return updated

    def finalize(self, document_id: str) -> TrackedDocument:
        """Complete a manual resolution after the user edited the file.

        The edited text becomes the new baseline and is pushed on the next
        pass.

        Raises:
            ConflictError: Untracked, not conflicted, missing file, or the
                file still contains conflict markers.
        """
        document = self.manifest.get(document_id)
        if document is None:
            raise ConflictError(f"Document {document_id} is not tracked")
        if document.status != DocumentStatus.CONFLICTED:
            raise ConflictError(f"Document {document_id} is not conflicted")
        if not self.files.exists(document.local_path):
            raise ConflictError(
                f"Local file {document.local_path} does not exist"
            )

        text = self.files.read_text(document.local_path)
        if has_conflict_markers(text):
            raise ConflictError(
                f"{document.local_path} still contains conflict markers"
            )

        edited_hash = content_hash(text)
        snapshot = document.conflict
        updated = document.model_copy(
            update={
                "status": DocumentStatus.SYNCED,
                "content_hash": edited_hash,
                "conflict": None,
                "last_modified": utcnow(),
                "resolution_history": self._append_history(
                    document,
                    ResolutionRecord(
                        strategy=ResolutionStrategy.MANUAL,
                        previous_local_hash=edited_hash,
                        previous_remote_hash=(
                            snapshot.remote_hash if snapshot else None
                        ),
                    ),
                ),
            }
        )
        self.manifest.upsert(updated)
        logger.info("Manual resolution finalized for %s", document_id)
        return updated

    def _append_history(
        self, document: TrackedDocument, record: ResolutionRecord
    ) -> list[ResolutionRecord]:
        history = [*document.resolution_history, record]
        return history[-self.history_limit:]
