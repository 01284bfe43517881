"""Manifest persistence layer.

Manages the JSON ledger that maps each remote document id to its last-known
synchronization state.  The ledger is loaded once, cached in memory, and
every mutating call persists it before returning.

Key design choices:

* **Atomic writes** -- ``save()`` writes to a temp file then calls
  ``os.replace()`` so readers never see partial data and the file stays
  diff-able.
* **Distinct load failures** -- a missing file raises
  ``ManifestNotFoundError`` (needs initialization), anything unreadable
  raises ``ManifestCorruptError`` (needs repair).
* **Schema migrations** -- older ``schema_version`` values are upgraded
  step by step before validation and written back immediately.
* **Content hashing** -- ``content_hash()`` normalises content (BOM,
  line-endings, trailing whitespace) before SHA-256 so hashes are stable
  across platforms.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Callable

from pydantic import ValidationError as PydanticValidationError

from pagesync.errors import (
    ManifestCorruptError,
    ManifestError,
    ManifestNotFoundError,
)
from pagesync.sync.models import (
    DocumentStatus,
    ManifestData,
    TrackedDocument,
    utcnow,
)

logger = logging.getLogger(__name__)

CURRENT_SCHEMA_VERSION = 2


def content_hash(content: str | bytes) -> str:
    """Compute a normalised SHA-256 hex digest of *content*.

    Normalisation steps (applied in order):

    1. Decode bytes as UTF-8 (invalid sequences replaced).
    2. Strip BOM (``\\ufeff``).
    3. Replace ``\\r\\n`` with ``\\n``.
    4. Right-strip each line.
    5. Strip trailing empty lines.
    """
    if isinstance(content, bytes):
        content = content.decode("utf-8", errors="replace")
    text = content.lstrip("﻿")
    text = text.replace("\r\n", "\n")
    lines = [line.rstrip() for line in text.split("\n")]
    while lines and lines[-1] == "":
        lines.pop()
    normalised = "\n".join(lines)
    return hashlib.sha256(normalised.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Migrations
# ---------------------------------------------------------------------------

_V1_STRATEGIES = {
    "local-first": "local-wins",
    "remote-first": "remote-wins",
    "manual": "manual",
}


def _migrate_v1(raw: dict[str, Any]) -> dict[str, Any]:
    """v1 used camelCase keys and stored ``pages`` as ``[id, page]`` pairs."""
    pages = raw.get("pages") or []
    if isinstance(pages, dict):
        items = list(pages.items())
    else:
        items = [(pair[0], pair[1]) for pair in pages]

    documents = []
    for page_id, page in items:
        history = [
            {
                "timestamp": record.get("timestamp"),
                "strategy": _V1_STRATEGIES.get(
                    record.get("strategy", "manual"), "manual"
                ),
                "previous_local_hash": record.get("previousLocalHash"),
                "previous_remote_hash": record.get("previousRemoteHash"),
            }
            for record in page.get("resolutionHistory") or []
        ]
        documents.append(
            {
                "id": page.get("id", page_id),
                "parent_id": page.get("parentId"),
                "space_id": page.get("spaceKey"),
                "title": page.get("title", ""),
                "version": page.get("version", 0),
                "content_hash": page.get("contentHash", ""),
                "remote_hash": page.get("remoteHash"),
                "local_path": page.get("localPath", ""),
                "status": page.get("status", "synced"),
                "last_modified": page.get("lastModified") or utcnow(),
                "resolution_history": history,
            }
        )

    return {
        "schema_version": 2,
        "remote_base_url": raw.get("confluenceUrl", ""),
        "last_sync_time": raw.get("lastSyncTime"),
        "documents": documents,
    }


# from-version -> step producing the next version
MIGRATIONS: dict[int, Callable[[dict[str, Any]], dict[str, Any]]] = {
    1: _migrate_v1,
}


def migrate(raw: dict[str, Any]) -> tuple[dict[str, Any], bool]:
    """Upgrade *raw* to ``CURRENT_SCHEMA_VERSION``.

    A document without ``schema_version`` is treated as version 1.

    Returns:
        ``(data, migrated)``.

    Raises:
        ManifestCorruptError: Unknown or newer-than-supported schema.
    """
    version = raw.get("schema_version", 1)
    if not isinstance(version, int):
        raise ManifestCorruptError(
            f"Invalid schema_version: {version!r}"
        )
    if version > CURRENT_SCHEMA_VERSION:
        raise ManifestCorruptError(
            f"Manifest schema {version} is newer than supported "
            f"({CURRENT_SCHEMA_VERSION}); upgrade pagesync"
        )
    migrated = False
    while version < CURRENT_SCHEMA_VERSION:
        step = MIGRATIONS.get(version)
        if step is None:
            raise ManifestCorruptError(
                f"No migration from manifest schema {version}"
            )
        logger.info(
            "Migrating manifest schema %d -> %d", version, version + 1
        )
        raw = step(raw)
        version = raw["schema_version"]
        migrated = True
    return raw, migrated


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class ManifestStore:
    """Load, query, and atomically persist the tracking manifest.

    Args:
        path: Location of the manifest JSON file.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._data: ManifestData | None = None
        self._documents: dict[str, TrackedDocument] = {}
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> ManifestData:
        """Read the manifest from disk into the in-memory cache.

        Raises:
            ManifestNotFoundError: The file does not exist.
            ManifestCorruptError: The file is unreadable or invalid.
        """
        if not self.path.exists():
            raise ManifestNotFoundError(
                f"No manifest at {self.path}; initialize the sync root first",
                path=str(self.path),
            )
        try:
            with open(self.path, encoding="utf-8") as fh:
                raw = json.load(fh)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ManifestCorruptError(
                f"Cannot read manifest {self.path}: {e}",
                path=str(self.path),
            ) from e

        if not isinstance(raw, dict):
            raise ManifestCorruptError(
                f"Manifest {self.path} must contain a JSON object",
                path=str(self.path),
            )

        raw, migrated = migrate(raw)
        try:
            data = ManifestData.model_validate(raw)
        except PydanticValidationError as e:
            raise ManifestCorruptError(
                f"Manifest {self.path} failed validation: {e}",
                path=str(self.path),
            ) from e

        ids = [doc.id for doc in data.documents]
        if len(ids) != len(set(ids)):
            raise ManifestCorruptError(
                f"Manifest {self.path} contains duplicate document ids",
                path=str(self.path),
            )

        with self._lock:
            self._data = data
            self._documents = {doc.id: doc for doc in data.documents}
            if migrated:
                self._persist()
        logger.info(
            "Loaded manifest %s (%d documents)",
            self.path,
            len(self._documents),
        )
        return data

    def initialize(self, remote_base_url: str = "") -> ManifestData:
        """Create and persist an empty manifest.

        Raises:
            ManifestError: A manifest already exists at this path.
        """
        if self.path.exists():
            raise ManifestError(
                f"Manifest already exists at {self.path}",
                path=str(self.path),
            )
        with self._lock:
            self._data = ManifestData(
                schema_version=CURRENT_SCHEMA_VERSION,
                remote_base_url=remote_base_url,
            )
            self._documents = {}
            self._persist()
        logger.info("Created new manifest at %s", self.path)
        return self._data

    @property
    def is_loaded(self) -> bool:
        return self._data is not None

    def save(self) -> None:
        """Persist the cached manifest atomically."""
        with self._lock:
            self._require_loaded()
            self._persist()

    def _persist(self) -> None:
        assert self._data is not None
        self._data = self._data.model_copy(
            update={
                "documents": list(self._documents.values()),
                "last_sync_time": utcnow(),
            }
        )
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = self._data.model_dump(mode="json")

        fd, tmp_path = tempfile.mkstemp(
            dir=str(self.path.parent), suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(payload, fh, indent=2)
                fh.write("\n")
            os.replace(tmp_path, self.path)
        except BaseException:
            # Clean up temp file on any failure.
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    def _require_loaded(self) -> None:
        if self._data is None:
            raise ManifestError(
                "Manifest not loaded; call load() or initialize() first",
                path=str(self.path),
            )

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def remote_base_url(self) -> str:
        self._require_loaded()
        assert self._data is not None
        return self._data.remote_base_url

    def get(self, document_id: str) -> TrackedDocument | None:
        """Return the entry for *document_id*, or ``None`` if untracked."""
        self._require_loaded()
        return self._documents.get(document_id)

    def get_all(self) -> dict[str, TrackedDocument]:
        """Return a snapshot of all entries keyed by id."""
        self._require_loaded()
        with self._lock:
            return dict(self._documents)

    def get_by_path(self, local_path: str) -> TrackedDocument | None:
        """Return the entry mirrored at *local_path*, if any."""
        self._require_loaded()
        for doc in self.get_all().values():
            if doc.local_path == local_path:
                return doc
        return None

    def conflicted(self) -> list[TrackedDocument]:
        """Entries whose status is ``conflicted``, ordered by path."""
        return sorted(
            (
                doc
                for doc in self.get_all().values()
                if doc.status == DocumentStatus.CONFLICTED
            ),
            key=lambda d: d.local_path,
        )

    # ------------------------------------------------------------------
    # Mutations (each persists before returning)
    # ------------------------------------------------------------------

    def upsert(self, document: TrackedDocument) -> None:
        """Insert or replace *document* by id and persist.

        Raises:
            ManifestError: The update would decrease the recorded version.
        """
        with self._lock:
            self._require_loaded()
            existing = self._documents.get(document.id)
            if existing is not None and document.version < existing.version:
                raise ManifestError(
                    f"Refusing to move {document.id} from version "
                    f"{existing.version} back to {document.version}",
                    path=str(self.path),
                )
            self._documents[document.id] = document
            self._persist()
        logger.debug("Updated %s in manifest", document.id)

    def remove(self, document_id: str) -> bool:
        """Delete the entry for *document_id* and persist.

        Returns:
            ``True`` if an entry was removed.
        """
        with self._lock:
            self._require_loaded()
            if self._documents.pop(document_id, None) is None:
                return False
            self._persist()
        logger.info("Removed %s from manifest", document_id)
        return True
