"""Shared pytest fixtures for pagesync tests."""

from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest

from pagesync.core.client import (
    BatchResult,
    CreatedDocument,
    DocumentDraft,
    DocumentUpdate,
    RemoteDocument,
    UpdatedDocument,
)
from pagesync.errors import RemoteError, RemoteNotFoundError, VersionMismatchError
from pagesync.file_handler import LocalFiles
from pagesync.sync.engine import SyncEngine
from pagesync.sync.manifest import ManifestStore, content_hash
from pagesync.sync.models import DocumentStatus, TrackedDocument


class FakeRemote:
    """In-memory ``RemoteClient`` for testing.

    Failure injection:

    - ``fail_gets`` / ``fail_updates``: id -> number of calls that raise a
      transient ``RemoteError`` before succeeding.
    - ``fail_creates``: titles whose creation always fails.
    - ``reject_updates``: ids whose updates raise ``VersionMismatchError``.
    """

    def __init__(self, delay: float = 0.0) -> None:
        self.documents: Dict[str, RemoteDocument] = {}
        self.update_calls: List[tuple] = []
        self.create_calls: List[tuple] = []
        self.get_calls: List[str] = []
        self.fail_gets: Dict[str, int] = {}
        self.fail_updates: Dict[str, int] = {}
        self.fail_creates: set[str] = set()
        self.reject_updates: set[str] = set()
        self.delay = delay
        self.in_flight = 0
        self.max_in_flight = 0
        self._next_id = 1000
        self._lock = threading.Lock()

    def add(
        self,
        document_id: str,
        content: str,
        version: int = 1,
        title: Optional[str] = None,
        parent_id: Optional[str] = None,
        space_id: str = "DOCS",
    ) -> RemoteDocument:
        doc = RemoteDocument(
            id=document_id,
            version=version,
            title=title or document_id,
            content=content,
            parent_id=parent_id,
            space_id=space_id,
        )
        self.documents[document_id] = doc
        return doc

    def edit(self, document_id: str, content: str) -> RemoteDocument:
        """Simulate an external edit: new content, version + 1."""
        current = self.documents[document_id]
        updated = current.model_copy(
            update={"content": content, "version": current.version + 1}
        )
        self.documents[document_id] = updated
        return updated

    def _enter(self) -> None:
        with self._lock:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        if self.delay:
            time.sleep(self.delay)

    def _leave(self) -> None:
        with self._lock:
            self.in_flight -= 1

    @staticmethod
    def _consume(failures: Dict[str, int], key: str) -> bool:
        remaining = failures.get(key, 0)
        if remaining > 0:
            failures[key] = remaining - 1
            return True
        return False

    def get_document(self, document_id: str) -> RemoteDocument:
        self._enter()
        try:
            self.get_calls.append(document_id)
            if self._consume(self.fail_gets, document_id):
                raise RemoteError("service unavailable", status_code=503)
            if document_id not in self.documents:
                raise RemoteNotFoundError(
                    f"Not found: {document_id}", status_code=404
                )
            return self.documents[document_id]
        finally:
            self._leave()

    def update_document(
        self,
        document_id: str,
        content: str,
        expected_version: int,
        title: str,
    ) -> UpdatedDocument:
        self.update_calls.append(
            (document_id, content, expected_version, title)
        )
        if self._consume(self.fail_updates, document_id):
            raise RemoteError("service unavailable", status_code=503)
        current = self.documents[document_id]
        if (
            document_id in self.reject_updates
            or expected_version != current.version + 1
        ):
            raise VersionMismatchError(document_id, expected_version)
        self.documents[document_id] = current.model_copy(
            update={
                "content": content,
                "version": expected_version,
                "title": title,
            }
        )
        return UpdatedDocument(id=document_id, version=expected_version)

    def create_document(
        self,
        space_id: str,
        title: str,
        content: str,
        parent_id: Optional[str] = None,
    ) -> CreatedDocument:
        with self._lock:
            self.create_calls.append((space_id, title, content, parent_id))
            if title in self.fail_creates:
                raise RemoteError(f"cannot create {title}", status_code=400)
            self._next_id += 1
            document_id = str(self._next_id)
        self.add(
            document_id,
            content,
            version=1,
            title=title,
            parent_id=parent_id,
            space_id=space_id,
        )
        return CreatedDocument(id=document_id, version=1, title=title)

    def get_documents(self, document_ids: List[str]) -> BatchResult[RemoteDocument]:
        result: BatchResult[RemoteDocument] = BatchResult()
        for document_id in document_ids:
            try:
                result.successes.append(self.get_document(document_id))
            except RemoteError as e:
                result.failures[document_id] = str(e)
        return result

    def create_documents(
        self, drafts: List[DocumentDraft]
    ) -> BatchResult[CreatedDocument]:
        result: BatchResult[CreatedDocument] = BatchResult()
        for d in drafts:
            try:
                result.successes.append(
                    self.create_document(d.space_id, d.title, d.content, d.parent_id)
                )
            except RemoteError as e:
                result.failures[d.title] = str(e)
        return result

    def update_documents(
        self, updates: List[DocumentUpdate]
    ) -> BatchResult[UpdatedDocument]:
        result: BatchResult[UpdatedDocument] = BatchResult()
        for u in updates:
            try:
                result.successes.append(
                    self.update_document(u.id, u.content, u.expected_version, u.title)
                )
            except RemoteError as e:
                result.failures[u.id] = str(e)
        return result


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def files(tmp_path: Path) -> LocalFiles:
    return LocalFiles(tmp_path / "docs")


@pytest.fixture
def manifest(tmp_path: Path) -> ManifestStore:
    """An initialized, empty manifest."""
    store = ManifestStore(tmp_path / "docs" / ".pagesync.json")
    store.initialize("https://docs.example.com/wiki")
    return store


@pytest.fixture
def fake_remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def track(
    manifest: ManifestStore, files: LocalFiles, fake_remote: FakeRemote
) -> Callable[..., TrackedDocument]:
    """Factory: create a document synced on both sides.

    Writes the local file, adds the remote document, and records the
    baseline in the manifest.
    """

    def _track(
        document_id: str,
        content: str = "hello\n",
        version: int = 3,
        local_path: Optional[str] = None,
        title: Optional[str] = None,
        parent_id: Optional[str] = None,
        status: DocumentStatus = DocumentStatus.SYNCED,
    ) -> TrackedDocument:
        local_path = local_path or f"{document_id.lower()}.md"
        files.write_text(local_path, content)
        fake_remote.add(
            document_id,
            content,
            version=version,
            title=title or document_id,
            parent_id=parent_id,
        )
        doc = TrackedDocument(
            id=document_id,
            parent_id=parent_id,
            space_id="DOCS",
            title=title or document_id,
            version=version,
            content_hash=content_hash(content),
            remote_hash=content_hash(content),
            local_path=local_path,
            status=status,
        )
        manifest.upsert(doc)
        return doc

    return _track


@pytest.fixture
def make_engine(
    manifest: ManifestStore, files: LocalFiles, fake_remote: FakeRemote
) -> Callable[..., SyncEngine]:
    """Factory: a ``SyncEngine`` over the shared fixtures, no retry delay."""

    def _make(**options: Any) -> SyncEngine:
        on_state = options.pop("on_state", None)
        options.setdefault("retry_backoff", 0)
        options.setdefault("space_id", "DOCS")
        return SyncEngine(
            manifest=manifest,
            files=files,
            remote=fake_remote,
            options=options,
            on_state=on_state,
        )

    return _make
