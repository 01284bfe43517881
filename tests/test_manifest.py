"""Tests for the manifest store: persistence, migrations and hashing."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from pagesync.errors import (
    ManifestCorruptError,
    ManifestError,
    ManifestNotFoundError,
)
from pagesync.sync.manifest import (
    CURRENT_SCHEMA_VERSION,
    ManifestStore,
    content_hash,
)
from pagesync.sync.models import (
    DocumentStatus,
    ResolutionStrategy,
    TrackedDocument,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_doc(document_id: str = "42", **overrides) -> TrackedDocument:
    defaults = {
        "id": document_id,
        "title": f"Doc {document_id}",
        "version": 1,
        "content_hash": content_hash("body"),
        "local_path": f"doc-{document_id}.md",
    }
    defaults.update(overrides)
    return TrackedDocument(**defaults)


def _write_json(path: Path, data) -> None:
    path.write_text(json.dumps(data), encoding="utf-8")


# ---------------------------------------------------------------------------
# content_hash
# ---------------------------------------------------------------------------


class TestContentHash:
    """Normalised content hashing."""

    def test_crlf_and_lf_equal(self):
        assert content_hash("a\r\nb\r\n") == content_hash("a\nb\n")

    def test_bom_ignored(self):
        assert content_hash("﻿hello") == content_hash("hello")

    def test_trailing_whitespace_ignored(self):
        assert content_hash("a  \nb\t\n\n\n") == content_hash("a\nb")

    def test_bytes_and_str_equal(self):
        assert content_hash("héllo".encode("utf-8")) == content_hash("héllo")

    def test_different_content_differs(self):
        assert content_hash("a") != content_hash("b")


# ---------------------------------------------------------------------------
# Load / initialize / save
# ---------------------------------------------------------------------------


class TestPersistence:
    """Loading, initializing and saving the manifest file."""

    def test_missing_file_is_not_found(self, tmp_path):
        store = ManifestStore(tmp_path / "m.json")
        with pytest.raises(ManifestNotFoundError):
            store.load()

    def test_not_found_is_manifest_error(self, tmp_path):
        with pytest.raises(ManifestError):
            ManifestStore(tmp_path / "m.json").load()

    def test_invalid_json_is_corrupt(self, tmp_path):
        path = tmp_path / "m.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(ManifestCorruptError):
            ManifestStore(path).load()

    def test_non_object_is_corrupt(self, tmp_path):
        path = tmp_path / "m.json"
        _write_json(path, [1, 2, 3])
        with pytest.raises(ManifestCorruptError):
            ManifestStore(path).load()

    def test_schema_violation_is_corrupt(self, tmp_path):
        path = tmp_path / "m.json"
        _write_json(
            path,
            {"schema_version": 2, "documents": [{"id": "1", "version": -1}]},
        )
        with pytest.raises(ManifestCorruptError):
            ManifestStore(path).load()

    def test_duplicate_ids_are_corrupt(self, tmp_path):
        path = tmp_path / "m.json"
        doc = _make_doc("1").model_dump(mode="json")
        _write_json(path, {"schema_version": 2, "documents": [doc, doc]})
        with pytest.raises(ManifestCorruptError, match="duplicate"):
            ManifestStore(path).load()

    def test_newer_schema_is_corrupt(self, tmp_path):
        path = tmp_path / "m.json"
        _write_json(path, {"schema_version": CURRENT_SCHEMA_VERSION + 1})
        with pytest.raises(ManifestCorruptError, match="newer"):
            ManifestStore(path).load()

    def test_initialize_creates_empty_manifest(self, tmp_path):
        path = tmp_path / "sub" / "m.json"
        store = ManifestStore(path)
        store.initialize("https://example.com")

        data = json.loads(path.read_text())
        assert data["schema_version"] == CURRENT_SCHEMA_VERSION
        assert data["remote_base_url"] == "https://example.com"
        assert data["documents"] == []

    def test_initialize_refuses_existing(self, tmp_path):
        store = ManifestStore(tmp_path / "m.json")
        store.initialize()
        with pytest.raises(ManifestError):
            ManifestStore(tmp_path / "m.json").initialize()

    def test_accessors_require_load(self, tmp_path):
        with pytest.raises(ManifestError):
            ManifestStore(tmp_path / "m.json").get("1")

    def test_round_trip(self, tmp_path):
        path = tmp_path / "m.json"
        store = ManifestStore(path)
        store.initialize()
        store.upsert(_make_doc("1", parent_id=None))
        store.upsert(_make_doc("2", parent_id="1"))

        reloaded = ManifestStore(path)
        reloaded.load()
        assert set(reloaded.get_all()) == {"1", "2"}
        assert reloaded.get("2").parent_id == "1"
        assert reloaded.get("1") == store.get("1")

    def test_file_is_indented_json(self, tmp_path):
        path = tmp_path / "m.json"
        store = ManifestStore(path)
        store.initialize()
        store.upsert(_make_doc("1"))
        assert "\n  " in path.read_text()

    def test_save_leaves_no_temp_files(self, tmp_path):
        store = ManifestStore(tmp_path / "m.json")
        store.initialize()
        store.upsert(_make_doc("1"))
        store.save()
        assert [p.name for p in tmp_path.iterdir()] == ["m.json"]


# ---------------------------------------------------------------------------
# Queries and mutations
# ---------------------------------------------------------------------------


class TestMutations:
    """upsert / remove / queries."""

    @pytest.fixture
    def store(self, tmp_path) -> ManifestStore:
        s = ManifestStore(tmp_path / "m.json")
        s.initialize()
        return s

    def test_upsert_replaces_by_id(self, store):
        store.upsert(_make_doc("1", version=1))
        store.upsert(_make_doc("1", version=2, title="Renamed"))
        assert len(store.get_all()) == 1
        assert store.get("1").title == "Renamed"

    def test_version_never_decreases(self, store):
        store.upsert(_make_doc("1", version=5))
        with pytest.raises(ManifestError, match="back to 4"):
            store.upsert(_make_doc("1", version=4))
        assert store.get("1").version == 5

    def test_remove(self, store):
        store.upsert(_make_doc("1"))
        assert store.remove("1") is True
        assert store.get("1") is None
        assert store.remove("1") is False

    def test_get_by_path(self, store):
        store.upsert(_make_doc("1", local_path="a/b.md"))
        assert store.get_by_path("a/b.md").id == "1"
        assert store.get_by_path("missing.md") is None

    def test_conflicted_sorted_by_path(self, store):
        store.upsert(_make_doc("1", local_path="z.md", status=DocumentStatus.CONFLICTED))
        store.upsert(_make_doc("2", local_path="a.md", status=DocumentStatus.CONFLICTED))
        store.upsert(_make_doc("3", local_path="m.md"))
        assert [d.id for d in store.conflicted()] == ["2", "1"]

    def test_upsert_persists_immediately(self, store):
        store.upsert(_make_doc("1"))
        data = json.loads(store.path.read_text())
        assert [d["id"] for d in data["documents"]] == ["1"]
        assert data["last_sync_time"] is not None


# ---------------------------------------------------------------------------
# Migrations
# ---------------------------------------------------------------------------


class TestMigration:
    """Upgrading the v1 layout."""

    V1 = {
        "version": "1.0.0",
        "confluenceUrl": "https://old.example.com",
        "lastSyncTime": "2025-01-01T00:00:00Z",
        "pages": [
            [
                "100",
                {
                    "id": "100",
                    "spaceKey": "ENG",
                    "title": "Home",
                    "version": 7,
                    "parentId": None,
                    "lastModified": "2025-01-01T00:00:00Z",
                    "localPath": "home/_index.md",
                    "contentHash": "abc",
                    "remoteHash": "def",
                    "status": "synced",
                    "resolutionHistory": [
                        {
                            "timestamp": "2025-01-01T00:00:00Z",
                            "strategy": "local-first",
                            "previousLocalHash": "abc",
                            "previousRemoteHash": "def",
                        }
                    ],
                },
            ]
        ],
    }

    def test_v1_migrated(self, tmp_path):
        path = tmp_path / "m.json"
        _write_json(path, self.V1)

        store = ManifestStore(path)
        store.load()

        doc = store.get("100")
        assert doc.space_id == "ENG"
        assert doc.version == 7
        assert doc.local_path == "home/_index.md"
        assert doc.remote_hash == "def"
        assert doc.resolution_history[0].strategy == ResolutionStrategy.LOCAL_WINS
        assert store.remote_base_url == "https://old.example.com"

    def test_migration_written_back(self, tmp_path):
        path = tmp_path / "m.json"
        _write_json(path, self.V1)
        ManifestStore(path).load()

        data = json.loads(path.read_text())
        assert data["schema_version"] == CURRENT_SCHEMA_VERSION
        assert "pages" not in data
        assert data["documents"][0]["id"] == "100"
