"""Tests for conflict resolution strategies and resolution history."""

from __future__ import annotations

import pytest

from pagesync.errors import ConflictError
from pagesync.sync.manifest import content_hash
from pagesync.sync.models import DocumentStatus, ResolutionStrategy
from pagesync.sync.resolver import (
    ConflictResolver,
    format_diff,
    generate_conflict_markers,
    has_conflict_markers,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@pytest.fixture
def resolver(manifest, files) -> ConflictResolver:
    return ConflictResolver(manifest, files)


@pytest.fixture
def conflicted(track, files, fake_remote, resolver):
    """Document P changed on both sides and flagged."""
    doc = track("P", "base\n", version=3)
    files.write_text("p.md", "mine\n")
    fake_remote.edit("P", "theirs\n")
    return resolver.mark_conflicted(
        doc, content_hash("mine\n"), content_hash("theirs\n"), 4
    )


# ---------------------------------------------------------------------------
# Markers and diff
# ---------------------------------------------------------------------------


class TestMarkers:
    """Conflict marker helpers."""

    def test_layout(self):
        text = generate_conflict_markers("mine\n", "theirs\n")
        assert text == (
            "<<<<<<< LOCAL\nmine\n=======\ntheirs\n>>>>>>> REMOTE\n"
        )

    def test_detection(self):
        assert has_conflict_markers(generate_conflict_markers("a", "b"))
        assert not has_conflict_markers("# Title\n\n==== not a marker\n")

    def test_format_diff(self):
        diff = format_diff("a\nb\n", "a\nc\n")
        assert "--- LOCAL" in diff
        assert "+++ REMOTE" in diff
        assert "-b" in diff and "+c" in diff

    def test_format_diff_identical_is_empty(self):
        assert format_diff("same\n", "same\n") == ""


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


class TestResolve:
    """resolve() for each strategy."""

    def test_mark_conflicted_records_snapshot(self, conflicted, manifest):
        entry = manifest.get("P")
        assert entry.status == DocumentStatus.CONFLICTED
        assert entry.conflict.local_hash == content_hash("mine\n")
        assert entry.conflict.remote_version == 4
        assert entry.content_hash == content_hash("base\n")

    def test_manual_writes_markers(self, conflicted, resolver, files, manifest):
        updated = resolver.resolve(
            "P", "manual", local_content="mine\n", remote_content="theirs\n"
        )

        assert updated.status == DocumentStatus.CONFLICTED
        assert has_conflict_markers(files.read_text("p.md"))
        [backup] = files.list_backups("p.md")
        assert files.read_text(backup) == "mine\n"
        assert manifest.get("P").resolution_history == []

    def test_local_wins_keeps_file(self, conflicted, resolver, files, manifest):
        updated = resolver.resolve(
            "P",
            ResolutionStrategy.LOCAL_WINS,
            local_content="mine\n",
            remote_content="theirs\n",
        )

        assert files.read_text("p.md") == "mine\n"
        assert updated.status == DocumentStatus.SYNCED
        assert updated.content_hash == content_hash("mine\n")
        assert updated.version == 3
        assert updated.conflict is None
        [record] = updated.resolution_history
        assert record.strategy == ResolutionStrategy.LOCAL_WINS
        assert record.previous_local_hash == content_hash("mine\n")
        assert record.previous_remote_hash == content_hash("theirs\n")
        assert len(files.list_backups("p.md")) == 1

    def test_local_wins_uses_snapshot_remote_hash(self, conflicted, resolver):
        updated = resolver.resolve("P", "local-wins", local_content="mine\n")
        assert updated.resolution_history[0].previous_remote_hash == content_hash(
            "theirs\n"
        )

    def test_remote_wins_overwrites(self, conflicted, resolver, files):
        updated = resolver.resolve(
            "P", "remote-wins", remote_content="theirs\n", remote_version=4
        )

        assert files.read_text("p.md") == "theirs\n"
        assert updated.version == 4
        assert updated.content_hash == content_hash("theirs\n")
        assert updated.status == DocumentStatus.SYNCED
        [backup] = files.list_backups("p.md")
        assert files.read_text(backup) == "mine\n"

    def test_remote_wins_version_from_snapshot(self, conflicted, resolver):
        updated = resolver.resolve("P", "remote-wins", remote_content="theirs\n")
        assert updated.version == 4

    @pytest.mark.parametrize(
        "strategy, kwargs, missing",
        [
            ("manual", {"remote_content": "x"}, "local_content"),
            ("manual", {"local_content": "x"}, "remote_content"),
            ("local-wins", {}, "local_content"),
            ("remote-wins", {}, "remote_content"),
        ],
    )
    def test_missing_content(self, conflicted, resolver, strategy, kwargs, missing):
        with pytest.raises(ConflictError, match=missing):
            resolver.resolve("P", strategy, **kwargs)

    def test_unknown_strategy(self, conflicted, resolver):
        with pytest.raises(ConflictError, match="merge-both"):
            resolver.resolve("P", "merge-both", local_content="x")

    def test_untracked_document(self, resolver):
        with pytest.raises(ConflictError, match="not tracked"):
            resolver.resolve("nope", "local-wins", local_content="x")

    def test_history_bounded(self, track, files, manifest):
        track("P", "base\n")
        resolver = ConflictResolver(manifest, files, history_limit=3)
        for i in range(5):
            resolver.resolve("P", "local-wins", local_content=f"v{i}\n", remote_content="r\n")

        history = manifest.get("P").resolution_history
        assert len(history) == 3
        assert history[-1].previous_local_hash == content_hash("v4\n")


# ---------------------------------------------------------------------------
# History queries and finalize
# ---------------------------------------------------------------------------


class TestHistory:
    """Suppression of already-resolved divergences."""

    def test_is_previously_resolved(self, conflicted, resolver):
        mine, theirs = content_hash("mine\n"), content_hash("theirs\n")
        assert not resolver.is_previously_resolved("P", mine, theirs)

        resolver.resolve("P", "local-wins", local_content="mine\n", remote_content="theirs\n")

        assert resolver.is_previously_resolved("P", mine, theirs)
        assert not resolver.is_previously_resolved("P", mine, content_hash("other"))
        assert not resolver.is_previously_resolved("P", None, theirs)
        assert resolver.find_resolution("P", mine, theirs).strategy == (
            ResolutionStrategy.LOCAL_WINS
        )

    def test_pending_local_resolution(self, conflicted, resolver, manifest):
        mine = content_hash("mine\n")
        assert resolver.pending_local_resolution("P", mine) is None

        resolver.resolve("P", "local-wins", local_content="mine\n", remote_content="theirs\n")

        record = resolver.pending_local_resolution("P", mine)
        assert record.strategy == ResolutionStrategy.LOCAL_WINS
        assert resolver.pending_local_resolution("P", content_hash("other\n")) is None

        manifest.upsert(manifest.get("P").model_copy(update={"remote_hash": mine}))
        assert resolver.pending_local_resolution("P", mine) is None

    def test_remote_wins_is_never_pending(self, conflicted, resolver):
        resolver.resolve("P", "remote-wins", remote_content="theirs\n")
        theirs = content_hash("theirs\n")
        assert resolver.pending_local_resolution("P", theirs) is None


class TestFinalize:
    """Completing a manual resolution."""

    def test_rejects_remaining_markers(self, conflicted, resolver):
        resolver.resolve("P", "manual", local_content="mine\n", remote_content="theirs\n")
        with pytest.raises(ConflictError, match="conflict markers"):
            resolver.finalize("P")

    def test_accepts_edited_file(self, conflicted, resolver, files, manifest):
        resolver.resolve("P", "manual", local_content="mine\n", remote_content="theirs\n")
        files.write_text("p.md", "merged\n")

        updated = resolver.finalize("P")

        assert updated.status == DocumentStatus.SYNCED
        assert updated.content_hash == content_hash("merged\n")
        assert updated.conflict is None
        [record] = manifest.get("P").resolution_history
        assert record.strategy == ResolutionStrategy.MANUAL
        assert record.previous_local_hash == content_hash("merged\n")
        assert record.previous_remote_hash == content_hash("theirs\n")

    def test_not_conflicted(self, track, resolver):
        track("P")
        with pytest.raises(ConflictError, match="not conflicted"):
            resolver.finalize("P")
