"""Tests for sync report formatting."""

from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest

from pagesync.sync.models import (
    DocumentResult,
    PassState,
    SyncAction,
    SyncReport,
)
from pagesync.sync.reporter import (
    format_conflict,
    format_dry_run_preview,
    format_sync_report,
    report_to_json,
)

_START = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


def _result(document_id, path, action, **kwargs) -> DocumentResult:
    return DocumentResult(
        document_id=document_id, local_path=path, action=action, **kwargs
    )


@pytest.fixture
def report() -> SyncReport:
    return SyncReport(
        status=PassState.FAILED,
        buckets={
            "unchanged": ["1"],
            "local_only": ["2"],
            "remote_only": ["3"],
            "conflicted": ["4"],
        },
        results=[
            _result("2", "guide.md", SyncAction.PUSH, version=6),
            _result("3", "setup.md", SyncAction.PULL, version=2),
            _result("4", "faq.md", SyncAction.CONFLICT),
            _result(
                "5", "broken.md", SyncAction.SKIP, success=False, error="remote fetch failed"
            ),
        ],
        started_at=_START,
        completed_at=_START,
    )


class TestSyncReport:
    """Text report after a pass."""

    def test_header_and_counts(self, report):
        text = format_sync_report(report)
        assert text.startswith("Sync report: failed")
        assert "Classified: 1 unchanged, 1 local-only, 1 remote-only, 1 conflicted" in text
        assert "1 pushed, 1 pulled, 0 resolved, 1 conflicts, 1 errors" in text

    def test_sections(self, report):
        text = format_sync_report(report)
        assert "Pushed:\n  guide.md [2] v6" in text
        assert "Pulled:\n  setup.md [3] v2" in text
        assert "  faq.md [4]: changed locally and remotely" in text
        assert "  broken.md [5]: remote fetch failed" in text
        assert "Resolved:" not in text

    def test_dry_run_header(self):
        text = format_sync_report(SyncReport(dry_run=True))
        assert text.startswith("Sync report (DRY RUN): completed")

    def test_summary(self, report):
        summary = report.summary()
        assert "Sync pass: failed" in summary
        assert "Errors:    1" in summary


class TestDryRunPreview:
    """Grouped intended actions."""

    def test_groups_in_display_order(self, report):
        text = format_dry_run_preview(report)
        assert text.index("[PUSH]") < text.index("[PULL]") < text.index("[CONFLICT]")
        assert "Unchanged: 1 documents" in text
        assert "[SKIP]" not in text

    def test_nothing_to_do(self):
        text = format_dry_run_preview(SyncReport(buckets={"unchanged": ["1"]}))
        assert text.endswith("No changes needed.")

    def test_create_actions_labelled(self):
        report = SyncReport(
            results=[_result("dry-run:a.md", "a.md", SyncAction.CREATE_REMOTE)]
        )
        assert "[CREATE REMOTE]" in format_dry_run_preview(report)


class TestConflictAndJson:
    def test_format_conflict(self):
        text = format_conflict("faq.md", "a\nmine\n", "a\ntheirs\n")
        assert text.startswith("Conflict: faq.md")
        assert "--- local: faq.md" in text
        assert "+theirs" in text

    def test_format_conflict_identical(self):
        assert "(no textual differences)" in format_conflict("x.md", "a", "a")

    def test_report_to_json(self, report):
        data = report_to_json(report)
        json.dumps(data)
        assert data["status"] == "failed"
        assert data["buckets"]["conflicted"] == 1
        assert data["counts"] == {
            "total": 4,
            "pushed": 1,
            "pulled": 1,
            "resolved": 0,
            "conflicts": 1,
            "errors": 1,
        }
        assert data["results"][0] == {
            "document_id": "2",
            "local_path": "guide.md",
            "action": "push",
            "success": True,
            "version": 6,
        }
        assert data["results"][3]["error"] == "remote fetch failed"
