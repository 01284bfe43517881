"""Sync report formatting functions.

- ``format_sync_report`` -- post-pass summary with per-document sections.
- ``format_dry_run_preview`` -- intended actions grouped by action.
- ``format_conflict`` -- a conflicted document with its unified diff.
- ``report_to_json`` -- structured dict for machine-readable output.
"""

from __future__ import annotations

from collections import defaultdict
from typing import TYPE_CHECKING, Any

from .models import SyncAction
from .resolver import format_diff

if TYPE_CHECKING:
    from .models import DocumentResult, SyncReport


def _describe(r: DocumentResult) -> str:
    label = r.local_path or "(no path)"
    if r.document_id:
        label += f" [{r.document_id}]"
    if r.version is not None:
        label += f" v{r.version}"
    return label


# ------------------------------------------------------------------
# Human-readable report
# ------------------------------------------------------------------


def format_sync_report(report: SyncReport) -> str:
    """Format a completed pass as human-readable text.

    Sections are only included when they contain at least one result.
    """
    lines: list[str] = []

    header = "Sync report"
    if report.dry_run:
        header += " (DRY RUN)"
    lines.append(f"{header}: {report.status.value}")
    lines.append(f"Started: {report.started_at.isoformat()}")
    if report.completed_at:
        lines.append(f"Completed: {report.completed_at.isoformat()}")
    lines.append("")

    if report.buckets:
        lines.append(
            "Classified: "
            + ", ".join(
                f"{count} {name.replace('_', '-')}"
                for name, count in report.counts.items()
            )
        )
    lines.append(
        f"{len(report.pushed)} pushed, {len(report.pulled)} pulled, "
        f"{len(report.resolved)} resolved, {len(report.conflicts)} conflicts, "
        f"{len(report.errors)} errors"
    )
    lines.append("")

    sections = [
        ("Pushed:", report.pushed),
        ("Pulled:", report.pulled),
        ("Resolved:", report.resolved),
    ]
    for title, results in sections:
        if results:
            lines.append(title)
            lines.extend(f"  {_describe(r)}" for r in results)
            lines.append("")

    if report.conflicts:
        lines.append("Conflicts:")
        for r in report.conflicts:
            desc = r.error or "changed locally and remotely"
            lines.append(f"  {_describe(r)}: {desc}")
        lines.append("")

    if report.errors:
        lines.append("Errors:")
        for r in report.errors:
            lines.append(f"  {_describe(r)}: {r.error}")
        lines.append("")

    return "\n".join(lines).rstrip()


# ------------------------------------------------------------------
# Dry-run preview
# ------------------------------------------------------------------


def format_dry_run_preview(report: SyncReport) -> str:
    """List the intended actions of a dry run, grouped by action."""
    lines = ["DRY RUN -- No changes will be made", ""]

    groups: dict[SyncAction, list[DocumentResult]] = defaultdict(list)
    for r in report.results:
        groups[r.action].append(r)

    display_order = [
        SyncAction.PUSH,
        SyncAction.PULL,
        SyncAction.CREATE_REMOTE,
        SyncAction.CREATE_LOCAL,
        SyncAction.RESOLVE,
        SyncAction.CONFLICT,
    ]
    for action in display_order:
        if action not in groups:
            continue
        lines.append(f"[{action.value.upper().replace('_', ' ')}]")
        lines.extend(f"  {_describe(r)}" for r in groups[action])
        lines.append("")

    unchanged = report.counts.get("unchanged", 0)
    if unchanged:
        lines.append(f"Unchanged: {unchanged} documents")
        lines.append("")

    if not any(a != SyncAction.SKIP for a in groups):
        lines.append("No changes needed.")

    return "\n".join(lines).rstrip()


# ------------------------------------------------------------------
# Conflict detail
# ------------------------------------------------------------------


def format_conflict(
    local_path: str, local_content: str, remote_content: str
) -> str:
    """Show one conflicted document as a unified diff."""
    diff_text = format_diff(
        local_content,
        remote_content,
        local_label=f"local: {local_path}",
        remote_label=f"remote: {local_path}",
    )
    lines = [f"Conflict: {local_path}", ""]
    lines.append(diff_text.rstrip() or "(no textual differences)")
    return "\n".join(lines)


# ------------------------------------------------------------------
# JSON output
# ------------------------------------------------------------------


def report_to_json(report: SyncReport) -> dict[str, Any]:
    """Convert a report to a JSON-serialisable dict."""
    results_list = []
    for r in report.results:
        entry: dict[str, Any] = {
            "document_id": r.document_id,
            "local_path": r.local_path,
            "action": r.action.value,
            "success": r.success,
        }
        if r.version is not None:
            entry["version"] = r.version
        if r.error:
            entry["error"] = r.error
        results_list.append(entry)

    return {
        "dry_run": report.dry_run,
        "status": report.status.value,
        "started_at": report.started_at.isoformat(),
        "completed_at": (
            report.completed_at.isoformat() if report.completed_at else None
        ),
        "buckets": report.counts,
        "counts": {
            "total": len(report.results),
            "pushed": len(report.pushed),
            "pulled": len(report.pulled),
            "resolved": len(report.resolved),
            "conflicts": len(report.conflicts),
            "errors": len(report.errors),
        },
        "results": results_list,
    }
