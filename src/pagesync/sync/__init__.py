"""Bidirectional document sync core.

Public API for keeping a hierarchical remote document store and a local
directory of plain-text files consistent in both directions.

Architecture
------------
Every tracked document has a baseline in the manifest: the remote
version and the local content hash recorded at the last successful sync.
Each pass compares both sides against that baseline (three-way), so a
change is attributed to the side that made it and a document changed on
both sides is flagged instead of overwritten.

Modules:

- ``engine``    -- ``SyncEngine``: orchestrates a pass, bulk push/pull.
- ``manifest``  -- ``ManifestStore``: load/save/query the JSON manifest.
- ``detector``  -- ``classify``/``ChangeDetector``: three-way classification.
- ``hierarchy`` -- ``HierarchyMapper``: document tree <-> local paths.
- ``resolver``  -- ``ConflictResolver``: manual, local-wins, remote-wins.
- ``models``    -- data contracts.
- ``reporter``  -- human-readable and JSON report formatting.
- ``watcher``   -- debounce local changes into sync passes.

Usage example
-------------
::

    import asyncio
    from pagesync.config_loader import load_config
    from pagesync.sync import SyncEngine, format_sync_report

    engine = SyncEngine.from_config(load_config())

    # Dry-run first to preview changes
    preview = asyncio.run(engine.run(dry_run=True))
    print(format_sync_report(preview))

    report = asyncio.run(engine.run(strategy="remote-wins"))
    print(format_sync_report(report))
"""

from .detector import ChangeDetector, classify
from .engine import SyncEngine, SyncOptions
from .hierarchy import HierarchyMapper
from .manifest import ManifestStore, content_hash
from .models import (
    ChangeState,
    DocumentStatus,
    ResolutionStrategy,
    SyncAction,
    SyncReport,
    TrackedDocument,
)
from .reporter import (
    format_dry_run_preview,
    format_sync_report,
    report_to_json,
)
from .resolver import ConflictResolver

__all__ = [
    "ChangeDetector",
    "ChangeState",
    "ConflictResolver",
    "DocumentStatus",
    "HierarchyMapper",
    "ManifestStore",
    "ResolutionStrategy",
    "SyncAction",
    "SyncEngine",
    "SyncOptions",
    "SyncReport",
    "TrackedDocument",
    "classify",
    "content_hash",
    "format_dry_run_preview",
    "format_sync_report",
    "report_to_json",
]
