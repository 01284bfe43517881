"""Core sync engine that orchestrates a full bidirectional sync pass.

The ``SyncEngine`` ties together the manifest, change detector, hierarchy
mapper and conflict resolver.  A pass:

1. Loads the manifest (a ``ManifestError`` aborts the pass).
2. Classifies every in-scope tracked document concurrently.
3. Partitions the results into ``unchanged``, ``local_only``,
   ``remote_only`` and ``conflicted`` buckets.
4. Pushes local-only documents and pulls remote-only documents under a
   shared concurrency limit, retrying transfers with backoff.
5. Flags or resolves conflicts.
6. Builds and returns a ``SyncReport``.

Error handling is per-document: a single failure does not abort the pass.
A dry run computes the same buckets and intended actions without any
remote mutation, local write or manifest update.

``push_tree()`` and ``pull_tree()`` bulk-create untracked documents in
depth order so every parent exists before its children.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path, PurePosixPath
from typing import Any, Callable, Sequence

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from pagesync.config_schema import PageSyncConfig
from pagesync.core.async_utils import retry_async, run_sync_limited
from pagesync.core.client import (
    CreatedDocument,
    HttpContentClient,
    RemoteClient,
    RemoteDocument,
)
from pagesync.errors import (
    ConflictError,
    ManifestError,
    RemoteError,
    RemoteNotFoundError,
    TransferError,
    ValidationError,
    VersionMismatchError,
)
from pagesync.file_handler import LocalFiles
from pagesync.sync.detector import ChangeDetector
from pagesync.sync.hierarchy import HierarchyMapper
from pagesync.sync.manifest import ManifestStore, content_hash
from pagesync.sync.models import (
    ChangeDetectionResult,
    ChangeState,
    DocumentResult,
    DocumentStatus,
    PassState,
    ResolutionStrategy,
    SyncAction,
    SyncReport,
    TrackedDocument,
    utcnow,
)
from pagesync.sync.resolver import ConflictResolver, has_conflict_markers

logger = logging.getLogger(__name__)

Converter = Callable[[str], str]
StateCallback = Callable[[PassState, PassState], None]

BUCKETS = ("unchanged", "local_only", "remote_only", "conflicted")

_PUSH_DIRECTION = (ResolutionStrategy.LOCAL_WINS, ResolutionStrategy.MANUAL)


def _identity(text: str) -> str:
    return text


class SyncOptions(BaseModel):
    """Tunables for one engine.

    Attributes:
        concurrency_limit: Maximum simultaneous remote/file operations.
        retry_attempts: Attempts per transfer before it is recorded failed.
        retry_backoff: Delay before the first retry, doubled each time.
        space_id: Remote space used when creating documents.
        conflict_strategy: Strategy used when ``run()`` is given none;
            ``None`` only flags conflicts.
    """

    concurrency_limit: int = Field(default=5, ge=1, le=100)
    retry_attempts: int = Field(default=3, ge=1, le=10)
    retry_backoff: float = Field(default=0.5, ge=0)
    space_id: str | None = None
    conflict_strategy: ResolutionStrategy | None = None

    model_config = {"frozen": True}


def build_options(options: SyncOptions | dict[str, Any] | None) -> SyncOptions:
    """Validate engine options.

    Raises:
        ValidationError: Any option is out of range.
    """
    if isinstance(options, SyncOptions):
        return options
    try:
        return SyncOptions(**(options or {}))
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid sync options: {e}") from e


class SyncEngine:
    """Orchestrate sync passes over one manifest.

    Args:
        manifest: Manifest store for the sync root.
        files: Local file collaborator rooted at the sync directory.
        remote: Remote content client.
        detector: Change detector (built from ``files``/``remote`` if omitted).
        resolver: Conflict resolver (built from ``manifest``/``files`` if
            omitted).
        hierarchy: Hierarchy mapper.
        to_local: Remote storage format -> local text converter.
        to_remote: Local text -> remote storage format converter.
        options: ``SyncOptions`` or a mapping validated into one.
        on_state: Called with ``(old, new)`` on every pass state change.
    """

    def __init__(
        self,
        manifest: ManifestStore,
        files: LocalFiles,
        remote: RemoteClient,
        detector: ChangeDetector | None = None,
        resolver: ConflictResolver | None = None,
        hierarchy: HierarchyMapper | None = None,
        to_local: Converter | None = None,
        to_remote: Converter | None = None,
        options: SyncOptions | dict[str, Any] | None = None,
        on_state: StateCallback | None = None,
    ) -> None:
        self.options = build_options(options)
        self.manifest = manifest
        self.files = files
        self.remote = remote
        self.to_local = to_local or _identity
        self.to_remote = to_remote or _identity
        self.detector = detector or ChangeDetector(files, remote, self.to_local)
        self.resolver = resolver or ConflictResolver(manifest, files)
        self.hierarchy = hierarchy or HierarchyMapper()
        self.on_state = on_state
        self.state = PassState.IDLE
        self._pass_lock = asyncio.Lock()

    @classmethod
    def from_config(
        cls,
        config: PageSyncConfig,
        remote: RemoteClient | None = None,
        to_local: Converter | None = None,
        to_remote: Converter | None = None,
        on_state: StateCallback | None = None,
    ) -> "SyncEngine":
        """Wire an engine from a loaded ``PageSyncConfig``."""
        sync = config.sync
        root = Path(sync.sync_root)
        files = LocalFiles(root)
        manifest = ManifestStore(root / sync.manifest_path)
        return cls(
            manifest=manifest,
            files=files,
            remote=remote or HttpContentClient.from_config(config.remote),
            resolver=ConflictResolver(
                manifest, files, history_limit=sync.history_limit
            ),
            hierarchy=HierarchyMapper(
                index_filename=sync.index_filename,
                extension=sync.extension,
                max_name_length=sync.max_name_length,
            ),
            to_local=to_local,
            to_remote=to_remote,
            options=SyncOptions(
                concurrency_limit=sync.concurrency_limit,
                retry_attempts=sync.retry_attempts,
                retry_backoff=sync.retry_backoff,
                space_id=config.remote.space_id,
                conflict_strategy=sync.conflict_strategy,
            ),
            on_state=on_state,
        )

    # ------------------------------------------------------------------
    # Pass state
    # ------------------------------------------------------------------

    def _transition(self, new: PassState) -> None:
        old = self.state
        self.state = new
        logger.debug("Sync pass: %s -> %s", old.value, new.value)
        if self.on_state is not None:
            self.on_state(old, new)

    # ------------------------------------------------------------------
    # Main entry point
    # ------------------------------------------------------------------

    async def run(
        self,
        dry_run: bool = False,
        strategy: ResolutionStrategy | str | None = None,
        document_ids: Sequence[str] | None = None,
    ) -> SyncReport:
        """Execute one full sync pass.

        Args:
            dry_run: Compute buckets and intended actions only.
            strategy: Resolve conflicts with this strategy.  Defaults to
                ``options.conflict_strategy``; ``None`` only flags them.
            document_ids: Restrict the pass to these tracked documents.

        Returns:
            A ``SyncReport`` summarising what was (or would be) done.

        Raises:
            ValidationError: Unknown strategy.
            ManifestError: The manifest cannot be loaded.
        """
        if strategy is None:
            strategy = self.options.conflict_strategy
        if strategy is not None:
            try:
                strategy = ResolutionStrategy(strategy)
            except ValueError:
                raise ValidationError(
                    f"Unknown conflict strategy: {strategy!r}"
                ) from None

        async with self._pass_lock:
            self.state = PassState.IDLE
            try:
                return await self._run(dry_run, strategy, document_ids)
            finally:
                self.state = PassState.IDLE

    async def _run(
        self,
        dry_run: bool,
        strategy: ResolutionStrategy | None,
        document_ids: Sequence[str] | None,
    ) -> SyncReport:
        started_at = utcnow()
        results: list[DocumentResult] = []
        buckets: dict[str, list[str]] = {name: [] for name in BUCKETS}
        semaphore = asyncio.Semaphore(self.options.concurrency_limit)

        # Step 1: Load manifest
        self._transition(PassState.CLASSIFYING)
        try:
            self.manifest.load()
        except ManifestError as e:
            logger.error("Cannot start sync pass: %s", e)
            self._transition(PassState.FAILED)
            raise

        # Step 2: Classify
        tracked = self.manifest.get_all()
        if document_ids is None:
            in_scope = list(tracked.values())
        else:
            in_scope = []
            for document_id in document_ids:
                if document_id in tracked:
                    in_scope.append(tracked[document_id])
                else:
                    logger.error("Document %s is not tracked", document_id)
                    results.append(
                        DocumentResult(
                            document_id=document_id,
                            local_path="",
                            action=SyncAction.SKIP,
                            success=False,
                            error="not tracked",
                        )
                    )

        already_conflicted = [
            d for d in in_scope if d.status == DocumentStatus.CONFLICTED
        ]
        resolving = strategy is not None and strategy != ResolutionStrategy.MANUAL
        to_detect = [
            d
            for d in in_scope
            if d.status != DocumentStatus.CONFLICTED or resolving
        ]
        detected, detection_errors = await self.detector.detect_batch(
            to_detect, semaphore
        )
        for error in detection_errors:
            document = tracked[error.document_id]
            results.append(
                DocumentResult(
                    document_id=error.document_id,
                    local_path=document.local_path,
                    action=SyncAction.SKIP,
                    success=False,
                    error=str(error),
                )
            )
        failed_ids = {error.document_id for error in detection_errors}
        already_conflicted = [
            d for d in already_conflicted if d.id not in failed_ids
        ]

        # Step 3: Partition
        self._transition(PassState.PARTITIONING)
        by_id = {r.document_id: r for r in detected}
        pushes: list[tuple[TrackedDocument, ChangeDetectionResult]] = []
        pulls: list[tuple[TrackedDocument, ChangeDetectionResult]] = []
        conflicts: list[tuple[TrackedDocument, ChangeDetectionResult | None]] = []

        for document in already_conflicted:
            buckets["conflicted"].append(document.id)
            conflicts.append((document, by_id.pop(document.id, None)))

        for result in detected:
            if result.document_id not in by_id:
                continue
            document = tracked[result.document_id]
            bucket = self._partition(result)
            buckets[bucket].append(result.document_id)
            if bucket == "local_only":
                pushes.append((document, result))
            elif bucket == "remote_only":
                pulls.append((document, result))
            elif bucket == "conflicted":
                conflicts.append((document, result))

        logger.info(
            "Classified %d document(s): %s",
            len(in_scope),
            ", ".join(f"{k}={len(v)}" for k, v in buckets.items()),
        )

        # Step 4/5: Execute
        self._transition(PassState.EXECUTING)
        outcomes = await asyncio.gather(
            *(self._push(doc, r, semaphore, dry_run) for doc, r in pushes),
            *(self._pull(doc, r, semaphore, dry_run) for doc, r in pulls),
            *(
                self._handle_conflict(doc, r, strategy, semaphore, dry_run)
                for doc, r in conflicts
            ),
        )
        results.extend(outcomes)

        failed = any(not r.success for r in results)
        self._transition(PassState.FAILED if failed else PassState.COMPLETED)
        report = SyncReport(
            dry_run=dry_run,
            status=self.state,
            buckets=buckets,
            results=results,
            started_at=started_at,
            completed_at=utcnow(),
        )
        logger.info(
            "Sync pass %s: %d pushed, %d pulled, %d conflict(s), %d error(s)",
            report.status.value,
            len(report.pushed),
            len(report.pulled),
            len(report.conflicts),
            len(report.errors),
        )
        return report

    def _partition(self, result: ChangeDetectionResult) -> str:
        """Bucket for one classification, honouring stored resolutions."""
        if result.state == ChangeState.UNCHANGED:
            return "unchanged"

        if result.local_hash is None:
            # Nothing local to lose: re-materialise from the remote.
            logger.info(
                "%s: %s is missing locally, restoring from remote",
                result.document_id,
                result.local_path,
            )
            return "remote_only"

        if result.state == ChangeState.LOCAL_ONLY:
            return "local_only"

        record = self.resolver.find_resolution(
            result.document_id, result.local_hash, result.remote_hash
        )
        if record is not None:
            logger.debug(
                "%s: divergence already resolved (%s)",
                result.document_id,
                record.strategy.value,
            )
            if record.strategy in _PUSH_DIRECTION:
                return "local_only"
            return "remote_only"

        pending = self.resolver.pending_local_resolution(
            result.document_id, result.local_hash
        )
        if pending is not None:
            logger.warning(
                "%s: remote moved again after a %s resolution, flagging conflict",
                result.document_id,
                pending.strategy.value,
            )
            return "conflicted"

        if result.state == ChangeState.REMOTE_ONLY:
            return "remote_only"
        return "conflicted"

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------

    async def _with_retry(
        self, document_id: str, func: Callable[[], Any], description: str
    ) -> Any:
        """Retry *func* on transient failures, raising ``TransferError``."""
        try:
            return await retry_async(
                func,
                attempts=self.options.retry_attempts,
                initial_backoff=self.options.retry_backoff,
                retryable_exceptions=(RemoteError, OSError),
                giveup_exceptions=(VersionMismatchError, RemoteNotFoundError),
                description=description,
            )
        except VersionMismatchError:
            raise
        except RemoteNotFoundError as e:
            raise TransferError(document_id, str(e), attempts=1) from e
        except (RemoteError, OSError) as e:
            raise TransferError(
                document_id, str(e), attempts=self.options.retry_attempts
            ) from e

    def _push_blocking(
        self, document: TrackedDocument, observed_version: int
    ) -> tuple[int, str]:
        text = self.files.read_text(document.local_path)
        payload = self.to_remote(text)
        fresh = self.remote.get_document(document.id)
        if fresh.version != observed_version:
            raise VersionMismatchError(document.id, observed_version + 1)
        updated = self.remote.update_document(
            document.id, payload, fresh.version + 1, document.title
        )
        return updated.version, text

    async def _push(
        self,
        document: TrackedDocument,
        result: ChangeDetectionResult,
        semaphore: asyncio.Semaphore,
        dry_run: bool,
    ) -> DocumentResult:
        if dry_run:
            return DocumentResult(
                document_id=document.id,
                local_path=document.local_path,
                action=SyncAction.PUSH,
                version=result.remote_version + 1,
            )

        try:
            version, text = await self._with_retry(
                document.id,
                lambda: run_sync_limited(
                    semaphore,
                    self._push_blocking,
                    document,
                    result.remote_version,
                ),
                f"push {document.local_path}",
            )
        except VersionMismatchError:
            logger.warning(
                "%s changed remotely during push, flagging conflict",
                document.id,
            )
            self.resolver.mark_conflicted(
                document, result.local_hash, result.remote_hash, None
            )
            return DocumentResult(
                document_id=document.id,
                local_path=document.local_path,
                action=SyncAction.CONFLICT,
                error="remote changed during push",
            )
        except Exception as e:
            logger.error("Push failed for %s: %s", document.local_path, e)
            return DocumentResult(
                document_id=document.id,
                local_path=document.local_path,
                action=SyncAction.PUSH,
                success=False,
                error=str(e),
            )

        local_hash = content_hash(text)
        self.manifest.upsert(
            document.model_copy(
                update={
                    "version": version,
                    "content_hash": local_hash,
                    "remote_hash": local_hash,
                    "status": DocumentStatus.SYNCED,
                    "conflict": None,
                    "last_modified": utcnow(),
                }
            )
        )
        logger.info("Pushed %s (v%d)", document.local_path, version)
        return DocumentResult(
            document_id=document.id,
            local_path=document.local_path,
            action=SyncAction.PUSH,
            version=version,
        )

    def _write_local(self, local_path: str, content: str) -> None:
        self.files.backup(local_path)
        self.files.write_text(local_path, content)

    async def _pull(
        self,
        document: TrackedDocument,
        result: ChangeDetectionResult,
        semaphore: asyncio.Semaphore,
        dry_run: bool,
    ) -> DocumentResult:
        if dry_run:
            return DocumentResult(
                document_id=document.id,
                local_path=document.local_path,
                action=SyncAction.PULL,
                version=result.remote_version,
            )

        content = result.remote_content or ""
        try:
            await self._with_retry(
                document.id,
                lambda: run_sync_limited(
                    semaphore, self._write_local, document.local_path, content
                ),
                f"pull {document.local_path}",
            )
        except Exception as e:
            logger.error("Pull failed for %s: %s", document.local_path, e)
            return DocumentResult(
                document_id=document.id,
                local_path=document.local_path,
                action=SyncAction.PULL,
                success=False,
                error=str(e),
            )

        remote_hash = content_hash(content)
        self.manifest.upsert(
            document.model_copy(
                update={
                    "version": result.remote_version,
                    "title": result.remote_title or document.title,
                    "content_hash": remote_hash,
                    "remote_hash": remote_hash,
                    "status": DocumentStatus.SYNCED,
                    "conflict": None,
                    "last_modified": utcnow(),
                }
            )
        )
        logger.info(
            "Pulled %s (v%d)", document.local_path, result.remote_version
        )
        return DocumentResult(
            document_id=document.id,
            local_path=document.local_path,
            action=SyncAction.PULL,
            version=result.remote_version,
        )

    # ------------------------------------------------------------------
    # Conflicts
    # ------------------------------------------------------------------

    async def _handle_conflict(
        self,
        document: TrackedDocument,
        result: ChangeDetectionResult | None,
        strategy: ResolutionStrategy | None,
        semaphore: asyncio.Semaphore,
        dry_run: bool,
    ) -> DocumentResult:
        already = document.status == DocumentStatus.CONFLICTED
        base = {"document_id": document.id, "local_path": document.local_path}

        if (
            strategy is None
            or result is None
            or (strategy == ResolutionStrategy.MANUAL and already)
        ):
            if result is not None and not already and not dry_run:
                self.resolver.mark_conflicted(
                    document,
                    result.local_hash,
                    result.remote_hash,
                    result.remote_version,
                )
            return DocumentResult(
                **base, action=SyncAction.CONFLICT, error="unresolved conflict"
            )

        if dry_run:
            action = (
                SyncAction.CONFLICT
                if strategy == ResolutionStrategy.MANUAL
                else SyncAction.RESOLVE
            )
            return DocumentResult(**base, action=action, error=strategy.value)

        try:
            local_content = await run_sync_limited(
                semaphore, self.files.read_text, document.local_path
            )
            if strategy == ResolutionStrategy.LOCAL_WINS and has_conflict_markers(
                local_content
            ):
                raise ConflictError(
                    f"{document.local_path} contains conflict markers; "
                    "finalize or restore a backup first"
                )
            resolved = await run_sync_limited(
                semaphore,
                self.resolver.resolve,
                document.id,
                strategy,
                local_content,
                result.remote_content,
                result.remote_version,
            )
        except Exception as e:
            logger.error(
                "Conflict resolution failed for %s: %s", document.local_path, e
            )
            return DocumentResult(
                **base, action=SyncAction.RESOLVE, success=False, error=str(e)
            )

        if strategy == ResolutionStrategy.MANUAL:
            return DocumentResult(
                **base, action=SyncAction.CONFLICT, error="conflict markers written"
            )

        if strategy == ResolutionStrategy.LOCAL_WINS:
            pushed = await self._push(
                resolved, result, semaphore, dry_run=False
            )
            if not pushed.success or pushed.action != SyncAction.PUSH:
                return pushed
            return DocumentResult(
                **base, action=SyncAction.RESOLVE, version=pushed.version
            )

        return DocumentResult(
            **base, action=SyncAction.RESOLVE, version=resolved.version
        )

    # ------------------------------------------------------------------
    # Bulk creation
    # ------------------------------------------------------------------

    async def push_tree(
        self,
        root: str = "",
        space_id: str | None = None,
        parent_id: str | None = None,
        dry_run: bool = False,
    ) -> SyncReport:
        """Create remote documents for every untracked local file under *root*.

        Files are created in directory depth groups, index files first; a
        group finishes before the next starts.  Each file's parent is the
        document created (or already tracked) for its directory's index
        file, falling back to *parent_id* at the top level.

        Raises:
            ValidationError: No space id is available.
            ManifestError: The manifest cannot be loaded.
        """
        space = space_id or self.options.space_id
        if not space:
            raise ValidationError("A space id is required to create documents")

        async with self._pass_lock:
            started_at = utcnow()
            self.manifest.load()
            semaphore = asyncio.Semaphore(self.options.concurrency_limit)
            base_dir = PurePosixPath(root) if root not in ("", ".") else None

            candidates: list[str] = []
            for path in self.files.list_files(f"*.{self.hierarchy.extension}"):
                if base_dir is not None and base_dir not in PurePosixPath(path).parents:
                    continue
                if self.manifest.get_by_path(path) is None:
                    candidates.append(path)

            def _relative(path: str) -> str:
                if base_dir is None:
                    return path
                return PurePosixPath(path).relative_to(base_dir).as_posix()

            by_relative = {_relative(p): p for p in candidates}
            ids: dict[str, str] = {}
            failed: set[str] = set()
            results: list[DocumentResult] = []

            for depth, group in enumerate(
                self.hierarchy.local_depth_groups(by_relative)
            ):
                logger.info(
                    "Creating %d document(s) at depth %d", len(group), depth
                )
                jobs = {}
                for rel in group:
                    index = self.hierarchy.parent_index_path(rel)
                    if index is not None and index in failed:
                        logger.error(
                            "Skipping %s: parent %s was not created", rel, index
                        )
                        failed.add(rel)
                        results.append(
                            DocumentResult(
                                document_id="",
                                local_path=by_relative[rel],
                                action=SyncAction.CREATE_REMOTE,
                                success=False,
                                error=f"parent {index} was not created",
                            )
                        )
                        continue
                    jobs[rel] = self._create_remote(
                        by_relative[rel],
                        self._resolve_parent(index, base_dir, ids, parent_id),
                        space,
                        semaphore,
                        dry_run,
                    )
                outcomes = await asyncio.gather(*jobs.values())
                for rel, outcome in zip(jobs, outcomes):
                    results.append(outcome)
                    if outcome.success:
                        ids[rel] = outcome.document_id
                    else:
                        failed.add(rel)

            failed_any = any(not r.success for r in results)
            return SyncReport(
                dry_run=dry_run,
                status=PassState.FAILED if failed_any else PassState.COMPLETED,
                buckets={"created": [r.document_id for r in results if r.success]},
                results=results,
                started_at=started_at,
                completed_at=utcnow(),
            )

    def _resolve_parent(
        self,
        index: str | None,
        base_dir: PurePosixPath | None,
        ids: dict[str, str],
        default: str | None,
    ) -> str | None:
        """Remote id of the document owning *index*, else *default*."""
        if index is None:
            return default
        if index in ids:
            return ids[index]
        full = (base_dir / index).as_posix() if base_dir else index
        tracked = self.manifest.get_by_path(full)
        if tracked is not None:
            return tracked.id
        return default

    def _create_blocking(
        self, path: str, parent_id: str | None, space_id: str
    ) -> tuple[CreatedDocument, str, str]:
        text = self.files.read_text(path)
        title = self.hierarchy.title_from_path(path, text)
        created = self.remote.create_document(
            space_id, title, self.to_remote(text), parent_id
        )
        return created, title, text

    async def _create_remote(
        self,
        path: str,
        parent_id: str | None,
        space_id: str,
        semaphore: asyncio.Semaphore,
        dry_run: bool,
    ) -> DocumentResult:
        if dry_run:
            return DocumentResult(
                document_id=f"dry-run:{path}",
                local_path=path,
                action=SyncAction.CREATE_REMOTE,
            )

        try:
            created, title, text = await self._with_retry(
                path,
                lambda: run_sync_limited(
                    semaphore, self._create_blocking, path, parent_id, space_id
                ),
                f"create {path}",
            )
        except Exception as e:
            logger.error("Create failed for %s: %s", path, e)
            return DocumentResult(
                document_id="",
                local_path=path,
                action=SyncAction.CREATE_REMOTE,
                success=False,
                error=str(e),
            )

        local_hash = content_hash(text)
        self.manifest.upsert(
            TrackedDocument(
                id=created.id,
                parent_id=parent_id,
                space_id=space_id,
                title=title,
                version=created.version,
                content_hash=local_hash,
                remote_hash=local_hash,
                local_path=path,
            )
        )
        logger.info("Created %s as %s (v%d)", path, created.id, created.version)
        return DocumentResult(
            document_id=created.id,
            local_path=path,
            action=SyncAction.CREATE_REMOTE,
            version=created.version,
        )

    async def pull_tree(
        self,
        documents: Sequence[RemoteDocument],
        dry_run: bool = False,
    ) -> SyncReport:
        """Materialise untracked remote *documents* as local files.

        Paths come from ``HierarchyMapper.assign_paths``, with children of
        already tracked documents placed in their parent's directory.  Documents are
        written in tree depth groups.  Documents on a parent cycle, and
        their descendants, are reported and skipped.
        """
        async with self._pass_lock:
            started_at = utcnow()
            self.manifest.load()
            semaphore = asyncio.Semaphore(self.options.concurrency_limit)
            documents = list(documents)
            by_id = {doc.id: doc for doc in documents}

            parent_dirs = {}
            for doc in documents:
                if doc.parent_id is None or doc.parent_id in by_id:
                    continue
                parent = self.manifest.get(doc.parent_id)
                if parent is not None:
                    parent_dirs[parent.id] = self.hierarchy.child_dir(
                        parent.local_path
                    )

            cycles = self.hierarchy.detect_cycles(documents)
            paths = self.hierarchy.assign_paths(documents, parent_dirs)
            roots = self.hierarchy.build_tree(documents, local_paths=paths)
            results: list[DocumentResult] = []
            blocked: set[str] = set()

            for group in self.hierarchy.depth_groups(roots):
                jobs = []
                for node in group:
                    if node.id in cycles or node.parent_id in blocked:
                        blocked.add(node.id)
                        logger.error(
                            "Skipping %s: parent cycle in remote hierarchy",
                            node.id,
                        )
                        results.append(
                            DocumentResult(
                                document_id=node.id,
                                local_path=node.local_path,
                                action=SyncAction.CREATE_LOCAL,
                                success=False,
                                error="parent cycle",
                            )
                        )
                        continue
                    if self.manifest.get(node.id) is not None:
                        continue
                    jobs.append(
                        self._create_local(
                            by_id[node.id], node.local_path, semaphore, dry_run
                        )
                    )
                results.extend(await asyncio.gather(*jobs))

            failed_any = any(not r.success for r in results)
            return SyncReport(
                dry_run=dry_run,
                status=PassState.FAILED if failed_any else PassState.COMPLETED,
                buckets={
                    "created": [r.document_id for r in results if r.success]
                },
                results=results,
                started_at=started_at,
                completed_at=utcnow(),
            )

    async def _create_local(
        self,
        document: RemoteDocument,
        local_path: str,
        semaphore: asyncio.Semaphore,
        dry_run: bool,
    ) -> DocumentResult:
        base = {"document_id": document.id, "local_path": local_path}
        if dry_run:
            return DocumentResult(
                **base, action=SyncAction.CREATE_LOCAL, version=document.version
            )
        try:
            content = self.to_local(document.content)
            await self._with_retry(
                document.id,
                lambda: run_sync_limited(
                    semaphore, self._write_local, local_path, content
                ),
                f"write {local_path}",
            )
        except Exception as e:
            logger.error("Pull failed for %s: %s", local_path, e)
            return DocumentResult(
                **base, action=SyncAction.CREATE_LOCAL, success=False, error=str(e)
            )

        local_hash = content_hash(content)
        self.manifest.upsert(
            TrackedDocument(
                id=document.id,
                parent_id=document.parent_id,
                space_id=document.space_id,
                title=document.title,
                version=document.version,
                content_hash=local_hash,
                remote_hash=local_hash,
                local_path=local_path,
            )
        )
        logger.info("Pulled new document %s to %s", document.id, local_path)
        return DocumentResult(
            **base, action=SyncAction.CREATE_LOCAL, version=document.version
        )
