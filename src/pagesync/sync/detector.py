"""Three-way change detection against the manifest baseline.

For each tracked document the detector compares:

* the hash of the local file now vs. ``content_hash`` at last sync, and
* the remote version now vs. ``version`` at last sync.

``classify()`` is the pure decision table; ``ChangeDetector`` gathers the
inputs (local read, remote fetch, conversion) and applies it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Sequence

from pagesync.core.async_utils import run_sync_limited
from pagesync.core.client import RemoteClient
from pagesync.errors import ChangeDetectionError, RemoteError
from pagesync.file_handler import LocalFiles
from pagesync.sync.manifest import content_hash
from pagesync.sync.models import (
    ChangeDetectionResult,
    ChangeState,
    TrackedDocument,
)

logger = logging.getLogger(__name__)


def classify(
    local_hash: str | None,
    remote_version: int,
    base_hash: str,
    base_version: int,
) -> ChangeState:
    """Decide the change state of one document.

    ====================  ================  ===============
    remote vs. baseline   local hash equal  local hash differs
    ====================  ================  ===============
    same version          unchanged         local-only
    greater version       remote-only       both-changed
    ====================  ================  ===============

    A missing local file (``local_hash is None``) counts as differing.

    Raises:
        ChangeDetectionError: The remote version is behind the baseline.
    """
    if remote_version < base_version:
        raise ChangeDetectionError(
            "",
            f"remote version {remote_version} is behind the recorded "
            f"version {base_version}",
        )
    local_changed = local_hash is None or local_hash != base_hash
    remote_changed = remote_version > base_version

    if remote_changed and local_changed:
        return ChangeState.BOTH_CHANGED
    if remote_changed:
        return ChangeState.REMOTE_ONLY
    if local_changed:
        return ChangeState.LOCAL_ONLY
    return ChangeState.UNCHANGED


class ChangeDetector:
    """Classify tracked documents by reading both sides.

    Args:
        files: Local file collaborator rooted at the sync directory.
        remote: Remote content client.
        to_local: Converter from remote storage format to local text.
    """

    def __init__(
        self,
        files: LocalFiles,
        remote: RemoteClient,
        to_local: Callable[[str], str] | None = None,
    ) -> None:
        self.files = files
        self.remote = remote
        self.to_local = to_local or (lambda text: text)

    def local_hash(self, document: TrackedDocument) -> str | None:
        """Normalised hash of the local file, or ``None`` if it is absent."""
        if not self.files.exists(document.local_path):
            return None
        return content_hash(self.files.read_text(document.local_path))

    def detect(self, document: TrackedDocument) -> ChangeDetectionResult:
        """Classify *document*.

        Raises:
            ChangeDetectionError: The remote fetch, conversion, or local
                read failed, or the remote version went backwards.
        """
        try:
            local_hash = self.local_hash(document)
        except OSError as e:
            raise ChangeDetectionError(
                document.id, f"cannot read {document.local_path}: {e}"
            ) from e

        try:
            remote_doc = self.remote.get_document(document.id)
        except RemoteError as e:
            raise ChangeDetectionError(
                document.id, f"remote fetch failed: {e}"
            ) from e

        try:
            remote_text = self.to_local(remote_doc.content)
        except Exception as e:
            raise ChangeDetectionError(
                document.id, f"conversion failed: {e}"
            ) from e

        try:
            state = classify(
                local_hash,
                remote_doc.version,
                document.content_hash,
                document.version,
            )
        except ChangeDetectionError as e:
            raise ChangeDetectionError(document.id, e.message) from e

        if local_hash is None:
            logger.info(
                "%s: local file %s is missing", document.id, document.local_path
            )
        logger.debug(
            "%s: %s (local v%d -> remote v%d)",
            document.id,
            state.value,
            document.version,
            remote_doc.version,
        )
        return ChangeDetectionResult(
            document_id=document.id,
            local_path=document.local_path,
            state=state,
            local_hash=local_hash,
            remote_hash=content_hash(remote_text),
            remote_version=remote_doc.version,
            remote_title=remote_doc.title,
            remote_content=remote_text,
            base_hash=document.content_hash,
            base_version=document.version,
        )

    async def detect_batch(
        self,
        documents: Sequence[TrackedDocument],
        concurrency: int | asyncio.Semaphore = 5,
    ) -> tuple[list[ChangeDetectionResult], list[ChangeDetectionError]]:
        """Classify *documents* concurrently.

        Args:
            documents: Manifest entries to classify.
            concurrency: Maximum simultaneous classifications, or a shared
                semaphore.

        Returns:
            ``(results, errors)``; results keep input order.
        """
        semaphore = (
            concurrency
            if isinstance(concurrency, asyncio.Semaphore)
            else asyncio.Semaphore(concurrency)
        )

        async def _one(
            document: TrackedDocument,
        ) -> ChangeDetectionResult | ChangeDetectionError:
            try:
                return await run_sync_limited(semaphore, self.detect, document)
            except ChangeDetectionError as e:
                logger.warning("Change detection failed: %s", e)
                return e

        outcomes = await asyncio.gather(*(_one(doc) for doc in documents))
        results = [
            o for o in outcomes if isinstance(o, ChangeDetectionResult)
        ]
        errors = [o for o in outcomes if isinstance(o, ChangeDetectionError)]
        return results, errors
