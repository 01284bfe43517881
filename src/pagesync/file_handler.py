"""File handler module: encoding-aware reads, atomic writes, and backups.

``LocalFiles`` is the local file collaborator of the sync core.  All paths
it accepts are relative to the sync root (POSIX separators); absolute paths
never leave this module.
"""

import hashlib
import logging
import os
import shutil
import tempfile
import time
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath

from charset_normalizer import from_bytes

logger = logging.getLogger(__name__)

BACKUP_SUFFIX = ".backup"

# =============================================================================
# Module-level helpers
# =============================================================================


def decode_bytes(raw: bytes) -> tuple[str, str]:
    """Decode *raw* with automatic encoding detection.

    Uses charset-normalizer. Defaults to UTF-8 for empty input or when
    detection fails.

    Returns:
        Tuple of (content_string, detected_encoding).
    """
    if not raw:
        return ("", "utf-8")

    result = from_bytes(raw).best()
    if result is None:
        # Detection failed, fall back to utf-8
        encoding = "utf-8"
        content = raw.decode(encoding, errors="replace")
    else:
        encoding = result.encoding
        # Normalize ascii to utf-8 (ascii is a strict subset of utf-8)
        if encoding == "ascii":
            encoding = "utf-8"
        content = str(result)
    return (content, encoding)


def read_file_with_encoding(path: Path) -> tuple[str, str]:
    """Read a file with automatic encoding detection.

    Args:
        path: Path to the file to read.

    Returns:
        Tuple of (content_string, detected_encoding).
    """
    return decode_bytes(path.read_bytes())


def write_file_atomic(path: Path, data: bytes) -> int:
    """Write *data* to *path* atomically, creating parent directories.

    Writes to a temporary file in the target directory then calls
    ``os.replace()`` so readers never see partial content.

    Returns:
        Number of bytes written.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise
    return len(data)


# =============================================================================
# Local file collaborator
# =============================================================================


class LocalFiles:
    """Read, write, hash, and back up files under a sync root.

    Args:
        root: Directory that mirrors the remote document tree.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def resolve(self, rel_path: str) -> Path:
        """Return the absolute path for *rel_path*.

        Raises:
            ValueError: If *rel_path* is absolute or escapes the sync root.
        """
        pure = PurePosixPath(rel_path)
        if pure.is_absolute() or ".." in pure.parts:
            raise ValueError(f"Path must stay inside the sync root: {rel_path}")
        return self.root / pure

    def exists(self, rel_path: str) -> bool:
        return self.resolve(rel_path).is_file()

    def read(self, rel_path: str) -> bytes:
        return self.resolve(rel_path).read_bytes()

    def read_text(self, rel_path: str) -> str:
        content, _ = decode_bytes(self.read(rel_path))
        return content

    def write(self, rel_path: str, data: bytes) -> int:
        return write_file_atomic(self.resolve(rel_path), data)

    def write_text(self, rel_path: str, content: str) -> int:
        return self.write(rel_path, content.encode("utf-8"))

    @staticmethod
    def hash(data: bytes) -> str:
        """SHA-256 hex digest of raw bytes."""
        return hashlib.sha256(data).hexdigest()

    def list_files(self, pattern: str = "*.md") -> list[str]:
        """Sorted relative POSIX paths of files under the root matching *pattern*."""
        if not self.root.is_dir():
            return []
        found: list[str] = []
        for path in sorted(self.root.rglob(pattern)):
            if path.is_file():
                found.append(path.relative_to(self.root).as_posix())
        return found

    # ------------------------------------------------------------------
    # Backups
    # ------------------------------------------------------------------

    def backup(self, rel_path: str) -> str | None:
        """Copy *rel_path* to a timestamped ``.backup`` sibling.

        Returns:
            The backup's path relative to the root, or ``None`` when the
            file does not exist (nothing to protect).
        """
        source = self.resolve(rel_path)
        if not source.is_file():
            logger.debug("No backup needed, file missing: %s", rel_path)
            return None

        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        target = source.with_name(f"{source.name}.{stamp}{BACKUP_SUFFIX}")
        shutil.copy2(source, target)
        logger.info("Backup created: %s", target)
        return target.relative_to(self.root).as_posix()

    def list_backups(self, rel_path: str) -> list[str]:
        """Backups of *rel_path*, newest first."""
        source = self.resolve(rel_path)
        if not source.parent.is_dir():
            return []
        prefix = f"{source.name}."
        backups = [
            p
            for p in source.parent.iterdir()
            if p.name.startswith(prefix) and p.name.endswith(BACKUP_SUFFIX)
        ]
        # Timestamp is embedded in the name, so lexical order is age order
        backups.sort(key=lambda p: p.name, reverse=True)
        return [p.relative_to(self.root).as_posix() for p in backups]

    def restore_backup(self, backup_path: str, rel_path: str) -> None:
        """Copy a backup over *rel_path*.

        Raises:
            FileNotFoundError: If the backup does not exist.
        """
        source = self.resolve(backup_path)
        if not source.is_file():
            raise FileNotFoundError(f"Backup file not found: {backup_path}")
        self.write(rel_path, source.read_bytes())
        logger.info("File restored from backup: %s", rel_path)

    def cleanup_backups(self, max_age_seconds: float) -> int:
        """Delete backups older than *max_age_seconds*; return the count."""
        if not self.root.is_dir():
            return 0
        cutoff = time.time() - max_age_seconds
        removed = 0
        for path in self.root.rglob(f"*{BACKUP_SUFFIX}"):
            if path.is_file() and path.stat().st_mtime < cutoff:
                path.unlink()
                removed += 1
                logger.debug("Removed old backup: %s", path)
        if removed:
            logger.info("Cleaned up %d old backup(s)", removed)
        return removed
