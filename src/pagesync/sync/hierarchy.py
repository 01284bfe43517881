"""Mapping between the remote document tree and local paths.

The remote side is a forest of documents linked by ``parent_id``.  Locally,
a document with children becomes a directory holding an index file
(``<name>/_index.md``); a leaf becomes ``<name>.md`` inside its parent's
directory.

``HierarchyMapper`` works in both directions:

* **Remote -> local**: ``build_tree()``, ``assign_paths()`` and
  ``depth_groups()`` for materialising documents.
* **Local -> remote**: ``local_depth_groups()``, ``parent_index_path()``
  and ``title_from_path()`` for bulk-creating documents from files.

Depth groups are processed strictly in order, so a parent always exists
before any of its children is created.
"""

from __future__ import annotations

import re
from collections import defaultdict, deque
from pathlib import PurePosixPath
from typing import Iterable, Mapping, Protocol

from pagesync.sync.models import HierarchyNode

RESERVED_NAMES = frozenset(
    {"CON", "PRN", "AUX", "NUL"}
    | {f"COM{i}" for i in range(1, 10)}
    | {f"LPT{i}" for i in range(1, 10)}
)

_ILLEGAL_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')
_WHITESPACE = re.compile(r"\s+")
_DASHES = re.compile(r"-+")
_H1 = re.compile(r"^#\s+(.+?)\s*#*\s*$", re.MULTILINE)


class _Linked(Protocol):
    id: str
    title: str
    parent_id: str | None


class HierarchyMapper:
    """Translate between document trees and local paths.

    Args:
        index_filename: File name that holds a directory's own document.
        extension: Extension of leaf documents, without the dot.
        max_name_length: Longest allowed sanitized name.
    """

    def __init__(
        self,
        index_filename: str = "_index.md",
        extension: str = "md",
        max_name_length: int = 100,
    ) -> None:
        self.index_filename = index_filename
        self.extension = extension.lstrip(".")
        self.max_name_length = max_name_length

    # ------------------------------------------------------------------
    # Tree construction
    # ------------------------------------------------------------------

    @staticmethod
    def detect_cycles(documents: Iterable[_Linked]) -> set[str]:
        """Return the id of every document that lies on a parent cycle.

        A document that is its own parent is a one-node cycle.  Documents
        that merely descend from a cycle are not included.
        """
        parents = {doc.id: doc.parent_id for doc in documents}
        on_cycle: set[str] = set()
        finished: set[str] = set()

        for start in parents:
            if start in finished:
                continue
            path: list[str] = []
            position: dict[str, int] = {}
            current: str | None = start
            while (
                current is not None
                and current in parents
                and current not in finished
            ):
                if current in position:
                    on_cycle.update(path[position[current]:])
                    break
                position[current] = len(path)
                path.append(current)
                current = parents[current]
            finished.update(path)
        return on_cycle

    def build_tree(
        self,
        documents: Iterable[_Linked],
        local_paths: dict[str, str] | None = None,
    ) -> list[HierarchyNode]:
        """Build the forest of ``HierarchyNode`` roots.

        Documents whose parent is unknown, and every document on a cycle,
        become roots.  Roots and children are ordered by title (then id);
        depth is assigned breadth-first from the roots.
        """
        documents = list(documents)
        cycles = self.detect_cycles(documents)
        local_paths = local_paths or {}
        nodes = {
            doc.id: HierarchyNode(
                id=doc.id,
                title=doc.title,
                parent_id=doc.parent_id,
                local_path=local_paths.get(
                    doc.id, getattr(doc, "local_path", "")
                ),
            )
            for doc in documents
        }

        roots: list[HierarchyNode] = []
        for node in nodes.values():
            parent = nodes.get(node.parent_id) if node.parent_id else None
            if parent is None or node.id in cycles:
                roots.append(node)
            else:
                parent.children.append(node)

        def _key(n: HierarchyNode) -> tuple[str, str]:
            return (n.title.lower(), n.id)

        roots.sort(key=_key)
        queue: deque[HierarchyNode] = deque(roots)
        while queue:
            node = queue.popleft()
            node.children.sort(key=_key)
            for child in node.children:
                child.depth = node.depth + 1
                queue.append(child)
        return roots

    @staticmethod
    def depth_groups(roots: list[HierarchyNode]) -> list[list[HierarchyNode]]:
        """Group the forest by depth, shallowest first.

        Within a group, index documents (those with children) come first,
        then the rest ordered by title.
        """
        groups: dict[int, list[HierarchyNode]] = defaultdict(list)
        queue: deque[HierarchyNode] = deque(roots)
        while queue:
            node = queue.popleft()
            groups[node.depth].append(node)
            queue.extend(node.children)
        return [
            sorted(
                groups[depth],
                key=lambda n: (not n.is_index, n.title.lower(), n.id),
            )
            for depth in sorted(groups)
        ]

    # ------------------------------------------------------------------
    # Names and paths
    # ------------------------------------------------------------------

    def sanitize_title(self, title: str) -> str:
        """Turn a document title into a portable file name stem."""
        name = _ILLEGAL_CHARS.sub("-", title)
        name = _WHITESPACE.sub("-", name)
        name = _DASHES.sub("-", name).strip("-.").lower()
        if len(name) > self.max_name_length:
            name = name[: self.max_name_length].rstrip("-.")
        if name.upper() in RESERVED_NAMES:
            name = f"page-{name}"
        return name or "untitled"

    def build_path(
        self, title: str, parent_dir: str = "", has_children: bool = False
    ) -> str:
        """Local path for a document titled *title* under *parent_dir*."""
        return self._path_for(self.sanitize_title(title), parent_dir, has_children)

    def _path_for(self, name: str, parent_dir: str, has_children: bool) -> str:
        base = PurePosixPath(parent_dir) if parent_dir else PurePosixPath()
        if has_children:
            return (base / name / self.index_filename).as_posix()
        return (base / f"{name}.{self.extension}").as_posix()

    def child_dir(self, local_path: str) -> str:
        """Directory that holds the children of the document at *local_path*.

        For a leaf ``a/b.md`` that is ``a/b``, where its index file would go.
        """
        p = PurePosixPath(local_path)
        directory = p.parent if self.is_index(local_path) else p.with_suffix("")
        return "" if directory == PurePosixPath(".") else directory.as_posix()

    def assign_paths(
        self,
        documents: Iterable[_Linked],
        parent_dirs: Mapping[str, str] | None = None,
    ) -> dict[str, str]:
        """Compute the local path of every document in the forest.

        Siblings whose names collide keep the plain name for the lowest id;
        the others get ``-<id>`` appended.

        Args:
            documents: Documents to place.
            parent_dirs: Child directory of parents that are not among
                *documents* (already tracked ones), by parent id.  Roots
                with such a parent are placed inside that directory.

        Returns:
            Mapping of document id to local path.
        """
        documents = list(documents)
        known = {doc.id for doc in documents}
        parent_dirs = parent_dirs or {}
        roots = self.build_tree(documents)
        index_stem = PurePosixPath(self.index_filename).stem
        paths: dict[str, str] = {}

        def _assign(siblings: list[HierarchyNode], parent_dir: str) -> None:
            claimed: dict[str, list[HierarchyNode]] = defaultdict(list)
            for node in sorted(siblings, key=lambda n: n.id):
                claimed[self.sanitize_title(node.title)].append(node)

            for name, nodes in claimed.items():
                for i, node in enumerate(nodes):
                    final = name
                    if i > 0 or name == index_stem:
                        final = f"{name}-{self.sanitize_title(node.id)}"
                    path = self._path_for(final, parent_dir, node.is_index)
                    node.local_path = path
                    paths[node.id] = path
                    if node.is_index:
                        _assign(
                            node.children,
                            PurePosixPath(path).parent.as_posix(),
                        )

        by_dir: dict[str, list[HierarchyNode]] = defaultdict(list)
        for root in roots:
            directory = ""
            if root.parent_id is not None and root.parent_id not in known:
                directory = parent_dirs.get(root.parent_id, "")
            by_dir[directory].append(root)
        for directory, siblings in by_dir.items():
            _assign(siblings, directory)
        return paths

    # ------------------------------------------------------------------
    # Local side
    # ------------------------------------------------------------------

    def is_index(self, path: str) -> bool:
        return PurePosixPath(path).name == self.index_filename

    def owning_dir(self, path: str) -> str:
        """Directory whose index document is the parent of *path*.

        Returns ``""`` for top-level documents.
        """
        p = PurePosixPath(path)
        parent = p.parent.parent if self.is_index(path) else p.parent
        return "" if parent == PurePosixPath(".") else parent.as_posix()

    def parent_index_path(self, path: str) -> str | None:
        """Path of the index file that is *path*'s parent, if any."""
        directory = self.owning_dir(path)
        if not directory:
            return None
        return (PurePosixPath(directory) / self.index_filename).as_posix()

    def local_depth(self, path: str) -> int:
        directory = self.owning_dir(path)
        return len(PurePosixPath(directory).parts) if directory else 0

    def local_depth_groups(self, paths: Iterable[str]) -> list[list[str]]:
        """Group local files by tree depth, index files first, then by path."""
        groups: dict[int, list[str]] = defaultdict(list)
        for path in paths:
            groups[self.local_depth(path)].append(path)
        return [
            sorted(groups[depth], key=lambda p: (not self.is_index(p), p))
            for depth in sorted(groups)
        ]

    def title_from_path(self, path: str, content: str | None = None) -> str:
        """Title for a local file: its first H1, else its name.

        Index files are named after their directory.
        """
        if content:
            match = _H1.search(content)
            if match:
                return match.group(1).strip()
        p = PurePosixPath(path)
        if self.is_index(path) and p.parent != PurePosixPath("."):
            return p.parent.name
        return p.stem
