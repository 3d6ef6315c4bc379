"""Diff engine: git blob hashing, per-file classification, and tree composition."""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Literal

from treepush.filesystem.enumerator import is_path_managed
from treepush.github.schemas import BLOB_MODE, EXECUTABLE_MODE, TreeItem

if TYPE_CHECKING:
    from collections.abc import Iterable
    from pathlib import Path

    from treepush.github.schemas import TreeEntry

logger = logging.getLogger(__name__)


class FileState(StrEnum):
    """Classification of one enumerated local file against the remote index."""

    EMPTY = "empty"
    UNCHANGED = "unchanged"
    CHANGED = "changed"
    NEW = "new"


@dataclass(frozen=True)
class RemoteEntry:
    """Remote object for one path: a blob, or a submodule commit."""

    sha: str
    mode: str
    type: Literal["blob", "commit"] = "blob"

    def tree_item(self, path: str) -> TreeItem:
        return TreeItem(path=path, mode=self.mode, type=self.type, sha=self.sha)


RemoteFileIndex = dict[str, RemoteEntry]


@dataclass
class FileClassification:
    """Result of comparing one local file to the remote index."""

    path: str
    state: FileState
    local_sha: str | None
    remote: RemoteEntry | None = None

    def reused_item(self) -> TreeItem:
        """Tree entry reusing the remote blob. Only valid for unchanged files."""
        if self.state != FileState.UNCHANGED or self.remote is None:
            msg = f"{self.path} is {self.state}, nothing to reuse"
            raise ValueError(msg)
        return self.remote.tree_item(self.path)


@dataclass
class RemoteOnlyPlan:
    """Remote paths with no local counterpart, split by managed scope."""

    deleted: list[str] = field(default_factory=list)
    preserved: list[TreeItem] = field(default_factory=list)


@dataclass
class SyncPreview:
    """Dry-run summary of what a sync would do."""

    new: list[str] = field(default_factory=list)
    changed: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    empty: list[str] = field(default_factory=list)
    unreadable: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    preserved: list[str] = field(default_factory=list)


def git_blob_sha(content: bytes) -> str:
    """Compute the object id git assigns to a blob with this content."""
    sha = hashlib.sha1(usedforsecurity=False)
    sha.update(b"blob %d\0" % len(content))
    sha.update(content)
    return sha.hexdigest()


def build_remote_index(entries: Iterable[TreeEntry]) -> RemoteFileIndex:
    """Index the blobs and submodules of a recursive tree listing by path.

    Directory entries are implied by the paths beneath them and are dropped.
    """
    index: RemoteFileIndex = {}
    for e in entries:
        if e.type == "blob":
            index[e.path] = RemoteEntry(sha=e.sha, mode=e.mode)
        elif e.type == "commit":
            index[e.path] = RemoteEntry(sha=e.sha, mode=e.mode, type="commit")
    return index


def classify_file(path: str, content: bytes, index: RemoteFileIndex) -> FileClassification:
    """Classify one local file. Empty files are never synced."""
    if not content:
        return FileClassification(path=path, state=FileState.EMPTY, local_sha=None)

    local_sha = git_blob_sha(content)
    remote = index.get(path)
    if remote is None:
        return FileClassification(path=path, state=FileState.NEW, local_sha=local_sha)
    if remote.sha == local_sha:
        return FileClassification(
            path=path, state=FileState.UNCHANGED, local_sha=local_sha, remote=remote
        )
    return FileClassification(
        path=path, state=FileState.CHANGED, local_sha=local_sha, remote=remote
    )


def uploaded_item(classification: FileClassification, blob_sha: str) -> TreeItem:
    """Tree entry for freshly uploaded content; keeps an existing executable bit."""
    remote = classification.remote
    mode = EXECUTABLE_MODE if remote is not None and remote.mode == EXECUTABLE_MODE else BLOB_MODE
    return TreeItem(path=classification.path, mode=mode, sha=blob_sha)


def classify_remote_only(
    index: RemoteFileIndex,
    seen_paths: Iterable[str],
    managed_roots: list[str],
) -> RemoteOnlyPlan:
    """Split remote paths missing from the local set into deleted and preserved.

    A missing path under a managed root was deleted locally and must drop
    out of the tree. Anything else is outside the tool's scope and is kept.
    """
    seen = set(seen_paths)
    plan = RemoteOnlyPlan()
    for path in sorted(index):
        if path in seen:
            continue
        if is_path_managed(path, managed_roots):
            plan.deleted.append(path)
        else:
            plan.preserved.append(index[path].tree_item(path))
    return plan


def compose_tree(
    pending_items: list[TreeItem],
    index: RemoteFileIndex,
    seen_paths: Iterable[str],
    managed_roots: list[str],
    failed_paths: Iterable[str] = (),
) -> tuple[list[TreeItem], RemoteOnlyPlan]:
    """Build the complete entry list for the new tree, sorted by path.

    ``seen_paths`` are all enumerated local paths, including ones that failed
    or were skipped as empty. A local file that failed to read or upload is
    not a deletion: its remote entry, if any, is carried over unchanged.
    """
    plan = classify_remote_only(index, seen_paths, managed_roots)
    by_path = {item.path: item for item in plan.preserved}
    for path in failed_paths:
        remote = index.get(path)
        if remote is not None:
            by_path[path] = remote.tree_item(path)
    for item in pending_items:
        by_path[item.path] = item
    return [by_path[p] for p in sorted(by_path)], plan


def matches_remote(items: list[TreeItem], index: RemoteFileIndex) -> bool:
    """Return True when the composed tree has exactly the remote entries."""
    if len(items) != len(index):
        return False
    for item in items:
        remote = index.get(item.path)
        if remote is None or remote.tree_item(item.path) != item:
            return False
    return True


def compute_preview(
    files: dict[str, Path],
    index: RemoteFileIndex,
    managed_roots: list[str],
) -> SyncPreview:
    """Classify every enumerated file without uploading anything."""
    preview = SyncPreview()
    for path, full_path in files.items():
        try:
            content = full_path.read_bytes()
        except OSError as exc:
            logger.warning("Preview cannot read %s: %s", path, exc)
            preview.unreadable.append(path)
            continue
        state = classify_file(path, content, index).state
        getattr(preview, str(state)).append(path)

    plan = classify_remote_only(index, files, managed_roots)
    preview.deleted = plan.deleted
    preview.preserved = [item.path for item in plan.preserved]
    return preview
