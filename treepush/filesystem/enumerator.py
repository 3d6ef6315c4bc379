"""Local file enumeration: inclusion roots, ignore rules, size and binary filters."""

from __future__ import annotations

import fnmatch
import logging
import os
import posixpath
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from treepush.config import DEFAULT_IGNORE_PATTERNS
from treepush.exceptions import FileSystemError

if TYPE_CHECKING:
    from treepush.config import Settings

logger = logging.getLogger(__name__)

GITIGNORE = ".gitignore"
MAX_FILE_SIZE = 10 * 1024 * 1024  # 10 MB

BINARY_EXTENSIONS = frozenset(
    {
        "png", "jpg", "jpeg", "gif", "ico", "webp", "svg",
        "woff", "woff2", "ttf", "eot",
        "mp3", "mp4", "avi", "mov",
        "zip", "tar", "gz", "rar",
        "pdf", "doc", "docx", "xls", "xlsx",
    }
)  # fmt: skip

DEFAULT_GITIGNORE = """\
# Uploads (too large for git)
wp-content/uploads/

# Cache and backups
wp-content/cache/
wp-content/backup*/
wp-content/upgrade/
wp-content/backups/

# Debug log
wp-content/debug.log
error_log

# Development files
node_modules/
.sass-cache/
*.map

# OS files
.DS_Store
Thumbs.db

# IDE
.idea/
.vscode/
*.sublime-*

# Misc
*.log
*.swp
*.bak
"""


def _normalize_root(path: str) -> str:
    """Canonical relative spelling of an inclusion root; ``"."`` is the whole tree."""
    path = path.strip()
    if not path:
        return ""
    return posixpath.normpath(path).strip("/")


def is_path_managed(path: str, roots: list[str]) -> bool:
    """Return True when *path* equals one of *roots* or lives underneath one."""
    for root in roots:
        root = _normalize_root(root)
        if not root:
            continue
        if root == ".":
            return True
        if path == root or path.startswith(root + "/"):
            return True
    return False


def should_ignore(path: str, patterns: list[str]) -> bool:
    """Match *path* against substring and glob ignore patterns."""
    basename = posixpath.basename(path)
    for pattern in patterns:
        if pattern in path:
            return True
        if fnmatch.fnmatchcase(path, pattern) or fnmatch.fnmatchcase(basename, pattern):
            return True
    return False


@dataclass
class SyncPathConfig:
    """Ordered inclusion roots plus ignore rules for one local tree."""

    root: Path
    include: list[str]
    ignore_patterns: list[str] = field(default_factory=lambda: list(DEFAULT_IGNORE_PATTERNS))
    max_file_size: int = MAX_FILE_SIZE

    @classmethod
    def from_settings(cls, settings: Settings) -> SyncPathConfig:
        return cls(
            root=settings.repo_path,
            include=list(settings.sync_paths),
            ignore_patterns=list(settings.ignore_patterns),
            max_file_size=settings.max_file_size,
        )

    @property
    def roots(self) -> list[str]:
        """Normalized, non-empty inclusion roots in configured order."""
        return [r for r in (_normalize_root(p) for p in self.include) if r]

    def is_managed(self, path: str) -> bool:
        return is_path_managed(path, self.roots)


@dataclass
class PathCheck:
    """Diagnostic record for one configured inclusion path."""

    path: str
    full_path: str
    exists: bool
    is_file: bool
    is_dir: bool


@dataclass
class EnumerationResult:
    """Relative path -> absolute path, in enumeration order, plus diagnostics."""

    files: dict[str, Path] = field(default_factory=dict)
    checked_paths: list[PathCheck] = field(default_factory=list)

    @property
    def has_gitignore(self) -> bool:
        return GITIGNORE in self.files


def _is_binary(name: str) -> bool:
    _, ext = posixpath.splitext(name)
    return ext[1:].lower() in BINARY_EXTENSIONS


def _scan_directory(
    directory: Path,
    base: Path,
    config: SyncPathConfig,
    files: dict[str, Path],
) -> None:
    """Depth-first scan of *directory* in sorted name order."""
    try:
        entries = sorted(os.scandir(directory), key=lambda e: e.name)
    except OSError as exc:
        logger.warning("Cannot list %s: %s", directory, exc)
        return

    for entry in entries:
        full = Path(entry.path)
        rel = full.relative_to(base).as_posix()
        if should_ignore(rel, config.ignore_patterns):
            continue
        try:
            if entry.is_file():
                if entry.stat().st_size > config.max_file_size:
                    logger.debug("Skipping oversized file %s", rel)
                    continue
                if _is_binary(entry.name):
                    continue
                files[rel] = full
            elif entry.is_dir(follow_symlinks=False):
                _scan_directory(full, base, config, files)
        except OSError as exc:
            logger.warning("Cannot stat %s: %s", full, exc)


def enumerate_files(config: SyncPathConfig) -> EnumerationResult:
    """Enumerate the files to sync under ``config.root``.

    Raises FileSystemError when the root itself is not a directory.
    """
    base = config.root.resolve()
    if not base.is_dir():
        msg = f"Repository path is not a directory: {config.root}"
        raise FileSystemError(msg)

    result = EnumerationResult()
    for path in config.roots:
        full_path = (base / path).resolve()
        if not full_path.is_relative_to(base):
            logger.warning("Ignoring sync path outside repository root: %s", path)
            continue

        result.checked_paths.append(
            PathCheck(
                path=path,
                full_path=str(full_path),
                exists=full_path.exists(),
                is_file=full_path.is_file(),
                is_dir=full_path.is_dir(),
            )
        )

        if full_path.is_file():
            if not should_ignore(path, config.ignore_patterns):
                result.files[path] = full_path
        elif full_path.is_dir():
            _scan_directory(full_path, base, config, result.files)

    gitignore = base / GITIGNORE
    if gitignore.is_file():
        result.files[GITIGNORE] = gitignore

    logger.debug("Enumerated %d files under %s", len(result.files), base)
    return result
