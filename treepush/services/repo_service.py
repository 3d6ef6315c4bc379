"""Repository bootstrap, connection test, and commit history."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

from treepush.exceptions import FileSystemError, RemoteAPIError, SyncError
from treepush.filesystem.enumerator import (
    DEFAULT_GITIGNORE,
    GITIGNORE,
    SyncPathConfig,
    enumerate_files,
)
from treepush.github.schemas import GitIdentity
from treepush.services.datetime_service import format_git_date, humanize_age, now_utc

if TYPE_CHECKING:
    from treepush.config import Settings
    from treepush.github.client import GitHubClient

logger = logging.getLogger(__name__)

SEED_COMMIT_MESSAGE = "Initial commit: add .gitignore"


class InitResult(BaseModel):
    success: bool
    message: str
    steps: list[str] = Field(default_factory=list)
    files_found: int = 0
    seed_commit: str | None = None


class ConnectionResult(BaseModel):
    success: bool
    message: str
    repository: str | None = None
    private: bool | None = None
    default_branch: str | None = None


class CommitSummary(BaseModel):
    sha: str
    full_sha: str
    message: str
    author: str
    date: str
    url: str | None = None


def write_default_gitignore(root: Path) -> bool:
    """Create ``.gitignore`` under *root* unless one exists. Returns True if written."""
    path = root / GITIGNORE
    if path.exists():
        return False
    try:
        path.write_text(DEFAULT_GITIGNORE, encoding="utf-8")
    except OSError as exc:
        msg = f"Cannot write {path}: {exc}"
        raise FileSystemError(msg) from exc
    logger.info("Wrote default %s to %s", GITIGNORE, root)
    return True


class RepositoryService:
    """One-time setup and read-only repository queries."""

    def __init__(self, client: GitHubClient, settings: Settings) -> None:
        self.client = client
        self.settings = settings

    def _identity(self) -> GitIdentity:
        return GitIdentity(
            name=self.settings.author_name,
            email=self.settings.author_email,
            date=format_git_date(now_utc()),
        )

    async def init_repository(
        self, *, create_repo: bool = False, private: bool = True
    ) -> InitResult:
        """Prepare the remote and local side for the first sync.

        Optionally creates the repository, writes a default ``.gitignore``
        locally, and seeds an empty repository with it through the Contents
        API: the Git Data API refuses to create objects in a repository that
        has no commits yet.
        """
        steps: list[str] = []
        full_name = f"{self.settings.github_owner}/{self.settings.github_repo}"

        if create_repo:
            if await self.client.create_repository(private=private):
                steps.append(f"Created repository: {full_name}")
            else:
                steps.append("Repository already exists")
        elif await self.client.get_repository() is None:
            return InitResult(
                success=False,
                message=f"Repository {full_name} not found. Enable create_repo to create it.",
                steps=steps,
            )

        root = Path(self.settings.repo_path)
        if write_default_gitignore(root):
            steps.append("Created .gitignore")
        else:
            steps.append(".gitignore already exists")

        enumeration = enumerate_files(SyncPathConfig.from_settings(self.settings))
        steps.append(f"Found {len(enumeration.files)} files to sync")

        branch = self.settings.github_branch
        seed_commit: str | None = None
        if await self.client.get_branch_head(branch) is None:
            content = (root / GITIGNORE).read_bytes()
            existing = await self.client.get_contents(GITIGNORE, branch)
            try:
                seed_commit = await self.client.put_contents(
                    GITIGNORE,
                    content,
                    SEED_COMMIT_MESSAGE,
                    branch,
                    sha=existing.sha if existing else None,
                    committer=self._identity(),
                )
            except RemoteAPIError as exc:
                logger.error("Seeding %s failed: %s", full_name, exc)
                return InitResult(
                    success=False,
                    message=f"Failed to seed repository: {exc.message}",
                    steps=steps,
                    files_found=len(enumeration.files),
                )
            steps.append(f"Seeded branch {branch} with .gitignore ({seed_commit[:7]})")

        logger.info("Initialized repository %s: %s", full_name, "; ".join(steps))
        return InitResult(
            success=True,
            message="Repository initialized! Now run a sync to push your files.",
            steps=steps,
            files_found=len(enumeration.files),
            seed_commit=seed_commit,
        )

    async def test_connection(self) -> ConnectionResult:
        """Check that the token can see the configured repository."""
        try:
            repo = await self.client.get_repository()
        except SyncError as exc:
            logger.warning("Connection test failed: %s", exc)
            return ConnectionResult(success=False, message=str(exc))
        if repo is None:
            return ConnectionResult(
                success=False,
                message="Repository not found (or the token cannot access it).",
            )
        return ConnectionResult(
            success=True,
            message=f"Connected to {repo.full_name}",
            repository=repo.full_name,
            private=repo.private,
            default_branch=repo.default_branch,
        )

    async def get_commit_history(
        self, *, per_page: int = 15, page: int = 1
    ) -> list[CommitSummary]:
        """One page of branch history, newest first, with relative dates."""
        commits = await self.client.list_commits(
            self.settings.github_branch, per_page=per_page, page=page
        )
        return [
            CommitSummary(
                sha=item.sha[:7],
                full_sha=item.sha,
                message=item.commit.message.split("\n", 1)[0],
                author=item.commit.author.name,
                date=humanize_age(item.commit.author.date) if item.commit.author.date else "",
                url=item.html_url,
            )
            for item in commits
        ]
