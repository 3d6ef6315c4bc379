"""Commit publisher: tree object, commit object, and the branch ref update."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from treepush.exceptions import ConflictError, RemoteAPIError
from treepush.github.schemas import GitIdentity
from treepush.services.datetime_service import format_git_date, now_utc

if TYPE_CHECKING:
    from treepush.github.client import GitHubClient
    from treepush.github.schemas import TreeItem

logger = logging.getLogger(__name__)


@dataclass
class PublishResult:
    """Objects created by a successful publish."""

    tree_sha: str
    commit_sha: str
    created_ref: bool


class CommitPublisher:
    """Publishes a complete tree entry list as a new commit on one branch."""

    def __init__(
        self, client: GitHubClient, branch: str, author_name: str, author_email: str
    ) -> None:
        self.client = client
        self.branch = branch
        self.author_name = author_name
        self.author_email = author_email

    def _identity(self) -> GitIdentity:
        return GitIdentity(
            name=self.author_name,
            email=self.author_email,
            date=format_git_date(now_utc()),
        )

    async def publish(
        self,
        items: list[TreeItem],
        head_commit_id: str | None,
        message: str,
    ) -> PublishResult:
        """Create the tree and commit, then move (or create) the branch.

        The tree is built from the full entry list without a base tree so
        deletions are expressed. Before moving an existing branch the head is
        read again; if it is no longer ``head_commit_id`` someone else pushed
        in the meantime and ConflictError is raised instead of overwriting.
        """
        tree_sha = await self.client.create_tree(items)
        parents = [head_commit_id] if head_commit_id else []
        commit_sha = await self.client.create_commit(
            tree_sha, message, parents, self._identity()
        )
        logger.info(
            "Created commit %s (tree %s, %d entries)", commit_sha[:7], tree_sha[:7], len(items)
        )

        if head_commit_id is None:
            created = await self._create_or_update_ref(commit_sha)
            return PublishResult(tree_sha=tree_sha, commit_sha=commit_sha, created_ref=created)

        current = await self.client.get_branch_head(self.branch)
        if current != head_commit_id:
            msg = (
                f"Branch {self.branch} moved from {head_commit_id[:7]} to "
                f"{current[:7] if current else 'nothing'} during the sync"
            )
            raise ConflictError(msg)

        await self.client.update_ref(self.branch, commit_sha)
        return PublishResult(tree_sha=tree_sha, commit_sha=commit_sha, created_ref=False)

    async def _create_or_update_ref(self, commit_sha: str) -> bool:
        """Create the branch; fall back to an update if it appeared concurrently."""
        try:
            await self.client.create_ref(self.branch, commit_sha)
        except RemoteAPIError as exc:
            if exc.status_code != 422:
                raise
            logger.warning(
                "Branch %s already exists (%s); updating it instead", self.branch, exc.message
            )
            await self.client.update_ref(self.branch, commit_sha, force=True)
            return False
        logger.info("Created branch %s at %s", self.branch, commit_sha[:7])
        return True
