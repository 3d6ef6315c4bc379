"""Remote state fetcher: branch head, its tree, and the flattened blob index."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from treepush.services.diff_service import RemoteFileIndex, build_remote_index

if TYPE_CHECKING:
    from treepush.github.client import GitHubClient

logger = logging.getLogger(__name__)


@dataclass
class RemoteState:
    """Snapshot of the branch taken once at job start."""

    head_commit_id: str | None
    base_tree_id: str | None = None
    index: RemoteFileIndex = field(default_factory=dict)

    @property
    def is_empty_repository(self) -> bool:
        return self.head_commit_id is None


async def fetch_remote_state(client: GitHubClient, branch: str) -> RemoteState:
    """Resolve head -> tree -> recursive listing. A missing branch yields an empty state."""
    head = await client.get_branch_head(branch)
    if head is None:
        logger.info("Branch %s does not exist yet; using empty remote state", branch)
        return RemoteState(head_commit_id=None)

    tree_sha = await client.get_commit_tree(head)
    entries = await client.get_tree_recursive(tree_sha)
    index = build_remote_index(entries)
    logger.info(
        "Fetched remote state for %s: head %s, %d entries", branch, head[:7], len(index)
    )
    return RemoteState(head_commit_id=head, base_tree_id=tree_sha, index=index)
