"""Async client for the subset of the GitHub REST API used by the sync engine."""

from __future__ import annotations

import base64
import logging
from typing import TYPE_CHECKING, Any, TypeVar
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ValidationError

from treepush.exceptions import ConfigError, NetworkError, RemoteAPIError
from treepush.github.schemas import (
    BlobRequest,
    CommitListItem,
    CommitRequest,
    CommitResponse,
    ContentFile,
    CreateRefRequest,
    CreateRepositoryRequest,
    GitIdentity,
    PutContentsRequest,
    PutContentsResponse,
    RefResponse,
    RepositoryResponse,
    ShaRef,
    TreeEntry,
    TreeItem,
    TreeRequest,
    TreeResponse,
    UpdateRefRequest,
)

if TYPE_CHECKING:
    from treepush.config import Settings

logger = logging.getLogger(__name__)

_ModelT = TypeVar("_ModelT", bound=BaseModel)

USER_AGENT = "treepush/0.1"


def _error_message(response: httpx.Response) -> str:
    """Extract GitHub's ``message`` field, falling back to the status code."""
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and isinstance(body.get("message"), str):
        return body["message"]
    return f"Unknown error (code: {response.status_code})"


class GitHubClient:
    """Talks to one repository on GitHub through its Git Data API.

    Every call is a single request with a fixed timeout and no retry.
    Transport failures raise NetworkError, unexpected statuses raise
    RemoteAPIError carrying GitHub's message.
    """

    def __init__(
        self,
        owner: str,
        repo: str,
        token: str,
        *,
        api_url: str = "https://api.github.com",
        timeout: float = 60.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.owner = owner
        self.repo = repo
        self._owns_client = http_client is None
        self.client = http_client or httpx.AsyncClient(timeout=timeout)
        self.client.base_url = api_url.rstrip("/")
        self.client.headers.update(
            {
                "Authorization": f"token {token}",
                "User-Agent": USER_AGENT,
                "Accept": "application/vnd.github.v3+json",
            }
        )
        self.timeout = timeout

    @classmethod
    def from_settings(
        cls, settings: Settings, http_client: httpx.AsyncClient | None = None
    ) -> GitHubClient:
        """Build a client from settings. Raises ConfigError if credentials are missing."""
        missing = settings.missing_github_settings()
        if missing:
            msg = f"GitHub settings not configured: {', '.join(missing)}"
            raise ConfigError(msg)
        return cls(
            settings.github_owner,
            settings.github_repo,
            settings.github_token,
            api_url=settings.github_api_url,
            timeout=settings.request_timeout,
            http_client=http_client,
        )

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self) -> GitHubClient:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    @property
    def repo_path(self) -> str:
        return f"/repos/{self.owner}/{self.repo}"

    # ── Transport ────────────────────────────────────

    async def _send(
        self,
        method: str,
        path: str,
        *,
        body: BaseModel | None = None,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        json_body = body.model_dump(exclude_none=True) if body is not None else None
        try:
            return await self.client.request(
                method,
                path,
                json=json_body,
                params=params,
                timeout=self.timeout,
            )
        except httpx.TransportError as exc:
            logger.error("GitHub %s %s failed: %s", method, path, exc)
            msg = f"Request to GitHub failed: {exc}"
            raise NetworkError(msg) from exc

    @staticmethod
    def _check(response: httpx.Response, *expected: int) -> httpx.Response:
        if response.status_code not in expected:
            raise RemoteAPIError(response.status_code, _error_message(response))
        return response

    @staticmethod
    def _parse(model: type[_ModelT], response: httpx.Response) -> _ModelT:
        try:
            return model.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            msg = f"Malformed response body: {exc}"
            raise RemoteAPIError(response.status_code, msg) from exc

    # ── Remote state (read) ──────────────────────────

    async def get_branch_head(self, branch: str) -> str | None:
        """Return the commit sha of ``branch``, or None if it does not exist.

        GitHub answers 409 for a repository with no commits at all.
        """
        resp = await self._send("GET", f"{self.repo_path}/git/ref/heads/{quote(branch)}")
        if resp.status_code in (404, 409):
            return None
        self._check(resp, 200)
        return self._parse(RefResponse, resp).object.sha

    async def get_commit_tree(self, commit_sha: str) -> str:
        """Return the tree sha of a commit."""
        resp = await self._send("GET", f"{self.repo_path}/git/commits/{commit_sha}")
        self._check(resp, 200)
        return self._parse(CommitResponse, resp).tree.sha

    async def get_tree_recursive(self, tree_sha: str) -> list[TreeEntry]:
        """Return the flattened recursive listing of a tree, or [] if it is missing.

        A truncated listing raises RemoteAPIError: the new tree is built from
        the full entry list, so any entry GitHub left out would be deleted.
        """
        resp = await self._send(
            "GET", f"{self.repo_path}/git/trees/{tree_sha}", params={"recursive": "1"}
        )
        if resp.status_code == 404:
            return []
        self._check(resp, 200)
        tree = self._parse(TreeResponse, resp)
        if tree.truncated:
            logger.error(
                "Remote tree %s listing was truncated by GitHub (%d entries)",
                tree_sha,
                len(tree.tree),
            )
            msg = (
                f"Tree listing for {tree_sha} was truncated ({len(tree.tree)} entries); "
                "refusing to sync against an incomplete remote tree"
            )
            raise RemoteAPIError(resp.status_code, msg)
        return tree.tree

    # ── Objects (write) ──────────────────────────────

    async def create_blob(self, content: bytes) -> str:
        """Upload file content and return the blob sha."""
        body = BlobRequest(content=base64.b64encode(content).decode("ascii"))
        resp = await self._send("POST", f"{self.repo_path}/git/blobs", body=body)
        self._check(resp, 201)
        return self._parse(ShaRef, resp).sha

    async def create_tree(self, items: list[TreeItem], base_tree: str | None = None) -> str:
        """Create a tree object from an explicit entry list and return its sha."""
        body = TreeRequest(tree=items, base_tree=base_tree)
        resp = await self._send("POST", f"{self.repo_path}/git/trees", body=body)
        self._check(resp, 201)
        return self._parse(ShaRef, resp).sha

    async def create_commit(
        self,
        tree_sha: str,
        message: str,
        parents: list[str],
        author: GitIdentity,
    ) -> str:
        """Create a commit object and return its sha."""
        body = CommitRequest(
            message=message,
            tree=tree_sha,
            parents=parents,
            author=author,
            committer=author,
        )
        resp = await self._send("POST", f"{self.repo_path}/git/commits", body=body)
        self._check(resp, 201)
        return self._parse(ShaRef, resp).sha

    async def update_ref(self, branch: str, commit_sha: str, *, force: bool = False) -> None:
        """Move ``refs/heads/<branch>`` to ``commit_sha``."""
        body = UpdateRefRequest(sha=commit_sha, force=force)
        resp = await self._send(
            "PATCH", f"{self.repo_path}/git/refs/heads/{quote(branch)}", body=body
        )
        self._check(resp, 200)

    async def create_ref(self, branch: str, commit_sha: str) -> None:
        """Create ``refs/heads/<branch>``. Raises RemoteAPIError(422) if it exists."""
        body = CreateRefRequest(ref=f"refs/heads/{branch}", sha=commit_sha)
        resp = await self._send("POST", f"{self.repo_path}/git/refs", body=body)
        self._check(resp, 201)

    # ── Contents API ─────────────────────────────────

    async def get_contents(self, path: str, ref: str) -> ContentFile | None:
        """Return metadata of a file on ``ref``, or None if it does not exist."""
        resp = await self._send(
            "GET", f"{self.repo_path}/contents/{quote(path)}", params={"ref": ref}
        )
        if resp.status_code == 404:
            return None
        self._check(resp, 200)
        return self._parse(ContentFile, resp)

    async def put_contents(
        self,
        path: str,
        content: bytes,
        message: str,
        branch: str,
        *,
        sha: str | None = None,
        committer: GitIdentity | None = None,
    ) -> str:
        """Create or update one file through the Contents API; return the commit sha.

        Unlike the Git Data API this works on a repository with no commits.
        """
        body = PutContentsRequest(
            message=message,
            content=base64.b64encode(content).decode("ascii"),
            branch=branch,
            sha=sha,
            committer=committer,
        )
        resp = await self._send("PUT", f"{self.repo_path}/contents/{quote(path)}", body=body)
        self._check(resp, 200, 201)
        return self._parse(PutContentsResponse, resp).commit.sha

    # ── Repository / history ─────────────────────────

    async def get_repository(self) -> RepositoryResponse | None:
        """Return repository metadata, or None if it does not exist (or is hidden)."""
        resp = await self._send("GET", self.repo_path)
        if resp.status_code == 404:
            return None
        self._check(resp, 200)
        return self._parse(RepositoryResponse, resp)

    async def create_repository(self, *, private: bool = True) -> bool:
        """Create the repository under the authenticated user.

        Returns False when GitHub reports it already exists.
        """
        body = CreateRepositoryRequest(name=self.repo, private=private)
        resp = await self._send("POST", "/user/repos", body=body)
        if resp.status_code == 422:
            return False
        self._check(resp, 201)
        return True

    async def list_commits(
        self, branch: str, *, per_page: int = 15, page: int = 1
    ) -> list[CommitListItem]:
        """Return one page of the branch history, newest first."""
        resp = await self._send(
            "GET",
            f"{self.repo_path}/commits",
            params={"sha": branch, "per_page": per_page, "page": page},
        )
        if resp.status_code == 409:
            return []
        self._check(resp, 200)
        try:
            return [CommitListItem.model_validate(item) for item in resp.json()]
        except (ValueError, ValidationError) as exc:
            msg = f"Malformed response body: {exc}"
            raise RemoteAPIError(resp.status_code, msg) from exc
