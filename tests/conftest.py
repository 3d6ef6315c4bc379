"""Shared test fixtures for treepush."""

from __future__ import annotations

import base64
import hashlib
import json
import re
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from treepush.config import Settings
from treepush.github.client import GitHubClient
from treepush.main import close_services, create_app, init_services
from treepush.services.diff_service import git_blob_sha
from treepush.services.job_service import SyncJobService
from treepush.services.store import InMemoryKeyValueStore

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator
    from pathlib import Path

TEST_API_TOKEN = "test-api-token-with-at-least-32-characters"
OWNER = "octo"
REPO = "site"
REPO_PATH = f"/repos/{OWNER}/{REPO}"

_REF_GET = re.compile(rf"^{REPO_PATH}/git/ref/heads/(?P<branch>.+)$")
_REF_PATCH = re.compile(rf"^{REPO_PATH}/git/refs/heads/(?P<branch>.+)$")
_COMMIT_GET = re.compile(rf"^{REPO_PATH}/git/commits/(?P<sha>[0-9a-f]+)$")
_TREE_GET = re.compile(rf"^{REPO_PATH}/git/trees/(?P<sha>[0-9a-f]+)$")
_CONTENTS = re.compile(rf"^{REPO_PATH}/contents/(?P<path>.+)$")


def _object_sha(kind: str, payload: Any) -> str:
    raw = json.dumps(payload, sort_keys=True).encode()
    return hashlib.sha1(kind.encode() + b"\0" + raw, usedforsecurity=False).hexdigest()


def _json(status: int, body: Any) -> httpx.Response:
    return httpx.Response(status, json=body)


class FakeGitHub:
    """In-memory stand-in for the GitHub REST API, served through httpx.MockTransport.

    Blob shas are real git blob ids so content comparison behaves like GitHub.
    """

    def __init__(self) -> None:
        self.blobs: dict[str, bytes] = {}
        self.trees: dict[str, list[dict[str, str]]] = {}
        self.commits: dict[str, dict[str, Any]] = {}
        self.refs: dict[str, str] = {}
        self.requests: list[tuple[str, str, Any]] = []
        self.repo_exists = True
        self.fail_blob_contents: set[bytes] = set()
        self.fail_tree_status: int | None = None
        self.move_head_on_tree: str | None = None
        self.ref_created_concurrently = False
        self.truncate_listing: set[str] = set()
        self._commit_counter = 0

    # ── Seeding / inspection ─────────────────────────

    def _store_tree(self, entries: list[dict[str, str]]) -> str:
        entries = sorted(entries, key=lambda e: e["path"])
        sha = _object_sha("tree", entries)
        self.trees[sha] = entries
        return sha

    def _store_commit(self, tree: str, parents: list[str], message: str) -> str:
        self._commit_counter += 1
        payload = {"tree": tree, "parents": parents, "message": message, "n": self._commit_counter}
        sha = _object_sha("commit", payload)
        self.commits[sha] = payload
        return sha

    def seed(
        self,
        files: dict[str, bytes],
        branch: str = "main",
        modes: dict[str, str] | None = None,
        message: str = "seed",
        submodules: dict[str, str] | None = None,
    ) -> str:
        """Commit exactly *files* and *submodules* and point *branch* at it."""
        entries = [
            {"path": path, "mode": "160000", "type": "commit", "sha": sha}
            for path, sha in (submodules or {}).items()
        ]
        for path, content in files.items():
            sha = git_blob_sha(content)
            self.blobs[sha] = content
            mode = (modes or {}).get(path, "100644")
            entries.append({"path": path, "mode": mode, "type": "blob", "sha": sha})
        tree = self._store_tree(entries)
        parents = [self.refs[branch]] if branch in self.refs else []
        commit = self._store_commit(tree, parents, message)
        self.refs[branch] = commit
        return commit

    def head(self, branch: str = "main") -> str | None:
        return self.refs.get(branch)

    def tree_entries(self, branch: str = "main") -> dict[str, dict[str, str]]:
        commit = self.commits[self.refs[branch]]
        return {e["path"]: e for e in self.trees[commit["tree"]]}

    def tree_files(self, branch: str = "main") -> dict[str, bytes]:
        entries = self.tree_entries(branch).items()
        return {p: self.blobs[e["sha"]] for p, e in entries if e["type"] == "blob"}

    def count(self, method: str, suffix: str) -> int:
        return sum(1 for m, path, _ in self.requests if m == method and path.endswith(suffix))

    def bodies(self, method: str, suffix: str) -> list[Any]:
        return [body for m, path, body in self.requests if m == method and path.endswith(suffix)]

    # ── Request handling ─────────────────────────────

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        body = json.loads(request.content) if request.content else None
        self.requests.append((request.method, path, body))

        if path == "/user/repos" and request.method == "POST":
            if self.repo_exists:
                return _json(422, {"message": "Repository creation failed."})
            self.repo_exists = True
            return _json(201, {"full_name": f"{OWNER}/{REPO}", "private": body["private"]})

        if not self.repo_exists:
            return _json(404, {"message": "Not Found"})

        if path == REPO_PATH and request.method == "GET":
            return _json(
                200, {"full_name": f"{OWNER}/{REPO}", "private": True, "default_branch": "main"}
            )

        if match := _REF_GET.match(path):
            branch = match["branch"]
            if not self.refs:
                return _json(409, {"message": "Git Repository is empty."})
            if branch not in self.refs:
                return _json(404, {"message": "Not Found"})
            sha = self.refs[branch]
            return _json(200, {"ref": f"refs/heads/{branch}", "object": {"sha": sha}})

        if match := _COMMIT_GET.match(path):
            commit = self.commits.get(match["sha"])
            if commit is None:
                return _json(404, {"message": "Not Found"})
            return _json(
                200,
                {
                    "sha": match["sha"],
                    "tree": {"sha": commit["tree"]},
                    "message": commit["message"],
                    "parents": [{"sha": p} for p in commit["parents"]],
                },
            )

        if match := _TREE_GET.match(path):
            return self._get_tree(match["sha"])

        if path == f"{REPO_PATH}/git/blobs" and request.method == "POST":
            content = base64.b64decode(body["content"])
            if content in self.fail_blob_contents:
                return _json(403, {"message": "Resource not accessible by integration"})
            sha = git_blob_sha(content)
            self.blobs[sha] = content
            return _json(201, {"sha": sha})

        if path == f"{REPO_PATH}/git/trees" and request.method == "POST":
            if self.fail_tree_status is not None:
                return _json(self.fail_tree_status, {"message": "tree creation failed"})
            if self.move_head_on_tree is not None:
                self.seed({"intruder.txt": b"pushed elsewhere"}, branch=self.move_head_on_tree)
            for item in body["tree"]:
                if item["type"] == "blob" and item["sha"] not in self.blobs:
                    return _json(422, {"message": f"Invalid sha for {item['path']}"})
            return _json(201, {"sha": self._store_tree(body["tree"])})

        if path == f"{REPO_PATH}/git/commits" and request.method == "POST":
            if body["tree"] not in self.trees:
                return _json(422, {"message": "Tree not found"})
            sha = self._store_commit(body["tree"], body["parents"], body["message"])
            self.commits[sha]["author"] = body["author"]
            return _json(201, {"sha": sha})

        if match := _REF_PATCH.match(path):
            branch = match["branch"]
            if branch not in self.refs:
                return _json(422, {"message": "Reference does not exist"})
            self.refs[branch] = body["sha"]
            return _json(200, {"ref": f"refs/heads/{branch}", "object": {"sha": body["sha"]}})

        if path == f"{REPO_PATH}/git/refs" and request.method == "POST":
            branch = body["ref"].removeprefix("refs/heads/")
            if self.ref_created_concurrently:
                self.ref_created_concurrently = False
                self.seed({"other.txt": b"x"}, branch=branch)
            if branch in self.refs:
                return _json(422, {"message": "Reference already exists"})
            self.refs[branch] = body["sha"]
            return _json(201, {"ref": body["ref"], "object": {"sha": body["sha"]}})

        if match := _CONTENTS.match(path):
            return self._contents(request, match["path"], body)

        if path == f"{REPO_PATH}/commits" and request.method == "GET":
            return self._list_commits(request)

        return _json(404, {"message": f"Unhandled {request.method} {path}"})

    def _get_tree(self, sha: str) -> httpx.Response:
        entries = self.trees.get(sha)
        if entries is None:
            return _json(404, {"message": "Not Found"})
        listing = [e for e in entries if e["path"] not in self.truncate_listing]
        dirs = sorted({p.rsplit("/", 1)[0] for p in (e["path"] for e in entries) if "/" in p})
        for directory in dirs:
            listing.append(
                {"path": directory, "mode": "040000", "type": "tree", "sha": "d" * 40}
            )
        truncated = bool(self.truncate_listing)
        return _json(200, {"sha": sha, "tree": listing, "truncated": truncated})

    def _contents(self, request: httpx.Request, path: str, body: Any) -> httpx.Response:
        branch = request.url.params.get("ref") if request.method == "GET" else body["branch"]
        if request.method == "GET":
            if branch not in self.refs or path not in self.tree_entries(branch):
                return _json(404, {"message": "Not Found"})
            entry = self.tree_entries(branch)[path]
            return _json(200, {"path": path, "sha": entry["sha"], "type": "file"})

        content = base64.b64decode(body["content"])
        files = self.tree_files(branch) if branch in self.refs else {}
        files[path] = content
        commit = self.seed(files, branch=branch, message=body["message"])
        return _json(
            201,
            {"content": {"path": path, "sha": git_blob_sha(content)}, "commit": {"sha": commit}},
        )

    def _list_commits(self, request: httpx.Request) -> httpx.Response:
        branch = request.url.params.get("sha", "main")
        if not self.refs:
            return _json(409, {"message": "Git Repository is empty."})
        per_page = int(request.url.params.get("per_page", 30))
        page = int(request.url.params.get("page", 1))
        history = []
        sha = self.refs.get(branch)
        while sha is not None:
            commit = self.commits[sha]
            history.append(
                {
                    "sha": sha,
                    "html_url": f"https://github.com/{OWNER}/{REPO}/commit/{sha}",
                    "commit": {
                        "message": commit["message"],
                        "author": commit.get(
                            "author",
                            {"name": "seeder", "email": "s@x", "date": "2026-01-01T00:00:00Z"},
                        ),
                    },
                }
            )
            sha = commit["parents"][0] if commit["parents"] else None
        start = (page - 1) * per_page
        return _json(200, history[start : start + per_page])


def write_files(root: Path, files: dict[str, bytes | str]) -> None:
    """Create files under *root*, making parent directories as needed."""
    for rel, content in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, str):
            path.write_text(content, encoding="utf-8")
        else:
            path.write_bytes(content)


@pytest.fixture
def site_root(tmp_path: Path) -> Path:
    root = tmp_path / "site"
    root.mkdir()
    return root


@pytest.fixture
def sync_settings(site_root: Path, tmp_path: Path) -> Settings:
    """Settings pointing at a temporary site root and the fake GitHub."""
    return Settings(
        _env_file=None,
        debug=True,
        api_token=TEST_API_TOKEN,
        github_token="ghp_test",
        github_owner=OWNER,
        github_repo=REPO,
        repo_path=site_root,
        sync_paths=["wp-content/plugins", "wp-content/themes"],
        store_backend="memory",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
    )


@pytest.fixture
def fake_github() -> FakeGitHub:
    return FakeGitHub()


@pytest.fixture
async def github_client(fake_github: FakeGitHub) -> AsyncGenerator[GitHubClient]:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(fake_github.handler))
    client = GitHubClient(OWNER, REPO, "ghp_test", http_client=http_client)
    yield client
    await http_client.aclose()


@pytest.fixture
def memory_store() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.fixture
def job_service(
    github_client: GitHubClient,
    memory_store: InMemoryKeyValueStore,
    sync_settings: Settings,
) -> SyncJobService:
    return SyncJobService(github_client, memory_store, sync_settings)


@asynccontextmanager
async def create_test_client(
    settings: Settings, fake: FakeGitHub
) -> AsyncGenerator[AsyncClient]:
    """Create an HTTP test client with a fully initialized app.

    Performs the work of the application lifespan because ASGITransport
    does not trigger it.
    """
    app = create_app(settings)
    settings.validate_runtime_security()
    github_http = httpx.AsyncClient(transport=httpx.MockTransport(fake.handler))
    await init_services(app, http_client=github_http)

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers={"Authorization": f"Bearer {TEST_API_TOKEN}"},
    ) as ac:
        yield ac

    await close_services(app)
    await github_http.aclose()
