"""Typed request and response bodies for the GitHub Git Data and Contents APIs."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

BLOB_MODE = "100644"
EXECUTABLE_MODE = "100755"
SUBMODULE_MODE = "160000"


class _Response(BaseModel):
    """Base for response bodies: unknown fields returned by GitHub are ignored."""

    model_config = ConfigDict(extra="ignore")


# ── Refs / commits / trees (read) ───────────────────


class RefObject(_Response):
    sha: str
    type: str = "commit"


class RefResponse(_Response):
    ref: str
    object: RefObject


class ShaRef(_Response):
    sha: str


class CommitResponse(_Response):
    sha: str
    tree: ShaRef
    message: str = ""
    parents: list[ShaRef] = Field(default_factory=list)


class TreeEntry(_Response):
    """One entry of a recursive tree listing."""

    path: str
    mode: str
    type: str
    sha: str
    size: int | None = None


class TreeResponse(_Response):
    sha: str
    tree: list[TreeEntry] = Field(default_factory=list)
    truncated: bool = False


# ── Objects (write) ──────────────────────────────────


class BlobRequest(BaseModel):
    content: str
    encoding: Literal["base64", "utf-8"] = "base64"


class TreeItem(BaseModel):
    """An entry destined for a new tree object."""

    path: str
    mode: str = BLOB_MODE
    type: Literal["blob", "commit"] = "blob"
    sha: str


class TreeRequest(BaseModel):
    tree: list[TreeItem]
    base_tree: str | None = None


class GitIdentity(BaseModel):
    name: str
    email: str
    date: str | None = None


class CommitRequest(BaseModel):
    message: str
    tree: str
    parents: list[str] = Field(default_factory=list)
    author: GitIdentity
    committer: GitIdentity | None = None


class UpdateRefRequest(BaseModel):
    sha: str
    force: bool = False


class CreateRefRequest(BaseModel):
    ref: str
    sha: str


# ── Contents API ─────────────────────────────────────


class ContentFile(_Response):
    path: str
    sha: str
    type: str = "file"


class PutContentsRequest(BaseModel):
    message: str
    content: str
    branch: str
    sha: str | None = None
    committer: GitIdentity | None = None


class PutContentsResponse(_Response):
    content: ContentFile | None = None
    commit: ShaRef


# ── Repository / history ─────────────────────────────


class RepositoryResponse(_Response):
    full_name: str
    private: bool = True
    default_branch: str | None = None


class CreateRepositoryRequest(BaseModel):
    name: str
    description: str = "Site synced via treepush"
    private: bool = True
    auto_init: bool = False


class CommitAuthor(_Response):
    name: str = ""
    email: str = ""
    date: str = ""


class CommitDetail(_Response):
    message: str
    author: CommitAuthor = Field(default_factory=CommitAuthor)


class CommitListItem(_Response):
    sha: str
    commit: CommitDetail
    html_url: str | None = None
