"""Resumable batched sync jobs.

A job is driven entirely by repeated external calls: ``start`` freezes the
local file list and the remote index, every ``step`` processes one bounded
batch, and the last step publishes the commit. Nothing survives in memory
between calls; all state lives in a ``KeyValueStore`` with a time-to-live so
abandoned jobs disappear on their own.
"""

from __future__ import annotations

import logging
import math
import secrets
import time
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

from pydantic import BaseModel, Field

from treepush.exceptions import (
    ConfigError,
    ConflictError,
    JobStateError,
    NetworkError,
    RemoteAPIError,
    SyncError,
)
from treepush.filesystem.enumerator import GITIGNORE, SyncPathConfig, enumerate_files
from treepush.github.schemas import TreeItem
from treepush.services.datetime_service import format_iso, now_utc
from treepush.services.diff_service import (
    FileState,
    RemoteEntry,
    RemoteFileIndex,
    SyncPreview,
    classify_file,
    compose_tree,
    compute_preview,
    matches_remote,
    uploaded_item,
)
from treepush.services.publish_service import CommitPublisher
from treepush.services.remote_service import fetch_remote_state

if TYPE_CHECKING:
    from treepush.config import Settings
    from treepush.github.client import GitHubClient
    from treepush.services.store import KeyValueStore

logger = logging.getLogger(__name__)

ACTIVE_JOB_KEY = "sync:active"
FAILED_FILES_SAMPLE = 10
NO_CHANGES_MESSAGE = "No files changed (repo matches local)."


def _job_key(job_id: str) -> str:
    return f"sync:job:{job_id}"


def _files_key(job_id: str) -> str:
    return f"sync:job:{job_id}:files"


def _remote_key(job_id: str) -> str:
    return f"sync:job:{job_id}:remote"


def _cancelled_key(job_id: str) -> str:
    return f"sync:job:{job_id}:cancelled"


def _step_key(job_id: str) -> str:
    return f"sync:job:{job_id}:step"


def new_job_id() -> str:
    """Opaque job token: ``sync_<unix seconds>_<8 random chars>``."""
    return f"sync_{int(time.time())}_{secrets.token_urlsafe(6)}"


def total_batches_for(total_files: int, batch_size: int) -> int:
    return math.ceil(total_files / batch_size)


class JobStatus(StrEnum):
    """Persisted job states. No record at all means idle."""

    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class FailedFile(BaseModel):
    path: str
    reason: str


class SyncJob(BaseModel):
    """Everything a step needs to resume, persisted as one JSON record."""

    id: str
    status: JobStatus = JobStatus.PROCESSING
    total_files: int
    processed_files: int = 0
    uploaded_blobs: int = 0
    skipped_empty: int = 0
    current_batch: int = 0
    total_batches: int
    batch_size: int
    ordered_files: list[str]
    failed_files: list[FailedFile] = Field(default_factory=list)
    pending_tree_items: list[TreeItem] = Field(default_factory=list)
    managed_roots: list[str] = Field(default_factory=list)
    head_commit_id: str | None = None
    base_tree_id: str | None = None
    commit_message: str
    message: str = ""
    started_at: str
    completed_at: str | None = None
    result_commit_id: str | None = None
    result_message: str | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status != JobStatus.PROCESSING


class StartResult(BaseModel):
    job_id: str
    total_files: int
    total_batches: int
    message: str


class JobSnapshot(BaseModel):
    """Read-only projection of a job, returned by ``step`` and ``status``."""

    job_id: str
    status: JobStatus
    total_files: int
    processed_files: int
    uploaded_blobs: int
    current_batch: int
    total_batches: int
    failed_count: int
    progress_percent: int
    has_more: bool
    message: str
    started_at: str
    completed_at: str | None = None
    commit: str | None = None
    result_message: str | None = None
    error: str | None = None
    failed_files: list[FailedFile] = Field(default_factory=list)

    @classmethod
    def from_job(cls, job: SyncJob) -> JobSnapshot:
        if job.status == JobStatus.COMPLETED:
            percent = 100
        elif job.total_files > 0:
            percent = round(job.processed_files / job.total_files * 100)
        else:
            percent = 0
        return cls(
            job_id=job.id,
            status=job.status,
            total_files=job.total_files,
            processed_files=job.processed_files,
            uploaded_blobs=job.uploaded_blobs,
            current_batch=job.current_batch,
            total_batches=job.total_batches,
            failed_count=len(job.failed_files),
            progress_percent=percent,
            has_more=not job.is_terminal,
            message=job.message,
            started_at=job.started_at,
            completed_at=job.completed_at,
            commit=job.result_commit_id[:7] if job.result_commit_id else None,
            result_message=job.result_message,
            error=job.error,
            failed_files=job.failed_files[:FAILED_FILES_SAMPLE] if job.is_terminal else [],
        )


class CancelResult(BaseModel):
    job_id: str
    cancelled: bool = True
    message: str = "Sync job cleared. You can start a new sync."


def _dump_index(index: RemoteFileIndex) -> dict[str, dict[str, str]]:
    return {path: {"sha": e.sha, "mode": e.mode, "type": e.type} for path, e in index.items()}


def _load_index(raw: dict[str, dict[str, str]]) -> RemoteFileIndex:
    index: RemoteFileIndex = {}
    for path, e in raw.items():
        kind: Literal["blob", "commit"] = "commit" if e.get("type") == "commit" else "blob"
        index[path] = RemoteEntry(sha=e["sha"], mode=e["mode"], type=kind)
    return index


class SyncJobService:
    """Start, step, inspect and cancel resumable sync jobs.

    Constructed with an injected GitHub client and key-value store; holds no
    state of its own between calls.
    """

    def __init__(self, client: GitHubClient, store: KeyValueStore, settings: Settings) -> None:
        self.client = client
        self.store = store
        self.settings = settings
        self.ttl = settings.job_ttl_seconds
        self.publisher = CommitPublisher(
            client,
            settings.github_branch,
            settings.author_name,
            settings.author_email,
        )

    # ── Persistence helpers ──────────────────────────

    async def _load(self, job_id: str) -> SyncJob | None:
        raw = await self.store.get(_job_key(job_id))
        return None if raw is None else SyncJob.model_validate(raw)

    async def _require(self, job_id: str) -> SyncJob:
        job = await self._load(job_id)
        if job is None:
            msg = f"Sync job not found or expired: {job_id}"
            raise JobStateError(msg)
        return job

    async def _ensure_not_cancelled(self, job_id: str) -> None:
        if await self.store.get(_cancelled_key(job_id)) is not None:
            logger.warning("Discarding work for cancelled sync job %s", job_id)
            msg = f"Sync job was cancelled: {job_id}"
            raise JobStateError(msg)

    async def _save(self, job: SyncJob) -> None:
        """Persist a job unless it was cancelled while this call was running."""
        await self._ensure_not_cancelled(job.id)
        await self.store.set(_job_key(job.id), job.model_dump(mode="json"), self.ttl)

    async def _release_lock(self, job_id: str) -> None:
        if await self.store.get(ACTIVE_JOB_KEY) == job_id:
            await self.store.delete(ACTIVE_JOB_KEY)

    async def _acquire_lock(self, job_id: str) -> None:
        """Claim the single active-job slot atomically.

        A slot held by a job that no longer exists or already finished is
        stale (e.g. the process died between steps) and is reclaimed once.
        """
        if await self.store.set_if_absent(ACTIVE_JOB_KEY, job_id, self.ttl):
            return

        holder = await self.store.get(ACTIVE_JOB_KEY)
        if holder is not None:
            existing = await self._load(holder)
            if existing is not None and existing.status == JobStatus.PROCESSING:
                raise ConflictError("A sync is already in progress.", job_id=holder)
            logger.warning("Reclaiming stale active-job slot held by %s", holder)
            await self.store.delete(ACTIVE_JOB_KEY)

        if not await self.store.set_if_absent(ACTIVE_JOB_KEY, job_id, self.ttl):
            holder = await self.store.get(ACTIVE_JOB_KEY)
            raise ConflictError("A sync is already in progress.", job_id=holder)

    async def _touch(self, job_id: str) -> None:
        """Extend the lifetime of auxiliary records while the job makes progress."""
        await self.store.expire(_files_key(job_id), self.ttl)
        await self.store.expire(_remote_key(job_id), self.ttl)
        await self.store.expire(ACTIVE_JOB_KEY, self.ttl)

    async def _conclude(self, job: SyncJob) -> JobSnapshot:
        """Persist a terminal job, drop its snapshots and free the active slot."""
        job.completed_at = format_iso(now_utc())
        try:
            await self._save(job)
        finally:
            await self.store.delete(_files_key(job.id), _remote_key(job.id))
            await self._release_lock(job.id)
        logger.info("Sync job %s finished: %s", job.id, job.status)
        return JobSnapshot.from_job(job)

    # ── Operations ───────────────────────────────────

    async def start(
        self,
        config: SyncPathConfig | None = None,
        commit_message: str | None = None,
    ) -> StartResult:
        """Freeze the file list and remote index and create a processing job.

        Raises ConflictError if another job is processing.
        """
        if config is None:
            config = SyncPathConfig.from_settings(self.settings)
        if not config.roots:
            msg = "No sync paths configured."
            raise ConfigError(msg)

        job_id = new_job_id()
        await self._acquire_lock(job_id)
        try:
            enumeration = enumerate_files(config)
            if not enumeration.files:
                checked = ", ".join(
                    f"{c.path} ({'dir' if c.is_dir else 'file' if c.is_file else 'not found'})"
                    for c in enumeration.checked_paths
                )
                msg = f"No files found to sync. Paths checked: {checked or 'none'}"
                raise ConfigError(msg)

            remote = await fetch_remote_state(self.client, self.settings.github_branch)

            managed_roots = list(config.roots)
            if enumeration.has_gitignore:
                managed_roots.append(GITIGNORE)

            ordered = list(enumeration.files)
            batch_size = self.settings.batch_size
            total_batches = total_batches_for(len(ordered), batch_size)
            job = SyncJob(
                id=job_id,
                total_files=len(ordered),
                total_batches=total_batches,
                batch_size=batch_size,
                ordered_files=ordered,
                managed_roots=managed_roots,
                head_commit_id=remote.head_commit_id,
                base_tree_id=remote.base_tree_id,
                commit_message=commit_message or self.settings.default_commit_message,
                message=f"Starting sync of {len(ordered)} files in {total_batches} batches...",
                started_at=format_iso(now_utc()),
            )

            files = {path: str(full) for path, full in enumeration.files.items()}
            await self.store.set(_files_key(job_id), files, self.ttl)
            await self.store.set(_remote_key(job_id), _dump_index(remote.index), self.ttl)
            await self.store.set(_job_key(job_id), job.model_dump(mode="json"), self.ttl)
        except BaseException:
            await self.store.delete(_files_key(job_id), _remote_key(job_id), _job_key(job_id))
            await self._release_lock(job_id)
            raise

        logger.info(
            "Started sync job %s: %d files in %d batches (head %s)",
            job_id,
            job.total_files,
            total_batches,
            remote.head_commit_id[:7] if remote.head_commit_id else "none",
        )
        return StartResult(
            job_id=job_id,
            total_files=job.total_files,
            total_batches=total_batches,
            message=job.message,
        )

    async def step(self, job_id: str) -> JobSnapshot:
        """Process the next batch; finalize after the last one.

        Calling ``step`` on a finished job returns its terminal snapshot.
        Raises ConflictError while another step for the same job is running:
        the job record is reloaded only after the step lock is held, so a
        batch is never processed twice.
        """
        if not await self.store.set_if_absent(_step_key(job_id), True, self.ttl):
            msg = f"A step is already running for sync job {job_id}."
            raise ConflictError(msg, job_id=job_id)
        try:
            return await self._step_locked(job_id)
        finally:
            await self.store.delete(_step_key(job_id))

    async def _step_locked(self, job_id: str) -> JobSnapshot:
        job = await self._require(job_id)
        if job.is_terminal:
            return JobSnapshot.from_job(job)

        raw_files: dict[str, str] | None = await self.store.get(_files_key(job_id))
        raw_index: dict[str, Any] | None = await self.store.get(_remote_key(job_id))
        if raw_files is None or raw_index is None:
            logger.error("Sync job %s lost its file list or remote index", job_id)
            job.status = JobStatus.FAILED
            job.error = "File list not found."
            job.message = "Sync failed."
            return await self._conclude(job)
        index = _load_index(raw_index)

        start = job.current_batch * job.batch_size
        batch = job.ordered_files[start : start + job.batch_size]
        logger.info(
            "Sync job %s: processing batch %d of %d (%d files)",
            job_id,
            job.current_batch + 1,
            job.total_batches,
            len(batch),
        )

        for rel_path in batch:
            await self._process_file(job, rel_path, raw_files, index)

        job.current_batch += 1
        if job.current_batch >= job.total_batches:
            return await self._finalize(job, index)

        job.message = (
            f"Processed {job.processed_files} of {job.total_files} files "
            f"({job.uploaded_blobs} uploaded)..."
        )
        await self._save(job)
        await self._touch(job_id)
        return JobSnapshot.from_job(job)

    async def _process_file(
        self,
        job: SyncJob,
        rel_path: str,
        files: dict[str, str],
        index: RemoteFileIndex,
    ) -> None:
        """Classify and (if needed) upload one file. Failures are recorded, not raised."""
        full_path = Path(files.get(rel_path) or Path(self.settings.repo_path) / rel_path)
        try:
            content = full_path.read_bytes()
        except FileNotFoundError:
            job.failed_files.append(FailedFile(path=rel_path, reason="not found"))
            logger.warning("Sync job %s: %s not found", job.id, rel_path)
            return
        except OSError as exc:
            reason = f"unreadable: {exc.strerror or exc}"
            job.failed_files.append(FailedFile(path=rel_path, reason=reason))
            logger.warning("Sync job %s: cannot read %s: %s", job.id, rel_path, exc)
            return

        classification = classify_file(rel_path, content, index)
        if classification.state == FileState.EMPTY:
            job.skipped_empty += 1
            return

        if classification.state == FileState.UNCHANGED:
            job.pending_tree_items.append(classification.reused_item())
            job.processed_files += 1
            return

        try:
            blob_sha = await self.client.create_blob(content)
        except (RemoteAPIError, NetworkError) as exc:
            reason = exc.message if isinstance(exc, RemoteAPIError) else str(exc)
            job.failed_files.append(FailedFile(path=rel_path, reason=reason))
            logger.warning("Sync job %s: upload of %s failed: %s", job.id, rel_path, exc)
            return

        job.pending_tree_items.append(uploaded_item(classification, blob_sha))
        job.processed_files += 1
        job.uploaded_blobs += 1

    async def _finalize(self, job: SyncJob, index: RemoteFileIndex) -> JobSnapshot:
        """Compose the full tree and publish it, ending the job either way."""
        await self._ensure_not_cancelled(job.id)
        failed_paths = [f.path for f in job.failed_files]
        items, plan = compose_tree(
            job.pending_tree_items,
            index,
            job.ordered_files,
            job.managed_roots,
            failed_paths,
        )

        if not items or (job.head_commit_id is not None and matches_remote(items, index)):
            job.status = JobStatus.COMPLETED
            job.message = "No files to sync."
            job.result_message = NO_CHANGES_MESSAGE
            if job.failed_files:
                job.result_message += f" ({len(job.failed_files)} files skipped)"
            return await self._conclude(job)

        job.message = "Creating commit..."
        try:
            result = await self.publisher.publish(items, job.head_commit_id, job.commit_message)
        except SyncError as exc:
            logger.error("Sync job %s failed to publish: %s", job.id, exc)
            job.status = JobStatus.FAILED
            job.error = f"Failed to publish commit: {exc}"
            job.message = "Sync failed."
            return await self._conclude(job)

        summary = (
            f"Synced {job.processed_files} files to GitHub ({job.uploaded_blobs} uploaded)."
        )
        if plan.deleted:
            summary += f" ({len(plan.deleted)} files deleted)"
        if job.failed_files:
            summary += f" ({len(job.failed_files)} files skipped)"

        job.status = JobStatus.COMPLETED
        job.message = "Sync complete!"
        job.result_message = summary
        job.result_commit_id = result.commit_sha
        return await self._conclude(job)

    async def status(self, job_id: str) -> JobSnapshot:
        """Return the persisted state of a job without changing it."""
        return JobSnapshot.from_job(await self._require(job_id))

    async def active_job(self) -> JobSnapshot | None:
        """Return the processing job, if any."""
        holder = await self.store.get(ACTIVE_JOB_KEY)
        if holder is None:
            return None
        job = await self._load(holder)
        if job is None or job.is_terminal:
            return None
        return JobSnapshot.from_job(job)

    async def cancel(self, job_id: str) -> CancelResult:
        """Drop every record of a job, whatever its state.

        A tombstone is left behind so that a step still running for this job
        cannot write its result back afterwards.
        """
        await self.store.set(_cancelled_key(job_id), True, self.ttl)
        await self.store.delete(
            _job_key(job_id), _files_key(job_id), _remote_key(job_id), _step_key(job_id)
        )
        await self._release_lock(job_id)
        logger.info("Cancelled sync job %s", job_id)
        return CancelResult(job_id=job_id)

    async def preview(self, config: SyncPathConfig | None = None) -> SyncPreview:
        """Classify the local tree against the remote branch without uploading."""
        if config is None:
            config = SyncPathConfig.from_settings(self.settings)
        enumeration = enumerate_files(config)
        remote = await fetch_remote_state(self.client, self.settings.github_branch)
        roots = list(config.roots)
        if enumeration.has_gitignore:
            roots.append(GITIGNORE)
        return compute_preview(enumeration.files, remote.index, roots)
