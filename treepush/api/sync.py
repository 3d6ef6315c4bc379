"""Sync API endpoints: job control, preview, bootstrap and history."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from treepush.api.deps import (
    get_job_service,
    get_repo_service,
    get_trigger_service,
    require_token,
)
from treepush.services.job_service import (
    CancelResult,
    JobSnapshot,
    StartResult,
    SyncJobService,
)
from treepush.services.repo_service import (
    CommitSummary,
    ConnectionResult,
    InitResult,
    RepositoryService,
)
from treepush.services.trigger_service import SyncEvent, SyncTriggerService, TriggerResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["sync"], dependencies=[Depends(require_token)])


# ── Schemas ──────────────────────────────────────────


class StartJobRequest(BaseModel):
    """Request to start a sync job."""

    commit_message: str | None = Field(default=None, max_length=1000)


class PreviewResponse(BaseModel):
    """Dry-run classification of the local tree against the branch."""

    new: list[str]
    changed: list[str]
    unchanged: list[str]
    empty: list[str]
    unreadable: list[str]
    deleted: list[str]
    preserved: list[str]
    to_upload: int
    to_delete: int


class HistoryResponse(BaseModel):
    commits: list[CommitSummary]
    page: int
    per_page: int


class InitRequest(BaseModel):
    create_repo: bool = False
    private: bool = True


class EventRequest(BaseModel):
    event: SyncEvent


# ── Job control ──────────────────────────────────────


@router.post("/jobs", response_model=StartResult, status_code=201)
async def start_job(
    jobs: Annotated[SyncJobService, Depends(get_job_service)],
    body: StartJobRequest | None = None,
) -> StartResult:
    """Start a sync job. 409 if one is already processing."""
    commit_message = body.commit_message if body is not None else None
    return await jobs.start(commit_message=commit_message)


@router.get("/jobs/active", response_model=JobSnapshot | None)
async def active_job(
    jobs: Annotated[SyncJobService, Depends(get_job_service)],
) -> JobSnapshot | None:
    """Return the job currently processing, or null."""
    return await jobs.active_job()


@router.post("/jobs/{job_id}/step", response_model=JobSnapshot)
async def step_job(
    job_id: str,
    jobs: Annotated[SyncJobService, Depends(get_job_service)],
) -> JobSnapshot:
    """Process the next batch of a job."""
    return await jobs.step(job_id)


@router.get("/jobs/{job_id}", response_model=JobSnapshot)
async def job_status(
    job_id: str,
    jobs: Annotated[SyncJobService, Depends(get_job_service)],
) -> JobSnapshot:
    return await jobs.status(job_id)


@router.delete("/jobs/{job_id}", response_model=CancelResult)
async def cancel_job(
    job_id: str,
    jobs: Annotated[SyncJobService, Depends(get_job_service)],
) -> CancelResult:
    """Cancel and forget a job, whatever its state."""
    return await jobs.cancel(job_id)


# ── Inspection / bootstrap ───────────────────────────


@router.get("/preview", response_model=PreviewResponse)
async def preview(
    jobs: Annotated[SyncJobService, Depends(get_job_service)],
) -> PreviewResponse:
    """Show what a sync would upload, keep and delete, without changing anything."""
    result = await jobs.preview()
    return PreviewResponse(
        new=result.new,
        changed=result.changed,
        unchanged=result.unchanged,
        empty=result.empty,
        unreadable=result.unreadable,
        deleted=result.deleted,
        preserved=result.preserved,
        to_upload=len(result.new) + len(result.changed),
        to_delete=len(result.deleted),
    )


@router.get("/history", response_model=HistoryResponse)
async def history(
    repos: Annotated[RepositoryService, Depends(get_repo_service)],
    per_page: Annotated[int, Query(ge=1, le=100)] = 15,
    page: Annotated[int, Query(ge=1)] = 1,
) -> HistoryResponse:
    commits = await repos.get_commit_history(per_page=per_page, page=page)
    return HistoryResponse(commits=commits, page=page, per_page=per_page)


@router.post("/init", response_model=InitResult)
async def init_repository(
    repos: Annotated[RepositoryService, Depends(get_repo_service)],
    body: InitRequest | None = None,
) -> InitResult:
    """Create the repository if asked, write .gitignore and seed an empty branch."""
    body = body or InitRequest()
    return await repos.init_repository(create_repo=body.create_repo, private=body.private)


@router.get("/connection", response_model=ConnectionResult)
async def test_connection(
    repos: Annotated[RepositoryService, Depends(get_repo_service)],
) -> ConnectionResult:
    return await repos.test_connection()


@router.post("/events", response_model=TriggerResult)
async def trigger_event(
    body: EventRequest,
    trigger: Annotated[SyncTriggerService, Depends(get_trigger_service)],
) -> TriggerResult:
    """Observer entry point: a host lifecycle event that may start a sync."""
    result = await trigger.trigger(body.event)
    logger.info("Event %s: started=%s (%s)", body.event, result.started, result.reason)
    return result
