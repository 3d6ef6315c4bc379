"""Externally-triggered syncs: lifecycle events that may start a job."""

from __future__ import annotations

import logging
from enum import StrEnum
from typing import TYPE_CHECKING

from pydantic import BaseModel

from treepush.exceptions import ConflictError

if TYPE_CHECKING:
    from treepush.config import Settings
    from treepush.services.job_service import SyncJobService

logger = logging.getLogger(__name__)


class SyncEvent(StrEnum):
    """Host lifecycle events that change managed files."""

    UPGRADE_COMPLETE = "upgrade_complete"
    PLUGIN_ACTIVATED = "plugin_activated"
    PLUGIN_DEACTIVATED = "plugin_deactivated"
    PLUGIN_DELETED = "plugin_deleted"
    THEME_SWITCHED = "theme_switched"
    THEME_DELETED = "theme_deleted"
    MANUAL = "manual"


class TriggerResult(BaseModel):
    started: bool
    reason: str
    job_id: str | None = None


class SyncTriggerService:
    """Decides whether an event starts a sync.

    Only starts the job; driving it to completion is left to whoever polls
    ``step``, same as a manually started job.
    """

    def __init__(self, jobs: SyncJobService | None, settings: Settings) -> None:
        self.jobs = jobs
        self.settings = settings

    async def trigger(self, event: SyncEvent) -> TriggerResult:
        if not self.settings.auto_sync and event != SyncEvent.MANUAL:
            return TriggerResult(started=False, reason="Auto-sync is disabled")
        if self.jobs is None or self.settings.missing_github_settings():
            return TriggerResult(started=False, reason="GitHub settings not configured")

        active = await self.jobs.active_job()
        if active is not None:
            logger.info("Ignoring %s: sync job %s already running", event, active.job_id)
            return TriggerResult(
                started=False, reason="A sync is already in progress", job_id=active.job_id
            )

        message = f"{self.settings.default_commit_message} ({event})"
        try:
            result = await self.jobs.start(commit_message=message)
        except ConflictError as exc:
            return TriggerResult(started=False, reason=str(exc), job_id=exc.job_id)
        logger.info("Event %s started sync job %s", event, result.job_id)
        return TriggerResult(started=True, reason=result.message, job_id=result.job_id)
