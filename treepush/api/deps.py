"""Shared API dependencies: settings, services, bearer-token auth."""

from __future__ import annotations

import secrets
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from treepush.config import Settings
from treepush.exceptions import ConfigError
from treepush.services.job_service import SyncJobService
from treepush.services.repo_service import RepositoryService
from treepush.services.store import KeyValueStore
from treepush.services.trigger_service import SyncTriggerService

security = HTTPBearer(auto_error=False)


def get_settings(request: Request) -> Settings:
    """Get application settings from app state."""
    settings: Settings = request.app.state.settings
    return settings


def get_store(request: Request) -> KeyValueStore:
    """Get the job state store from app state."""
    store: KeyValueStore = request.app.state.store
    return store


def _not_configured(settings: Settings) -> ConfigError:
    missing = ", ".join(settings.missing_github_settings()) or "GitHub client"
    return ConfigError(f"GitHub settings not configured: {missing}")


def get_job_service(request: Request) -> SyncJobService:
    """Get the sync job service. Raises ConfigError when GitHub is not configured."""
    jobs: SyncJobService | None = request.app.state.job_service
    if jobs is None:
        raise _not_configured(request.app.state.settings)
    return jobs


def get_repo_service(request: Request) -> RepositoryService:
    """Get the repository service. Raises ConfigError when GitHub is not configured."""
    repos: RepositoryService | None = request.app.state.repo_service
    if repos is None:
        raise _not_configured(request.app.state.settings)
    return repos


def get_trigger_service(request: Request) -> SyncTriggerService:
    """Get the event trigger service from app state."""
    trigger: SyncTriggerService = request.app.state.trigger_service
    return trigger


async def require_token(
    settings: Annotated[Settings, Depends(get_settings)],
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)] = None,
) -> None:
    """Require the configured API bearer token. Raises 401 otherwise.

    With no token configured (debug only; see ``validate_runtime_security``)
    every request is accepted.
    """
    if not settings.api_token:
        return
    if credentials is None or not secrets.compare_digest(
        credentials.credentials.encode(), settings.api_token.encode()
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
