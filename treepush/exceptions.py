"""Application-level exception types.

Convention:
- Errors raised while processing a single file inside a batch are *soft*:
  the job service catches them, records the path in ``failed_files`` and
  moves on.
- Errors raised while creating the tree, the commit or moving the ref are
  *hard*: the job is terminated in ``failed`` with the message recorded.
- The global handlers in ``treepush/main.py`` map each type to an HTTP status.
  Nothing is retried automatically; the caller decides whether to start over.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for all synchronization errors."""


class ConfigError(SyncError):
    """Raised when credentials, the target repository or the local root are missing."""


class NetworkError(SyncError):
    """Raised when a request to the hosting service fails at the transport level."""


class RemoteAPIError(SyncError):
    """Raised when the hosting service answers with a non-success status.

    ``message`` carries the service-provided error text when there is one.
    """

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(f"GitHub API error ({status_code}): {message}")
        self.status_code = status_code
        self.message = message


class FileSystemError(SyncError):
    """Raised when a local file or directory is missing or unreadable."""


class ConflictError(SyncError):
    """Raised when a job is already active or the branch moved under us."""

    def __init__(self, message: str, job_id: str | None = None) -> None:
        super().__init__(message)
        self.job_id = job_id


class JobStateError(SyncError):
    """Raised when a referenced job does not exist, has expired or is not running."""
