"""Application configuration loaded from environment variables."""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Annotated, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

DEFAULT_IGNORE_PATTERNS: list[str] = [
    "node_modules",
    ".git",
    ".svn",
    ".DS_Store",
    "Thumbs.db",
    "*.log",
    "wp-content/uploads",
    "wp-content/cache",
    "wp-content/backup*",
    "wp-content/upgrade",
    "wp-content/debug.log",
    "error_log",
]


def parse_sync_paths(raw: str) -> list[str]:
    """Split a newline-separated list of inclusion paths, dropping blanks."""
    return [line.strip() for line in re.split(r"[\r\n]+", raw) if line.strip()]


class Settings(BaseSettings):
    """treepush application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Core
    debug: bool = False
    expose_docs: bool = False
    api_token: str = ""

    # GitHub target
    github_token: str = ""
    github_owner: str = ""
    github_repo: str = ""
    github_branch: str = "main"
    github_api_url: str = "https://api.github.com"
    request_timeout: float = Field(default=60.0, gt=0)

    # Commit identity
    author_name: str = "treepush"
    author_email: str = "treepush@localhost"
    default_commit_message: str = "Auto-sync from treepush"

    # Local tree
    repo_path: Path = Path(".")
    sync_paths: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["wp-content/plugins", "wp-content/themes", "wp-content/mu-plugins"]
    )
    ignore_patterns: list[str] = Field(default_factory=lambda: list(DEFAULT_IGNORE_PATTERNS))
    max_file_size: int = Field(default=10 * 1024 * 1024, ge=1)

    # Jobs
    batch_size: int = Field(default=50, ge=1, le=1000)
    job_ttl_seconds: int = Field(default=3600, ge=60)
    auto_sync: bool = False

    # Job state storage
    store_backend: Literal["memory", "sql"] = "sql"
    database_url: str = "sqlite+aiosqlite:///data/db/treepush.db"

    # Server
    host: str = "0.0.0.0"
    port: int = Field(default=8000, ge=1, le=65535)

    @field_validator("sync_paths", mode="before")
    @classmethod
    def split_sync_paths(cls, value: object) -> object:
        """Accept a JSON list or a newline-separated string from the environment."""
        if isinstance(value, str):
            if value.lstrip().startswith("["):
                return json.loads(value)
            return parse_sync_paths(value)
        return value

    def missing_github_settings(self) -> list[str]:
        """Return the names of required GitHub settings that are unset."""
        required = {
            "GITHUB_TOKEN": self.github_token,
            "GITHUB_OWNER": self.github_owner,
            "GITHUB_REPO": self.github_repo,
        }
        return [name for name, value in required.items() if not value.strip()]

    def validate_runtime_security(self) -> None:
        """Validate security-critical production settings."""
        if self.debug:
            return

        violations: list[str] = []
        if len(self.api_token) < 32:
            violations.append("API_TOKEN must be set to a high-entropy value (>=32 chars)")
        if not self.github_api_url.startswith("https://"):
            violations.append("GITHUB_API_URL must use https")

        if violations:
            joined = "; ".join(violations)
            raise ValueError(f"Insecure production configuration: {joined}")
