"""CLI client that drives treepush sync jobs over HTTP."""

from __future__ import annotations

import argparse
import json
import sys
import time
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import httpx

CONFIG_FILE = ".treepush-sync.json"
_LOCALHOST_HOSTS = {"localhost", "127.0.0.1", "::1"}
MAX_CONSECUTIVE_TIMEOUTS = 3
MAX_BUSY_RETRIES = 150


class SyncClient:
    """Client for the treepush job-control API."""

    def __init__(
        self,
        server_url: str,
        token: str | None,
        timeout: float = 60.0,
        poll_interval: float = 0.0,
        transport: httpx.BaseTransport | None = None,
        busy_delay: float = 2.0,
    ) -> None:
        self.server_url = server_url.rstrip("/")
        self.poll_interval = poll_interval
        self.busy_delay = busy_delay
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self.client = httpx.Client(
            base_url=self.server_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        """Close the HTTP client."""
        self.client.close()

    def __enter__(self) -> SyncClient:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def _json(self, resp: httpx.Response) -> Any:
        resp.raise_for_status()
        return resp.json()

    def start(self, commit_message: str | None = None) -> dict[str, Any]:
        body = {"commit_message": commit_message} if commit_message else {}
        result: dict[str, Any] = self._json(self.client.post("/api/sync/jobs", json=body))
        return result

    def step(self, job_id: str) -> dict[str, Any]:
        result: dict[str, Any] = self._json(self.client.post(f"/api/sync/jobs/{job_id}/step"))
        return result

    def status(self, job_id: str) -> dict[str, Any]:
        result: dict[str, Any] = self._json(self.client.get(f"/api/sync/jobs/{job_id}"))
        return result

    def active(self) -> dict[str, Any] | None:
        result: dict[str, Any] | None = self._json(self.client.get("/api/sync/jobs/active"))
        return result

    def cancel(self, job_id: str) -> dict[str, Any]:
        result: dict[str, Any] = self._json(self.client.delete(f"/api/sync/jobs/{job_id}"))
        return result

    def preview(self) -> dict[str, Any]:
        result: dict[str, Any] = self._json(self.client.get("/api/sync/preview"))
        return result

    def history(self, per_page: int = 15, page: int = 1) -> dict[str, Any]:
        resp = self.client.get("/api/sync/history", params={"per_page": per_page, "page": page})
        result: dict[str, Any] = self._json(resp)
        return result

    def run(self, commit_message: str | None = None) -> dict[str, Any]:
        """Start a job (or resume the active one) and step it until it finishes.

        A step that times out may still have been applied on the server, so
        the job state is re-read with ``status`` before stepping again. While
        that earlier step is still running the server answers 409, and the
        client waits before retrying.
        """
        try:
            started = self.start(commit_message)
            job_id: str = started["job_id"]
            print(started["message"])
        except httpx.HTTPStatusError as exc:
            job_id_in_use = _conflict_job_id(exc.response)
            if job_id_in_use is None:
                raise
            job_id = job_id_in_use
            print(f"Resuming sync job {job_id} already in progress")

        timeouts = 0
        busy = 0
        while True:
            try:
                snapshot = self.step(job_id)
                timeouts = 0
                busy = 0
            except httpx.HTTPStatusError as exc:
                if exc.response.status_code != 409:
                    raise
                busy += 1
                if busy > MAX_BUSY_RETRIES:
                    raise
                print("  Previous step still running; waiting...")
                time.sleep(self.busy_delay)
                snapshot = self.status(job_id)
            except httpx.TimeoutException:
                timeouts += 1
                if timeouts > MAX_CONSECUTIVE_TIMEOUTS:
                    raise
                print("  Step timed out; checking job status...")
                snapshot = self.status(job_id)

            print(
                f"  [{snapshot['progress_percent']:3d}%] batch "
                f"{snapshot['current_batch']}/{snapshot['total_batches']}: {snapshot['message']}"
            )
            if not snapshot["has_more"]:
                return snapshot
            if self.poll_interval:
                time.sleep(self.poll_interval)


def _conflict_job_id(resp: httpx.Response) -> str | None:
    """Return the active job id from a 409 response, if present."""
    if resp.status_code != 409:
        return None
    try:
        body = resp.json()
    except ValueError:
        return None
    job_id = body.get("job_id") if isinstance(body, dict) else None
    return job_id if isinstance(job_id, str) else None


def print_snapshot(snapshot: dict[str, Any]) -> None:
    """Print a job snapshot in human-readable form."""
    print(f"Job {snapshot['job_id']}: {snapshot['status']}")
    print(f"  Files:     {snapshot['processed_files']}/{snapshot['total_files']}")
    print(f"  Uploaded:  {snapshot['uploaded_blobs']}")
    print(f"  Batches:   {snapshot['current_batch']}/{snapshot['total_batches']}")
    print(f"  Progress:  {snapshot['progress_percent']}%")
    if snapshot.get("commit"):
        print(f"  Commit:    {snapshot['commit']}")
    if snapshot.get("result_message"):
        print(f"  Result:    {snapshot['result_message']}")
    if snapshot.get("error"):
        print(f"  Error:     {snapshot['error']}")
    if snapshot.get("failed_count"):
        print(f"  Failed:    {snapshot['failed_count']}")
        for failed in snapshot.get("failed_files", []):
            print(f"    ! {failed['path']} ({failed['reason']})")


def validate_server_url(server_url: str, allow_insecure_http: bool = False) -> str:
    """Validate server URL and enforce HTTPS for non-localhost hosts by default."""
    normalized = server_url.strip().rstrip("/")
    parsed = urlparse(normalized)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError("Server URL must include scheme and host (e.g. https://example.com)")

    hostname = parsed.hostname
    if parsed.scheme == "http" and not allow_insecure_http and hostname not in _LOCALHOST_HOSTS:
        raise ValueError(
            "HTTPS is required for non-localhost servers. "
            "Use --allow-insecure-http only on trusted networks."
        )

    return normalized


def load_config(dir_path: Path) -> dict[str, str]:
    """Load client config from file."""
    config_path = dir_path / CONFIG_FILE
    if not config_path.exists():
        return {}
    config: dict[str, str] = json.loads(config_path.read_text())
    return config


def save_config(dir_path: Path, config: dict[str, str]) -> None:
    """Save client config to file."""
    config_path = dir_path / CONFIG_FILE
    config_path.write_text(json.dumps(config, indent=2))


def _error_detail(exc: httpx.HTTPStatusError) -> str:
    try:
        body = exc.response.json()
    except ValueError:
        body = None
    detail = body.get("detail") if isinstance(body, dict) else None
    return str(detail) if detail else exc.response.reason_phrase


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="treepush-sync",
        description="Drive treepush sync jobs from the command line",
    )
    parser.add_argument("--dir", "-d", default=".", help="Config directory (default: current)")
    parser.add_argument("--server", "-s", help="Server URL")
    parser.add_argument(
        "--allow-insecure-http",
        action="store_true",
        help="Allow http:// server URLs for non-localhost hosts",
    )
    parser.add_argument("--token", help="API bearer token")
    parser.add_argument("--timeout", type=float, default=60.0, help="Per-request timeout")

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("init", help="Save server URL and token")
    subparsers.add_parser("preview", help="Show what a sync would change")
    start_parser = subparsers.add_parser("start", help="Start a sync job")
    start_parser.add_argument("--message", "-m", help="Commit message")
    run_parser = subparsers.add_parser("run", help="Start a sync job and drive it to completion")
    run_parser.add_argument("--message", "-m", help="Commit message")
    run_parser.add_argument("--interval", type=float, default=0.0, help="Pause between steps")
    status_parser = subparsers.add_parser("status", help="Show job status")
    status_parser.add_argument("job_id", nargs="?", help="Job id (default: active job)")
    cancel_parser = subparsers.add_parser("cancel", help="Cancel a job")
    cancel_parser.add_argument("job_id", help="Job id")
    history_parser = subparsers.add_parser("history", help="Show recent commits")
    history_parser.add_argument("--per-page", type=int, default=15)
    history_parser.add_argument("--page", type=int, default=1)

    args = parser.parse_args()
    config_dir = Path(args.dir).resolve()

    if args.command == "init":
        if not args.server:
            print("Error: --server required for init")
            sys.exit(1)
        try:
            server_url = validate_server_url(args.server, args.allow_insecure_http)
        except ValueError as exc:
            print(f"Error: {exc}")
            sys.exit(1)
        config = {"server": server_url}
        if args.token:
            config["token"] = args.token
        save_config(config_dir, config)
        print(f"Saved client config in {config_dir / CONFIG_FILE}")
        return

    config = load_config(config_dir)
    configured_server_url = args.server or config.get("server")
    if not configured_server_url:
        print("Error: No server configured. Run 'treepush-sync init --server <url>' first.")
        sys.exit(1)
    try:
        server_url = validate_server_url(configured_server_url, args.allow_insecure_http)
    except ValueError as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    token = args.token or config.get("token")
    interval = getattr(args, "interval", 0.0)

    with SyncClient(server_url, token, timeout=args.timeout, poll_interval=interval) as client:
        try:
            if args.command == "preview":
                plan = client.preview()
                print("Sync preview:")
                print(f"  New:       {len(plan['new'])}")
                print(f"  Changed:   {len(plan['changed'])}")
                print(f"  Unchanged: {len(plan['unchanged'])}")
                print(f"  Deleted:   {len(plan['deleted'])}")
                print(f"  Preserved: {len(plan['preserved'])}")
                for f in plan["new"]:
                    print(f"    + {f}")
                for f in plan["changed"]:
                    print(f"    ~ {f}")
                for f in plan["deleted"]:
                    print(f"    - {f}")

            elif args.command == "start":
                started = client.start(args.message)
                print(f"{started['message']} (job {started['job_id']})")

            elif args.command == "run":
                snapshot = client.run(args.message)
                print_snapshot(snapshot)
                if snapshot["status"] != "completed":
                    sys.exit(1)

            elif args.command == "status":
                snapshot_or_none = (
                    client.status(args.job_id) if args.job_id else client.active()
                )
                if snapshot_or_none is None:
                    print("No sync job in progress.")
                else:
                    print_snapshot(snapshot_or_none)

            elif args.command == "cancel":
                print(client.cancel(args.job_id)["message"])

            elif args.command == "history":
                page = client.history(args.per_page, args.page)
                for commit in page["commits"]:
                    print(
                        f"{commit['sha']}  {commit['date']:<16} "
                        f"{commit['author']}: {commit['message']}"
                    )

            else:
                parser.print_help()
        except httpx.HTTPStatusError as exc:
            print(f"Error: {exc.response.status_code} {_error_detail(exc)}")
            sys.exit(1)
        except httpx.HTTPError as exc:
            print(f"Error: request failed: {exc}")
            sys.exit(1)


if __name__ == "__main__":
    main()
