"""Core sync engine orchestrating one collector run."""

import asyncio
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from ..api_clients import ArchiveAPIClient
from ..api_clients.base import (
    APIError,
    APIConnectionError,
    ResponseValidationError,
    RetryExhaustedError,
)
from ..api_clients.models import (
    HeartbeatRequest,
    LogEntry,
    RegisterRequest,
    SyncRequest,
    SyncStatus,
)
from ..scanners import GitScanner, SessionScanner
from ..utils.logging import get_logger, log_async_execution_time
from .reconciler import Delta, SyncStateReconciler


# Failures raised by the API client that a run records instead of aborting on
CLIENT_ERRORS = (APIError, APIConnectionError, ResponseValidationError, RetryExhaustedError)


class SyncState(str, Enum):
    """Lifecycle of a single run."""

    INIT = "init"
    REGISTERED = "registered"
    STATE_FETCHED = "state_fetched"
    SCANNING = "scanning"
    DELTA_COMPUTED = "delta_computed"
    DRY_RUN_REPORT = "dry_run_report"
    SUBMITTING = "submitting"
    DONE = "done"
    FAILED = "failed"


@dataclass
class SyncSummary:
    """Result of a sync run."""

    sync_run_id: str
    dry_run: bool = False
    git_repos_processed: int = 0
    git_repos_synced: int = 0
    commits_found: int = 0
    workspaces_processed: int = 0
    workspaces_synced: int = 0
    sessions_found: int = 0
    entries_found: int = 0
    errors: List[str] = field(default_factory=list)
    state: SyncState = SyncState.INIT
    started_at: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.state == SyncState.DONE and not self.errors


def describe_error(error: Exception) -> str:
    """Human-readable error text, with the server's response body when there is one."""
    if isinstance(error, RetryExhaustedError) and isinstance(error.last_error, APIError):
        return f"{error}{_response_suffix(error.last_error)}"
    if isinstance(error, APIError):
        return f"{error}{_response_suffix(error)}"
    return str(error)


def _response_suffix(error: APIError) -> str:
    if error.body is None or error.body == "":
        return ""
    if isinstance(error.body, (dict, list)):
        body = json.dumps(error.body, indent=2)
    else:
        body = str(error.body)
    return f"\n  Response: {body}"


class SyncEngine:
    """Runs register, fetch watermark, scan, reconcile and submit for one collector."""

    def __init__(
        self,
        client: ArchiveAPIClient,
        git_scanner: GitScanner,
        session_scanner: SessionScanner,
        collector_id: str,
        collector_name: str,
        host: str,
        os_info: Optional[str] = None,
        version: Optional[str] = None,
    ):
        """Initialize sync engine.

        Args:
            client: Archive server client
            git_scanner: Scanner for git repositories under the source dirs
            session_scanner: Scanner for Claude session workspaces
            collector_id: Persistent collector identity
            collector_name: Display name sent at registration
            host: Effective hostname; scopes the server's watermark
            os_info: Operating system description sent at registration
            version: Collector version sent at registration
        """
        self.client = client
        self.git_scanner = git_scanner
        self.session_scanner = session_scanner
        self.collector_id = collector_id
        self.collector_name = collector_name
        self.host = host
        self.os_info = os_info
        self.version = version
        self.logger = get_logger(self.__class__.__name__)

        self._run_log: List[LogEntry] = []
        self._summary: Optional[SyncSummary] = None

    @log_async_execution_time
    async def run(
        self,
        source_dirs: Sequence[Union[str, Path]],
        projects_dirs: Sequence[Union[str, Path]],
        dry_run: bool = False,
        verbose: bool = False,
        sync_run_id: Optional[str] = None,
    ) -> SyncSummary:
        """Execute one sync run.

        Args:
            source_dirs: Directories searched for git repositories
            projects_dirs: Claude projects directories holding session workspaces
            dry_run: Compute counts without any state-changing server call
            verbose: Upload the run's log records to the server at the end
            sync_run_id: Run identifier; generated when omitted

        Returns:
            SyncSummary with counts and recorded errors. Only unexpected
            failures end the run in FAILED; everything else is recorded and
            the run completes.
        """
        summary = SyncSummary(
            sync_run_id=sync_run_id or str(uuid.uuid4()),
            dry_run=dry_run,
            started_at=datetime.now(timezone.utc).isoformat(),
        )
        self._summary = summary
        self._run_log = []

        self._log("info", "Starting sync run", dry_run=dry_run, host=self.host)

        try:
            if not dry_run:
                await self._register(summary)
            self._transition(summary, SyncState.REGISTERED)

            reconciler = await self._fetch_sync_state(summary)
            state_available = reconciler is not None
            reconciler = reconciler or SyncStateReconciler.empty()
            self._transition(summary, SyncState.STATE_FETCHED)

            self._transition(summary, SyncState.SCANNING)
            # Both scans always run to completion before any failure propagates
            outcomes = await asyncio.gather(
                self.git_scanner.scan(source_dirs, reconciler),
                self.session_scanner.scan(projects_dirs, reconciler),
                return_exceptions=True,
            )
            for outcome in outcomes:
                if isinstance(outcome, BaseException):
                    raise outcome
            git_result, session_result = outcomes
            summary.git_repos_processed = git_result.repos_processed
            summary.workspaces_processed = session_result.workspaces_processed
            summary.errors.extend(git_result.errors)
            summary.errors.extend(session_result.errors)

            delta = reconciler.reconcile(git_result.repos, session_result.workspaces)
            self._apply_counts(summary, delta)
            self._transition(summary, SyncState.DELTA_COMPUTED)

            if dry_run:
                self._transition(summary, SyncState.DRY_RUN_REPORT)
                self._log(
                    "info",
                    "Dry run, nothing submitted",
                    git_repos=summary.git_repos_synced,
                    workspaces=summary.workspaces_synced,
                    sessions=summary.sessions_found,
                    entries=summary.entries_found,
                    commits=summary.commits_found,
                )
            else:
                self._transition(summary, SyncState.SUBMITTING)
                await self._submit(summary, delta, state_available)

            self._transition(summary, SyncState.DONE)

        except Exception as e:
            self.logger.exception("Sync run failed with unexpected error", error=str(e))
            summary.errors.append(f"Unexpected error: {e}")
            summary.state = SyncState.FAILED

        self._log(
            "info" if not summary.errors else "warn",
            "Sync run finished",
            state=summary.state.value,
            errors=len(summary.errors),
        )
        if verbose and not dry_run:
            await self._submit_logs(summary)
        return summary

    def _transition(self, summary: SyncSummary, state: SyncState):
        summary.state = state
        self.logger.debug("Sync state changed", state=state.value)

    @staticmethod
    def _apply_counts(summary: SyncSummary, delta: Delta):
        counts = delta.counts
        summary.git_repos_synced = counts.git_repos_synced
        summary.commits_found = counts.commits_found
        summary.workspaces_synced = counts.workspaces_synced
        summary.sessions_found = counts.sessions_found
        summary.entries_found = counts.entries_found

    async def _register(self, summary: SyncSummary):
        """Register the collector and announce the run. Failures do not stop the run."""
        request = RegisterRequest(
            id=self.collector_id,
            name=self.collector_name,
            hostname=self.host,
            os_info=self.os_info,
            version=self.version,
        )
        try:
            await self.client.register(request)
            self._log("info", "Registered collector", collector_id=self.collector_id)
        except CLIENT_ERRORS as e:
            message = describe_error(e)
            self._log("error", "Failed to register", error=message)
            summary.errors.append(f"Registration failed: {message}")

        try:
            await self.client.heartbeat(
                self.collector_id, HeartbeatRequest(sync_run_id=summary.sync_run_id)
            )
        except CLIENT_ERRORS as e:
            self._log("warn", "Failed to send initial heartbeat", error=describe_error(e))

    async def _fetch_sync_state(self, summary: SyncSummary) -> Optional[SyncStateReconciler]:
        """Fetch the server watermark; None when it is unavailable."""
        try:
            state = await self.client.fetch_sync_state(self.collector_id, self.host)
        except CLIENT_ERRORS as e:
            message = describe_error(e)
            self._log("error", "Failed to fetch sync state", error=message)
            summary.errors.append(f"Failed to fetch sync state: {message}")
            return None

        self._log(
            "info",
            "Fetched sync state",
            known_repos=len(state.git_repos),
            known_workspaces=len(state.workspaces),
        )
        return SyncStateReconciler(state)

    async def _submit(self, summary: SyncSummary, delta: Delta, state_available: bool):
        """Submit the delta in one request and report the outcome by heartbeat."""
        submit_failed = False

        if not state_available:
            self._log("warn", "Sync state unavailable, skipping submission")
            submit_failed = True
        elif delta.is_empty:
            self._log("info", "No changes to sync")
        else:
            request = SyncRequest(
                collector_id=self.collector_id,
                sync_run_id=summary.sync_run_id,
                git_repos=delta.git_repos,
                workspaces=delta.workspaces,
            )
            try:
                response = await self.client.submit_sync(request)
                self._log(
                    "info",
                    "Sync complete",
                    entries_created=response.entries_created,
                    commits_created=response.commits_created,
                )
            except CLIENT_ERRORS as e:
                message = describe_error(e)
                self._log("error", "Failed to submit sync", error=message)
                summary.errors.append(f"Sync submission failed: {message}")
                submit_failed = True

        status = self._final_status(summary, submit_failed)
        try:
            await self.client.heartbeat(
                self.collector_id,
                HeartbeatRequest(sync_run_id=summary.sync_run_id, sync_status=status),
            )
        except CLIENT_ERRORS as e:
            self._log("warn", "Failed to send final heartbeat", error=describe_error(e))

    @staticmethod
    def _final_status(summary: SyncSummary, submit_failed: bool) -> SyncStatus:
        if submit_failed:
            return "error"
        return "partial" if summary.errors else "success"

    async def _submit_logs(self, summary: SyncSummary):
        if not self._run_log:
            return
        try:
            await self.client.submit_logs(self.collector_id, list(self._run_log))
        except CLIENT_ERRORS as e:
            message = describe_error(e)
            self.logger.warning("Failed to submit run logs", error=message)
            summary.errors.append(f"Log submission failed: {message}")

    def _log(self, level: str, message: str, **context: Any):
        """Log an event and keep it for upload with the run's logs."""
        log_method = getattr(self.logger, "warning" if level == "warn" else level)
        log_method(message, **context)

        if self._summary is not None:
            self._run_log.append(LogEntry(
                sync_run_id=self._summary.sync_run_id,
                level=level,
                message=message,
                context=_json_context(context) or None,
            ))


def _json_context(context: Dict[str, Any]) -> Dict[str, Any]:
    return {
        key: value if isinstance(value, (str, int, float, bool)) or value is None else str(value)
        for key, value in context.items()
    }
