"""Claude session workspace discovery and payload building."""

import asyncio
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

from ..api_clients.models import SessionStateItem, SyncEntry, SyncSession, SyncToolResult, SyncWorkspace
from ..utils.logging import get_logger
from .session_log import ParsedEntry, parse_jsonl_file, read_leading_entries
from .tool_results import ToolResultError, ToolResultLoader


CWD_SCAN_LINES = 50

_AGENT_FILE_RE = re.compile(r"^agent-([a-f0-9]+)\.jsonl$")


@dataclass
class SessionFile:
    """A transcript file inside a workspace directory."""

    path: Path
    session_id: str
    mtime: float
    created_at: str
    is_agent: bool = False
    agent_id: Optional[str] = None


@dataclass
class WorkspaceInfo:
    """A Claude project directory and its transcripts."""

    claude_path: Path
    encoded_name: str
    sessions: List[SessionFile] = field(default_factory=list)

    @property
    def decoded_path(self) -> str:
        return decode_project_path(self.encoded_name)


@dataclass
class SessionScanResult:
    """Outcome of scanning every workspace under the projects roots."""

    workspaces: List[SyncWorkspace] = field(default_factory=list)
    workspaces_processed: int = 0
    errors: List[str] = field(default_factory=list)


def decode_project_path(encoded: str) -> str:
    """Decode Claude's directory naming (``-home-user-proj`` to ``/home/user/proj``).

    The encoding is lossy for paths containing hyphens, which is why the cwd
    recorded inside the transcripts is preferred when available.
    """
    return re.sub(r"^-", "/", encoded).replace("-", "/")


def extract_agent_id(filename: str) -> Optional[str]:
    match = _AGENT_FILE_RE.match(filename)
    return match.group(1) if match else None


def _file_created_at(stat: os.stat_result) -> str:
    created = getattr(stat, "st_birthtime", None) or min(stat.st_ctime, stat.st_mtime)
    return datetime.fromtimestamp(created, tz=timezone.utc).isoformat()


def list_session_files(workspace_dir: Union[str, Path]) -> List[SessionFile]:
    """List transcripts in a workspace directory, newest first."""
    sessions: List[SessionFile] = []

    with os.scandir(workspace_dir) as entries:
        for entry in entries:
            if not entry.is_file() or not entry.name.endswith(".jsonl"):
                continue
            stat = entry.stat()
            agent_id = extract_agent_id(entry.name)
            sessions.append(SessionFile(
                path=Path(entry.path),
                session_id=entry.name[: -len(".jsonl")],
                mtime=stat.st_mtime,
                created_at=_file_created_at(stat),
                is_agent=entry.name.startswith("agent-"),
                agent_id=agent_id,
            ))

    sessions.sort(key=lambda s: (-s.mtime, s.session_id))
    return sessions


def collect_tool_use_ids(entries: Iterable[ParsedEntry]) -> List[str]:
    """Ids of ``tool_use`` blocks in assistant messages, in order of appearance."""
    ids: List[str] = []
    for entry in entries:
        if entry.data.get("type") != "assistant":
            continue
        message = entry.data.get("message")
        if not isinstance(message, dict):
            continue
        content = message.get("content")
        if not isinstance(content, list):
            continue
        for item in content:
            if isinstance(item, dict) and item.get("type") == "tool_use":
                tool_use_id = item.get("id")
                if isinstance(tool_use_id, str) and tool_use_id not in ids:
                    ids.append(tool_use_id)
    return ids


def to_sync_entry(entry: ParsedEntry) -> SyncEntry:
    return SyncEntry(
        original_uuid=entry.uuid,
        line_number=entry.line_number,
        type=entry.type,
        subtype=entry.subtype,
        timestamp=entry.timestamp,
        data=entry.data,
    )


class SessionScanner:
    """Discovers Claude workspaces and builds per-session entry deltas."""

    def __init__(self, host: str, tool_result_loader: Optional[ToolResultLoader] = None):
        self.host = host
        self.tool_result_loader = tool_result_loader or ToolResultLoader()
        self.logger = get_logger(self.__class__.__name__)

    def discover_workspaces(self, roots: Iterable[Union[str, Path]]) -> List[WorkspaceInfo]:
        """Find workspace directories holding transcripts under each projects root."""
        workspaces: List[WorkspaceInfo] = []

        for root in roots:
            root_path = Path(root).expanduser()
            if not root_path.is_dir():
                self.logger.debug("Projects directory not found", path=str(root_path))
                continue

            for child in sorted(root_path.iterdir()):
                if not child.is_dir():
                    continue
                try:
                    sessions = list_session_files(child)
                except OSError as e:
                    self.logger.warning("Skipping unreadable workspace", path=str(child), error=str(e))
                    continue
                if sessions:
                    workspaces.append(WorkspaceInfo(
                        claude_path=child,
                        encoded_name=child.name,
                        sessions=sessions,
                    ))

        return workspaces

    def extract_cwd_from_session(
        self, session_path: Union[str, Path], max_lines: int = CWD_SCAN_LINES
    ) -> Optional[str]:
        """Return the working directory recorded in a transcript's leading entries."""
        try:
            entries = read_leading_entries(session_path, max_lines)
        except OSError:
            return None

        for entry in entries:
            cwd = entry.data.get("cwd")
            if isinstance(cwd, str) and cwd:
                return cwd
        return None

    def resolve_workspace_cwd(self, workspace: WorkspaceInfo) -> str:
        """First cwd recorded in any session, falling back to the decoded directory name."""
        for session_file in workspace.sessions:
            cwd = self.extract_cwd_from_session(session_file.path)
            if cwd:
                return cwd
        return workspace.decoded_path

    def build_sync_session(
        self,
        workspace: WorkspaceInfo,
        session_file: SessionFile,
        known: Optional[SessionStateItem],
        errors: List[str],
    ) -> Optional[SyncSession]:
        """Build the payload for entries past the session's watermark.

        Returns None when there is nothing new. Malformed lines and
        unreadable tool results are appended to ``errors``.
        """
        parsed = parse_jsonl_file(session_file.path)

        for line_error in parsed.errors:
            self.logger.warning(
                "Skipping malformed transcript line",
                path=str(session_file.path),
                line_number=line_error.line_number,
                error=line_error.error,
            )
            errors.append(
                f"Session {session_file.path} line {line_error.line_number}: {line_error.error}"
            )

        parent_session_id = None
        if session_file.is_agent and parsed.entries and parsed.entries[0].line_number == 1:
            parent_session_id = parsed.entries[0].session_id

        watermark = known.last_confirmed_sequence if known else 0
        new_entries = [entry for entry in parsed.entries if entry.line_number > watermark]
        if not new_entries:
            return None

        tool_results = self.load_tool_results(
            workspace.claude_path, session_file.session_id, new_entries, errors
        )

        return SyncSession(
            original_session_id=session_file.session_id,
            agent_id=session_file.agent_id,
            parent_original_session_id=parent_session_id,
            filename=session_file.path.name,
            file_created_at=session_file.created_at,
            entries=[to_sync_entry(entry) for entry in new_entries],
            tool_results=tool_results or None,
        )

    def load_tool_results(
        self,
        workspace_dir: Path,
        session_id: str,
        entries: List[ParsedEntry],
        errors: List[str],
    ) -> List[SyncToolResult]:
        """Load stored outputs for the ``tool_use`` blocks in ``entries``."""
        tool_results_dir = workspace_dir / session_id / "tool-results"
        if not tool_results_dir.is_dir():
            return []

        results: List[SyncToolResult] = []
        for tool_use_id in collect_tool_use_ids(entries):
            try:
                result = self.tool_result_loader.load(tool_results_dir, tool_use_id)
            except ToolResultError as e:
                self.logger.warning("Could not load tool result", session_id=session_id, error=str(e))
                errors.append(f"Session {session_id}: {e}")
                continue
            if result is not None:
                results.append(result)
        return results

    def build_sync_workspace(
        self,
        workspace: WorkspaceInfo,
        known_sessions: Optional[Dict[str, SessionStateItem]] = None,
        errors: Optional[List[str]] = None,
        cwd: Optional[str] = None,
    ) -> SyncWorkspace:
        """Assemble a workspace payload containing only sessions with new entries."""
        known_sessions = known_sessions or {}
        errors = errors if errors is not None else []
        cwd = cwd or self.resolve_workspace_cwd(workspace)
        sessions: List[SyncSession] = []

        for session_file in workspace.sessions:
            try:
                session = self.build_sync_session(
                    workspace, session_file, known_sessions.get(session_file.session_id), errors
                )
            except (OSError, UnicodeDecodeError) as e:
                self.logger.error("Could not read session", path=str(session_file.path), error=str(e))
                errors.append(f"Session {session_file.path}: {e}")
                continue
            if session is not None:
                sessions.append(session)

        return SyncWorkspace(
            host=self.host,
            cwd=cwd,
            claude_project_path=str(workspace.claude_path),
            sessions=sessions,
        )

    def _scan_sync(self, roots: List[Union[str, Path]], watermark) -> SessionScanResult:
        result = SessionScanResult()

        try:
            workspaces = self.discover_workspaces(roots)
        except OSError as e:
            self.logger.error("Error discovering workspaces", error=str(e))
            result.errors.append(f"Workspace discovery: {e}")
            return result

        self.logger.info("Discovered workspaces", count=len(workspaces))

        for workspace in workspaces:
            result.workspaces_processed += 1
            try:
                cwd = self.resolve_workspace_cwd(workspace)
                known = watermark.known_sessions(cwd) if watermark is not None else {}
                sync_workspace = self.build_sync_workspace(
                    workspace, known, result.errors, cwd=cwd
                )
            except OSError as e:
                self.logger.error(
                    "Error processing workspace", path=str(workspace.claude_path), error=str(e)
                )
                result.errors.append(f"Workspace {workspace.claude_path}: {e}")
                continue

            self.logger.debug(
                "Scanned workspace",
                cwd=cwd,
                sessions_with_new_entries=len(sync_workspace.sessions),
                known_sessions=len(known),
            )
            result.workspaces.append(sync_workspace)

        return result

    async def scan(self, roots: Iterable[Union[str, Path]], watermark=None) -> SessionScanResult:
        """Scan every workspace under ``roots`` in a worker thread.

        Args:
            roots: Claude projects directories
            watermark: Optional reconciler supplying session watermarks per cwd
        """
        return await asyncio.to_thread(self._scan_sync, list(roots), watermark)
