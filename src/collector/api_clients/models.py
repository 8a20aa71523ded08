"""Wire schemas for collector-to-server communication.

Field names are snake_case in Python and camelCase on the wire.
"""

from typing import Any, ClassVar, Dict, FrozenSet, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, SerializerFunctionWrapHandler, model_serializer
from pydantic.alias_generators import to_camel


SyncStatus = Literal["success", "error", "partial"]
LogLevel = Literal["debug", "info", "warn", "error"]


class WireModel(BaseModel):
    """Base model mapping snake_case attributes to camelCase JSON.

    Fields named in ``omit_if_none`` are dropped from the output while unset;
    the server accepts a missing key for them but rejects ``null``. All other
    optional fields are always sent, ``null`` included.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    omit_if_none: ClassVar[FrozenSet[str]] = frozenset()

    @model_serializer(mode="wrap")
    def serialize_wire(self, handler: SerializerFunctionWrapHandler) -> Dict[str, Any]:
        data = handler(self)
        for name in self.omit_if_none:
            if getattr(self, name) is None:
                data.pop(name, None)
                data.pop(to_camel(name), None)
        return data

    def to_wire(self) -> Dict[str, Any]:
        """Serialize to a JSON-ready dictionary using wire names."""
        return self.model_dump(by_alias=True, mode="json")


# Collector registration

class RegisterRequest(WireModel):
    omit_if_none = frozenset({"os_info", "version", "config"})

    id: str
    name: str
    hostname: str
    os_info: Optional[str] = None
    version: Optional[str] = None
    config: Optional[Dict[str, Any]] = None


class RegisterResponse(WireModel):
    model_config = ConfigDict(extra="allow")

    id: str
    name: str
    hostname: str
    os_info: Optional[str] = None
    version: Optional[str] = None
    registered_at: Optional[str] = None
    last_seen_at: Optional[str] = None
    is_active: bool = True


class HeartbeatRequest(WireModel):
    omit_if_none = frozenset({"sync_run_id", "sync_status"})

    sync_run_id: Optional[str] = None
    sync_status: Optional[SyncStatus] = None


# Sync state (watermark)

class SessionStateItem(WireModel):
    """Server-side watermark for one session."""

    original_session_id: str
    entry_count: int = 0
    last_line_number: int = Field(default=0, ge=0)

    @property
    def last_confirmed_sequence(self) -> int:
        return self.last_line_number


class SyncStateResponse(WireModel):
    """Known commit shas per repo path and session watermarks per workspace cwd."""

    git_repos: Dict[str, List[str]] = Field(default_factory=dict)
    workspaces: Dict[str, List[SessionStateItem]] = Field(default_factory=dict)


# Git payload

class GitBranch(WireModel):
    name: str
    head_sha: str
    upstream_name: Optional[str] = None
    upstream_sha: Optional[str] = None
    ahead_count: int = 0
    behind_count: int = 0
    last_commit_at: Optional[str] = None


class GitCommit(WireModel):
    sha: str
    message: str
    author_name: str
    author_email: str
    author_date: str
    committer_name: Optional[str] = None
    committer_date: Optional[str] = None
    parent_shas: List[str] = Field(default_factory=list)


class SyncGitRepo(WireModel):
    host: str
    path: str
    upstream_url: Optional[str] = None
    default_branch: Optional[str] = None
    current_branch: Optional[str] = None
    head_sha: Optional[str] = None
    is_dirty: bool = False
    dirty_files_count: Optional[int] = None
    dirty_snapshot: Optional[Dict[str, Any]] = None
    last_file_change_at: Optional[str] = None
    branches: List[GitBranch] = Field(default_factory=list)
    commits: List[GitCommit] = Field(default_factory=list)


# Workspace payload

class SyncEntry(WireModel):
    original_uuid: Optional[str] = None
    line_number: int = Field(..., ge=1)
    type: str
    subtype: Optional[str] = None
    timestamp: Optional[str] = None
    data: Dict[str, Any]

    @property
    def sequence(self) -> int:
        return self.line_number


class SyncToolResult(WireModel):
    tool_use_id: str
    tool_name: str
    content_type: str
    content_text: Optional[str] = None
    content_binary: Optional[str] = None
    size_bytes: int
    is_error: bool = False
    truncated: bool = False


class SyncSession(WireModel):
    omit_if_none = frozenset({"tool_results"})

    original_session_id: str
    agent_id: Optional[str] = None
    parent_original_session_id: Optional[str] = None
    filename: str
    file_created_at: str
    entries: List[SyncEntry] = Field(default_factory=list)
    tool_results: Optional[List[SyncToolResult]] = None


class SyncWorkspace(WireModel):
    host: str
    cwd: str
    claude_project_path: str
    sessions: List[SyncSession] = Field(default_factory=list)


# Sync request/response

class SyncRequest(WireModel):
    collector_id: str
    sync_run_id: str
    git_repos: List[SyncGitRepo] = Field(default_factory=list)
    workspaces: List[SyncWorkspace] = Field(default_factory=list)


class SyncResponse(WireModel):
    model_config = ConfigDict(extra="allow")

    projects_created: int = 0
    projects_updated: int = 0
    git_repos_created: int = 0
    git_repos_updated: int = 0
    workspaces_created: int = 0
    workspaces_updated: int = 0
    sessions_created: int = 0
    sessions_updated: int = 0
    entries_created: int = 0
    commits_created: int = 0
    branches_created: int = 0
    branches_updated: int = 0


# Run logs

class LogEntry(WireModel):
    omit_if_none = frozenset({"context"})

    sync_run_id: str
    level: LogLevel
    message: str
    context: Optional[Dict[str, Any]] = None


class SubmitLogsResponse(WireModel):
    count: int = 0


class ErrorDetail(BaseModel):
    path: str
    message: str


class ErrorResponse(BaseModel):
    """Error body produced by the archive server."""

    error: str
    message: Optional[str] = None
    details: Optional[List[ErrorDetail]] = None
