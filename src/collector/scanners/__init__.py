"""Local source scanners: git repositories and Claude session workspaces."""

from .git_scanner import GitScanner, GitScanResult, GitCommandError, normalize_upstream_url
from .session_scanner import SessionScanner, SessionScanResult, WorkspaceInfo, decode_project_path
from .tool_results import ToolResultLoader, ToolResultError

__all__ = [
    "GitScanner",
    "GitScanResult",
    "GitCommandError",
    "normalize_upstream_url",
    "SessionScanner",
    "SessionScanResult",
    "WorkspaceInfo",
    "decode_project_path",
    "ToolResultLoader",
    "ToolResultError",
]
