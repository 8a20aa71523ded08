"""Shared fixtures: an in-process archive server and filesystem builders."""

import json
import logging
import os
import shutil
import subprocess
from collections import defaultdict, deque
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
import structlog
from aiohttp import web
from aiohttp.test_utils import TestServer

from collector.api_clients import RetryPolicy


requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")

FAST_RETRY = RetryPolicy(max_retries=2, base_delay=0.0, max_delay=0.0, jitter=0.0)

GIT_ENV = {
    "GIT_AUTHOR_NAME": "Test User",
    "GIT_AUTHOR_EMAIL": "test@example.com",
    "GIT_COMMITTER_NAME": "Test User",
    "GIT_COMMITTER_EMAIL": "test@example.com",
    "GIT_CONFIG_NOSYSTEM": "1",
}


def run_git(cwd: Path, *args: str) -> str:
    """Run git in ``cwd`` with a fixed identity and return stripped stdout."""
    result = subprocess.run(
        ["git", "-c", "commit.gpgsign=false", *args],
        cwd=str(cwd),
        env={**os.environ, **GIT_ENV},
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout.strip()


def make_repo(path: Path, commits: int = 3) -> List[str]:
    """Create a repository on branch ``main`` with ``commits`` commits; return their shas oldest first."""
    path.mkdir(parents=True, exist_ok=True)
    run_git(path, "init", "-q")
    run_git(path, "symbolic-ref", "HEAD", "refs/heads/main")
    return [add_commit(path, f"commit {i + 1}") for i in range(commits)]


def add_commit(path: Path, message: str) -> str:
    file_path = path / "history.txt"
    with open(file_path, "a", encoding="utf-8") as f:
        f.write(message + "\n")
    run_git(path, "add", "history.txt")
    run_git(path, "commit", "-q", "-m", message)
    return run_git(path, "rev-parse", "HEAD")


def write_session(
    workspace_dir: Path,
    session_id: str,
    count: int,
    cwd: Optional[str] = None,
    extra_lines: Optional[List[str]] = None,
) -> Path:
    """Write a transcript with ``count`` user entries numbered from 1."""
    workspace_dir.mkdir(parents=True, exist_ok=True)
    lines = []
    for i in range(1, count + 1):
        entry: Dict[str, Any] = {
            "type": "user",
            "uuid": f"{session_id}-{i}",
            "sessionId": session_id,
            "timestamp": f"2024-05-01T10:00:{i:02d}Z",
            "message": {"role": "user", "content": f"message {i}"},
        }
        if cwd:
            entry["cwd"] = cwd
        lines.append(json.dumps(entry))
    lines.extend(extra_lines or [])
    path = workspace_dir / f"{session_id}.jsonl"
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


class Contract:
    """Key rules for one JSON object the archive server accepts.

    ``required`` keys must be present and non-null, ``nullable`` keys must be
    present but may be null, ``optional`` keys may be missing but never null.
    ``items`` maps list-valued keys to the contract of their elements.
    """

    def __init__(self, required=(), nullable=(), optional=(), items=None):
        self.required = set(required)
        self.nullable = set(nullable)
        self.optional = set(optional)
        self.items = items or {}

    def violations(self, body: Any, where: str = "body") -> List[str]:
        if not isinstance(body, dict):
            return [f"{where}: expected an object"]
        problems = []
        for key in sorted(self.required):
            if body.get(key) is None:
                problems.append(f"{where}.{key}: Required")
        for key in sorted(self.nullable):
            if key not in body:
                problems.append(f"{where}.{key}: Required")
        for key in sorted(self.optional):
            if key in body and body[key] is None:
                problems.append(f"{where}.{key}: Expected value, received null")
        for key, contract in self.items.items():
            values = body.get(key)
            if values is None:
                continue
            if not isinstance(values, list):
                problems.append(f"{where}.{key}: Expected array")
                continue
            for index, value in enumerate(values):
                problems.extend(contract.violations(value, f"{where}.{key}.{index}"))
        return problems


BRANCH_CONTRACT = Contract(
    required=["name", "headSha"],
    nullable=["upstreamName", "upstreamSha", "lastCommitAt"],
    optional=["aheadCount", "behindCount"],
)

COMMIT_CONTRACT = Contract(
    required=["sha", "message", "authorName", "authorEmail", "authorDate"],
    nullable=["committerName", "committerDate", "parentShas"],
)

GIT_REPO_CONTRACT = Contract(
    required=["host", "path", "isDirty", "branches", "commits"],
    nullable=[
        "upstreamUrl", "defaultBranch", "currentBranch", "headSha",
        "dirtyFilesCount", "dirtySnapshot", "lastFileChangeAt",
    ],
    items={"branches": BRANCH_CONTRACT, "commits": COMMIT_CONTRACT},
)

SESSION_CONTRACT = Contract(
    required=["originalSessionId", "filename", "fileCreatedAt", "entries"],
    nullable=["agentId", "parentOriginalSessionId"],
    optional=["toolResults"],
    items={
        "entries": Contract(
            required=["lineNumber", "type", "data"],
            nullable=["originalUuid", "subtype", "timestamp"],
        ),
        "toolResults": Contract(
            required=["toolUseId", "toolName", "contentType", "sizeBytes", "isError"],
            nullable=["contentText", "contentBinary"],
        ),
    },
)

REQUEST_CONTRACTS = {
    "register": Contract(required=["id", "name", "hostname"], optional=["osInfo", "version", "config"]),
    "heartbeat": Contract(optional=["syncRunId", "syncStatus"]),
    "sync": Contract(
        required=["syncRunId"],
        optional=["gitRepos", "workspaces"],
        items={
            "gitRepos": GIT_REPO_CONTRACT,
            "workspaces": Contract(
                required=["host", "cwd", "claudeProjectPath", "sessions"],
                items={"sessions": SESSION_CONTRACT},
            ),
        },
    ),
    "logs": Contract(
        required=["logs"],
        items={"logs": Contract(required=["syncRunId", "level", "message"], optional=["context"])},
    ),
}


class FakeArchiveServer:
    """Archive server double that keeps a real watermark and records every request.

    Request bodies are checked against ``REQUEST_CONTRACTS`` and answered
    with 400 when they break it.
    """

    def __init__(self):
        self.requests: List[Dict[str, Any]] = []
        self.rejected: List[Dict[str, Any]] = []
        self.git_repos: Dict[str, List[str]] = {}
        self.workspaces: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.failures: Dict[str, deque] = defaultdict(deque)
        self.responses: Dict[str, Any] = {}
        self.server: Optional[TestServer] = None

        self.app = web.Application()
        self.app.router.add_post("/api/collectors/register", self._register)
        self.app.router.add_post("/api/collectors/{id}/heartbeat", self._heartbeat)
        self.app.router.add_get("/api/collectors/{id}/sync-state", self._sync_state)
        self.app.router.add_post("/api/collectors/{id}/sync", self._sync)
        self.app.router.add_post("/api/collectors/{id}/logs", self._logs)

    @property
    def url(self) -> str:
        return f"http://{self.server.host}:{self.server.port}"

    def fail(self, operation: str, status: int, times: int = 1, body: Any = None, headers=None):
        """Answer the next ``times`` calls of ``operation`` with ``status``."""
        for _ in range(times):
            self.failures[operation].append((status, body, headers))

    def calls(self, operation: str) -> List[Dict[str, Any]]:
        return [request for request in self.requests if request["operation"] == operation]

    def seed_session(self, cwd: str, session_id: str, last_line_number: int):
        self.workspaces.setdefault(cwd, {})[session_id] = {
            "originalSessionId": session_id,
            "entryCount": last_line_number,
            "lastLineNumber": last_line_number,
        }

    async def _record(self, operation: str, request: web.Request) -> Optional[web.Response]:
        body = await request.json() if request.can_read_body else None
        self.requests.append({
            "operation": operation,
            "path": request.path,
            "query": dict(request.query),
            "headers": dict(request.headers),
            "json": body,
        })
        contract = REQUEST_CONTRACTS.get(operation)
        problems = contract.violations(body) if contract else []
        if problems:
            self.rejected.append({"operation": operation, "problems": problems})
            return web.json_response({
                "error": "Validation failed",
                "message": problems[0],
                "details": [
                    {"path": problem.split(": ", 1)[0], "message": problem.split(": ", 1)[1]}
                    for problem in problems
                ],
            }, status=400)
        if self.failures[operation]:
            status, error_body, headers = self.failures[operation].popleft()
            return web.json_response(
                error_body if error_body is not None else {"error": "Simulated failure"},
                status=status,
                headers=headers,
            )
        if operation in self.responses:
            return web.json_response(self.responses[operation])
        return None

    async def _register(self, request: web.Request) -> web.Response:
        failure = await self._record("register", request)
        if failure is not None:
            return failure
        body = self.requests[-1]["json"]
        return web.json_response({
            "id": body["id"],
            "name": body["name"],
            "hostname": body["hostname"],
            "osInfo": body.get("osInfo"),
            "version": body.get("version"),
            "registeredAt": "2024-05-01T00:00:00Z",
            "lastSeenAt": "2024-05-01T00:00:00Z",
            "isActive": True,
        })

    async def _heartbeat(self, request: web.Request) -> web.Response:
        failure = await self._record("heartbeat", request)
        if failure is not None:
            return failure
        return web.json_response({"success": True})

    async def _sync_state(self, request: web.Request) -> web.Response:
        failure = await self._record("sync_state", request)
        if failure is not None:
            return failure
        return web.json_response({
            "gitRepos": self.git_repos,
            "workspaces": {
                cwd: list(sessions.values()) for cwd, sessions in self.workspaces.items()
            },
        })

    async def _sync(self, request: web.Request) -> web.Response:
        failure = await self._record("sync", request)
        if failure is not None:
            return failure
        body = self.requests[-1]["json"]
        commits_created = 0
        entries_created = 0

        for repo in body.get("gitRepos", []):
            known = self.git_repos.setdefault(repo["path"], [])
            for commit in repo["commits"]:
                if commit["sha"] not in known:
                    known.append(commit["sha"])
                    commits_created += 1

        for workspace in body.get("workspaces", []):
            for session in workspace["sessions"]:
                entries = session["entries"]
                state = self.workspaces.setdefault(workspace["cwd"], {}).setdefault(
                    session["originalSessionId"],
                    {"originalSessionId": session["originalSessionId"], "entryCount": 0, "lastLineNumber": 0},
                )
                state["entryCount"] += len(entries)
                state["lastLineNumber"] = max(
                    [state["lastLineNumber"]] + [entry["lineNumber"] for entry in entries]
                )
                entries_created += len(entries)

        return web.json_response({
            "entriesCreated": entries_created,
            "commitsCreated": commits_created,
        })

    async def _logs(self, request: web.Request) -> web.Response:
        failure = await self._record("logs", request)
        if failure is not None:
            return failure
        return web.json_response({"count": len(self.requests[-1]["json"]["logs"])})


@pytest.fixture
async def archive_server():
    """A running FakeArchiveServer."""
    fake = FakeArchiveServer()
    fake.server = TestServer(fake.app)
    await fake.server.start_server()
    yield fake
    await fake.server.close()


@pytest.fixture(autouse=True)
def reset_logging():
    """Undo console logging installed by the CLI entry point."""
    yield
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_collector_console", False):
            root.removeHandler(handler)
    structlog.reset_defaults()
