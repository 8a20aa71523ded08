"""Git repository discovery and data extraction."""

import asyncio
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set, Union

from ..api_clients.models import GitBranch, GitCommit, SyncGitRepo
from ..utils.logging import get_logger


# Directories never descended into during discovery
SKIP_DIRECTORIES = frozenset({
    "node_modules",
    "vendor",
    "__pycache__",
    ".cache",
    ".git",
})

MAX_SEARCH_DEPTH = 5
DEFAULT_COMMIT_LIMIT = 1000

FIELD_SEP = "\x1f"

# Subject goes last so it may contain anything except a newline
_LOG_FORMAT = "%x1f".join(["%H", "%an", "%ae", "%aI", "%cn", "%cI", "%P", "%s"])
_BRANCH_FORMAT = "%1f".join([
    "%(refname:short)",
    "%(objectname)",
    "%(upstream:short)",
    "%(upstream:track)",
    "%(committerdate:iso-strict)",
])
_REMOTE_FORMAT = "%(refname:short)%1f%(objectname)"

_AHEAD_RE = re.compile(r"ahead (\d+)")
_BEHIND_RE = re.compile(r"behind (\d+)")


class GitCommandError(Exception):
    """Raised when a git command exits with a non-zero status."""

    def __init__(self, args: Iterable[str], returncode: int, stderr: str):
        command = " ".join(args)
        super().__init__(f"git {command} failed ({returncode}): {stderr.strip()}")
        self.returncode = returncode
        self.stderr = stderr


@dataclass
class GitRepoInfo:
    """Repository-level metadata."""

    path: str
    upstream_url: Optional[str] = None
    default_branch: Optional[str] = None
    current_branch: Optional[str] = None
    head_sha: Optional[str] = None
    is_dirty: bool = False
    dirty_files_count: Optional[int] = None
    dirty_snapshot: Optional[Dict[str, Any]] = None
    last_file_change_at: Optional[str] = None


@dataclass
class GitScanResult:
    """Outcome of scanning every repository under the source roots."""

    repos: List[SyncGitRepo] = field(default_factory=list)
    repos_processed: int = 0
    errors: List[str] = field(default_factory=list)


def normalize_upstream_url(url: str) -> str:
    """Normalize remote URLs so different spellings of one repo compare equal.

    ``git@github.com:User/Repo.git`` and ``https://github.com/user/repo``
    both become ``github.com/user/repo``.
    """
    normalized = url.strip()
    normalized = re.sub(r"^git@([^:]+):", r"\1/", normalized)
    normalized = re.sub(r"^[a-z][a-z0-9+.-]*://", "", normalized, flags=re.IGNORECASE)
    normalized = re.sub(r"\.git$", "", normalized.rstrip("/"))
    return normalized.rstrip("/").lower()


def normalize_datetime(value: Optional[str]) -> Optional[str]:
    """Return an ISO 8601 UTC timestamp, or None if ``value`` does not parse."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat()


def parse_git_log_output(output: str, known_shas: Optional[Set[str]] = None) -> List[GitCommit]:
    """Parse ``git log`` output produced with the scanner's log format.

    Known and repeated shas are dropped; commits whose author date does not
    parse are skipped.
    """
    known = known_shas or set()
    seen: Set[str] = set()
    commits: List[GitCommit] = []

    for line in output.split("\n"):
        if not line:
            continue
        parts = line.split(FIELD_SEP, 7)
        if len(parts) < 8:
            continue

        sha, author_name, author_email, author_date_raw, committer_name, \
            committer_date_raw, parents, message = parts

        if sha in known or sha in seen:
            continue

        author_date = normalize_datetime(author_date_raw)
        if author_date is None:
            continue

        seen.add(sha)
        commits.append(GitCommit(
            sha=sha,
            message=message,
            author_name=author_name,
            author_email=author_email,
            author_date=author_date,
            committer_name=committer_name or None,
            committer_date=normalize_datetime(committer_date_raw),
            parent_shas=parents.split(),
        ))

    return commits


def parse_branch_output(output: str, remote_shas: Dict[str, str]) -> List[GitBranch]:
    """Parse ``git for-each-ref refs/heads/`` output into branches."""
    branches: List[GitBranch] = []

    for line in output.split("\n"):
        if not line:
            continue
        parts = line.split(FIELD_SEP)
        if len(parts) < 5:
            continue

        name, head_sha, upstream_name, track, last_commit_at = parts[:5]
        if not name or not head_sha:
            continue

        ahead = _AHEAD_RE.search(track)
        behind = _BEHIND_RE.search(track)

        branches.append(GitBranch(
            name=name,
            head_sha=head_sha,
            upstream_name=upstream_name or None,
            upstream_sha=remote_shas.get(upstream_name) if upstream_name else None,
            ahead_count=int(ahead.group(1)) if ahead else 0,
            behind_count=int(behind.group(1)) if behind else 0,
            last_commit_at=normalize_datetime(last_commit_at),
        ))

    return branches


def parse_porcelain_status(output: str) -> List[Dict[str, str]]:
    """Parse ``git status --porcelain`` lines into ``{status, path}`` items."""
    files = []
    for line in output.split("\n"):
        if len(line) < 4:
            continue
        status = line[:2].strip()
        path = line[3:]
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        files.append({"status": status, "path": path.strip('"')})
    return files


class GitScanner:
    """Finds local git repositories and extracts branches and commits."""

    def __init__(
        self,
        host: str,
        max_depth: int = MAX_SEARCH_DEPTH,
        commit_limit: int = DEFAULT_COMMIT_LIMIT,
        git_binary: str = "git",
    ):
        """Initialize the scanner.

        Args:
            host: Effective hostname stamped on every repository payload
            max_depth: Maximum directory depth searched below each root
            commit_limit: Maximum commits read from ``git log`` per repository
            git_binary: Git executable to run
        """
        self.host = host
        self.max_depth = max_depth
        self.commit_limit = commit_limit
        self.git_binary = git_binary
        self.logger = get_logger(self.__class__.__name__)

    async def _git(self, repo_path: str, *args: str) -> str:
        """Run a git command in ``repo_path`` and return its stdout."""
        process = await asyncio.create_subprocess_exec(
            self.git_binary,
            *args,
            cwd=repo_path,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            raise GitCommandError(args, process.returncode, stderr.decode("utf-8", "replace"))
        # rstrip only: porcelain status lines start with a significant space
        return stdout.decode("utf-8", "replace").rstrip()

    async def _git_optional(self, repo_path: str, *args: str) -> Optional[str]:
        """Like ``_git`` but returns None when the command fails."""
        try:
            return await self._git(repo_path, *args)
        except GitCommandError:
            return None

    # Discovery

    def discover(self, roots: Iterable[Union[str, Path]]) -> List[str]:
        """Find repository working trees below ``roots``.

        A directory holding ``.git`` is a repository and is not descended
        into. Hidden and vendored directories are skipped, as are roots that
        do not exist and directories that cannot be listed.
        """
        found: List[str] = []
        visited: Set[str] = set()

        def search(directory: str, depth: int) -> None:
            if depth > self.max_depth or directory in visited:
                return
            visited.add(directory)

            try:
                with os.scandir(directory) as entries:
                    children = sorted(
                        entry.path for entry in entries
                        if entry.is_dir(follow_symlinks=False)
                        and entry.name not in SKIP_DIRECTORIES
                        and not entry.name.startswith(".")
                    )
            except OSError as e:
                self.logger.debug("Skipping unreadable directory", path=directory, error=str(e))
                return

            for child in children:
                if os.path.exists(os.path.join(child, ".git")):
                    found.append(child)
                else:
                    search(child, depth + 1)

        for root in roots:
            root_path = os.path.abspath(os.path.expanduser(str(root)))
            if not os.path.isdir(root_path):
                self.logger.warning("Source directory does not exist", path=root_path)
                continue
            if os.path.exists(os.path.join(root_path, ".git")):
                found.append(root_path)
                continue
            search(root_path, 0)

        return sorted(set(found))

    # Extraction

    async def extract_info(self, repo_path: str) -> GitRepoInfo:
        """Read repository-level metadata (HEAD, origin, dirty state)."""
        head_sha = await self._git_optional(repo_path, "rev-parse", "--verify", "-q", "HEAD")
        origin_url = await self._git_optional(repo_path, "remote", "get-url", "origin")
        current_branch = await self._git_optional(repo_path, "branch", "--show-current")

        default_branch = await self._git_optional(
            repo_path, "symbolic-ref", "refs/remotes/origin/HEAD"
        )
        if default_branch:
            default_branch = default_branch.replace("refs/remotes/origin/", "", 1)
        else:
            local = await self._git_optional(
                repo_path, "for-each-ref", "--format=%(refname:short)", "refs/heads/"
            )
            names = set((local or "").split("\n"))
            default_branch = next((name for name in ("main", "master") if name in names), None)

        status_output = await self._git(repo_path, "status", "--porcelain")
        dirty_files = parse_porcelain_status(status_output)
        info = GitRepoInfo(
            path=repo_path,
            upstream_url=normalize_upstream_url(origin_url) if origin_url else None,
            default_branch=default_branch,
            current_branch=current_branch or None,
            head_sha=head_sha or None,
            is_dirty=bool(dirty_files),
            dirty_files_count=len(dirty_files),
        )

        if dirty_files:
            for item in dirty_files:
                item["mtime"] = self._file_mtime(os.path.join(repo_path, item["path"]))
            mtimes = sorted(item["mtime"] for item in dirty_files if item["mtime"])
            info.dirty_snapshot = {
                "status": status_output,
                "files": dirty_files,
                "capturedAt": datetime.now(timezone.utc).isoformat(),
            }
            info.last_file_change_at = mtimes[-1] if mtimes else None

        return info

    @staticmethod
    def _file_mtime(path: str) -> Optional[str]:
        try:
            stat = os.stat(path)
        except OSError:
            return None
        return datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).isoformat()

    async def extract_branches(self, repo_path: str) -> List[GitBranch]:
        """Return every local branch head with its upstream tracking state.

        A repository without branches (fresh ``git init`` or detached HEAD
        with no local refs) yields an empty list.
        """
        output = await self._git_optional(
            repo_path, "for-each-ref", f"--format={_BRANCH_FORMAT}", "refs/heads/"
        )
        if not output:
            return []

        remotes = await self._git_optional(
            repo_path, "for-each-ref", f"--format={_REMOTE_FORMAT}", "refs/remotes/"
        )
        remote_shas: Dict[str, str] = {}
        for line in (remotes or "").split("\n"):
            name, _, sha = line.partition(FIELD_SEP)
            if name and sha:
                remote_shas[name] = sha

        return parse_branch_output(output, remote_shas)

    async def extract_commits(
        self,
        repo_path: str,
        known_shas: Optional[Set[str]] = None,
        limit: Optional[int] = None,
    ) -> List[GitCommit]:
        """Return commits from all refs, newest first, minus ``known_shas``."""
        output = await self._git(
            repo_path,
            "log",
            "--all",
            "--date-order",
            f"--format={_LOG_FORMAT}",
            "-n",
            str(limit or self.commit_limit),
        )
        return parse_git_log_output(output, known_shas)

    def build_sync_git_repo(
        self,
        info: GitRepoInfo,
        branches: List[GitBranch],
        commits: List[GitCommit],
    ) -> SyncGitRepo:
        """Assemble the wire entity for one repository."""
        return SyncGitRepo(
            host=self.host,
            path=info.path,
            upstream_url=info.upstream_url,
            default_branch=info.default_branch,
            current_branch=info.current_branch,
            head_sha=info.head_sha,
            is_dirty=info.is_dirty,
            dirty_files_count=info.dirty_files_count,
            dirty_snapshot=info.dirty_snapshot,
            last_file_change_at=info.last_file_change_at,
            branches=branches,
            commits=commits,
        )

    async def scan_repo(self, repo_path: str, known_shas: Optional[Set[str]] = None) -> SyncGitRepo:
        """Extract one repository into its wire entity."""
        info = await self.extract_info(repo_path)
        branches = await self.extract_branches(repo_path)
        commits: List[GitCommit] = []
        if info.head_sha or branches:
            commits = await self.extract_commits(repo_path, known_shas)
        return self.build_sync_git_repo(info, branches, commits)

    async def scan(self, roots: Iterable[Union[str, Path]], watermark=None) -> GitScanResult:
        """Scan every repository under ``roots``.

        Args:
            roots: Source directories to search
            watermark: Optional reconciler supplying known commit shas per repo

        Returns:
            GitScanResult with one entry per readable repository; failures are
            recorded in ``errors`` and never abort the scan
        """
        result = GitScanResult()
        roots = list(roots)
        if not roots:
            self.logger.debug("No source directories specified, skipping git scan")
            return result

        try:
            repo_paths = await asyncio.to_thread(self.discover, roots)
        except OSError as e:
            self.logger.error("Error discovering git repositories", error=str(e))
            result.errors.append(f"Git discovery: {e}")
            return result

        self.logger.info("Discovered git repositories", count=len(repo_paths))

        for repo_path in repo_paths:
            result.repos_processed += 1
            known = watermark.known_shas(repo_path) if watermark is not None else set()

            try:
                repo = await self.scan_repo(repo_path, known)
            except (GitCommandError, OSError) as e:
                self.logger.error("Error processing git repository", path=repo_path, error=str(e))
                result.errors.append(f"Git repo {repo_path}: {e}")
                continue

            self.logger.debug(
                "Scanned git repository",
                path=repo_path,
                branches=len(repo.branches),
                new_commits=len(repo.commits),
                known_commits=len(known),
            )
            result.repos.append(repo)

        return result
