"""Delta computation against the server's watermark."""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from ..api_clients.models import (
    GitCommit,
    SessionStateItem,
    SyncEntry,
    SyncGitRepo,
    SyncStateResponse,
    SyncWorkspace,
)
from ..utils.logging import get_logger


@dataclass
class DeltaCounts:
    """Sizes of a computed delta."""

    git_repos_synced: int = 0
    commits_found: int = 0
    workspaces_synced: int = 0
    sessions_found: int = 0
    entries_found: int = 0


@dataclass
class Delta:
    """Repositories and workspaces that carry new data."""

    git_repos: List[SyncGitRepo] = field(default_factory=list)
    workspaces: List[SyncWorkspace] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.git_repos and not self.workspaces

    @property
    def counts(self) -> DeltaCounts:
        return DeltaCounts(
            git_repos_synced=len(self.git_repos),
            commits_found=sum(len(repo.commits) for repo in self.git_repos),
            workspaces_synced=len(self.workspaces),
            sessions_found=sum(len(ws.sessions) for ws in self.workspaces),
            entries_found=sum(
                len(session.entries) for ws in self.workspaces for session in ws.sessions
            ),
        )


class SyncStateReconciler:
    """Filters scan output down to what the server has not yet confirmed.

    Filtering is idempotent: applying it to data the scanners already
    pre-filtered with the same watermark yields the same result.
    """

    def __init__(self, state: Optional[SyncStateResponse] = None):
        self.state = state or SyncStateResponse()
        self.logger = get_logger(self.__class__.__name__)
        self._known_shas: Dict[str, Set[str]] = {
            path: set(shas) for path, shas in self.state.git_repos.items()
        }
        self._known_sessions: Dict[str, Dict[str, SessionStateItem]] = {
            cwd: {item.original_session_id: item for item in items}
            for cwd, items in self.state.workspaces.items()
        }

    @classmethod
    def empty(cls) -> "SyncStateReconciler":
        """A reconciler that treats everything as new."""
        return cls(SyncStateResponse())

    def known_shas(self, repo_path: str) -> Set[str]:
        return self._known_shas.get(repo_path, set())

    def known_sessions(self, cwd: str) -> Dict[str, SessionStateItem]:
        return self._known_sessions.get(cwd, {})

    def filter_entries(
        self,
        session_id: str,
        entries: Iterable[SyncEntry],
        known: Optional[Dict[str, SessionStateItem]] = None,
    ) -> List[SyncEntry]:
        """Entries whose sequence is past the session's confirmed watermark."""
        item = (known or {}).get(session_id)
        watermark = item.last_confirmed_sequence if item else 0
        return [entry for entry in entries if entry.sequence > watermark]

    def filter_commits(self, repo_path: str, commits: Iterable[GitCommit]) -> List[GitCommit]:
        """Commits the server has not seen, deduplicated by sha."""
        seen = set(self.known_shas(repo_path))
        result: List[GitCommit] = []
        for commit in commits:
            if commit.sha in seen:
                continue
            seen.add(commit.sha)
            result.append(commit)
        return result

    def reconcile_repo(self, repo: SyncGitRepo) -> Optional[SyncGitRepo]:
        """Return the repo restricted to new commits, or None when there are none.

        Branches are always sent in full.
        """
        commits = self.filter_commits(repo.path, repo.commits)
        if not commits:
            return None
        return repo.model_copy(update={"commits": commits})

    def reconcile_workspace(self, workspace: SyncWorkspace) -> Optional[SyncWorkspace]:
        """Return the workspace restricted to sessions with new entries, or None."""
        known = self.known_sessions(workspace.cwd)
        sessions = []
        for session in workspace.sessions:
            entries = self.filter_entries(session.original_session_id, session.entries, known)
            if entries:
                sessions.append(session.model_copy(update={"entries": entries}))
        if not sessions:
            return None
        return workspace.model_copy(update={"sessions": sessions})

    def reconcile(
        self, repos: Iterable[SyncGitRepo], workspaces: Iterable[SyncWorkspace]
    ) -> Delta:
        """Compute the full delta for one run."""
        delta = Delta()
        for repo in repos:
            reconciled = self.reconcile_repo(repo)
            if reconciled is not None:
                delta.git_repos.append(reconciled)
        for workspace in workspaces:
            reconciled = self.reconcile_workspace(workspace)
            if reconciled is not None:
                delta.workspaces.append(reconciled)

        counts = delta.counts
        self.logger.debug(
            "Computed delta",
            git_repos=counts.git_repos_synced,
            workspaces=counts.workspaces_synced,
            commits=counts.commits_found,
            entries=counts.entries_found,
        )
        return delta
