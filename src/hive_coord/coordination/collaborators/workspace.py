"""Git worktree workspace isolation: one branch and checkout per worker."""

from __future__ import annotations

import logging
import subprocess
from collections.abc import Callable
from pathlib import Path

from hive_coord.coordination.collaborators.base import CollaboratorError

logger = logging.getLogger(__name__)

Runner = Callable[..., subprocess.CompletedProcess[str]]


def workspace_name(agent_id: str) -> str:
    """Branch and directory name used for ``agent_id``."""

    return f"agent-{agent_id}"


class GitWorktreeWorkspace:
    """Creates ``<root>/agent-<id>`` worktrees on ``agent-<id>`` branches."""

    def __init__(
        self,
        *,
        repo_path: Path,
        root: Path,
        base_branch: str = "main",
        runner: Runner = subprocess.run,
    ) -> None:
        self.repo_path = repo_path
        self.root = root
        self.base_branch = base_branch
        self._runner = runner

    def path_for(self, agent_id: str) -> Path:
        return self.root / workspace_name(agent_id)

    def create_workspace(self, agent_id: str) -> Path:
        path = self.path_for(agent_id)
        if (path / ".git").exists():
            logger.debug("Reusing worktree %s", path)
            return path
        branch = workspace_name(agent_id)
        if not self._branch_exists(branch):
            self._git("branch", branch, self.base_branch, cwd=self.repo_path)
        self.root.mkdir(parents=True, exist_ok=True)
        self._git("worktree", "add", str(path), branch, cwd=self.repo_path)
        logger.info("Created worktree %s on branch %s", path, branch)
        return path

    def commit_changes(self, agent_id: str, message: str) -> str:
        path = self._require(agent_id)
        self._git("add", "-A", cwd=path)
        if not self._git("status", "--porcelain", cwd=path).strip():
            logger.info("No changes to commit in %s", path)
        else:
            self._git("commit", "-m", message, cwd=path)
        revision = self._git("rev-parse", "HEAD", cwd=path).strip()
        logger.info("Worktree %s at revision %s", path, revision)
        return revision

    def sync(self, agent_id: str) -> None:
        """Stash local edits, merge the base branch, and restore the edits."""

        path = self._require(agent_id)
        dirty = bool(self._git("status", "--porcelain", cwd=path).strip())
        if dirty:
            self._git("stash", "push", "--include-untracked", cwd=path)
        try:
            self._git("merge", "--no-edit", self.base_branch, cwd=path)
        except CollaboratorError:
            self._git("merge", "--abort", cwd=path, check=False)
            raise
        finally:
            if dirty:
                self._git("stash", "pop", cwd=path)
        logger.info("Synced %s with %s", path, self.base_branch)

    def merge(self, agent_id: str) -> None:
        branch = workspace_name(agent_id)
        self._git("checkout", self.base_branch, cwd=self.repo_path)
        try:
            self._git(
                "merge",
                "--no-ff",
                branch,
                "-m",
                f"Merge {branch} into {self.base_branch}",
                cwd=self.repo_path,
            )
        except CollaboratorError:
            self._git("merge", "--abort", cwd=self.repo_path, check=False)
            raise
        logger.info("Merged %s into %s", branch, self.base_branch)

    def remove_workspace(self, agent_id: str) -> None:
        path = self.path_for(agent_id)
        if not path.exists():
            return
        self._git("worktree", "remove", "--force", str(path), cwd=self.repo_path)
        logger.info("Removed worktree %s", path)

    def _require(self, agent_id: str) -> Path:
        path = self.path_for(agent_id)
        if not path.exists():
            raise CollaboratorError(f"No worktree for agent {agent_id} at {path}.")
        return path

    def _branch_exists(self, branch: str) -> bool:
        result = self._runner(
            ["git", "rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"],
            cwd=self.repo_path,
            capture_output=True,
            text=True,
            check=False,
        )
        return result.returncode == 0

    def _git(self, *args: str, cwd: Path, check: bool = True) -> str:
        command = ["git", *args]
        try:
            result = self._runner(command, cwd=cwd, capture_output=True, text=True, check=False)
        except OSError as error:
            raise CollaboratorError(f"Failed to run {' '.join(command)}: {error}") from error
        if check and result.returncode != 0:
            detail = (result.stderr or result.stdout or "").strip()
            raise CollaboratorError(
                f"{' '.join(command)} failed with exit code {result.returncode}: {detail}",
            )
        return result.stdout or ""
