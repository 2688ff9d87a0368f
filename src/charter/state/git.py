from __future__ import annotations

import subprocess
from pathlib import Path

from charter.errors import StateError


class GitCommitHook:
    """Persist hook that commits each written state file to the project repository."""

    def __init__(self, repo_root: Path) -> None:
        self.repo_root = repo_root.resolve()
        self._git_enabled = self._is_git_repo()

    @property
    def git_enabled(self) -> bool:
        return self._git_enabled

    def _is_git_repo(self) -> bool:
        try:
            proc = subprocess.run(
                ["git", "--no-pager", "rev-parse", "--is-inside-work-tree"],
                cwd=self.repo_root,
                text=True,
                capture_output=True,
            )
        except FileNotFoundError:
            return False
        return proc.returncode == 0 and proc.stdout.strip() == "true"

    def _run_git(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess[str]:
        proc = subprocess.run(
            ["git", "--no-pager", *args],
            cwd=self.repo_root,
            text=True,
            capture_output=True,
        )
        if check and proc.returncode != 0:
            raise StateError(proc.stderr.strip() or proc.stdout.strip())
        return proc

    def __call__(self, path: Path, message: str) -> None:
        if not self.git_enabled:
            return
        self._run_git(["add", "--", str(path)])
        staged = self._run_git(["diff", "--cached", "--quiet"], check=False)
        if staged.returncode == 0:
            return
        self._run_git(["commit", "--no-verify", "-m", message])
