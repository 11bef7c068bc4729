"""Git service used by the rollback guard."""

import logging
import subprocess
from pathlib import Path
from typing import Optional

from .exceptions import GitServiceError

logger = logging.getLogger(__name__)


class GitService:
    """Service for the handful of Git operations a rollback needs."""

    def __init__(self, repo_path: Optional[Path] = None):
        """Initialize Git service.

        Args:
            repo_path: Path to the git repository (defaults to current directory)

        Raises:
            GitServiceError: If the path is not inside a git repository
        """
        self.repo_path = repo_path or Path.cwd()
        if not self._is_git_repo():
            raise GitServiceError(f"{self.repo_path} is not a git repository")

    def _is_git_repo(self) -> bool:
        """Check if the current path is a git repository."""
        try:
            self._run_git_command(["rev-parse", "--git-dir"])
            return True
        except GitServiceError:
            return False

    def _run_git_command(
        self, args: list[str], check: bool = True, capture_output: bool = True
    ) -> subprocess.CompletedProcess:
        """Run a git command with proper error handling.

        Args:
            args: Git command arguments
            check: Check return code
            capture_output: Capture stdout and stderr

        Returns:
            Completed process result

        Raises:
            GitServiceError: If command fails
        """
        cmd = ["git"] + args
        try:
            result = subprocess.run(
                cmd,
                cwd=self.repo_path,
                check=check,
                capture_output=capture_output,
                text=True,
            )
            return result
        except subprocess.CalledProcessError as e:
            error_msg = e.stderr if e.stderr else str(e)
            raise GitServiceError(f"Git command failed: {error_msg}") from e
        except OSError as e:
            raise GitServiceError(f"Unable to run git: {e}") from e

    def get_commit_hash(self, ref: str = "HEAD") -> str:
        """Get the commit hash of a reference.

        Args:
            ref: Git reference (default: HEAD)

        Returns:
            Commit hash

        Raises:
            GitServiceError: If unable to get hash
        """
        result = self._run_git_command(["rev-parse", ref])
        return result.stdout.strip()

    def get_changed_files(self, base: str, head: str = "HEAD") -> list[str]:
        """List files that differ between two revisions.

        Args:
            base: Older revision
            head: Newer revision

        Returns:
            Changed file paths relative to the repository root
        """
        result = self._run_git_command(["diff", "--name-only", base, head])
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def reset_hard(self, ref: str) -> None:
        """Reset the working tree and index to a revision, discarding changes.

        Args:
            ref: Target revision

        Raises:
            GitServiceError: If the reset fails
        """
        self._run_git_command(["reset", "--hard", ref])
        logger.info(f"Reset working tree to {ref}")
