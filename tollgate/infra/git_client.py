# -----------------------------------------------------------------------------
# GIT INFRASTRUCTURE - GitOps Source of Truth
# -----------------------------------------------------------------------------
# Responsibility: Execute Git operations against the desired-state repository
# that the GitOps controller reconciles from, and against the source checkout
# images are built from.
# Uses subprocess for lean, direct git command execution.
#
# Features:
# - Clone / hard-sync a checkout to the remote branch
# - Check out a single revision for a build
# - Commit descriptor changes and push them
# - Detect non-fast-forward rejections (someone else pushed first)
#
# Security:
# - PAT tokens are embedded in the remote URL only
# - Tokens are NEVER logged in plain text
# -----------------------------------------------------------------------------

import subprocess
from pathlib import Path

from rich.console import Console

console = Console()

# Rejection markers git prints when the remote moved under us
REJECTION_MARKERS = ("[rejected]", "non-fast-forward", "fetch first", "stale info")


class GitError(Exception):
    """Raised when a Git operation fails."""

    pass


class PushRejected(GitError):
    """Raised when the remote rejects a push because it has newer commits."""

    pass


class GitProvider:
    """
    Lean Git operations wrapper using subprocess.

    Requires the git CLI on PATH. Credentials live in the remote URL.
    """

    def __init__(self, workspace_path: str, token: str | None = None) -> None:
        """
        Initialize Git provider with workspace path.

        Args:
            workspace_path: Path of the local checkout.
            token: Optional token, only used to redact output.
        """
        self._workspace = Path(workspace_path)
        self._token = token

    @property
    def workspace(self) -> Path:
        return self._workspace

    def _run(
        self, cmd: list, capture_output: bool = True, check: bool = True, cwd: Path | None = None
    ) -> subprocess.CompletedProcess:
        """
        Run a git command in the workspace.

        Args:
            cmd: Command parts (e.g., ["git", "status"])
            capture_output: Capture stdout/stderr
            check: Raise on non-zero exit
            cwd: Working directory (defaults to the workspace)

        Returns:
            CompletedProcess result

        Raises:
            GitError: If command fails and check=True
        """
        try:
            result = subprocess.run(
                cmd,
                cwd=cwd or self._workspace,
                capture_output=capture_output,
                text=True,
                timeout=60,  # 1 minute timeout for git operations
            )
        except subprocess.TimeoutExpired:
            raise GitError("Git operation timed out (60s limit)")
        except (subprocess.SubprocessError, OSError) as e:
            raise GitError(f"Git subprocess error: {e}")

        if check and result.returncode != 0:
            # Sanitize error output to remove any token traces
            error_msg = self._sanitize_output(result.stderr or result.stdout or "Unknown error")
            raise GitError(f"Git command failed: {error_msg}")

        return result

    def _sanitize_output(self, text: str) -> str:
        """Remove any sensitive data from output before logging."""
        if self._token and self._token in text:
            text = text.replace(self._token, "[REDACTED]")
        return text

    def clone(self, remote_url: str, branch: str = "main") -> None:
        """
        Clone the desired-state repository into the workspace.

        No-op if the workspace is already a checkout.
        """
        if (self._workspace / ".git").exists():
            return

        self._workspace.parent.mkdir(parents=True, exist_ok=True)
        console.print(f"[cyan][GIT] Cloning {self._sanitize_output(remote_url)}[/cyan]")
        self._run(
            ["git", "clone", "--branch", branch, remote_url, str(self._workspace)],
            cwd=self._workspace.parent,
        )

    def configure_user(self, name: str = "Tollgate Bot", email: str = "tollgate@localhost") -> None:
        """
        Configure Git user for commits.

        Args:
            name: Committer name
            email: Committer email
        """
        self._run(["git", "config", "user.name", name])
        self._run(["git", "config", "user.email", email])
        console.print(f"[cyan][GIT] Configured user: {name}[/cyan]")

    def sync(self, branch: str = "main") -> str:
        """
        Hard-reset the checkout to the remote branch head.

        Returns:
            The commit id of the new HEAD.
        """
        self._run(["git", "fetch", "origin", branch])
        self._run(["git", "checkout", branch])
        self._run(["git", "reset", "--hard", f"origin/{branch}"])
        return self.head()

    def checkout(self, ref: str) -> str:
        """
        Check out `ref` as a detached HEAD with a clean tree.

        Untracked files are removed so the tree holds exactly the commit.

        Returns:
            The commit id of the new HEAD.
        """
        self._run(["git", "fetch", "origin"])
        self._run(["git", "checkout", "--force", "--detach", ref])
        self._run(["git", "clean", "-ffdx"])
        console.print(f"[cyan][GIT] Checked out {ref[:12]}[/cyan]")
        return self.head()

    def head(self) -> str:
        """Return the commit id of HEAD."""
        return self._run(["git", "rev-parse", "HEAD"]).stdout.strip()

    def commit(self, paths: list[str], message: str) -> str:
        """
        Stage the given paths and commit.

        Returns:
            The new commit id.
        """
        self._run(["git", "add", "--", *paths])
        console.print(f"[cyan][GIT] Committing: {message}[/cyan]")
        self._run(["git", "commit", "-m", message])
        return self.head()

    def push(self, branch: str = "main") -> None:
        """
        Push the branch. Never forced: the remote is the source of truth.

        Raises:
            PushRejected: If the remote has commits we do not have.
            GitError: For any other failure.
        """
        result = self._run(["git", "push", "origin", f"HEAD:{branch}"], check=False)
        if result.returncode == 0:
            console.print(f"[green][GIT] Pushed to {branch}[/green]")
            return

        output = self._sanitize_output(result.stderr or result.stdout or "")
        if any(marker in output for marker in REJECTION_MARKERS):
            console.print(f"[yellow][GIT] Push rejected, remote moved: {branch}[/yellow]")
            raise PushRejected(f"Push to {branch} rejected: {output.strip()[:200]}")
        raise GitError(f"Git push failed: {output.strip()[:500]}")
