"""
Git operations inside a sandbox.

Every call goes through `CommandRunner` in argv form, so user-controlled refs
never reach a shell. Ref names are checked against the allow-list before the
first git command that uses them.

Credentials never touch `.git/config`: pushes go to a transient authenticated
URL passed on the command line, and that URL is redacted from any error.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Protocol, Union

from .command_runner import CommandRunner
from .sanitizer import validate_ref

logger = logging.getLogger(__name__)


def clean_remote_url(repo: str, host: str = "github.com") -> str:
    return f"https://{host}/{repo}.git"


def authenticated_remote_url(repo: str, token: str, host: str = "github.com") -> str:
    """HTTPS remote with an installation/PAT token in the userinfo part."""
    return f"https://x-access-token:{token}@{host}/{repo}.git"


class GitAdapter(Protocol):
    """
    Git operations the pipeline needs.

    Implementations:
    - LocalGitCliAdapter: git CLI through CommandRunner (default)
    - fakes in tests
    """

    def create_branch(self, workdir: Path, branch: str) -> None: ...

    def stage_all(self, workdir: Path) -> None: ...

    def staged_diff_stat(self, workdir: Path) -> str: ...

    def commit(self, workdir: Path, message: str) -> str: ...

    def push(self, workdir: Path, remote_url: str, branch: str) -> None: ...


class LocalGitCliAdapter:
    """
    Local git CLI implementation.

    The bot identity is passed per commit with `-c user.name=... -c user.email=...`
    so nothing is written to the sandbox's git config.
    """

    def __init__(
        self,
        runner: CommandRunner,
        author_name: str = "minions-bot",
        author_email: str = "minions-bot@users.noreply.github.com",
    ):
        self.runner = runner
        self.author_name = author_name
        self.author_email = author_email

    def _git(self, args: list, cwd: Union[str, Path], timeout: Optional[int] = None) -> str:
        return self.runner.run(["git", *args], cwd=cwd, timeout=timeout)

    def clone(self, remote_url: str, dest: Path, cwd: Path) -> None:
        """Shallow clone with hooks disabled."""
        self._git(
            ["clone", "--depth=1", "-c", "core.hooksPath=/dev/null", remote_url, str(dest)],
            cwd=cwd,
        )

    def set_remote_url(self, workdir: Path, url: str, remote: str = "origin") -> None:
        self._git(["remote", "set-url", remote, url], cwd=workdir)

    def create_branch(self, workdir: Path, branch: str) -> None:
        """Create and switch to `branch`."""
        validate_ref(branch)
        self._git(["checkout", "-b", branch], cwd=workdir)
        logger.info(f"[Git] Created branch {branch}")

    def stage_all(self, workdir: Path) -> None:
        self._git(["add", "-A"], cwd=workdir)

    def staged_diff_stat(self, workdir: Path) -> str:
        """`git diff --cached --stat`; empty string means nothing is staged."""
        return self._git(["diff", "--cached", "--stat"], cwd=workdir).strip()

    def commit(self, workdir: Path, message: str) -> str:
        """Commit staged changes and return the new HEAD sha."""
        self._git(
            [
                "-c",
                f"user.name={self.author_name}",
                "-c",
                f"user.email={self.author_email}",
                "commit",
                "-m",
                message,
            ],
            cwd=workdir,
        )
        return self.head_sha(workdir)

    def head_sha(self, workdir: Path) -> str:
        return self._git(["rev-parse", "HEAD"], cwd=workdir).strip()

    def push(self, workdir: Path, remote_url: str, branch: str) -> None:
        """Push HEAD to `refs/heads/<branch>` on `remote_url`."""
        validate_ref(branch)
        self._git(["push", remote_url, f"HEAD:refs/heads/{branch}"], cwd=workdir)
        logger.info(f"[Git] Pushed {branch}")
