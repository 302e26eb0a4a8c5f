import logging
import os
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Union

from .errors import GitCommandError
from .logs import redact
from .metrics import git_commands_total

logger = logging.getLogger(__name__)


class Git:
    """Runs git in one working tree. Every call names its directory; nothing relies on the process cwd."""

    def __init__(
        self,
        path: Union[str, Path],
        timeout: int = 300,
        author_name: str = "auto-merge-bot",
        author_email: str = "auto-merge-bot@users.noreply.github.com",
    ):
        self.path = Path(path)
        self.timeout = timeout
        self._env = self._build_env(author_name, author_email)

    @staticmethod
    def _build_env(author_name: str, author_email: str) -> Dict[str, str]:
        env = dict(os.environ)
        env.update(
            {
                "GIT_TERMINAL_PROMPT": "0",
                "GIT_AUTHOR_NAME": author_name,
                "GIT_AUTHOR_EMAIL": author_email,
                "GIT_COMMITTER_NAME": author_name,
                "GIT_COMMITTER_EMAIL": author_email,
            }
        )
        return env

    def run(self, *args: str, check: bool = True, cwd: Optional[Path] = None) -> subprocess.CompletedProcess:
        cmd = ["git", *args]
        workdir = cwd or self.path
        try:
            result = subprocess.run(
                cmd,
                cwd=str(workdir),
                env=self._env,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            git_commands_total.labels(command=args[0], result="timeout").inc()
            raise GitCommandError(args, -1, f"timed out after {self.timeout}s") from e
        ok = result.returncode == 0
        git_commands_total.labels(command=args[0], result="ok" if ok else "error").inc()
        logger.debug(
            "git: args=%s cwd=%s returncode=%s",
            redact(" ".join(args)),
            workdir,
            result.returncode,
        )
        if check and not ok:
            raise GitCommandError([redact(a) for a in args], result.returncode, redact(result.stderr))
        return result

    def ok(self, *args: str) -> bool:
        return self.run(*args, check=False).returncode == 0

    def clone(self, url: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.run("clone", url, str(self.path), cwd=self.path.parent)

    def checkout(self, branch: str) -> None:
        if not self.ok("checkout", branch):
            self.run("checkout", "-B", branch, f"origin/{branch}")

    def reset_hard(self, ref: str) -> None:
        self.run("reset", "--hard", ref)

    def abort_merge(self) -> None:
        # Fails harmlessly when no merge is in progress.
        self.run("merge", "--abort", check=False)

    def remote_branches(self) -> List[str]:
        out = self.run("branch", "-r").stdout
        return [line.strip() for line in out.splitlines() if line.strip()]

    def merged_remote_branches(self, ref: str) -> List[str]:
        """Remote-tracking branches whose tips are already reachable from ``ref``."""
        out = self.run("branch", "-r", "--merged", ref).stdout
        return [line.strip() for line in out.splitlines() if line.strip()]

    def unmerged_files(self) -> List[str]:
        out = self.run("diff", "--name-only", "--diff-filter=U").stdout
        return [line.strip() for line in out.splitlines() if line.strip()]
