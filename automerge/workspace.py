import logging
import shutil
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import httpx

from .config import SETTINGS, Settings
from .errors import GitCommandError, RepositoryAccessError
from .git import Git
from .models import Credential, RepositoryRef

logger = logging.getLogger(__name__)


def authenticated_url(clone_url: str, token: str) -> str:
    """Embed the run's token as the x-access-token password of an HTTPS clone URL."""
    u = httpx.URL(clone_url)
    if u.scheme != "https":
        return clone_url
    return str(u.copy_with(username="x-access-token", password=token))


class Workspace:
    """Owns the run's workspace root and one clone directory per repository."""

    def __init__(self, credential: Credential, settings: Settings = SETTINGS, root: Optional[Path] = None):
        self.credential = credential
        self.settings = settings
        self.root = Path(root or settings.workspace_dir)

    def git(self, path: Path) -> Git:
        return Git(
            path,
            timeout=self.settings.git_timeout_seconds,
            author_name=self.settings.git_author_name,
            author_email=self.settings.git_author_email,
        )

    def path_for(self, repo: RepositoryRef) -> Path:
        return self.root / repo.name

    def materialize(self, repo: RepositoryRef, log: Optional[logging.LoggerAdapter] = None) -> Path:
        log = log or logger
        path = self.path_for(repo)
        git = self.git(path)
        try:
            if (path / ".git").is_dir():
                log.info("Updating existing clone at %s", path)
                # Refresh credentials in case the token rotated since the clone was made.
                git.run("remote", "set-url", "origin", authenticated_url(repo.clone_url, self.credential.token))
                git.run("fetch", "--all", "--prune")
            else:
                log.info("Cloning %s", repo.full_name)
                if path.exists():
                    shutil.rmtree(path)
                git.clone(authenticated_url(repo.clone_url, self.credential.token))
            git.checkout(repo.default_branch)
            git.reset_hard(f"origin/{repo.default_branch}")
        except GitCommandError as e:
            raise RepositoryAccessError(f"{repo.full_name}: {e}") from e
        return path

    def refresh(self, path: Path) -> None:
        self.git(path).run("fetch", "--all", "--prune", check=False)

    @contextmanager
    def probe(self, path: Path, default_branch: str) -> Iterator[Git]:
        """Hold the clone on a freshly reset default branch; abort and reset on every exit path."""
        git = self.git(path)
        git.checkout(default_branch)
        git.reset_hard(f"origin/{default_branch}")
        try:
            yield git
        finally:
            git.abort_merge()
            git.run("reset", "--hard", f"origin/{default_branch}", check=False)

    def cleanup(self) -> None:
        if self.root.exists():
            logger.info("Removing workspace %s", self.root)
            shutil.rmtree(self.root, ignore_errors=True)
