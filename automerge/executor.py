import logging
import re
import time
from pathlib import Path
from typing import Callable, Optional, Set, Tuple, Type, TypeVar

from .config import SETTINGS, Settings
from .errors import GitCommandError, GitHubAPIError, MergeConflictError, MergeError, PushRejected
from .git import Git
from .github import GitHubClient
from .metrics import merge_attempts_total, push_rejections_total
from .models import (
    BranchRef,
    Mergeable,
    MergeOutcome,
    MergeState,
    MergeStrategy,
    PullRequestRef,
    RepositoryRef,
    RunMode,
)
from .workspace import Workspace

logger = logging.getLogger(__name__)

T = TypeVar("T")

CLOSE_COMMENT = "Auto-merged via force merge"

# Exactly the three marker forms git writes; `=======` must be the whole line.
_MARKER_RE = re.compile(r"^(?:<<<<<<<(?: .*)?|=======|>>>>>>>(?: .*)?)$")


def retry(
    fn: Callable[[], T],
    attempts: int = 3,
    delay: float = 2.0,
    retry_on: Tuple[Type[BaseException], ...] = (MergeError,),
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``fn`` up to ``attempts`` times with a fixed ``delay`` between failures."""
    attempt = 0
    while True:
        attempt += 1
        try:
            return fn()
        except retry_on as e:
            if attempt >= attempts:
                raise
            logger.warning("Attempt %s/%s failed: %s; retrying in %ss", attempt, attempts, e, delay)
            sleep(delay)


def strip_conflict_markers(text: str) -> str:
    """Drop conflict marker lines, keeping both sides' content in place."""
    return "".join(
        line for line in text.splitlines(keepends=True) if not _MARKER_RE.match(line.rstrip("\r\n"))
    )


def strip_conflict_markers_in_file(path: Path) -> bool:
    """Rewrite ``path`` without markers. Returns False for files that are not UTF-8 text."""
    try:
        raw = path.read_bytes()
        text = raw.decode("utf-8")
    except (OSError, UnicodeDecodeError):
        return False
    stripped = strip_conflict_markers(text)
    if stripped != text:
        path.write_bytes(stripped.encode("utf-8"))
    return True


class MergeExecutor:
    def __init__(
        self,
        gh: GitHubClient,
        workspace: Workspace,
        mode: RunMode,
        settings: Settings = SETTINGS,
        log: Optional[logging.LoggerAdapter] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.gh = gh
        self.workspace = workspace
        self.mode = mode
        self.settings = settings
        self.log = log or logger
        self._sleep = sleep
        self._unprotected: Set[Tuple[str, str]] = set()

    def _transition(self, ref: str, state: MergeState) -> None:
        self.log.debug("%s -> %s", ref, state.value)

    def _record(self, strategy: Optional[MergeStrategy], ok: bool) -> None:
        merge_attempts_total.labels(
            mode=self.mode.value,
            strategy=strategy.value if strategy else "none",
            result="success" if ok else "error",
        ).inc()

    # --- Pull requests ---
    def merge_pull_request(self, repo: RepositoryRef, path: Path, pr: PullRequestRef) -> MergeOutcome:
        ref = f"PR #{pr.number}"
        self._transition(ref, MergeState.DISCOVERED)
        try:
            current = self.gh.get_pull_request(repo.owner, repo.name, pr.number)
        except GitHubAPIError as e:
            self.log.warning("Could not re-check %s, skipping: %s", ref, e)
            self._transition(ref, MergeState.FAILED)
            return MergeOutcome(ref=ref, detail=f"recheck failed: {e}")
        self._transition(ref, MergeState.RECHECKED)
        if current is None or not current.is_open:
            self.log.info("%s is no longer open, skipping", ref)
            return MergeOutcome(ref=ref, detail="not open")

        if self.mode is RunMode.SAFE:
            if not current.is_safely_mergeable:
                self.log.info(
                    "%s is no longer mergeable (mergeable: %s, status: %s)",
                    ref,
                    current.mergeable.value,
                    current.status.value,
                )
                return MergeOutcome(ref=ref, detail=f"{current.mergeable.value}/{current.status.value}")
            return self._server_merge(repo, current, ref)

        outcome = self._server_merge(repo, current, ref)
        if outcome.success:
            return outcome
        return self._force_merge_pull_request(repo, path, current, ref)

    def _squash_auto_merge(self, repo: RepositoryRef, pr: PullRequestRef) -> str:
        if pr.mergeable is Mergeable.CONFLICTING:
            raise MergeConflictError(f"PR #{pr.number} conflicts with {pr.base_branch}")
        try:
            if pr.is_safely_mergeable or not pr.node_id:
                ok, msg = self.gh.merge_pull_request(repo.owner, repo.name, pr.number, pr.title)
            else:
                ok, msg = self.gh.enable_auto_merge(pr.node_id, pr.number)
        except GitHubAPIError as e:
            raise MergeError(str(e)) from e
        if not ok:
            raise MergeError(msg)
        return msg

    def _server_merge(self, repo: RepositoryRef, pr: PullRequestRef, ref: str) -> MergeOutcome:
        self._transition(ref, MergeState.MERGE_ATTEMPTED)
        try:
            msg = retry(
                lambda: self._squash_auto_merge(repo, pr),
                attempts=self.settings.max_retries,
                delay=self.settings.retry_delay_seconds,
                sleep=self._sleep,
            )
        except (MergeError, MergeConflictError) as e:
            self._record(MergeStrategy.SQUASH_AUTO, False)
            self._transition(ref, MergeState.FAILED)
            self.log.info("Failed to merge %s in %s: %s", ref, repo.name, e)
            return MergeOutcome(ref=ref, strategy=MergeStrategy.SQUASH_AUTO, detail=str(e))
        self._record(MergeStrategy.SQUASH_AUTO, True)
        self.log.info("Successfully merged %s in %s: %s", ref, repo.name, msg)
        return MergeOutcome(ref=ref, strategy=MergeStrategy.SQUASH_AUTO, success=True, detail=msg)

    def _fetch_pull_ref(self, git: Git, pr: PullRequestRef) -> str:
        local = f"refs/remotes/origin/pr/{pr.number}"
        if git.ok("fetch", "origin", f"+refs/pull/{pr.number}/head:{local}"):
            return local
        git.run("fetch", "origin", pr.head_branch, check=False)
        return f"origin/{pr.head_branch}"

    def _force_merge_pull_request(
        self, repo: RepositoryRef, path: Path, pr: PullRequestRef, ref: str
    ) -> MergeOutcome:
        self.log.info("Attempting force merge for %s: %s -> %s", ref, pr.head_branch, pr.base_branch)
        self._clear_protection(repo, pr.base_branch)
        git = self.workspace.git(path)
        source = self._fetch_pull_ref(git, pr)
        strategy = self._local_merge(git, pr.base_branch, source, f"Force merge PR #{pr.number}")
        if strategy is None:
            self._transition(ref, MergeState.FAILED)
            return MergeOutcome(ref=ref, detail="local merge failed")
        try:
            self._push(git, pr.base_branch, force_with_lease=True)
        except PushRejected as e:
            self._transition(ref, MergeState.FAILED)
            return MergeOutcome(ref=ref, strategy=strategy, detail=str(e))
        self._transition(ref, MergeState.PUSHED)
        self.log.info("Force pushed merged changes for %s using %s", ref, strategy.value)

        if self.gh.close_pull_request(repo.owner, repo.name, pr.number, CLOSE_COMMENT):
            self._transition(ref, MergeState.CLOSED)
        else:
            self.log.warning("Could not close %s after merging", ref)
        self._delete_branch(git, pr.head_branch)
        return MergeOutcome(ref=ref, strategy=strategy, success=True, pushed=True)

    # --- Branches ---
    def merge_branch(self, repo: RepositoryRef, path: Path, branch: BranchRef) -> MergeOutcome:
        ref = f"branch {branch.name}"
        if branch.has_open_pr:
            # PR-shadowed branches belong to the pull request path.
            return MergeOutcome(ref=ref, detail="has open PR")
        self._transition(ref, MergeState.DISCOVERED)
        git = self.workspace.git(path)
        source = f"origin/{branch.name}"
        if self.mode is RunMode.SAFE:
            return self._merge_branch_clean(repo, git, source, ref)

        self._clear_protection(repo, repo.default_branch)
        self.log.info("Force merging %s into %s", ref, repo.default_branch)
        strategy = self._local_merge(git, repo.default_branch, source, f"Force merge branch {branch.name}")
        if strategy is None:
            self._transition(ref, MergeState.FAILED)
            return MergeOutcome(ref=ref, detail="local merge failed")
        try:
            self._push(git, repo.default_branch, force_with_lease=True)
        except PushRejected as e:
            self._transition(ref, MergeState.FAILED)
            return MergeOutcome(ref=ref, strategy=strategy, detail=str(e))
        self._transition(ref, MergeState.PUSHED)
        self.log.info("Merged %s using %s", ref, strategy.value)
        self._delete_branch(git, branch.name)
        return MergeOutcome(ref=ref, strategy=strategy, success=True, pushed=True)

    def _merge_branch_clean(self, repo: RepositoryRef, git: Git, source: str, ref: str) -> MergeOutcome:
        target = repo.default_branch
        self.log.info("Attempting to merge %s into %s in %s", ref, target, repo.name)
        git.checkout(target)
        git.reset_hard(f"origin/{target}")
        self._transition(ref, MergeState.MERGE_ATTEMPTED)
        if not git.ok("merge", "--no-ff", "--no-edit", source):
            git.abort_merge()
            self._record(MergeStrategy.NO_FF, False)
            self._transition(ref, MergeState.FAILED)
            self.log.info("Failed to merge %s in %s", ref, repo.name)
            return MergeOutcome(ref=ref, strategy=MergeStrategy.NO_FF, detail="merge conflict")
        self._record(MergeStrategy.NO_FF, True)
        try:
            self._push(git, target, force_with_lease=False)
        except PushRejected as e:
            self._transition(ref, MergeState.FAILED)
            return MergeOutcome(ref=ref, strategy=MergeStrategy.NO_FF, detail=str(e))
        self._transition(ref, MergeState.PUSHED)
        self.log.info("Successfully merged %s into %s in %s", ref, target, repo.name)
        return MergeOutcome(ref=ref, strategy=MergeStrategy.NO_FF, success=True, pushed=True)

    # --- Local strategy chain ---
    def _local_merge(self, git: Git, base: str, source: str, message: str) -> Optional[MergeStrategy]:
        """theirs -> ours -> marker stripping. Leaves the clone clean when every strategy fails."""
        git.checkout(base)
        git.reset_hard(f"origin/{base}")

        if git.ok("merge", "--no-ff", "--no-edit", "--strategy=recursive", "-X", "theirs", source):
            self.log.info("Merge successful with 'theirs' strategy")
            self._record(MergeStrategy.THEIRS, True)
            return MergeStrategy.THEIRS
        self._record(MergeStrategy.THEIRS, False)
        git.abort_merge()

        if git.ok("merge", "--no-ff", "--no-edit", "--strategy=ours", source):
            self.log.info("Merge successful with 'ours' strategy")
            self._record(MergeStrategy.OURS, True)
            return MergeStrategy.OURS
        self._record(MergeStrategy.OURS, False)
        git.abort_merge()

        self.log.info("Standard merge failed, forcing manual resolution...")
        if self._strip_and_commit(git, source, message):
            self._record(MergeStrategy.STRIP_MARKERS, True)
            return MergeStrategy.STRIP_MARKERS
        self._record(MergeStrategy.STRIP_MARKERS, False)
        git.abort_merge()
        git.run("reset", "--hard", f"origin/{base}", check=False)
        return None

    def _strip_and_commit(self, git: Git, source: str, message: str) -> bool:
        git.run("merge", "--no-ff", "--no-commit", source, check=False)
        conflicted = git.unmerged_files()
        if not conflicted:
            return False
        self.log.info("Resolving conflicts in: %s", ", ".join(conflicted))
        for name in conflicted:
            file_path = git.path / name
            if file_path.is_file() and not strip_conflict_markers_in_file(file_path):
                self.log.warning("Left non-text file %s unchanged", name)
            git.run("add", "-A", "--", name)
        return git.ok("commit", "--no-edit", "-m", f"{message} - auto-resolved conflicts")

    # --- Push / cleanup helpers ---
    def _push(self, git: Git, branch: str, force_with_lease: bool) -> None:
        args = ["push", "origin", branch]
        if force_with_lease:
            args.append("--force-with-lease")
        try:
            git.run(*args)
        except GitCommandError as e:
            push_rejections_total.inc()
            self.log.error("Failed to push %s: %s", branch, e.stderr.strip())
            git.run("fetch", "origin", branch, check=False)
            git.run("reset", "--hard", f"origin/{branch}", check=False)
            raise PushRejected(branch, e.stderr) from e

    def _delete_branch(self, git: Git, branch: str) -> None:
        if not git.ok("push", "origin", "--delete", branch):
            self.log.debug("Remote branch %s was not deleted", branch)
        git.run("branch", "-D", branch, check=False)

    def _clear_protection(self, repo: RepositoryRef, branch: str) -> None:
        key = (repo.name, branch)
        if key in self._unprotected:
            return
        self._unprotected.add(key)
        if self.gh.delete_branch_protection(repo.owner, repo.name, branch):
            self.log.info("Removed branch protection on %s", branch)
