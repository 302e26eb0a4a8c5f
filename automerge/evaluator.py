import logging
from pathlib import Path
from typing import List, Optional, Tuple

from .github import GitHubClient
from .models import BranchRef, PullRequestRef, RepositoryRef
from .workspace import Workspace

logger = logging.getLogger(__name__)

REMOTE_PREFIX = "origin/"


def mergeable_pull_requests(prs: List[PullRequestRef]) -> List[PullRequestRef]:
    """Keep PRs GitHub reports as MERGEABLE with a CLEAN merge state."""
    return [pr for pr in prs if pr.is_safely_mergeable]


def parse_remote_branches(lines: List[str], default_branch: str) -> List[str]:
    branches = []
    for line in lines:
        if "->" in line:
            # origin/HEAD -> origin/main
            continue
        if not line.startswith(REMOTE_PREFIX):
            continue
        name = line[len(REMOTE_PREFIX):]
        if name in ("HEAD", default_branch):
            continue
        branches.append(name)
    return branches


class Evaluator:
    def __init__(self, gh: GitHubClient, workspace: Workspace, log: Optional[logging.LoggerAdapter] = None):
        self.gh = gh
        self.workspace = workspace
        self.log = log or logger

    def open_pull_requests(self, repo: RepositoryRef) -> List[PullRequestRef]:
        return self.gh.list_open_pull_requests(repo.owner, repo.name)

    def candidate_branches(self, repo: RepositoryRef, path: Path) -> List[BranchRef]:
        """Remote branches other than the default with unmerged commits and no open PR."""
        git = self.workspace.git(path)
        names = parse_remote_branches(git.remote_branches(), repo.default_branch)
        merged = set(
            parse_remote_branches(
                git.merged_remote_branches(f"{REMOTE_PREFIX}{repo.default_branch}"), repo.default_branch
            )
        )
        candidates = []
        for name in names:
            if name in merged:
                self.log.debug("Branch %s is already merged into %s", name, repo.default_branch)
                continue
            branch = BranchRef(name=name, has_open_pr=self.gh.count_prs_for_head(repo.owner, repo.name, name) > 0)
            if branch.has_open_pr:
                self.log.info("Branch %s has open PR, skipping direct merge", name)
                continue
            candidates.append(branch)
        return candidates

    def trial_merge(self, repo: RepositoryRef, path: Path, branch: str) -> bool:
        with self.workspace.probe(path, repo.default_branch) as git:
            ok = git.ok("merge", "--no-commit", "--no-ff", f"{REMOTE_PREFIX}{branch}")
        self.log.debug("Trial merge of %s into %s: %s", branch, repo.default_branch, "clean" if ok else "conflict")
        return ok

    def mergeable_branches(self, repo: RepositoryRef, path: Path) -> List[BranchRef]:
        result = []
        for branch in self.candidate_branches(repo, path):
            if self.trial_merge(repo, path, branch.name):
                result.append(branch)
            else:
                self.log.info("Branch %s conflicts with %s", branch.name, repo.default_branch)
        return result

    def evaluate(self, repo: RepositoryRef, path: Path) -> Tuple[List[PullRequestRef], List[BranchRef]]:
        prs = mergeable_pull_requests(self.open_pull_requests(repo))
        return prs, self.mergeable_branches(repo, path)
