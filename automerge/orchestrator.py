"""Drives a full run: enumerate repositories, then for each one materialize a
clone, merge pull requests, and merge branches.

Repository units either run one after another in this process or fan out to a
bounded pool of worker processes. Each unit owns ``<workspace>/<repo name>``,
so concurrent units never share git state. Within a unit, pull requests are
always handled before branches.
"""
import logging
import threading
import time
from concurrent.futures import ProcessPoolExecutor, as_completed
from pathlib import Path
from typing import List, Optional

from .config import Settings
from .errors import GitCommandError, GitHubAPIError, RepositoryAccessError
from .evaluator import Evaluator, mergeable_pull_requests
from .executor import MergeExecutor
from .github import GitHubClient
from .logs import RepoLogger, configure_logging
from .metrics import last_run_timestamp, repositories_processed_total, run_duration_seconds
from .models import Credential, RepositoryRef, RepositoryReport, RunMode, RunSummary
from .workspace import Workspace

logger = logging.getLogger(__name__)


def _run_unit(settings: Settings, credential: Credential, mode: RunMode, repo: RepositoryRef) -> RepositoryReport:
    return Orchestrator(settings, credential, mode).process(repo)


class Orchestrator:
    def __init__(
        self,
        settings: Settings,
        credential: Credential,
        mode: RunMode,
        gh: Optional[GitHubClient] = None,
        workspace: Optional[Workspace] = None,
    ):
        self.settings = settings
        self.credential = credential
        self.mode = mode
        self.gh = gh or GitHubClient(credential, settings)
        self.workspace = workspace or Workspace(credential, settings)

    def run(self, parallel: Optional[int] = None) -> RunSummary:
        start = time.perf_counter()
        summary = RunSummary(mode=self.mode)
        try:
            logger.info("Fetching all repositories for %s...", self.settings.github_username)
            repos = self.gh.list_repositories(self.settings.github_username, limit=self.settings.repo_limit)
            if not repos:
                logger.info("No repositories found")
                return summary
            logger.info("Found %s repositories", len(repos))
            if parallel and parallel > 1:
                summary.reports = self._run_parallel(repos, parallel)
            else:
                summary.reports = [self.process(repo) for repo in repos]
        finally:
            self.workspace.cleanup()
            run_duration_seconds.labels(mode=self.mode.value).observe(time.perf_counter() - start)
            last_run_timestamp.labels(mode=self.mode.value).set(time.time())
        logger.info(
            "Run completed: repositories=%s merged=%s not_merged=%s errors=%s",
            len(summary.reports),
            summary.merged,
            summary.failed,
            len(summary.errors),
        )
        if self.mode is RunMode.AGGRESSIVE:
            logger.info("Force merge process completed - check individual repos for issues to fix")
        return summary

    def _run_parallel(self, repos: List[RepositoryRef], limit: int) -> List[RepositoryReport]:
        logger.info("Processing %s repositories with up to %s parallel jobs", len(repos), limit)
        slots = threading.BoundedSemaphore(limit)
        reports: List[RepositoryReport] = []
        with ProcessPoolExecutor(
            max_workers=limit,
            initializer=configure_logging,
            initargs=(self.settings.log_level, self.settings.log_file),
        ) as pool:
            futures = {}
            for repo in repos:
                # Admission: block until a running unit finishes.
                slots.acquire()
                future = pool.submit(_run_unit, self.settings, self.credential, self.mode, repo)
                future.add_done_callback(lambda _f: slots.release())
                futures[future] = repo
            for future in as_completed(futures):
                repo = futures[future]
                try:
                    reports.append(future.result())
                except Exception as e:
                    logger.error("Worker for %s crashed: %s", repo.full_name, e)
                    repositories_processed_total.labels(mode=self.mode.value, result="error").inc()
                    reports.append(RepositoryReport(repository=repo.full_name, error=str(e)))
        return reports

    def process(self, repo: RepositoryRef) -> RepositoryReport:
        log = RepoLogger(logger, repo.name)
        report = RepositoryReport(repository=repo.full_name)
        log.info("Processing repository: %s", repo.full_name)
        evaluator = Evaluator(self.gh, self.workspace, log)
        executor = MergeExecutor(self.gh, self.workspace, self.mode, self.settings, log)
        try:
            path = self.workspace.materialize(repo, log)
            self._merge_pull_requests(repo, path, evaluator, executor, report, log)
            self.workspace.refresh(path)
            self._merge_branches(repo, path, evaluator, executor, report, log)
        except RepositoryAccessError as e:
            log.error("Failed to setup repository %s: %s", repo.name, e)
            report.error = str(e)
        except (GitHubAPIError, GitCommandError) as e:
            log.error("Processing %s failed: %s", repo.name, e)
            report.error = str(e)
        repositories_processed_total.labels(
            mode=self.mode.value, result="error" if report.error else "ok"
        ).inc()
        log.info("Completed processing %s", repo.name)
        return report

    def _merge_pull_requests(
        self,
        repo: RepositoryRef,
        path: Path,
        evaluator: Evaluator,
        executor: MergeExecutor,
        report: RepositoryReport,
        log: logging.LoggerAdapter,
    ) -> None:
        log.info("Checking pull requests for %s...", repo.name)
        prs = evaluator.open_pull_requests(repo)
        if self.mode is RunMode.SAFE:
            prs = mergeable_pull_requests(prs)
        if not prs:
            log.info("No %s PRs found for %s", "mergeable" if self.mode is RunMode.SAFE else "open", repo.name)
            return
        for pr in prs:
            log.info("Found PR #%s: %s -> %s", pr.number, pr.head_branch, pr.base_branch)
            report.outcomes.append(executor.merge_pull_request(repo, path, pr))

    def _merge_branches(
        self,
        repo: RepositoryRef,
        path: Path,
        evaluator: Evaluator,
        executor: MergeExecutor,
        report: RepositoryReport,
        log: logging.LoggerAdapter,
    ) -> None:
        log.info("Checking branches for direct merge in %s...", repo.name)
        if self.mode is RunMode.SAFE:
            branches = evaluator.mergeable_branches(repo, path)
        else:
            branches = evaluator.candidate_branches(repo, path)
        if not branches:
            log.info("No additional branches found for %s", repo.name)
            return
        for branch in branches:
            report.outcomes.append(executor.merge_branch(repo, path, branch))
