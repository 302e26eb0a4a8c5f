import time
import logging
from typing import Any, Dict, List, Optional, Tuple
import httpx

from .config import SETTINGS, Settings
from .errors import GitHubAPIError
from .logs import redact
from .metrics import (
    github_api_requests_total,
    github_api_latency_seconds,
    github_rate_limit_remaining,
)
from .models import CheckStatus, Credential, Mergeable, PullRequestRef, RepositoryRef

logger = logging.getLogger(__name__)

PAGE_SIZE = 100

REPOSITORIES_QUERY = """
query($login: String!, $first: Int!, $after: String) {
  repositoryOwner(login: $login) {
    repositories(first: $first, after: $after, ownerAffiliations: OWNER,
                 orderBy: {field: NAME, direction: ASC}) {
      nodes { name url isEmpty defaultBranchRef { name } }
      pageInfo { hasNextPage endCursor }
    }
  }
}
"""

PULL_REQUEST_FIELDS = "id number title state headRefName baseRefName mergeable mergeStateStatus"

OPEN_PULL_REQUESTS_QUERY = """
query($owner: String!, $name: String!, $first: Int!, $after: String) {
  repository(owner: $owner, name: $name) {
    pullRequests(states: OPEN, first: $first, after: $after) {
      nodes { %s }
      pageInfo { hasNextPage endCursor }
    }
  }
}
""" % PULL_REQUEST_FIELDS

PULL_REQUEST_QUERY = """
query($owner: String!, $name: String!, $number: Int!) {
  repository(owner: $owner, name: $name) {
    pullRequest(number: $number) { %s }
  }
}
""" % PULL_REQUEST_FIELDS

ENABLE_AUTO_MERGE_MUTATION = """
mutation($id: ID!) {
  enablePullRequestAutoMerge(input: {pullRequestId: $id, mergeMethod: SQUASH}) {
    pullRequest { number }
  }
}
"""


def _safe_url(url: str) -> str:
    try:
        u = httpx.URL(url)
        # remove query to avoid leaking params
        return redact(str(u.copy_with(query=None)))
    except Exception:
        return redact(url.split("?", 1)[0])


def _pr_from_node(node: Dict[str, Any]) -> PullRequestRef:
    return PullRequestRef(
        number=int(node["number"]),
        head_branch=node.get("headRefName") or "",
        base_branch=node.get("baseRefName") or "",
        mergeable=Mergeable.parse(node.get("mergeable")),
        status=CheckStatus.parse(node.get("mergeStateStatus")),
        state=node.get("state") or "OPEN",
        node_id=node.get("id"),
        title=node.get("title"),
    )


class GitHubClient:
    def __init__(self, credential: Credential, settings: Settings = SETTINGS):
        self.credential = credential
        self.base_url = settings.github_api_url
        self.graphql_url = settings.github_graphql_url
        self.max_attempts = max(1, settings.max_retries)
        self.retry_delay_seconds = settings.retry_delay_seconds

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"token {self.credential.token}",
            "Accept": "application/vnd.github+json",
            "User-Agent": "automerge/1.0",
        }

    def request(
        self, method: str, path: str, params: Optional[Dict[str, Any]] = None, data: Optional[Any] = None
    ) -> httpx.Response:
        url = path if path.startswith("http") else f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"
        endpoint = f"{method} {path if path.startswith('/') else '/' + path}"

        # Merges and mutations are never replayed here; the merge executor owns that retry.
        idempotent = method.upper() in ("GET", "DELETE")

        def should_retry(resp: Optional[httpx.Response], exc: Optional[Exception]) -> bool:
            if not idempotent:
                return False
            # Retry on network/timeout errors
            if exc is not None:
                return True
            if resp is None:
                return False
            return resp.status_code >= 500 or resp.status_code == 429

        attempts = 0
        while True:
            attempts += 1
            start = time.perf_counter()
            exc: Optional[Exception] = None
            resp: Optional[httpx.Response] = None
            logger.debug(
                "github.request: method=%s path=%s attempt=%s",
                method.upper(),
                _safe_url(url),
                attempts,
            )
            try:
                resp = httpx.request(method, url, headers=self._headers(), params=params, json=data, timeout=60)
            except (httpx.TimeoutException, httpx.TransportError) as e:
                exc = e
            duration = time.perf_counter() - start
            status_label = str(resp.status_code) if resp is not None else "exc"
            github_api_latency_seconds.labels(endpoint=endpoint).observe(duration)
            github_api_requests_total.labels(endpoint=endpoint, status=status_label).inc()
            if resp is not None:
                self._track_rate_limit(resp)
                logger.debug(
                    "github.response: method=%s path=%s status=%s duration_ms=%d attempt=%s",
                    method.upper(),
                    _safe_url(url),
                    resp.status_code,
                    int(duration * 1000),
                    attempts,
                )
            else:
                logger.debug(
                    "github.response_error: method=%s path=%s error=%s duration_ms=%d attempt=%s",
                    method.upper(),
                    _safe_url(url),
                    exc,
                    int(duration * 1000),
                    attempts,
                )
            if not should_retry(resp, exc) or attempts >= self.max_attempts:
                if exc is not None:
                    raise GitHubAPIError(f"{endpoint} failed: {exc}") from exc
                return resp  # type: ignore
            logger.debug(
                "github.retry: method=%s path=%s sleep_seconds=%s attempt=%s",
                method.upper(),
                _safe_url(url),
                self.retry_delay_seconds,
                attempts,
            )
            time.sleep(self.retry_delay_seconds)

    def _track_rate_limit(self, resp: httpx.Response) -> None:
        remaining = resp.headers.get("X-RateLimit-Remaining")
        if remaining is None:
            return
        try:
            github_rate_limit_remaining.set(int(remaining))
        except ValueError:
            return
        if int(remaining) == 0:
            logger.warning("github.rate_limit: exhausted reset=%s", resp.headers.get("X-RateLimit-Reset"))

    def graphql(self, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        r = self.request("POST", self.graphql_url, data={"query": query, "variables": variables})
        if r.status_code != 200:
            raise GitHubAPIError("GraphQL request failed", status=r.status_code)
        try:
            payload = r.json()
        except ValueError as e:
            raise GitHubAPIError(f"GraphQL response was not JSON: {e}") from e
        if payload.get("errors"):
            messages = "; ".join(str(err.get("message")) for err in payload["errors"])
            raise GitHubAPIError(f"GraphQL errors: {messages}")
        return payload.get("data") or {}

    # --- Repository enumeration ---
    def list_repositories(self, account: str, limit: int = 1000) -> List[RepositoryRef]:
        repos: List[RepositoryRef] = []
        after: Optional[str] = None
        while len(repos) < limit:
            data = self.graphql(
                REPOSITORIES_QUERY,
                {"login": account, "first": min(PAGE_SIZE, limit - len(repos)), "after": after},
            )
            owner = data.get("repositoryOwner")
            if owner is None:
                raise GitHubAPIError(f"account {account} not found")
            conn = owner["repositories"]
            for node in conn.get("nodes") or []:
                if node.get("isEmpty"):
                    logger.debug("Skipping empty repository %s/%s", account, node.get("name"))
                    continue
                repos.append(
                    RepositoryRef(
                        owner=account,
                        name=node["name"],
                        clone_url=node["url"].rstrip("/") + ".git",
                        default_branch=(node.get("defaultBranchRef") or {}).get("name") or "main",
                    )
                )
            page = conn.get("pageInfo") or {}
            if not page.get("hasNextPage"):
                break
            after = page.get("endCursor")
        return repos[:limit]

    # --- Pull requests ---
    def list_open_pull_requests(self, owner: str, repo: str) -> List[PullRequestRef]:
        prs: List[PullRequestRef] = []
        after: Optional[str] = None
        while True:
            data = self.graphql(
                OPEN_PULL_REQUESTS_QUERY, {"owner": owner, "name": repo, "first": PAGE_SIZE, "after": after}
            )
            conn = (data.get("repository") or {}).get("pullRequests") or {}
            prs.extend(_pr_from_node(n) for n in conn.get("nodes") or [])
            page = conn.get("pageInfo") or {}
            if not page.get("hasNextPage"):
                return prs
            after = page.get("endCursor")

    def get_pull_request(self, owner: str, repo: str, number: int) -> Optional[PullRequestRef]:
        data = self.graphql(PULL_REQUEST_QUERY, {"owner": owner, "name": repo, "number": number})
        node = (data.get("repository") or {}).get("pullRequest")
        if not node:
            return None
        return _pr_from_node(node)

    def count_prs_for_head(self, owner: str, repo: str, branch: str) -> int:
        params = {"state": "open", "head": f"{owner}:{branch}", "per_page": PAGE_SIZE}
        r = self.request("GET", f"/repos/{owner}/{repo}/pulls", params=params)
        if r.status_code != 200:
            raise GitHubAPIError(f"listing PRs for head {branch} failed", status=r.status_code)
        return len(r.json())

    def merge_pull_request(self, owner: str, repo: str, number: int, title: Optional[str] = None) -> Tuple[bool, str]:
        data: Dict[str, Any] = {"merge_method": "squash"}
        if title:
            data["commit_title"] = f"{title} (#{number})"
        r = self.request("PUT", f"/repos/{owner}/{repo}/pulls/{number}/merge", data=data)
        if r.status_code in (200, 201):
            return True, f"Merged PR #{number} via squash"
        try:
            payload = r.json()
        except Exception:
            payload = {"message": r.text}
        return False, f"Merge failed for PR #{number}: {r.status_code} {payload.get('message', payload)}"

    def enable_auto_merge(self, node_id: str, number: int) -> Tuple[bool, str]:
        try:
            self.graphql(ENABLE_AUTO_MERGE_MUTATION, {"id": node_id})
        except GitHubAPIError as e:
            return False, f"Auto-merge rejected for PR #{number}: {e}"
        return True, f"Enabled squash auto-merge for PR #{number}"

    def close_pull_request(self, owner: str, repo: str, number: int, comment: str) -> bool:
        c = self.request("POST", f"/repos/{owner}/{repo}/issues/{number}/comments", data={"body": comment})
        if c.status_code not in (200, 201):
            logger.warning("Commenting on PR #%s failed: status=%s", number, c.status_code)
        r = self.request("PATCH", f"/repos/{owner}/{repo}/pulls/{number}", data={"state": "closed"})
        return r.status_code == 200

    def delete_branch_protection(self, owner: str, repo: str, branch: str) -> bool:
        try:
            r = self.request("DELETE", f"/repos/{owner}/{repo}/branches/{branch}/protection")
        except GitHubAPIError as e:
            logger.debug("Branch protection removal failed for %s/%s@%s: %s", owner, repo, branch, e)
            return False
        return r.status_code == 204
