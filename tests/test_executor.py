import logging

import pytest

from automerge.errors import GitHubAPIError, MergeError
from automerge.executor import CLOSE_COMMENT, MergeExecutor, retry
from automerge.models import BranchRef, CheckStatus, Mergeable, MergeStrategy, RunMode

from fakes import FakeGH, FakeGit, FakeWorkspace, make_pr, make_repo, make_settings


def build(tmp_path, gh, git, mode):
    ws = FakeWorkspace(git, tmp_path)
    return MergeExecutor(gh, ws, mode, settings=make_settings(), sleep=lambda s: None)


def test_safe_mode_merges_clean_pr_once(tmp_path, caplog):
    caplog.set_level(logging.INFO)
    pr = make_pr(42)
    gh = FakeGH(prs=[pr])
    git = FakeGit(tmp_path)
    ex = build(tmp_path, gh, git, RunMode.SAFE)

    outcome = ex.merge_pull_request(make_repo(), tmp_path, pr)

    assert outcome.success is True
    assert outcome.strategy is MergeStrategy.SQUASH_AUTO
    assert gh.merge_calls() == [("merge", 42)]
    # server-side merge: no local merge commit
    assert git.merges() == []
    assert "Successfully merged PR #42" in caplog.text


@pytest.mark.parametrize(
    "mergeable,status",
    [
        (Mergeable.MERGEABLE, CheckStatus.BLOCKED),
        (Mergeable.MERGEABLE, CheckStatus.PENDING),
        (Mergeable.CONFLICTING, CheckStatus.CLEAN),
        (Mergeable.CONFLICTING, CheckStatus.BLOCKED),
        (Mergeable.UNKNOWN, CheckStatus.CLEAN),
        (Mergeable.UNKNOWN, CheckStatus.PENDING),
    ],
)
def test_safe_mode_never_merges_unclean_pr(tmp_path, mergeable, status):
    pr = make_pr(7, mergeable=mergeable, status=status)
    gh = FakeGH(prs=[pr])
    git = FakeGit(tmp_path)
    ex = build(tmp_path, gh, git, RunMode.SAFE)

    outcome = ex.merge_pull_request(make_repo(), tmp_path, pr)

    assert outcome.success is False
    assert gh.merge_calls() == []
    assert git.merges() == []


def test_safe_mode_rechecks_before_merging(tmp_path):
    listed = make_pr(5)
    gh = FakeGH(prs=[make_pr(5, status=CheckStatus.BLOCKED)])
    ex = build(tmp_path, gh, FakeGit(tmp_path), RunMode.SAFE)

    outcome = ex.merge_pull_request(make_repo(), tmp_path, listed)

    assert outcome.success is False
    assert ("get_pr", 5) in gh.calls
    assert gh.merge_calls() == []


def test_safe_mode_retries_rejected_merge(tmp_path):
    pr = make_pr(3)
    gh = FakeGH(prs=[pr], merge_ok=False)
    ex = build(tmp_path, gh, FakeGit(tmp_path), RunMode.SAFE)

    outcome = ex.merge_pull_request(make_repo(), tmp_path, pr)

    assert outcome.success is False
    assert gh.merge_calls() == [("merge", 3)] * 3


def test_aggressive_conflicting_pr_merges_with_theirs(tmp_path):
    pr = make_pr(7, mergeable=Mergeable.CONFLICTING, status=CheckStatus.BLOCKED, head="ai/patch")
    gh = FakeGH(prs=[pr])
    git = FakeGit(tmp_path)
    ex = build(tmp_path, gh, git, RunMode.AGGRESSIVE)

    outcome = ex.merge_pull_request(make_repo(), tmp_path, pr)

    assert outcome.success is True
    assert outcome.pushed is True
    assert outcome.strategy is MergeStrategy.THEIRS
    assert ("push", "origin", "main", "--force-with-lease") in git.calls
    assert ("close", 7, CLOSE_COMMENT) in gh.calls
    assert ("push", "origin", "--delete", "ai/patch") in git.calls
    assert ("branch", "-D", "ai/patch") in git.calls
    assert ("unprotect", "main") in gh.calls


def test_aggressive_chain_falls_through_to_ours(tmp_path):
    pr = make_pr(7, mergeable=Mergeable.UNKNOWN, status=CheckStatus.BLOCKED)
    gh = FakeGH(prs=[pr], auto_merge_ok=False)
    git = FakeGit(tmp_path, fail=[lambda a: a[0] == "merge" and "theirs" in a])
    ex = build(tmp_path, gh, git, RunMode.AGGRESSIVE)

    outcome = ex.merge_pull_request(make_repo(), tmp_path, pr)

    # (a) server-side attempts, then (b) theirs, then (c) ours
    assert gh.merge_calls() == [("auto_merge", 7)] * 3
    merges = git.merges()
    assert "theirs" in merges[0]
    assert "--strategy=ours" in merges[1]
    assert outcome.success is True
    assert outcome.strategy is MergeStrategy.OURS
    theirs_at = git.calls.index(merges[0])
    assert git.calls[theirs_at + 1] == ("merge", "--abort")


def test_ours_fallback_never_reports_failure(tmp_path):
    branch = BranchRef(name="scratch")
    git = FakeGit(tmp_path, fail=[lambda a: "theirs" in a])
    ex = build(tmp_path, FakeGH(), git, RunMode.AGGRESSIVE)

    outcome = ex.merge_branch(make_repo(), tmp_path, branch)

    assert outcome.success is True
    assert outcome.strategy is MergeStrategy.OURS


def test_manual_marker_stripping_when_strategies_fail(tmp_path):
    conflicted = tmp_path / "notes.txt"
    conflicted.write_text("top\n<<<<<<< HEAD\nours\n=======\ntheirs\n>>>>>>> origin/wip\nbottom\n")
    git = FakeGit(
        tmp_path,
        fail=[lambda a: a[0] == "merge" and ("theirs" in a or "--strategy=ours" in a)],
        unmerged=["notes.txt"],
    )
    ex = build(tmp_path, FakeGH(), git, RunMode.AGGRESSIVE)

    outcome = ex.merge_branch(make_repo(), tmp_path, BranchRef(name="wip"))

    assert outcome.success is True
    assert outcome.strategy is MergeStrategy.STRIP_MARKERS
    assert conflicted.read_text() == "top\nours\ntheirs\nbottom\n"
    assert ("add", "-A", "--", "notes.txt") in git.calls
    assert any(c[0] == "commit" for c in git.calls)


def test_lease_rejection_resets_and_keeps_pr_open(tmp_path):
    pr = make_pr(9, mergeable=Mergeable.CONFLICTING, status=CheckStatus.BLOCKED)
    gh = FakeGH(prs=[pr])
    git = FakeGit(tmp_path, fail=[lambda a: "--force-with-lease" in a])
    ex = build(tmp_path, gh, git, RunMode.AGGRESSIVE)

    outcome = ex.merge_pull_request(make_repo(), tmp_path, pr)

    assert outcome.success is False
    assert outcome.pushed is False
    assert "rejected" in outcome.detail
    assert git.calls[-1] == ("reset", "--hard", "origin/main")
    assert not any(c[0] == "close" for c in gh.calls)


def test_branch_with_open_pr_is_never_merged(tmp_path):
    git = FakeGit(tmp_path)
    ex = build(tmp_path, FakeGH(), git, RunMode.AGGRESSIVE)

    outcome = ex.merge_branch(make_repo(), tmp_path, BranchRef(name="feature/x", has_open_pr=True))

    assert outcome.success is False
    assert git.calls == []


def test_safe_branch_merge_uses_plain_push(tmp_path):
    git = FakeGit(tmp_path)
    ex = build(tmp_path, FakeGH(), git, RunMode.SAFE)

    outcome = ex.merge_branch(make_repo(), tmp_path, BranchRef(name="docs"))

    assert outcome.success is True
    assert outcome.strategy is MergeStrategy.NO_FF
    assert ("push", "origin", "main") in git.calls
    assert not any("--force-with-lease" in c for c in git.calls)
    assert not any("--delete" in c for c in git.calls)


def test_retry_gives_up_after_attempts():
    calls = []

    def flaky():
        calls.append(1)
        raise MergeError("nope")

    with pytest.raises(MergeError):
        retry(flaky, attempts=3, delay=2, sleep=lambda s: calls.append(s))
    # three attempts with two sleeps of 2s in between
    assert calls == [1, 2, 1, 2, 1]


def test_retry_returns_first_success():
    results = iter([MergeError("x"), "ok"])

    def once_then_ok():
        r = next(results)
        if isinstance(r, Exception):
            raise r
        return r

    assert retry(once_then_ok, attempts=3, delay=0, sleep=lambda s: None) == "ok"


def test_network_error_on_merge_call_falls_through_to_local_strategies(tmp_path):
    pr = make_pr(7, mergeable=Mergeable.UNKNOWN, status=CheckStatus.BLOCKED)
    gh = FakeGH(prs=[pr], api_down=True)
    git = FakeGit(tmp_path)
    ex = build(tmp_path, gh, git, RunMode.AGGRESSIVE)

    outcome = ex.merge_pull_request(make_repo(), tmp_path, pr)

    assert gh.merge_calls() == [("auto_merge", 7)] * 3
    assert outcome.success is True
    assert outcome.strategy is MergeStrategy.THEIRS
    assert ("close", 7, CLOSE_COMMENT) in gh.calls


def test_network_error_in_safe_mode_is_a_failed_outcome(tmp_path):
    pr = make_pr(42)
    gh = FakeGH(prs=[pr], api_down=True)
    git = FakeGit(tmp_path)
    ex = build(tmp_path, gh, git, RunMode.SAFE)

    outcome = ex.merge_pull_request(make_repo(), tmp_path, pr)

    assert outcome.success is False
    assert "reset by peer" in outcome.detail
    assert gh.merge_calls() == [("merge", 42)] * 3
    assert git.merges() == []


def test_recheck_failure_skips_pr(tmp_path):
    class RecheckFails(FakeGH):
        def get_pull_request(self, owner, repo, number):
            raise GitHubAPIError("POST /graphql failed: timed out")

    pr = make_pr(5)
    gh = RecheckFails(prs=[pr])
    ex = build(tmp_path, gh, FakeGit(tmp_path), RunMode.AGGRESSIVE)

    outcome = ex.merge_pull_request(make_repo(), tmp_path, pr)

    assert outcome.success is False
    assert gh.merge_calls() == []
