import os
from typing import Optional
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, write_to_textfile


def build_registry() -> CollectorRegistry:
    """Build the registry written out at the end of a run (node-exporter textfile collector)."""
    return CollectorRegistry()


REGISTRY: CollectorRegistry = build_registry()

# GitHub API metrics
github_api_requests_total = Counter(
    "automerge_github_api_requests_total",
    "Outbound GitHub API requests",
    labelnames=("endpoint", "status"),
    registry=REGISTRY,
)
github_api_latency_seconds = Histogram(
    "automerge_github_api_latency_seconds",
    "Latency of GitHub API requests",
    labelnames=("endpoint",),
    registry=REGISTRY,
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10),
)
github_rate_limit_remaining = Gauge(
    "automerge_github_rate_limit_remaining",
    "GitHub REST API remaining requests",
    registry=REGISTRY,
)
auth_exchanges_total = Counter(
    "automerge_auth_exchanges_total",
    "Credential acquisitions by source and result",
    labelnames=("source", "result"),
    registry=REGISTRY,
)

# Git metrics
git_commands_total = Counter(
    "automerge_git_commands_total",
    "git subprocess invocations",
    labelnames=("command", "result"),
    registry=REGISTRY,
)

# Merge behavior metrics
merge_attempts_total = Counter(
    "automerge_merge_attempts_total",
    "Merge attempts by mode, strategy and result",
    labelnames=("mode", "strategy", "result"),
    registry=REGISTRY,
)
push_rejections_total = Counter(
    "automerge_push_rejections_total",
    "Pushes rejected by the remote (lease violations included)",
    registry=REGISTRY,
)
repositories_processed_total = Counter(
    "automerge_repositories_processed_total",
    "Repository units by result",
    labelnames=("mode", "result"),
    registry=REGISTRY,
)
run_duration_seconds = Histogram(
    "automerge_run_duration_seconds",
    "Wall-clock duration of a full orchestrator run",
    labelnames=("mode",),
    registry=REGISTRY,
    buckets=(1, 5, 10, 30, 60, 120, 300, 600, 1200, 3600),
)
last_run_timestamp = Gauge(
    "automerge_last_run_timestamp_seconds",
    "Unix time the last run finished",
    labelnames=("mode",),
    registry=REGISTRY,
)


def write_metrics(path: Optional[str]) -> bool:
    if not path:
        return False
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    write_to_textfile(path, REGISTRY)
    return True
