import os
from typing import Optional


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Settings:
    # Credentials
    github_token: str
    github_username: str
    github_token_fallback: str
    app_client_id: str
    app_private_key_path: str

    # GitHub endpoints
    github_api_url: str
    github_graphql_url: str

    # Workspace, locking and logging
    workspace_dir: str
    lock_file: str
    log_file: str
    log_level: str

    # Merge behaviour
    max_retries: int
    retry_delay_seconds: float
    parallel_jobs: int
    repo_limit: int
    git_timeout_seconds: int
    git_author_name: str
    git_author_email: str

    # Log maintenance
    log_warning_size_mb: int
    log_critical_size_mb: int
    log_rotate_threshold_mb: int
    logrotate_config: str
    skip_log_size_check: bool

    metrics_textfile: Optional[str]
    env_file: str

    def __init__(self, mode: str = "safe") -> None:
        aggressive = mode == "aggressive"

        self.github_token = os.getenv("GITHUB_TOKEN", "").strip()
        self.github_username = os.getenv("GITHUB_USERNAME", "").strip()
        self.github_token_fallback = os.getenv("GITHUB_TOKEN_FALLBACK", "").strip()
        # App mode is enabled only when both of these are present.
        self.app_client_id = os.getenv("GITHUB_APP_CLIENT_ID", "").strip()
        self.app_private_key_path = os.getenv("GITHUB_APP_PRIVATE_KEY_PATH", "").strip()

        self.github_api_url = os.getenv("GITHUB_API_URL", "https://api.github.com").rstrip("/")
        self.github_graphql_url = os.getenv("GITHUB_GRAPHQL_URL", f"{self.github_api_url}/graphql")

        self.workspace_dir = os.getenv(
            "WORKSPACE_DIR", "/tmp/force-merge" if aggressive else "/tmp/auto-merge-repos"
        )
        self.lock_file = os.getenv(
            "LOCK_FILE", "/tmp/force-merge.lock" if aggressive else "/tmp/auto-merge.lock"
        )
        self.log_file = os.getenv(
            "LOG_FILE", "/var/log/force-merge.log" if aggressive else "/tmp/auto-merge.log"
        )
        self.log_level = os.getenv("LOG_LEVEL", "INFO")

        self.max_retries = int(os.getenv("MAX_RETRIES", "3"))
        self.retry_delay_seconds = float(os.getenv("RETRY_DELAY_SECONDS", "2"))
        self.parallel_jobs = int(os.getenv("PARALLEL_JOBS", "4"))
        self.repo_limit = int(os.getenv("REPO_LIMIT", "1000"))
        self.git_timeout_seconds = int(os.getenv("GIT_TIMEOUT_SECONDS", "300"))
        self.git_author_name = os.getenv("GIT_AUTHOR_NAME", "auto-merge-bot")
        self.git_author_email = os.getenv("GIT_AUTHOR_EMAIL", "auto-merge-bot@users.noreply.github.com")

        self.log_warning_size_mb = int(os.getenv("LOG_WARNING_SIZE_MB", "50"))
        self.log_critical_size_mb = int(os.getenv("LOG_CRITICAL_SIZE_MB", "100"))
        self.log_rotate_threshold_mb = int(os.getenv("LOG_ROTATE_THRESHOLD_MB", "100"))
        self.logrotate_config = os.getenv("LOGROTATE_CONFIG", "/etc/logrotate.d/force-merge")
        self.skip_log_size_check = _env_bool("SKIP_LOG_SIZE_CHECK")

        self.metrics_textfile = os.getenv("METRICS_TEXTFILE") or None
        self.env_file = os.getenv("ENV_FILE", "/opt/scripts/auto-merge.env")

    @property
    def app_auth_configured(self) -> bool:
        return bool(self.app_client_id and self.app_private_key_path)

    def missing_required(self) -> list:
        missing = []
        if not self.github_token and not self.app_auth_configured:
            missing.append("GITHUB_TOKEN")
        if not self.github_username:
            missing.append("GITHUB_USERNAME")
        return missing


SETTINGS = Settings()
