from typing import Optional, Sequence


class AutoMergeError(Exception):
    """Base class for every error raised by the merge engine."""


class ConfigError(AutoMergeError):
    pass


class AuthError(AutoMergeError):
    """JWT construction, installation lookup or token exchange failed."""


class RepositoryAccessError(AutoMergeError):
    """Clone or fetch failed; the repository is skipped for this run."""


class GitCommandError(AutoMergeError):
    def __init__(self, args: Sequence[str], returncode: int, stderr: str = "") -> None:
        self.args_ = list(args)
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(f"git {' '.join(self.args_)} exited {returncode}: {stderr.strip()}")


class MergeConflictError(AutoMergeError):
    pass


class MergeError(AutoMergeError):
    """A server-side merge call was rejected."""


class PushRejected(AutoMergeError):
    def __init__(self, branch: str, detail: Optional[str] = None) -> None:
        self.branch = branch
        self.detail = detail or ""
        super().__init__(f"push to {branch} rejected: {self.detail.strip()}")


class ThresholdExceeded(AutoMergeError):
    def __init__(self, path: str, size_mb: int, limit_mb: int) -> None:
        self.path = path
        self.size_mb = size_mb
        self.limit_mb = limit_mb
        super().__init__(f"log file {path} is {size_mb}MB, critical limit is {limit_mb}MB")


class LockHeld(AutoMergeError):
    def __init__(self, pid: int) -> None:
        self.pid = pid
        super().__init__(f"another instance is already running with PID {pid}")


class GitHubAPIError(AutoMergeError):
    def __init__(self, message: str, status: Optional[int] = None) -> None:
        self.status = status
        super().__init__(message if status is None else f"{message} (status={status})")
