import logging
import os
import shutil
import subprocess
from collections import deque
from enum import IntEnum
from typing import List, Optional, Tuple

from .errors import ThresholdExceeded

logger = logging.getLogger(__name__)

MB = 1024 * 1024


class LogSizeStatus(IntEnum):
    # Values double as process exit codes.
    OK = 0
    WARNING = 1
    CRITICAL = 2


def size_mb(path: str) -> int:
    return os.path.getsize(path) // MB


def check_log_size(path: str, warning_mb: int = 50, critical_mb: int = 100) -> Tuple[LogSizeStatus, int]:
    """Classify the log file. A missing file reports WARNING with size 0."""
    if not os.path.isfile(path):
        return LogSizeStatus.WARNING, 0
    mb = size_mb(path)
    if mb >= critical_mb:
        return LogSizeStatus.CRITICAL, mb
    if mb >= warning_mb:
        return LogSizeStatus.WARNING, mb
    return LogSizeStatus.OK, mb


def ensure_below_critical(path: str, critical_mb: int = 100) -> None:
    if os.path.isfile(path) and size_mb(path) >= critical_mb:
        raise ThresholdExceeded(path, size_mb(path), critical_mb)


def tail(path: str, lines: int = 5) -> List[str]:
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        return [line.rstrip("\n") for line in deque(f, maxlen=lines)]


def report(path: str, warning_mb: int = 50, critical_mb: int = 100) -> Tuple[LogSizeStatus, List[str]]:
    status, mb = check_log_size(path, warning_mb, critical_mb)
    out = ["=== Force-Merge Log Size Monitor ===", f"Log file: {path}"]
    if not os.path.isfile(path):
        out.append(f"WARNING: Log file {path} does not exist")
        return status, out
    out.append(f"Size: {mb}MB ({os.path.getsize(path)} bytes)")
    usage = shutil.disk_usage(os.path.dirname(os.path.abspath(path)))
    out.append(f"Disk usage: {usage.used * 100 // usage.total}%")
    if status is LogSizeStatus.CRITICAL:
        out.append(f"CRITICAL: Log file size exceeds {critical_mb}MB!")
        out.append("Action required: Rotate log file immediately")
        return status, out
    if status is LogSizeStatus.WARNING:
        out.append(f"WARNING: Log file size exceeds {warning_mb}MB")
        out.append("Action recommended: Plan log rotation")
        return status, out
    out.append("OK: Log file size is within acceptable limits")
    out.append("Recent log entries (last 5):")
    out.extend(f"  {line}" for line in tail(path))
    return status, out


def rotate_if_needed(path: str, config: str, threshold_mb: int = 100, logrotate: Optional[str] = None) -> bool:
    """Force a logrotate run when ``path`` reaches ``threshold_mb``. Returns True if rotation ran."""
    if not os.path.isfile(path):
        raise FileNotFoundError(f"Log file {path} does not exist")
    if not os.path.isfile(config):
        raise FileNotFoundError(f"Logrotate config {config} not found")
    mb = size_mb(path)
    if mb < threshold_mb:
        logger.info("Log size %sMB below threshold", mb)
        return False
    logger.info("Rotating log: size %sMB exceeds %sMB", mb, threshold_mb)
    subprocess.run([logrotate or "logrotate", "-f", config], check=True, capture_output=True, text=True)
    return True
