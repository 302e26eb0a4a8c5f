import argparse
import logging
import os
import signal
import subprocess
import sys
from typing import List, Optional

from dotenv import load_dotenv

from .auth import resolve_credential
from .config import Settings
from .errors import AuthError, ConfigError, GitHubAPIError, LockHeld, ThresholdExceeded
from .lock import PidLock
from .logs import configure_logging
from .logsize import ensure_below_critical, report, rotate_if_needed
from .metrics import write_metrics
from .models import RunMode
from .orchestrator import Orchestrator

logger = logging.getLogger(__name__)


def _terminate(signum, frame) -> None:
    # Turn SIGTERM into SystemExit so `finally` blocks tear the workspace down.
    raise SystemExit(128 + signum)


def _preflight(settings: Settings) -> None:
    missing = settings.missing_required()
    if missing:
        raise ConfigError(f"{', '.join(missing)} environment variable not set")
    if settings.skip_log_size_check:
        logger.warning("Skipping log size check (SKIP_LOG_SIZE_CHECK is set)")
        return
    ensure_below_critical(settings.log_file, settings.log_critical_size_mb)


def run_mode(mode: RunMode, parallel: Optional[int] = None, settings: Optional[Settings] = None) -> int:
    settings = settings or Settings(mode=mode.value)
    configure_logging(settings.log_level, settings.log_file)
    logger.info("Starting %s merge process...", mode.value)
    try:
        _preflight(settings)
    except ConfigError as e:
        logger.error("ERROR: %s", e)
        return 1
    except ThresholdExceeded as e:
        logger.error("Aborting before merge phase: %s", e)
        return 1

    previous = signal.signal(signal.SIGTERM, _terminate)
    try:
        with PidLock(settings.lock_file):
            credential = resolve_credential(settings)
            Orchestrator(settings, credential, mode).run(parallel=parallel)
    except LockHeld:
        return 1
    except AuthError as e:
        logger.error("Authentication failed: %s", e)
        return 1
    except GitHubAPIError as e:
        logger.error("Repository listing failed: %s", e)
        return 1
    finally:
        signal.signal(signal.SIGTERM, previous)
        try:
            write_metrics(settings.metrics_textfile)
        except OSError as e:
            logger.warning("Writing metrics to %s failed: %s", settings.metrics_textfile, e)
    return 0


def safe_main(argv: Optional[List[str]] = None) -> int:
    settings = Settings(mode=RunMode.SAFE.value)
    parser = argparse.ArgumentParser(
        prog="automerge-safe",
        description="Merge conflict-free, check-passing pull requests and branches across all repositories.",
    )
    parser.add_argument(
        "--parallel",
        nargs="?",
        type=int,
        const=settings.parallel_jobs,
        default=None,
        metavar="N",
        help=f"process repositories in up to N worker processes (default N={settings.parallel_jobs})",
    )
    args = parser.parse_args(argv)
    if args.parallel is not None and args.parallel < 1:
        parser.error("--parallel must be at least 1")
    return run_mode(RunMode.SAFE, parallel=args.parallel, settings=settings)


def aggressive_main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="automerge-aggressive",
        description="Force-merge every pull request and branch regardless of conflicts or failing checks.",
    )
    parser.parse_args(argv)
    return run_mode(RunMode.AGGRESSIVE)


def env_main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="automerge-env",
        description="Load credentials from an env file, validate them and optionally exec a command.",
    )
    parser.add_argument("--env-file", default=Settings().env_file)
    parser.add_argument("command", nargs=argparse.REMAINDER)
    args = parser.parse_args(argv)

    if not os.path.isfile(args.env_file):
        print(f"Error: Environment file {args.env_file} not found.", file=sys.stderr)
        print("Create the file with GITHUB_TOKEN and GITHUB_USERNAME variables.", file=sys.stderr)
        return 1
    print(f"Loading environment variables from {args.env_file}")
    load_dotenv(args.env_file, override=True)
    for name in ("GITHUB_TOKEN", "GITHUB_USERNAME"):
        if not os.getenv(name):
            print(f"Error: {name} is not set or empty in {args.env_file}", file=sys.stderr)
            return 1
    print("Environment variables set successfully:")
    print(f"  GITHUB_USERNAME: {os.environ['GITHUB_USERNAME']}")
    print("  GITHUB_TOKEN: [REDACTED]")

    command = [c for c in args.command if c != "--"]
    if command:
        print(f"Executing: {' '.join(command)}")
        sys.stdout.flush()
        os.execvp(command[0], command)
    return 0


def auth_main(argv: Optional[List[str]] = None) -> int:
    settings = Settings()
    parser = argparse.ArgumentParser(
        prog="automerge-auth",
        description="Check that the configured credentials authenticate (App JWT, installation token, repo access).",
    )
    parser.parse_args(argv)
    configure_logging(settings.log_level)
    missing = settings.missing_required()
    if missing:
        logger.error("ERROR: %s environment variable not set", ", ".join(missing))
        return 1
    try:
        credential = resolve_credential(settings, verify=True)
    except AuthError as e:
        logger.error("Authentication failed: %s", e)
        return 1
    print(f"Authenticated as {settings.github_username} using {credential.source.value} credentials")
    if credential.installation_id is not None:
        print(f"  installation_id: {credential.installation_id}")
    if credential.expires_at is not None:
        print(f"  expires_at: {credential.expires_at.isoformat()}")
    return 0


def logsize_main(argv: Optional[List[str]] = None) -> int:
    settings = Settings(mode=RunMode.AGGRESSIVE.value)
    parser = argparse.ArgumentParser(prog="automerge-logsize", description="Report the merge log file size.")
    parser.add_argument("--log-file", default=settings.log_file)
    parser.add_argument("--warning-mb", type=int, default=settings.log_warning_size_mb)
    parser.add_argument("--critical-mb", type=int, default=settings.log_critical_size_mb)
    args = parser.parse_args(argv)
    status, lines = report(args.log_file, args.warning_mb, args.critical_mb)
    print("\n".join(lines))
    return int(status)


def rotate_main(argv: Optional[List[str]] = None) -> int:
    settings = Settings(mode=RunMode.AGGRESSIVE.value)
    parser = argparse.ArgumentParser(
        prog="automerge-rotate-log", description="Force a logrotate run when the merge log is too large."
    )
    parser.add_argument("--log-file", default=settings.log_file)
    parser.add_argument("--config", default=settings.logrotate_config)
    parser.add_argument("--threshold-mb", type=int, default=settings.log_rotate_threshold_mb)
    args = parser.parse_args(argv)
    configure_logging(settings.log_level)
    try:
        rotate_if_needed(args.log_file, args.config, args.threshold_mb)
    except FileNotFoundError as e:
        logger.error("%s", e)
        return 1
    except (OSError, subprocess.CalledProcessError) as e:
        logger.error("logrotate failed: %s", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(safe_main())


