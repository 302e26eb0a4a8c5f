"""Credential acquisition: static tokens and GitHub App installation tokens.

The App flow is the standard three-step exchange:

1. sign a short-lived RS256 JWT with the App's private key,
2. look up the installation for the configured account with that JWT,
3. trade the JWT for an installation access token (valid ~1 hour).

The installation token is only ever held in memory for the current process
tree; nothing is written to disk.
"""
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Tuple

import httpx
import jwt

from .config import Settings
from .errors import AuthError
from .metrics import auth_exchanges_total
from .models import Credential, CredentialSource

logger = logging.getLogger(__name__)

JWT_BACKDATE_SECONDS = 60
JWT_LIFETIME_SECONDS = 600
ACCEPT = "application/vnd.github+json"


def build_app_jwt(client_id: str, private_key: str, now: Optional[int] = None) -> str:
    """Return `header.payload.signature` for the App identified by ``client_id``.

    ``iat`` is backdated 60 seconds to tolerate clock drift, so ``exp - iat`` is
    always 660 seconds.
    """
    if now is None:
        now = int(time.time())
    payload = {
        "iat": now - JWT_BACKDATE_SECONDS,
        "exp": now + JWT_LIFETIME_SECONDS,
        "iss": client_id,
    }
    try:
        return jwt.encode(payload, private_key, algorithm="RS256", headers={"typ": "JWT"})
    except (jwt.PyJWTError, ValueError, TypeError) as e:
        raise AuthError(f"failed to sign App JWT: {e}") from e


class StaticTokenProvider:
    source = CredentialSource.STATIC

    def __init__(self, token: str):
        self.token = token

    def acquire(self) -> Credential:
        if not self.token:
            auth_exchanges_total.labels(source=self.source.value, result="error").inc()
            raise AuthError("no static token configured")
        auth_exchanges_total.labels(source=self.source.value, result="success").inc()
        return Credential(token=self.token, source=self.source)


class AppInstallationTokenProvider:
    source = CredentialSource.APP_INSTALLATION

    def __init__(
        self,
        client_id: str,
        private_key_path: str,
        account: str,
        api_url: str = "https://api.github.com",
        verify: bool = False,
        clock: Callable[[], float] = time.time,
    ):
        self.client_id = client_id
        self.private_key_path = private_key_path
        self.account = account
        self.api_url = api_url.rstrip("/")
        self.verify = verify
        self._clock = clock

    def acquire(self) -> Credential:
        try:
            credential = self._exchange()
        except AuthError:
            auth_exchanges_total.labels(source=self.source.value, result="error").inc()
            raise
        auth_exchanges_total.labels(source=self.source.value, result="success").inc()
        return credential

    def _exchange(self) -> Credential:
        logger.info("github_app.auth: starting client_id=%s account=%s", self.client_id, self.account)
        private_key = self._load_private_key()
        app_jwt = build_app_jwt(self.client_id, private_key, now=int(self._clock()))
        if self.verify:
            self._check_app(app_jwt)
        installation_id = self._installation_id(app_jwt)
        logger.info("github_app.auth: installation_id=%s", installation_id)
        token, expires_at = self._access_token(app_jwt, installation_id)
        if self.verify:
            self._log_repository_access(token)
        logger.info("github_app.auth: obtained installation token expires_at=%s", expires_at.isoformat())
        return Credential(
            token=token,
            source=self.source,
            expires_at=expires_at,
            installation_id=installation_id,
        )

    def _load_private_key(self) -> str:
        try:
            with open(self.private_key_path, "r", encoding="utf-8") as f:
                pem = f.read().strip()
        except OSError as e:
            raise AuthError(f"private key not readable at {self.private_key_path}: {e}") from e
        if not pem:
            raise AuthError(f"private key file {self.private_key_path} is empty")
        return pem

    def _call(self, method: str, path: str, bearer: str, scheme: str = "Bearer") -> Tuple[int, Dict[str, Any]]:
        url = f"{self.api_url}/{path.lstrip('/')}"
        headers = {"Authorization": f"{scheme} {bearer}", "Accept": ACCEPT}
        try:
            if method == "POST":
                resp = httpx.post(url, headers=headers, timeout=30)
            else:
                resp = httpx.get(url, headers=headers, timeout=30)
        except httpx.HTTPError as e:
            raise AuthError(f"{method} {path} failed: {e}") from e
        logger.debug("github_app.response: method=%s path=%s status=%s", method, path, resp.status_code)
        try:
            data = resp.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        return resp.status_code, data

    def _check_app(self, app_jwt: str) -> None:
        status, data = self._call("GET", "/app", app_jwt)
        if "name" not in data:
            raise AuthError(f"JWT rejected by /app: status={status} message={data.get('message')}")
        logger.info("github_app.auth: JWT accepted app=%s", data["name"])

    def _installation_id(self, app_jwt: str) -> int:
        status, data = self._call("GET", f"/users/{self.account}/installation", app_jwt)
        if "id" not in data:
            raise AuthError(
                f"no installation for {self.account}: status={status} message={data.get('message')}"
            )
        return int(data["id"])

    def _access_token(self, app_jwt: str, installation_id: int) -> Tuple[str, datetime]:
        status, data = self._call("POST", f"/app/installations/{installation_id}/access_tokens", app_jwt)
        token = data.get("token")
        if not token:
            raise AuthError(
                f"token exchange failed for installation {installation_id}: "
                f"status={status} message={data.get('message')}"
            )
        expires_raw = data.get("expires_at")  # e.g., 2024-01-01T00:00:00Z
        if expires_raw:
            expires_at = datetime.fromisoformat(expires_raw.replace("Z", "+00:00"))
        else:
            expires_at = datetime.now(tz=timezone.utc) + timedelta(hours=1)
        return token, expires_at

    def _log_repository_access(self, token: str) -> None:
        try:
            status, data = self._call("GET", "/installation/repositories?per_page=5", token, scheme="token")
        except AuthError as e:
            logger.warning("github_app.auth: repository access check failed: %s", e)
            return
        if "repositories" not in data:
            logger.warning("github_app.auth: repository access check failed status=%s", status)
            return
        sample = ", ".join(r.get("full_name", "?") for r in data["repositories"][:3])
        logger.info(
            "github_app.auth: installation can access %s repositories (sample: %s)",
            data.get("total_count"),
            sample or "none",
        )


def build_provider(settings: Settings, verify: bool = False):
    if settings.app_auth_configured:
        return AppInstallationTokenProvider(
            settings.app_client_id,
            settings.app_private_key_path,
            settings.github_username,
            api_url=settings.github_api_url,
            verify=verify,
        )
    return StaticTokenProvider(settings.github_token)


def resolve_credential(settings: Settings, verify: bool = False) -> Credential:
    """Acquire the run's credential, falling back to GITHUB_TOKEN_FALLBACK when App auth fails."""
    provider = build_provider(settings, verify=verify)
    try:
        return provider.acquire()
    except AuthError as e:
        if not isinstance(provider, AppInstallationTokenProvider):
            raise
        if not settings.github_token_fallback:
            logger.error("GitHub App authentication failed and no fallback token is configured: %s", e)
            raise
        logger.warning("GitHub App authentication failed, using fallback token: %s", e)
        return StaticTokenProvider(settings.github_token_fallback).acquire()
