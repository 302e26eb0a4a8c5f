import json

import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

import automerge.auth as authmod
from automerge.auth import AppInstallationTokenProvider, StaticTokenProvider, build_app_jwt, resolve_credential
from automerge.config import Settings
from automerge.errors import AuthError
from automerge.models import CredentialSource

NOW = 1_700_000_000


@pytest.fixture(scope="module")
def rsa_key():
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode("utf-8")
    return key, pem


@pytest.fixture
def key_file(tmp_path, rsa_key):
    path = tmp_path / "app.pem"
    path.write_text(rsa_key[1])
    return path


class FakeResp:
    def __init__(self, status_code=200, body=None):
        self.status_code = status_code
        self._body = body if body is not None else {}

    def json(self):
        return self._body

    @property
    def text(self):
        return json.dumps(self._body)


def install_fake_github(monkeypatch, installation=None, token=None, calls=None):
    calls = calls if calls is not None else []

    def fake_get(url, headers=None, timeout=None):
        calls.append(("GET", url, headers["Authorization"]))
        if url.endswith("/app"):
            return FakeResp(200, {"name": "auto-merge-app"})
        if url.endswith("/users/octo/installation"):
            return FakeResp(200 if installation else 404, installation or {"message": "Not Found"})
        return FakeResp(200, {"total_count": 1, "repositories": [{"full_name": "octo/repo"}]})

    def fake_post(url, headers=None, timeout=None):
        calls.append(("POST", url, headers["Authorization"]))
        return FakeResp(201 if token else 401, token or {"message": "Bad credentials"})

    monkeypatch.setattr("httpx.get", fake_get)
    monkeypatch.setattr("httpx.post", fake_post)
    return calls


def test_jwt_claims_and_header(rsa_key):
    key, pem = rsa_key
    token = build_app_jwt("Iv1.abc123", pem, now=NOW)

    assert token.count(".") == 2
    assert "=" not in token
    assert jwt.get_unverified_header(token) == {"alg": "RS256", "typ": "JWT"}
    claims = jwt.decode(
        token,
        key.public_key(),
        algorithms=["RS256"],
        options={"verify_exp": False, "verify_iat": False},
    )
    assert claims == {"iat": NOW - 60, "exp": NOW + 600, "iss": "Iv1.abc123"}
    assert claims["exp"] - claims["iat"] == 660


def test_jwt_signature_is_deterministic(rsa_key):
    _, pem = rsa_key
    # RSASSA-PKCS1-v1_5 is deterministic: same claims and key give the same token
    assert build_app_jwt("Iv1.abc123", pem, now=NOW) == build_app_jwt("Iv1.abc123", pem, now=NOW)
    assert build_app_jwt("Iv1.abc123", pem, now=NOW) != build_app_jwt("Iv1.abc123", pem, now=NOW + 1)


def test_jwt_with_garbage_key_raises_auth_error():
    with pytest.raises(AuthError):
        build_app_jwt("Iv1.abc123", "not a pem", now=NOW)


def test_app_installation_exchange(monkeypatch, key_file):
    calls = install_fake_github(
        monkeypatch,
        installation={"id": 99},
        token={"token": "ghs_installation", "expires_at": "2030-01-01T00:00:00Z"},
    )
    provider = AppInstallationTokenProvider("Iv1.abc123", str(key_file), "octo", clock=lambda: NOW)

    cred = provider.acquire()

    assert cred.token == "ghs_installation"
    assert cred.source is CredentialSource.APP_INSTALLATION
    assert cred.installation_id == 99
    assert cred.expires_at.year == 2030
    assert [c[:2] for c in calls] == [
        ("GET", "https://api.github.com/users/octo/installation"),
        ("POST", "https://api.github.com/app/installations/99/access_tokens"),
    ]
    assert all(c[2].startswith("Bearer ") for c in calls)
    assert "ghs_installation" not in repr(cred)


def test_verify_mode_checks_app_and_repository_access(monkeypatch, key_file):
    calls = install_fake_github(
        monkeypatch, installation={"id": 5}, token={"token": "ghs_x", "expires_at": "2030-01-01T00:00:00Z"}
    )
    provider = AppInstallationTokenProvider("Iv1.abc123", str(key_file), "octo", verify=True, clock=lambda: NOW)

    provider.acquire()

    assert calls[0][1].endswith("/app")
    assert calls[-1][1].endswith("/installation/repositories?per_page=5")
    assert calls[-1][2] == "token ghs_x"


def test_missing_installation_id_is_auth_error(monkeypatch, key_file):
    install_fake_github(monkeypatch, installation=None, token={"token": "unused"})
    provider = AppInstallationTokenProvider("Iv1.abc123", str(key_file), "octo", clock=lambda: NOW)
    with pytest.raises(AuthError, match="no installation"):
        provider.acquire()


def test_missing_token_is_auth_error(monkeypatch, key_file):
    install_fake_github(monkeypatch, installation={"id": 1}, token=None)
    provider = AppInstallationTokenProvider("Iv1.abc123", str(key_file), "octo", clock=lambda: NOW)
    with pytest.raises(AuthError, match="token exchange failed"):
        provider.acquire()


def _app_settings(monkeypatch, key_path, fallback=""):
    monkeypatch.setenv("GITHUB_USERNAME", "octo")
    monkeypatch.setenv("GITHUB_TOKEN", "")
    monkeypatch.setenv("GITHUB_APP_CLIENT_ID", "Iv1.abc123")
    monkeypatch.setenv("GITHUB_APP_PRIVATE_KEY_PATH", str(key_path))
    monkeypatch.setenv("GITHUB_TOKEN_FALLBACK", fallback)
    return Settings()


def _no_network(monkeypatch):
    def boom(*args, **kwargs):
        raise AssertionError("network must not be touched")

    monkeypatch.setattr("httpx.get", boom)
    monkeypatch.setattr("httpx.post", boom)


def test_unreadable_key_falls_back_to_fallback_token(monkeypatch, tmp_path):
    _no_network(monkeypatch)
    settings = _app_settings(monkeypatch, tmp_path / "missing.pem", fallback="ghp_fallback")

    cred = resolve_credential(settings)

    assert cred.token == "ghp_fallback"
    assert cred.source is CredentialSource.STATIC


def test_unreadable_key_without_fallback_aborts(monkeypatch, tmp_path):
    _no_network(monkeypatch)
    settings = _app_settings(monkeypatch, tmp_path / "missing.pem")

    with pytest.raises(AuthError, match="not readable"):
        resolve_credential(settings)


def test_static_mode_when_app_not_configured(monkeypatch):
    monkeypatch.setenv("GITHUB_TOKEN", "ghp_static")
    monkeypatch.delenv("GITHUB_APP_CLIENT_ID", raising=False)
    monkeypatch.delenv("GITHUB_APP_PRIVATE_KEY_PATH", raising=False)

    assert isinstance(authmod.build_provider(Settings()), StaticTokenProvider)
    assert resolve_credential(Settings()).token == "ghp_static"


def test_static_provider_requires_token():
    with pytest.raises(AuthError):
        StaticTokenProvider("").acquire()
