"""Bearer-token acquisition and the on-disk credential cache.

Three grants are supported against the configured authority:

* client credentials (``--client-id`` / ``--client-secret``), the CI default;
* resource-owner password (``RESIM_USERNAME`` / ``RESIM_PASSWORD``);
* interactive device code (``--interactive-login``), which prints a
  verification URL and polls until the user approves it.

Tokens are cached in ``~/.resim/cache.json`` keyed by client ID. The cache
directory is created 0700 and the file written 0600. Refreshes run under an
exclusive ``fcntl`` lock so concurrent CLI invocations do not all hit the
authority at once.
"""

from __future__ import annotations

import contextlib
import fcntl
import json
import logging
import os
import stat
import time
import webbrowser
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterator, Protocol
from urllib.parse import urljoin

import requests

from resim_cli.config import API_AUDIENCE, CLI_CLIENT_IDS, ResimSettings
from resim_cli.models import AuthError
from resim_cli.utils import atomic_write_text

_log = logging.getLogger("resim.auth")

DEVICE_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:device_code"
DEVICE_SCOPES = (
    "offline_access",
    "experiences:read",
    "experiences:write",
    "experienceTags:read",
    "experienceTags:write",
    "projects:read",
    "projects:write",
    "batches:read",
    "batches:write",
    "builds:read",
    "builds:write",
    "view:read",
    "view:write",
)
# Tokens this close to expiry are treated as expired.
_EXPIRY_SLACK_SEC = 60.0
_AUTH_TIMEOUT_SEC = 30.0


@dataclass(frozen=True)
class CachedToken:
    token: str
    expires_at: float
    refresh_token: str | None = None

    def valid(self, now: float) -> bool:
        return bool(self.token) and self.expires_at - _EXPIRY_SLACK_SEC > now

    def to_json(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"token": self.token, "expires_at": self.expires_at}
        if self.refresh_token:
            payload["refresh_token"] = self.refresh_token
        return payload

    @classmethod
    def from_json(cls, payload: dict[str, Any]) -> "CachedToken":
        return cls(
            token=str(payload.get("token") or ""),
            expires_at=float(payload.get("expires_at") or 0.0),
            refresh_token=payload.get("refresh_token") or None,
        )


class TokenCache:
    def __init__(self, path: Path):
        self.path = Path(path)

    @property
    def lock_path(self) -> Path:
        return self.path.with_suffix(self.path.suffix + ".lock")

    def _ensure_dir(self) -> None:
        directory = self.path.parent
        directory.mkdir(parents=True, mode=0o700, exist_ok=True)
        if stat.S_IMODE(directory.stat().st_mode) & 0o077:
            os.chmod(directory, 0o700)

    def _read_all(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            _log.warning("credential_cache_unreadable path=%s error=%s", self.path, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def load(self, key: str) -> CachedToken | None:
        entry = self._read_all().get(key)
        if not isinstance(entry, dict):
            return None
        return CachedToken.from_json(entry)

    def store(self, key: str, token: CachedToken) -> None:
        self._ensure_dir()
        data = self._read_all()
        data[key] = token.to_json()
        atomic_write_text(
            self.path, json.dumps(data, indent=2, sort_keys=True), mode=0o600
        )
        _log.info("credential_cache_saved path=%s key=%s", self.path, key)

    @contextlib.contextmanager
    def locked(self) -> Iterator[None]:
        self._ensure_dir()
        with open(self.lock_path, "a", encoding="utf-8") as handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


class Grant(Protocol):
    cache_key: str

    def fetch(self, session: requests.Session) -> CachedToken: ...


def _token_from_response(payload: dict[str, Any], now: float) -> CachedToken:
    access_token = payload.get("access_token")
    if not access_token:
        raise AuthError(f"authority returned no access_token: {payload}")
    expires_in = float(payload.get("expires_in") or 3600)
    return CachedToken(
        token=str(access_token),
        expires_at=now + expires_in,
        refresh_token=payload.get("refresh_token") or None,
    )


def _post_form(
    session: requests.Session, url: str, data: dict[str, str]
) -> tuple[int, dict[str, Any]]:
    try:
        response = session.post(url, data=data, timeout=_AUTH_TIMEOUT_SEC)
    except requests.RequestException as exc:
        raise AuthError(f"unable to reach authority {url}: {exc}") from exc
    try:
        body = response.json()
    except ValueError:
        body = {"error": response.text}
    return response.status_code, body if isinstance(body, dict) else {}


class ClientCredentialsGrant:
    def __init__(self, token_url: str, client_id: str, client_secret: str):
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.cache_key = client_id

    def fetch(self, session: requests.Session) -> CachedToken:
        status, body = _post_form(
            session,
            self.token_url,
            {
                "grant_type": "client_credentials",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "audience": API_AUDIENCE,
            },
        )
        if status != 200:
            raise AuthError(f"client credentials rejected (HTTP {status}): {body}")
        return _token_from_response(body, time.time())


class PasswordGrant:
    def __init__(self, token_url: str, client_id: str, username: str, password: str):
        self.token_url = token_url
        self.client_id = client_id
        self.username = username
        self.password = password
        self.cache_key = f"{client_id}:{username}"

    def fetch(self, session: requests.Session) -> CachedToken:
        status, body = _post_form(
            session,
            self.token_url,
            {
                "grant_type": "password",
                "client_id": self.client_id,
                "username": self.username,
                "password": self.password,
                "audience": API_AUDIENCE,
                "scope": " ".join(DEVICE_SCOPES),
            },
        )
        if status != 200:
            raise AuthError(f"password login rejected (HTTP {status}): {body}")
        return _token_from_response(body, time.time())


class DeviceCodeGrant:
    def __init__(
        self,
        device_url: str,
        token_url: str,
        client_id: str,
        *,
        prompt: Callable[[str], None] = print,
        sleep: Callable[[float], None] = time.sleep,
        open_browser: Callable[[str], Any] = webbrowser.open,
    ):
        self.device_url = device_url
        self.token_url = token_url
        self.client_id = client_id
        self.cache_key = client_id
        self._prompt = prompt
        self._sleep = sleep
        self._open_browser = open_browser

    def refresh(self, session: requests.Session, refresh_token: str) -> CachedToken | None:
        status, body = _post_form(
            session,
            self.token_url,
            {
                "grant_type": "refresh_token",
                "client_id": self.client_id,
                "refresh_token": refresh_token,
            },
        )
        if status != 200:
            _log.info("device_refresh_rejected status=%s", status)
            return None
        token = _token_from_response(body, time.time())
        if token.refresh_token is None:
            token = CachedToken(token.token, token.expires_at, refresh_token)
        return token

    def fetch(self, session: requests.Session) -> CachedToken:
        status, device = _post_form(
            session,
            self.device_url,
            {
                "client_id": self.client_id,
                "scope": " ".join(DEVICE_SCOPES),
                "audience": API_AUDIENCE,
            },
        )
        if status != 200:
            raise AuthError(f"device authorization failed (HTTP {status}): {device}")

        complete_uri = device.get("verification_uri_complete")
        if complete_uri:
            with contextlib.suppress(Exception):
                self._open_browser(str(complete_uri))
        self._prompt(
            "If your browser hasn't opened automatically, please open\n"
            f"{device.get('verification_uri', '')}\n"
            f"and enter code\n{device.get('user_code', '')}"
        )

        interval = float(device.get("interval") or 5)
        deadline = time.monotonic() + float(device.get("expires_in") or 900)
        while time.monotonic() < deadline:
            self._sleep(interval)
            status, body = _post_form(
                session,
                self.token_url,
                {
                    "grant_type": DEVICE_GRANT_TYPE,
                    "device_code": str(device.get("device_code", "")),
                    "client_id": self.client_id,
                },
            )
            if status == 200:
                return _token_from_response(body, time.time())
            error = str(body.get("error", ""))
            if error == "authorization_pending":
                continue
            if error == "slow_down":
                interval += 5
                continue
            raise AuthError(f"device login failed: {body.get('error_description') or error}")
        raise AuthError("device login expired before it was approved")


def select_grant(settings: ResimSettings) -> Grant:
    token_url = urljoin(settings.auth_url, "oauth/token")
    if settings.interactive_login:
        client_id = settings.client_id or CLI_CLIENT_IDS.get(settings.auth_url)
        if not client_id:
            raise AuthError(
                f"couldn't find CLI client ID for auth-url {settings.auth_url}"
            )
        return DeviceCodeGrant(
            urljoin(settings.auth_url, "oauth/device/code"), token_url, client_id
        )
    if settings.username and settings.password:
        client_id = settings.client_id or CLI_CLIENT_IDS.get(settings.auth_url)
        if not client_id:
            raise AuthError("client-id must be specified for password login")
        return PasswordGrant(token_url, client_id, settings.username, settings.password)
    if not settings.client_id:
        raise AuthError("client-id must be specified")
    if not settings.client_secret:
        raise AuthError("client-secret must be specified for non-interactive login")
    return ClientCredentialsGrant(token_url, settings.client_id, settings.client_secret)


class TokenProvider:
    """Hands out a bearer token, going to the authority only when needed."""

    def __init__(
        self,
        grant: Grant,
        cache: TokenCache,
        *,
        session: requests.Session | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._grant = grant
        self._cache = cache
        self._session = session or requests.Session()
        self._clock = clock
        self._current: CachedToken | None = None

    def token(self) -> str:
        if self._current is not None and self._current.valid(self._clock()):
            return self._current.token
        cached = self._cache.load(self._grant.cache_key)
        if cached is not None and cached.valid(self._clock()):
            self._current = cached
            return cached.token
        return self._renew(stale=cached)

    def refresh(self) -> str:
        stale = self._current
        self._current = None
        return self._renew(stale=stale, force=True)

    def _renew(self, *, stale: CachedToken | None, force: bool = False) -> str:
        with self._cache.locked():
            # Another process may have refreshed while we waited on the lock.
            cached = self._cache.load(self._grant.cache_key)
            if (
                cached is not None
                and cached.valid(self._clock())
                and (not force or stale is None or cached.token != stale.token)
            ):
                self._current = cached
                return cached.token
            fresh: CachedToken | None = None
            refresh_token = (cached or stale).refresh_token if (cached or stale) else None
            if isinstance(self._grant, DeviceCodeGrant) and refresh_token:
                fresh = self._grant.refresh(self._session, refresh_token)
            if fresh is None:
                fresh = self._grant.fetch(self._session)
            self._cache.store(self._grant.cache_key, fresh)
        _log.info("token_renewed key=%s forced=%s", self._grant.cache_key, force)
        self._current = fresh
        return fresh.token


def build_token_provider(settings: ResimSettings) -> TokenProvider:
    return TokenProvider(select_grant(settings), TokenCache(settings.credential_cache_path))
