"""Settings resolution: CLI flag > RESIM_* environment > resim.yaml > defaults."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import yaml

from resim_cli.models import ValidationError
from resim_cli.utils import env_flag_name

_log = logging.getLogger("resim.config")

PROD_API_URL = "https://api.resim.ai/v1/"
STAGING_API_URL = "https://api.resim.io/v1/"
PROD_AUTH_URL = "https://resim.us.auth0.com/"
DEV_AUTH_URL = "https://resim-dev.us.auth0.com/"
PROD_BFF_URL = "https://bff.resim.ai/graphql"
API_AUDIENCE = "https://api.resim.ai"

# Public client IDs for the interactive device-code login, keyed by auth URL.
CLI_CLIENT_IDS = {
    DEV_AUTH_URL: "k6OJ7tHwJMxyk7oMJBFlNotFNwZYmctp",
}

APP_URLS = {
    PROD_API_URL: "https://app.resim.ai/",
    STAGING_API_URL: "https://app.resim.io/",
}

CONFIG_FILENAME = "resim.yaml"
CREDENTIAL_CACHE_FILENAME = "cache.json"

_BUILTIN_DEFAULTS: dict[str, Any] = {
    "url": PROD_API_URL,
    "auth-url": PROD_AUTH_URL,
    "bff-url": PROD_BFF_URL,
    "project": None,
    "client-id": None,
    "client-secret": None,
    "username": None,
    "password": None,
    "interactive-login": False,
}


def default_config_dir() -> Path:
    override = os.environ.get("RESIM_CONFIG_DIR", "").strip()
    if override:
        return Path(override).expanduser()
    return Path.home() / ".resim"


def load_config_file(path: Path) -> dict[str, Any]:
    """Read ``resim.yaml``; a missing file is an empty config."""
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ValidationError(f"invalid config file {path}: expected a mapping")
    _log.info("config_file_loaded path=%s keys=%s", path, sorted(data))
    return {str(key): value for key, value in data.items()}


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class ResimSettings:
    api_url: str
    auth_url: str
    bff_url: str
    project: str | None
    client_id: str | None
    client_secret: str | None
    username: str | None
    password: str | None
    interactive_login: bool
    config_dir: Path

    @property
    def credential_cache_path(self) -> Path:
        return self.config_dir / CREDENTIAL_CACHE_FILENAME

    @property
    def app_url(self) -> str | None:
        return APP_URLS.get(self.api_url)

    @classmethod
    def resolve(
        cls,
        cli_values: Mapping[str, Any],
        *,
        environ: Mapping[str, str] | None = None,
        config_dir: Path | None = None,
    ) -> "ResimSettings":
        env = os.environ if environ is None else environ
        directory = config_dir or default_config_dir()
        file_values = load_config_file(directory / CONFIG_FILENAME)

        resolved: dict[str, Any] = {}
        sources: dict[str, str] = {}
        for key, fallback in _BUILTIN_DEFAULTS.items():
            cli_value = cli_values.get(key)
            env_value = env.get(env_flag_name(key))
            if cli_value not in (None, "", False):
                resolved[key], sources[key] = cli_value, "cli"
            elif env_value:
                resolved[key], sources[key] = env_value, "env"
            elif file_values.get(key) not in (None, ""):
                resolved[key], sources[key] = file_values[key], "file"
            else:
                resolved[key], sources[key] = fallback, "default"
        _log.info("settings_resolved sources=%s", sources)

        return cls(
            api_url=_normalize_url(str(resolved["url"])),
            auth_url=_normalize_url(str(resolved["auth-url"])),
            bff_url=str(resolved["bff-url"]),
            project=_optional_str(resolved["project"]),
            client_id=_optional_str(resolved["client-id"]),
            client_secret=_optional_str(resolved["client-secret"]),
            username=_optional_str(resolved["username"]),
            password=_optional_str(resolved["password"]),
            interactive_login=_as_bool(resolved["interactive-login"]),
            config_dir=directory,
        )


def _normalize_url(url: str) -> str:
    url = url.strip()
    return url if url.endswith("/") else url + "/"


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
