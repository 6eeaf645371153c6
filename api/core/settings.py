"""
Process configuration.

Everything is read from the environment once at startup. The shared API token
and the GitHub token can also come from a JSON credentials file:

    {"httpAPITokens": {"default": "..."}, "gitHubToken": "..."}
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

DEFAULT_CREDENTIALS_FILE = "benchmarkerCredentials"
DEFAULT_GITHUB_API_URL = "https://api.github.com"
DEFAULT_PRODUCT_REPOSITORIES = "mono=mono/mono"


class SettingsError(RuntimeError):
    pass


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def load_credentials(path: str) -> dict[str, Any]:
    """
    Read the credentials file. A missing file yields an empty dict.
    """
    file_path = Path(path)
    if not file_path.is_file():
        return {}
    try:
        data = json.loads(file_path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise SettingsError(f"Cannot read credentials from file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise SettingsError(f"Credentials file {path} must contain a JSON object.")
    return data


def parse_product_repositories(raw: str) -> dict[str, str]:
    """
    Parse "mono=mono/mono,llvm=mono/llvm" into {"mono": "mono/mono", ...}.
    """
    mapping: dict[str, str] = {}
    for item in (raw or "").split(","):
        item = item.strip()
        if not item or "=" not in item:
            continue
        product, repo = item.split("=", 1)
        product, repo = product.strip(), repo.strip().strip("/")
        if product and repo.count("/") == 1:
            mapping[product] = repo
    return mapping


@dataclass(frozen=True)
class Settings:
    database_url: str
    api_token: str
    pool_min_size: int = 1
    pool_max_size: int = 10
    command_timeout_s: float = 30.0
    acquire_timeout_s: float = 10.0
    github_api_url: str = DEFAULT_GITHUB_API_URL
    github_token: str | None = None
    product_repositories: dict[str, str] = field(default_factory=dict)
    log_level: str = "INFO"


def _credential_token(credentials: dict[str, Any]) -> str:
    tokens = credentials.get("httpAPITokens")
    if isinstance(tokens, dict):
        return str(tokens.get("default") or "").strip()
    return ""


def load_settings() -> Settings:
    credentials_path = os.environ.get("CREDENTIALS_FILE", DEFAULT_CREDENTIALS_FILE).strip()
    credentials = load_credentials(credentials_path) if credentials_path else {}

    database_url = os.environ.get("DATABASE_URL", "").strip()
    if not database_url:
        raise SettingsError("DATABASE_URL is not set.")

    api_token = os.environ.get("API_TOKEN", "").strip() or _credential_token(credentials)
    if not api_token:
        raise SettingsError("No API token configured (API_TOKEN or httpAPITokens.default).")

    github_token = (
        os.environ.get("GITHUB_TOKEN", "").strip()
        or str(credentials.get("gitHubToken") or "").strip()
        or None
    )

    pool_min_size = max(0, _env_int("DB_POOL_MIN_SIZE", 1))
    pool_max_size = max(1, _env_int("DB_POOL_MAX_SIZE", 10))

    return Settings(
        database_url=database_url,
        api_token=api_token,
        pool_min_size=min(pool_min_size, pool_max_size),
        pool_max_size=pool_max_size,
        command_timeout_s=_env_float("DB_COMMAND_TIMEOUT_S", 30.0),
        acquire_timeout_s=_env_float("DB_ACQUIRE_TIMEOUT_S", 10.0),
        github_api_url=os.environ.get("GITHUB_API_URL", DEFAULT_GITHUB_API_URL).strip()
        or DEFAULT_GITHUB_API_URL,
        github_token=github_token,
        product_repositories=parse_product_repositories(
            os.environ.get("PRODUCT_REPOSITORIES", DEFAULT_PRODUCT_REPOSITORIES)
        ),
        log_level=os.environ.get("LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )
