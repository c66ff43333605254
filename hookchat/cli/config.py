"""YAML configuration loader with env var resolution and Pydantic validation.

Loads config from (priority order):
1. --config <path> CLI flag
2. ./hookchat.yaml (working directory)
3. ~/.hookchat/config.yaml (user home)

Environment variables override YAML: HOOKCHAT_<SECTION>_<KEY>.
${VAR} references in YAML values resolve from environment at load time.
"""

import logging
import os
import re
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field

from hookchat import APP_ID
from hookchat.services.keyring_store import SERVICE_NAME
from hookchat.services.retention import DEFAULT_MAX_AGE_DAYS
from hookchat.services.retry_policy import RetryPolicyConfig
from hookchat.services.webhook_dispatcher import (
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_RESOURCE_TIMEOUT,
)

logger = logging.getLogger(__name__)

_ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")


def resolve_env_vars(value: str) -> str:
    """Resolve ${VAR} references in a string from environment variables.

    Missing env vars resolve to empty string.
    """
    def _replace(match: re.Match) -> str:
        return os.environ.get(match.group(1), "")

    return _ENV_VAR_PATTERN.sub(_replace, value)


def _resolve_env_vars_recursive(data: Any) -> Any:
    if isinstance(data, str):
        return resolve_env_vars(data)
    elif isinstance(data, dict):
        return {k: _resolve_env_vars_recursive(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [_resolve_env_vars_recursive(item) for item in data]
    return data


class DatabaseConfig(BaseModel):
    """Local database location. Empty url means the platform default."""

    url: str | None = None


class DispatcherConfig(BaseModel):
    """Webhook client settings."""

    request_timeout: float = Field(default=DEFAULT_REQUEST_TIMEOUT, gt=0)
    resource_timeout: float = Field(default=DEFAULT_RESOURCE_TIMEOUT, gt=0)
    app_id: str = APP_ID


class RetentionConfig(BaseModel):
    """History retention used by ``hookchat purge``."""

    max_age_days: int = Field(default=DEFAULT_MAX_AGE_DAYS, ge=1)


class LoggingConfig(BaseModel):
    """Log output settings."""

    level: str = "warning"
    format: Literal["text", "json"] = "text"
    file: str | None = None


class SecretsConfig(BaseModel):
    """Where webhook bearer secrets live.

    ``memory`` keeps secrets for the life of the process only; useful for
    scripted runs on hosts without a keyring backend.
    """

    service_name: str = SERVICE_NAME
    backend: Literal["keyring", "memory"] = "keyring"


class HookChatConfig(BaseModel):
    """Top-level configuration for the HookChat client."""

    database: DatabaseConfig = DatabaseConfig()
    dispatcher: DispatcherConfig = DispatcherConfig()
    retry: RetryPolicyConfig = RetryPolicyConfig()
    retention: RetentionConfig = RetentionConfig()
    logging: LoggingConfig = LoggingConfig()
    secrets: SecretsConfig = SecretsConfig()


def _find_config_file() -> Path | None:
    """Search for config file in standard locations.

    Returns:
        Path to config file if found, None otherwise.
    """
    candidates = [
        Path.cwd() / "hookchat.yaml",
        Path.cwd() / "hookchat.yml",
        Path.home() / ".hookchat" / "config.yaml",
        Path.home() / ".hookchat" / "config.yml",
    ]
    for candidate in candidates:
        if candidate.exists():
            return candidate
    return None


def _coerce(value: str) -> Any:
    try:
        return int(value)
    except ValueError:
        pass
    if value.lower() in ("true", "false"):
        return value.lower() == "true"
    try:
        return float(value)
    except ValueError:
        return value


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Apply HOOKCHAT_<SECTION>_<KEY> env var overrides to config data.

    Sections are matched by longest prefix, so ``HOOKCHAT_RETRY_MAX_DELAY``
    maps to section ``retry``, field ``max_delay``.
    """
    prefix = "HOOKCHAT_"
    known_sections = sorted(
        HookChatConfig.model_fields.keys(), key=len, reverse=True
    )
    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue
        suffix = key[len(prefix):].lower()
        matched_section = None
        matched_field = None
        for section in known_sections:
            section_prefix = section + "_"
            if suffix.startswith(section_prefix):
                matched_section = section
                matched_field = suffix[len(section_prefix):]
                break
        if matched_section is None or not matched_field:
            continue
        if matched_field not in HookChatConfig.model_fields[matched_section].annotation.model_fields:
            continue
        section_data = data.get(matched_section)
        if section_data is None:
            section_data = data[matched_section] = {}
        if isinstance(section_data, dict):
            section_data[matched_field] = _coerce(value)
    return data


def load_config(config_path: str | None = None) -> HookChatConfig:
    """Load HookChat configuration from YAML file with env var resolution.

    Args:
        config_path: Explicit path to config file. If None, searches
            standard locations (cwd, then ~/.hookchat/).

    Returns:
        Parsed and validated HookChatConfig. Defaults (plus env overrides)
        when no file is found.

    Raises:
        FileNotFoundError: An explicit config_path does not exist.
    """
    if config_path:
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
    else:
        path = _find_config_file()

    raw_data: dict[str, Any] = {}
    if path is not None:
        logger.info("Loading config from %s", path)
        with open(path) as f:
            raw_data = yaml.safe_load(f) or {}

    data = _resolve_env_vars_recursive(raw_data)
    data = _apply_env_overrides(data)
    return HookChatConfig(**data)
