"""Configuration loading and validation for the prepchat engine."""

from __future__ import annotations

from copy import deepcopy
import logging
import os
from pathlib import Path
import tomllib
from typing import Any
from urllib.parse import urlparse

from platformdirs import user_config_path, user_data_path, user_state_path
from pydantic import (
    BaseModel,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from .exceptions import ConfigValidationError

LOGGER = logging.getLogger(__name__)

APP_NAME = "prepchat"
CONFIG_DIR = user_config_path(APP_NAME)
CONFIG_PATH = CONFIG_DIR / "config.toml"
DATA_DIR = user_data_path(APP_NAME)
STATE_DIR = user_state_path(APP_NAME)

VALID_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


def _require_string(value: Any) -> str:
    if not isinstance(value, str):
        raise ValueError("Expected a string value.")
    normalized = value.strip()
    if not normalized:
        raise ValueError("String value must not be empty.")
    return normalized


def _check_http_url(name: str, value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme.lower() not in {"http", "https"}:
        raise ValueError(f"{name} must use http or https scheme.")
    if not parsed.hostname:
        raise ValueError(f"{name} must include a hostname.")


class AppConfig(BaseModel):
    """Identity of the local user and plan-tier gating."""

    user_id: str = "local-user"
    require_model_selection: bool = False

    @field_validator("user_id", mode="before")
    @classmethod
    def _validate_user_id(cls, value: Any) -> str:
        return _require_string(value)


class TransportConfig(BaseModel):
    """Chat streaming endpoints and model catalog location."""

    endpoint: str = "http://localhost:3000/api/ai-assistant"
    compare_endpoint: str = "http://localhost:3000/api/ai-assistant/multi"
    catalog_endpoint: str = ""
    timeout_seconds: int = Field(default=120, ge=1, le=3600)
    headers: dict[str, str] = Field(default_factory=dict)

    @field_validator("endpoint", "compare_endpoint", mode="before")
    @classmethod
    def _validate_endpoint(cls, value: Any) -> str:
        return _require_string(value)

    @field_validator("catalog_endpoint", mode="before")
    @classmethod
    def _normalize_catalog(cls, value: Any) -> str:
        if value is None:
            return ""
        if not isinstance(value, str):
            raise ValueError("catalog_endpoint must be a string.")
        return value.strip()

    @field_validator("headers", mode="before")
    @classmethod
    def _validate_headers(cls, value: Any) -> dict[str, str]:
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise ValueError("headers must be a table of name -> value.")
        headers: dict[str, str] = {}
        for key, item in value.items():
            if not isinstance(key, str) or not key.strip():
                raise ValueError("Header names must be non-empty strings.")
            if not isinstance(item, str):
                raise ValueError("Header values must be strings.")
            headers[key.strip()] = item
        return headers


class TitleConfig(BaseModel):
    """Low-cost title model and title length limits."""

    enabled: bool = True
    host: str = "http://localhost:11434"
    model: str = "llama3.2:1b"
    provisional_length: int = Field(default=40, ge=8, le=200)
    max_length: int = Field(default=60, ge=8, le=200)
    timeout_seconds: int = Field(default=30, ge=1, le=600)

    @field_validator("host", "model", mode="before")
    @classmethod
    def _validate_required_string(cls, value: Any) -> str:
        return _require_string(value)


class AttachmentsConfig(BaseModel):
    max_file_bytes: int = Field(default=10 * 1024 * 1024, ge=1, le=100 * 1024 * 1024)
    allowed_media_types: list[str] = Field(default_factory=list)

    @field_validator("allowed_media_types", mode="before")
    @classmethod
    def _validate_media_types(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if not isinstance(value, list):
            raise ValueError("allowed_media_types must be a list.")
        normalized: list[str] = []
        for item in value:
            if not isinstance(item, str):
                raise ValueError("allowed_media_types entries must be strings.")
            candidate = item.strip().lower()
            if candidate and candidate not in normalized:
                normalized.append(candidate)
        return normalized


class PersistenceConfig(BaseModel):
    """Where conversations are stored."""

    backend: str = "memory"
    directory: str = str(DATA_DIR / "conversations")

    @field_validator("backend", mode="before")
    @classmethod
    def _validate_backend(cls, value: Any) -> str:
        normalized = _require_string(value).lower()
        if normalized not in {"memory", "json"}:
            raise ValueError("backend must be 'memory' or 'json'.")
        return normalized

    @field_validator("directory", mode="before")
    @classmethod
    def _validate_directory(cls, value: Any) -> str:
        return _require_string(value)


class PreferencesConfig(BaseModel):
    path: str = str(DATA_DIR / "preferences.json")

    @field_validator("path", mode="before")
    @classmethod
    def _validate_path(cls, value: Any) -> str:
        return _require_string(value)


class LoggingConfig(BaseModel):
    """Logging behavior and output destinations."""

    level: str = "INFO"
    structured: bool = True
    log_to_file: bool = False
    log_file_path: str = str(STATE_DIR / "prepchat.log")

    @field_validator("level", mode="before")
    @classmethod
    def _validate_level(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("Logging level must be a string.")
        normalized = value.strip().upper()
        if normalized not in VALID_LOG_LEVELS:
            raise ValueError(f"Unsupported log level {normalized!r}.")
        return normalized

    @field_validator("log_file_path", mode="before")
    @classmethod
    def _validate_log_file_path(cls, value: Any) -> str:
        return _require_string(value)


class Config(BaseModel):
    """Root configuration model for all sections."""

    app: AppConfig = AppConfig()
    transport: TransportConfig = TransportConfig()
    title: TitleConfig = TitleConfig()
    attachments: AttachmentsConfig = AttachmentsConfig()
    persistence: PersistenceConfig = PersistenceConfig()
    preferences: PreferencesConfig = PreferencesConfig()
    logging: LoggingConfig = LoggingConfig()

    @model_validator(mode="after")
    def _validate_urls(self) -> Config:
        _check_http_url("transport.endpoint", self.transport.endpoint)
        _check_http_url("transport.compare_endpoint", self.transport.compare_endpoint)
        if self.transport.catalog_endpoint:
            _check_http_url("transport.catalog_endpoint", self.transport.catalog_endpoint)
        _check_http_url("title.host", self.title.host)
        if self.title.provisional_length > self.title.max_length:
            raise ValueError("title.provisional_length must not exceed title.max_length.")
        return self


DEFAULT_CONFIG: dict[str, dict[str, Any]] = Config().model_dump()


def ensure_config_dir(config_dir: Path | None = None) -> Path:
    """Ensure that the config directory exists and return its path."""
    directory = config_dir or CONFIG_DIR
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        LOGGER.warning("Unable to create config directory %s: %s", directory, exc)
    return directory


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge override values onto base values."""
    merged: dict[str, Any] = deepcopy(base)
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _enforce_private_permissions(path: Path) -> None:
    if os.name != "posix" or not path.exists():
        return
    try:
        path.chmod(0o600)
    except OSError as exc:
        LOGGER.warning("Unable to enforce 0600 permissions for %s: %s", path, exc)


def _validate_config(raw: dict[str, Any]) -> dict[str, dict[str, Any]]:
    """Validate merged config and fall back to safe defaults when invalid."""
    try:
        return Config.model_validate(raw).model_dump()
    except ValidationError as exc:
        LOGGER.warning(
            "config.invalid",
            extra={"event": "config.invalid", "reason": str(exc)},
        )
        return deepcopy(DEFAULT_CONFIG)
    except Exception as exc:  # noqa: BLE001 - unexpected model construction failure.
        raise ConfigValidationError(f"Unable to validate configuration: {exc}") from exc


def load_config(config_path: Path | None = None) -> dict[str, dict[str, Any]]:
    """Load configuration from TOML, merge with defaults, and validate.

    The optional ``config_path`` argument is intended for tests and tooling.
    """
    target_path = config_path or CONFIG_PATH
    ensure_config_dir(target_path.parent)

    raw_data: dict[str, Any] = {}
    if target_path.exists():
        _enforce_private_permissions(target_path)
        try:
            raw_data = tomllib.loads(target_path.read_text(encoding="utf-8"))
        except (OSError, tomllib.TOMLDecodeError) as exc:
            LOGGER.warning(
                "config.parse_failed",
                extra={
                    "event": "config.parse_failed",
                    "path": str(target_path),
                    "reason": str(exc),
                },
            )
            raw_data = {}

    return _validate_config(_deep_merge(DEFAULT_CONFIG, raw_data))
