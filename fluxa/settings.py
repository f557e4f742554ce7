"""Configuration loading for the monitor."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import httpx
import yaml
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    NonNegativeInt,
    PositiveFloat,
    PositiveInt,
    ValidationError,
    field_validator,
    model_validator,
)

from fluxa.errors import ConfigurationError


DEFAULT_CONFIG_PATH = "config.yaml"
DEFAULT_LISTEN = "0.0.0.0:8080"

# env var -> dotted config key
ENV_OVERRIDES = {
    "FLUXA_LISTEN": "fluxa.listen",
    "PUSHOVER_API_KEY": "pushover_api_key",
    "PUSHOVER_USER_KEY": "pushover_user_key",
    "TELEGRAM_BOT_TOKEN": "telegram_bot_token",
    "TELEGRAM_CHAT_ID": "telegram_chat_id",
}


def validate_url(url: str) -> str:
    s = str(url or "").strip()
    if not s:
        raise ValueError("url must not be empty")
    try:
        parsed = httpx.URL(s)
    except httpx.InvalidURL as exc:
        raise ValueError(f"{s} is not a valid url") from exc
    if parsed.scheme not in {"http", "https"} or not parsed.host:
        raise ValueError(f"{s} is not a valid url")
    return s


class ServiceConfig(BaseModel):
    """One monitored service."""

    model_config = ConfigDict(frozen=True)

    url: str = Field(description="Target URL, probed with GET")
    interval_seconds: PositiveInt = Field(description="Normal polling cadence")
    max_retries: NonNegativeInt = Field(
        default=0, description="Consecutive failures tolerated before the service is declared down"
    )
    retry_interval_seconds: PositiveInt = Field(
        validation_alias=AliasChoices("retry_interval_seconds", "retry_interval"),
        description="Cadence while failing but not yet down",
    )
    timeout_seconds: PositiveFloat = Field(default=10.0, description="Upper bound of a single probe")

    @field_validator("url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        return validate_url(value)


class ServerConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    listen: str = Field(default=DEFAULT_LISTEN, description="host:port or unix:/path/to.sock")

    @field_validator("listen")
    @classmethod
    def _check_listen(cls, value: str) -> str:
        s = str(value or "").strip()
        if s.startswith("unix:"):
            if not s[len("unix:"):]:
                raise ValueError("unix socket path is empty")
            return s
        host, sep, port = s.rpartition(":")
        if not sep or not host or not port.isdigit() or not (0 < int(port) < 65536):
            raise ValueError(f"Invalid listen address {value!r}; expected host:port or unix:/path")
        return s


class FluxaConfig(BaseModel):
    """Process-wide configuration. Read-only once loaded."""

    model_config = ConfigDict(frozen=True)

    fluxa: ServerConfig = Field(default_factory=ServerConfig)
    pushover_api_key: str | None = None
    pushover_user_key: str | None = None
    telegram_bot_token: str | None = None
    telegram_chat_id: str | None = None
    services: list[ServiceConfig] = Field(default_factory=list)

    @property
    def pushover_enabled(self) -> bool:
        return bool(self.pushover_api_key and self.pushover_user_key)

    @property
    def telegram_enabled(self) -> bool:
        return bool(self.telegram_bot_token and self.telegram_chat_id)

    @model_validator(mode="after")
    def _check_consistency(self) -> "FluxaConfig":
        if not self.services:
            raise ValueError("No services configured for monitoring")

        seen: set[str] = set()
        for service in self.services:
            if service.url in seen:
                raise ValueError(f"Duplicate service entry: {service.url}")
            seen.add(service.url)

        if bool(self.pushover_api_key) != bool(self.pushover_user_key):
            raise ValueError("pushover_api_key and pushover_user_key must be set together")
        if bool(self.telegram_bot_token) != bool(self.telegram_chat_id):
            raise ValueError("telegram_bot_token and telegram_chat_id must be set together")
        if not (self.pushover_enabled or self.telegram_enabled):
            raise ValueError("Missing notification credentials (Pushover or Telegram)")
        return self


def _set_dotted(data: dict[str, Any], dotted: str, value: Any) -> None:
    *parents, leaf = dotted.split(".")
    node = data
    for key in parents:
        child = node.get(key)
        child = dict(child) if isinstance(child, dict) else {}
        node[key] = child
        node = child
    node[leaf] = value


def _format_validation_error(exc: ValidationError) -> str:
    lines = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ())) or "config"
        msg = str(err.get("msg", "invalid value"))
        lines.append(f"{loc}: {msg}")
    return "; ".join(lines)


def parse_config(data: dict[str, Any], environ: dict[str, str] | None = None) -> FluxaConfig:
    """Validate a raw mapping, applying environment overrides first."""
    env = os.environ if environ is None else environ
    merged = dict(data)
    for env_name, dotted in ENV_OVERRIDES.items():
        value = env.get(env_name)
        if value is not None and value.strip():
            _set_dotted(merged, dotted, value.strip())

    try:
        return FluxaConfig.model_validate(merged)
    except ValidationError as exc:
        raise ConfigurationError(_format_validation_error(exc)) from exc


def load_config(path: str | Path | None = None, environ: dict[str, str] | None = None) -> FluxaConfig:
    """Load configuration from a YAML file plus environment variables."""
    config_path = Path(path or os.getenv("FLUXA_CONFIG", DEFAULT_CONFIG_PATH))
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError as exc:
        raise ConfigurationError(f"Config file not found: {config_path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Config file is not valid YAML: {config_path}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigurationError("Config YAML must be a mapping")
    return parse_config(data, environ)
