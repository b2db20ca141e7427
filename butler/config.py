"""Application configuration."""

from __future__ import annotations

import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Literal, Mapping

from pydantic import BaseModel, Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

LOGGER = logging.getLogger(__name__)

_ENV_PLACEHOLDER = re.compile(r"\$\{([^}]+)\}")


class Settings(BaseSettings):
    """Environment-driven settings validated at startup."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    openrouter_api_key: str = Field(..., alias="OPENROUTER_API_KEY")
    openrouter_base_url: str = Field(
        default="https://openrouter.ai/api/v1",
        alias="OPENROUTER_BASE_URL",
    )
    model_fast: str = Field(..., alias="MODEL_FAST")
    model_deep: str = Field(..., alias="MODEL_DEEP")
    # Defaults to the fast model when unset.
    router_model: str | None = Field(default=None, alias="ROUTER_MODEL")
    database_path: Path = Field(default=Path("butler.db"), alias="DATABASE_PATH")
    signal_cli_path: str = Field(default="signal-cli", alias="SIGNAL_CLI_PATH")
    signal_account: str = Field(..., alias="SIGNAL_ACCOUNT")
    signal_owner_number: str = Field(..., alias="SIGNAL_OWNER_NUMBER")
    # Comma-separated E.164 numbers allowed to talk to the agent (defaults to owner only).
    signal_allowed_senders: str = Field(default="", alias="SIGNAL_ALLOWED_SENDERS")
    signal_poll_interval_seconds: float = Field(default=2.0, alias="SIGNAL_POLL_INTERVAL_SECONDS")
    history_window_fast: int = Field(default=20, alias="HISTORY_WINDOW_FAST")
    history_window_deep: int = Field(default=50, alias="HISTORY_WINDOW_DEEP")
    summary_trigger_messages: int = Field(default=100, alias="SUMMARY_TRIGGER_MESSAGES")
    request_timeout_seconds: float = Field(default=60.0, alias="REQUEST_TIMEOUT_SECONDS")
    max_tool_loops: int = Field(default=10, alias="MAX_TOOL_LOOPS")
    thinking_notice_delay_seconds: float = Field(default=2.5, alias="THINKING_NOTICE_DELAY_SECONDS")
    empty_response_retries: int = Field(default=2, alias="EMPTY_RESPONSE_RETRIES")
    empty_retry_delay_seconds: float = Field(default=1.0, alias="EMPTY_RETRY_DELAY_SECONDS")
    # Turns accepted per rolling hour and day; 0 disables a window.
    rate_limit_hourly: int = Field(default=50, alias="RATE_LIMIT_HOURLY")
    rate_limit_daily: int = Field(default=500, alias="RATE_LIMIT_DAILY")
    confirmation_ttl_seconds: float = Field(default=300.0, alias="CONFIRMATION_TTL_SECONDS")
    providers_config_path: Path = Field(default=Path("providers.json"), alias="PROVIDERS_CONFIG")
    provider_call_timeout_seconds: float = Field(default=60.0, alias="PROVIDER_CALL_TIMEOUT_SECONDS")
    jobs_config_path: Path | None = Field(default=None, alias="JOBS_CONFIG")
    scheduler_poll_interval_seconds: float = Field(default=2.0, alias="SCHEDULER_POLL_INTERVAL_SECONDS")
    job_max_retries: int = Field(default=3, alias="JOB_MAX_RETRIES")
    job_retry_backoff_seconds: float = Field(default=60.0, alias="JOB_RETRY_BACKOFF_SECONDS")
    timezone: str = Field(default="UTC", alias="TZ")
    # Escalations go to the owner when unset.
    escalation_chat_id: str | None = Field(default=None, alias="ESCALATION_CHAT_ID")
    workspace_root: Path = Field(
        default=Path.home() / ".butler" / "workspace",
        alias="BUTLER_WORKSPACE",
    )
    vault_root: Path = Field(
        default=Path.home() / ".butler" / "vaults",
        alias="BUTLER_VAULTS",
    )


def load_settings() -> Settings:
    """Load and validate settings."""

    return Settings()


def allowed_senders(settings: Settings) -> frozenset[str]:
    """Return the set of E.164 numbers permitted to talk to the agent.

    Always includes the owner. Additional numbers can be added via the
    SIGNAL_ALLOWED_SENDERS env var as a comma-separated list.
    """
    extra = {n.strip() for n in settings.signal_allowed_senders.split(",") if n.strip()}
    return frozenset({settings.signal_owner_number} | extra)


class ProviderConfig(BaseModel):
    """Connection parameters for one external tool provider."""

    transport: Literal["stdio", "sse"] = "stdio"
    command: str | None = None
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    url: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    enabled: bool = True
    disabled: bool = False

    @model_validator(mode="after")
    def _check_transport(self) -> "ProviderConfig":
        if self.transport == "stdio" and not self.command:
            raise ValueError("stdio providers require 'command'")
        if self.transport == "sse" and not self.url:
            raise ValueError("sse providers require 'url'")
        return self

    @property
    def is_enabled(self) -> bool:
        return self.enabled and not self.disabled


class JobDefinition(BaseModel):
    """A recurring job declared in config rather than by a tool call."""

    name: str
    cron: str
    task: str
    target_chat_id: str | None = None
    target_source: str | None = None


def interpolate_env(value: Any, environ: Mapping[str, str] | None = None) -> Any:
    """Replace ``${VAR}`` placeholders in strings, recursively.

    Unknown variables resolve to an empty string.
    """
    environ = os.environ if environ is None else environ
    if isinstance(value, str):
        return _ENV_PLACEHOLDER.sub(lambda m: environ.get(m.group(1), ""), value)
    if isinstance(value, list):
        return [interpolate_env(item, environ) for item in value]
    if isinstance(value, dict):
        return {key: interpolate_env(item, environ) for key, item in value.items()}
    return value


def load_provider_configs(
    path: Path, environ: Mapping[str, str] | None = None
) -> dict[str, ProviderConfig]:
    """Read the provider map, skipping disabled or malformed entries.

    A missing file means no external providers.
    """
    if not path.exists():
        LOGGER.warning("Provider config not found at %s; no external tools", path)
        return {}

    raw = json.loads(path.read_text())
    if not isinstance(raw, dict):
        raise ValueError(f"Provider config {path} must be a JSON object")

    configs: dict[str, ProviderConfig] = {}
    for provider_id, entry in raw.items():
        try:
            config = ProviderConfig.model_validate(interpolate_env(entry, environ))
        except ValidationError as exc:
            LOGGER.error("Ignoring provider %s: invalid config: %s", provider_id, exc)
            continue
        if not config.is_enabled:
            LOGGER.info("Provider %s is disabled", provider_id)
            continue
        configs[provider_id] = config
    return configs


def load_job_definitions(path: Path | None) -> list[JobDefinition]:
    """Read config-declared recurring jobs (a JSON list)."""

    if path is None or not path.exists():
        return []
    raw = json.loads(path.read_text())
    return [JobDefinition.model_validate(item) for item in raw]
