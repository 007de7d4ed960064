"""Configuration management for convoflow.

This module provides configuration models and loading functionality using Pydantic
for validation and type safety.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Literal

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_DOTENV_LOADED = False


def _load_env_once() -> None:
    """Load environment variables from a .env file exactly once."""

    global _DOTENV_LOADED
    if not _DOTENV_LOADED:
        load_dotenv()
        _DOTENV_LOADED = True


def _expand_env_vars(data: Any) -> Any:
    """Recursively expand environment variables in configuration data."""

    if isinstance(data, str):
        return os.path.expandvars(data)
    if isinstance(data, dict):
        return {key: _expand_env_vars(value) for key, value in data.items()}
    if isinstance(data, list):
        return [_expand_env_vars(item) for item in data]
    return data


class RetryPolicyConfig(BaseModel):
    """Configuration for outbound delivery retry behaviour."""

    max_attempts: int = Field(
        default=3,
        ge=1,
        description="Maximum number of attempts (including the first send)",
    )
    backoff_seconds: float = Field(
        default=1.0,
        ge=0.0,
        description="Initial delay in seconds before retrying",
    )
    backoff_multiplier: float = Field(
        default=2.0,
        ge=1.0,
        description="Multiplier applied to the backoff delay after each failure",
    )
    max_backoff_seconds: float = Field(
        default=30.0,
        ge=0.0,
        description="Maximum delay cap between retries",
    )


class DatabaseConfig(BaseModel):
    """Configuration for the execution database."""

    url: str = Field(
        default="sqlite:///./convoflow.db",
        description="SQLAlchemy database URL",
    )
    echo: bool = Field(default=False, description="Log emitted SQL statements")
    create_tables: bool = Field(
        default=True, description="Create missing tables when the runtime starts"
    )


class EngineConfig(BaseModel):
    """Execution engine behaviour."""

    max_conflict_retries: int = Field(
        default=5,
        ge=1,
        description="Read-compute-write attempts before a version conflict is surfaced",
    )
    missing_variable_policy: Literal["empty", "fail"] = Field(
        default="empty",
        description="How to render a {{variable}} that has not been captured",
    )


class SchedulerConfig(BaseModel):
    """Configuration for the durable timer scheduler."""

    enabled: bool = Field(default=True, description="Run the background poll loop")
    timezone: str = Field(default="UTC", description="Timezone for the poll job")
    poll_interval_seconds: float = Field(
        default=5.0, gt=0.0, description="Seconds between timer sweeps"
    )
    sweep_batch_size: int = Field(
        default=500, ge=1, description="Maximum due timers consumed per sweep"
    )
    reconcile_grace_seconds: float = Field(
        default=60.0,
        ge=0.0,
        description="Lateness after which a time_gap run without a timer is re-fired",
    )
    late_threshold_seconds: float = Field(
        default=30.0,
        ge=0.0,
        description="Lateness reported as a missed window (informational only)",
    )
    reply_timeout_seconds: float | None = Field(
        default=None,
        gt=0.0,
        description="Fail runs waiting on a reply for longer than this (disabled when unset)",
    )
    max_workers: int = Field(default=4, description="APScheduler thread pool size")
    misfire_grace_time: int = Field(default=60, description="Grace time for missed polls")

    @field_validator("max_workers")
    @classmethod
    def validate_max_workers(cls, value: int) -> int:
        if value < 1:
            raise ValueError("max_workers must be at least 1")
        return value


class DeliveryConfig(BaseModel):
    """Outbound message delivery settings."""

    retry: RetryPolicyConfig = Field(
        default_factory=RetryPolicyConfig,
        description="Retry policy for retryable send failures",
    )
    retryable_error_classes: list[str] = Field(
        default_factory=lambda: ["rate_limited", "network", "timeout", "server_error"],
        description="Gateway error classes that are retried",
    )


class GatewayConfig(BaseModel):
    """HTTP messaging gateway settings."""

    base_url: str | None = Field(default=None, description="Gateway base URL")
    api_key: str | None = Field(default=None, description="Bearer token for the gateway")
    timeout: float = Field(default=10.0, ge=0.0, description="Request timeout in seconds")
    messages_path: str = Field(
        default="/conversations/{conversation_id}/messages",
        description="Path template used to send a message",
    )


class TemplateConfig(BaseModel):
    """A messaging template known to the catalog."""

    id: str = Field(..., description="Template identifier referenced by steps")
    name: str | None = Field(default=None, description="Template name on the channel")
    body: str = Field(..., description="Template body with {{slot}} placeholders")
    slots: list[str] | None = Field(
        default=None, description="Expected variable slots (derived from body when unset)"
    )
    language: str = Field(default="en", description="Template language code")
    status: str = Field(default="approved", description="Channel approval status")


class ApiServerConfig(BaseModel):
    """Configuration for the HTTP API server."""

    enabled: bool = Field(default=True, description="Serve the HTTP API")
    host: str = Field(default="0.0.0.0", description="Bind host")
    port: int = Field(default=8000, description="Bind port")
    api_key: str | None = Field(
        default=None, description="Require this value in the X-API-Key header"
    )


class LoggingConfig(BaseModel):
    """Configuration for logging."""

    level: str = Field(default="INFO", description="Log level")
    format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log format for the file handler",
    )
    log_file: str | None = Field(default=None, description="Log file path")
    max_bytes: int = Field(default=10485760, description="Max log file size (10MB)")
    backup_count: int = Field(default=5, description="Number of backup files")
    show_path: bool = Field(default=False, description="Show source path in console logs")

    @field_validator("level")
    @classmethod
    def normalise_level(cls, value: str) -> str:
        level = (value or "INFO").strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unsupported log level: {value}")
        return level


class ConvoflowConfig(BaseSettings):
    """Main configuration for the automation runtime."""

    model_config = SettingsConfigDict(
        env_prefix="CONVOFLOW_",
        env_nested_delimiter="__",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
    )

    database: DatabaseConfig = Field(
        default_factory=DatabaseConfig, description="Execution database"
    )
    engine: EngineConfig = Field(default_factory=EngineConfig, description="Engine behaviour")
    scheduler: SchedulerConfig = Field(
        default_factory=SchedulerConfig, description="Timer scheduler"
    )
    delivery: DeliveryConfig = Field(
        default_factory=DeliveryConfig, description="Outbound delivery policy"
    )
    gateway: GatewayConfig = Field(
        default_factory=GatewayConfig, description="Messaging gateway client"
    )
    templates: list[TemplateConfig] = Field(
        default_factory=list, description="Static template catalog"
    )
    api: ApiServerConfig = Field(default_factory=ApiServerConfig, description="HTTP API server")
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig, description="Logging configuration"
    )

    @model_validator(mode="after")
    def validate_templates(self) -> ConvoflowConfig:
        seen: set[str] = set()
        for template in self.templates:
            if template.id in seen:
                raise ValueError(f"Duplicate template id: {template.id}")
            seen.add(template.id)
        return self

    @classmethod
    def from_yaml(cls, path: str | Path) -> ConvoflowConfig:
        """Load configuration from a YAML file."""

        _load_env_once()
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path, encoding="utf-8") as handle:
            try:
                config_data = yaml.safe_load(handle)
            except yaml.YAMLError as exc:
                raise ValueError(f"Invalid YAML in config file: {exc}") from exc

        if not config_data:
            config_data = {}

        config_data = _expand_env_vars(config_data)
        return cls(**config_data)

    @classmethod
    def from_json(cls, path: str | Path) -> ConvoflowConfig:
        """Load configuration from a JSON file."""

        _load_env_once()
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path, encoding="utf-8") as handle:
            try:
                config_data = json.load(handle)
            except json.JSONDecodeError as exc:
                raise ValueError(f"Invalid JSON in config file: {exc}") from exc

        config_data = _expand_env_vars(config_data)
        return cls(**config_data)

    @classmethod
    def load(cls, path: str | Path | None = None) -> ConvoflowConfig:
        """Load from a YAML or JSON file, or from the environment when no path is given."""

        if path is None:
            _load_env_once()
            return cls()
        if str(path).endswith(".json"):
            return cls.from_json(path)
        return cls.from_yaml(path)

    def get_template(self, template_id: str) -> TemplateConfig | None:
        """Get a configured template by id."""

        for template in self.templates:
            if template.id == template_id:
                return template
        return None

    def to_dict(self) -> dict[str, Any]:
        """Convert configuration to dictionary."""

        return self.model_dump()
