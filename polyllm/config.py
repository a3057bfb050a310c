"""Configuration models and loaders for polyllm.

This module defines the runtime configuration schema, the table of built-in
providers, and how values are loaded from YAML plus environment variable
overrides.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Literal, Mapping
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .errors import InvalidConfigurationError

DEFAULT_CONFIG_PATH = "polyllm.yaml"
DEFAULT_PROVIDER_TIMEOUT_SECONDS = 60.0

_SERVER_ID_RE = re.compile(r"^[A-Za-z0-9-]+$")


class LoggingConfig(BaseModel):
    """Logging-related configuration."""

    model_config = ConfigDict(populate_by_name=True)

    level: str = "INFO"
    json_logs: bool = Field(default=False, alias="json")


class ProviderConfig(BaseModel):
    """One OpenAI-compatible backend provider."""

    model_config = ConfigDict(extra="forbid")

    name: str
    type: str = "openai-compatible"
    base_url: str | None = None
    api_key: str | None = None
    env_prefix: str | None = None
    model_prefix: str = ""
    models: list[str] = Field(default_factory=list)
    model_alias: dict[str, str] = Field(default_factory=dict)
    timeout_seconds: float = DEFAULT_PROVIDER_TIMEOUT_SECONDS
    headers: dict[str, str] = Field(default_factory=dict)

    @field_validator("models", "model_alias", "headers", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any, info: Any) -> Any:
        """Treat explicit YAML `null` as an empty collection."""
        if value is None:
            return {} if info.field_name in {"model_alias", "headers"} else []
        return value

    def with_env_overrides(self, environ: Mapping[str, str] | None = None) -> "ProviderConfig":
        """Return a copy with `<env_prefix>*` environment values applied.

        Recognized suffixes: BASE_URL, API_KEY, MODELS (comma list),
        MODEL_ALIAS (`alias:model` comma list) and TIMEOUT (seconds).
        """
        if not self.env_prefix:
            return self.model_copy(deep=True)

        env = os.environ if environ is None else environ
        prefix = self.env_prefix

        def get(key: str) -> str:
            return (env.get(prefix + key) or "").strip()

        update: dict[str, Any] = {}
        if get("BASE_URL"):
            update["base_url"] = get("BASE_URL")
        if get("API_KEY"):
            update["api_key"] = get("API_KEY")
        if get("MODELS"):
            update["models"] = [item.strip() for item in get("MODELS").split(",") if item.strip()]
        if get("MODEL_ALIAS"):
            update["model_alias"] = parse_model_alias(get("MODEL_ALIAS"))
        if get("TIMEOUT"):
            update["timeout_seconds"] = parse_timeout(prefix + "TIMEOUT", get("TIMEOUT"))
        return self.model_copy(update=update, deep=True)


def parse_timeout(name: str, raw: str) -> float:
    """Parse a positive number of seconds, e.g. `30` or `1.5`."""
    try:
        seconds = float(raw)
    except ValueError:
        raise InvalidConfigurationError(f"{name} must be a number of seconds, got {raw!r}") from None
    if not seconds > 0:
        raise InvalidConfigurationError(f"{name} must be positive, got {raw!r}")
    return seconds


def parse_model_alias(raw: str) -> dict[str, str]:
    """Parse `alias1:model1,alias2:model2` into a mapping."""
    alias: dict[str, str] = {}
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        public, sep, backend = item.partition(":")
        if not sep or not public.strip() or not backend.strip():
            raise InvalidConfigurationError(f"invalid model alias entry {item!r}, expected alias:model")
        alias[public.strip()] = backend.strip()
    return alias


def _builtin(name: str, base_url: str, *, model_prefix: str | None = None) -> ProviderConfig:
    return ProviderConfig(
        name=name,
        type=name,
        base_url=base_url,
        env_prefix=f"{name.upper()}_",
        model_prefix=f"{name}/" if model_prefix is None else model_prefix,
    )


BUILTIN_PROVIDERS: tuple[ProviderConfig, ...] = (
    _builtin("openai", "https://api.openai.com/v1", model_prefix=""),
    _builtin("deepseek", "https://api.deepseek.com/v1"),
    _builtin("qwen", "https://dashscope.aliyuncs.com/compatible-mode/v1"),
    _builtin("gemini", "https://generativelanguage.googleapis.com/v1beta/openai"),
    _builtin("openrouter", "https://openrouter.ai/api/v1"),
    _builtin("volcengine", "https://ark.cn-beijing.volces.com/api/v3"),
    _builtin("groq", "https://api.groq.com/openai/v1"),
    _builtin("xai", "https://api.x.ai/v1"),
    _builtin("siliconflow", "https://api.siliconflow.cn/v1"),
    _builtin("together", "https://api.together.xyz/v1"),
    _builtin("fireworks", "https://api.fireworks.ai/inference/v1"),
)


class MCPServerConfig(BaseModel):
    """Configuration for one MCP tool server."""

    server_id: str
    transport: Literal["stdio", "http"]
    command: str | None = None
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    url: str | None = None
    connect_timeout_seconds: float = 10.0
    read_timeout_seconds: float = 60.0
    tool_call_timeout_seconds: float = 60.0

    @field_validator("server_id")
    @classmethod
    def _validate_server_id(cls, value: str) -> str:
        """Server ids end up inside `mcp_<server>_<tool>` names, so underscores are not allowed."""
        if not _SERVER_ID_RE.match(value):
            raise ValueError(f"server_id {value!r} must only contain letters, digits and '-'")
        return value

    @model_validator(mode="after")
    def _validate_transport_fields(self) -> "MCPServerConfig":
        if self.transport == "stdio" and not self.command:
            raise ValueError(f"MCP server '{self.server_id}' uses stdio transport but has no command")
        if self.transport == "http" and not self.url:
            raise ValueError(f"MCP server '{self.server_id}' uses http transport but has no url")
        return self


class GatewayConfig(BaseModel):
    """Top-level gateway configuration."""

    model_config = ConfigDict(extra="forbid")

    service_base_url: str = "http://127.0.0.1:8080"
    service_api_key: str | None = None

    providers: list[ProviderConfig] = Field(default_factory=list)
    include_builtin_providers: bool = True
    mcp_servers: list[MCPServerConfig] = Field(default_factory=list)

    model_cache_dir: str | None = None
    max_tool_rounds: int = 8
    max_tool_concurrency: int = 4
    registration_concurrency: int = 4
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def _validate_service_base_url(self) -> "GatewayConfig":
        """Validate that service_base_url includes host and port."""
        parsed = urlparse(self.service_base_url)
        if not parsed.hostname or parsed.port is None:
            raise ValueError("service_base_url must include host and port, e.g. http://127.0.0.1:8080")
        names = [provider.name for provider in self.providers]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"duplicate provider names: {', '.join(duplicates)}")
        server_ids = [server.server_id for server in self.mcp_servers]
        duplicates = sorted({sid for sid in server_ids if server_ids.count(sid) > 1})
        if duplicates:
            raise ValueError(f"duplicate MCP server ids: {', '.join(duplicates)}")
        return self

    @field_validator("max_tool_rounds", "max_tool_concurrency", "registration_concurrency")
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be >= 1")
        return value

    @field_validator("providers", "mcp_servers", mode="before")
    @classmethod
    def _none_to_empty_list(cls, value: Any) -> Any:
        """Treat explicit YAML `null` for list fields as an empty list."""
        if value is None:
            return []
        return value

    def effective_providers(self) -> list[ProviderConfig]:
        """Return built-in providers followed by configured ones.

        A configured provider with the same name as a built-in one replaces
        it in place, keeping the built-in position.
        """
        configured = {provider.name: provider for provider in self.providers}
        out: list[ProviderConfig] = []
        if self.include_builtin_providers:
            for builtin in BUILTIN_PROVIDERS:
                out.append(configured.pop(builtin.name, builtin))
        out.extend(provider for provider in self.providers if provider.name in configured)
        return out


def _load_yaml(path: str | None) -> dict[str, Any]:
    """Load a YAML file into a dictionary.

    Missing files are treated as empty config for environment-only deployments.
    """
    if not path:
        return {}
    cfg_path = Path(path)
    if not cfg_path.exists():
        return {}
    with cfg_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config root must be object: {path}")
    return data


def _override_from_env(data: dict[str, Any]) -> dict[str, Any]:
    """Apply environment variable overrides on top of file configuration."""
    env_map = {
        "service_base_url": "POLYLLM_SERVICE_BASE_URL",
        "service_api_key": "POLYLLM_SERVICE_API_KEY",
        "model_cache_dir": "POLYLLM_MODEL_CACHE_DIR",
        "max_tool_rounds": "POLYLLM_MAX_TOOL_ROUNDS",
        "max_tool_concurrency": "POLYLLM_MAX_TOOL_CONCURRENCY",
        "registration_concurrency": "POLYLLM_REGISTRATION_CONCURRENCY",
        "logging.level": "POLYLLM_LOG_LEVEL",
        "logging.json_logs": "POLYLLM_LOG_JSON",
    }

    out = dict(data)
    out["logging"] = dict(out.get("logging") or {})

    for key, env_name in env_map.items():
        value = os.getenv(env_name)
        if value is None:
            continue

        if key in {"max_tool_rounds", "max_tool_concurrency", "registration_concurrency"}:
            out[key] = int(value)
        elif key == "logging.json_logs":
            out["logging"]["json"] = value.lower() in {"1", "true", "yes", "on"}
        elif key == "logging.level":
            out["logging"]["level"] = value
        else:
            out[key] = value

    return out


def config_path_from_env(path: str | None = None) -> str:
    """Return the effective config file path."""
    return path or os.getenv("POLYLLM_CONFIG") or DEFAULT_CONFIG_PATH


def load_config(path: str | None = None) -> GatewayConfig:
    """Load, merge, and validate gateway configuration."""
    raw = _load_yaml(config_path_from_env(path))
    raw = _override_from_env(raw)
    return GatewayConfig.model_validate(raw)
