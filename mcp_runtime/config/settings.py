"""
Configuration system using Pydantic for type-safe settings management.

Each endpoint gets one immutable configuration model, merged once when the
endpoint is created. ``RuntimeSettings`` holds every configured server and
client and can be loaded from YAML with environment variable interpolation.

Example:
    YAML configuration format::

        default_server: docs
        servers:
          docs:
            name: Docs Server
            transport:
              type: stdio
            tools:
              discover: ["./mcp/tools"]
              auto_register: true
        clients:
          remote:
            timeout: 60000
            transport:
              target: https://mcp.example.com/mcp
            retry:
              max_retries: 2
              backoff: linear
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from mcp_runtime.enums import BackoffPolicy, TransportType
from mcp_runtime.exceptions import ConfigurationError


class RootsCapability(BaseModel):
    """Roots capability flags."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    list_changed: bool = Field(
        default=True,
        alias="listChanged",
        description="Advertise root-list-change notifications to the peer",
    )


class CapabilitiesConfig(BaseModel):
    """Protocol capability flags advertised (servers) or accepted (clients).

    Empty sections are not advertised to the peer.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    experimental: dict[str, Any] = Field(default_factory=dict)
    sampling: dict[str, Any] = Field(default_factory=dict)
    roots: RootsCapability | None = Field(default_factory=RootsCapability)
    logging: dict[str, Any] = Field(default_factory=dict)

    def to_protocol(self) -> dict[str, Any]:
        """Render the flags for an ``initialize`` exchange."""
        result: dict[str, Any] = {}
        for key in ("experimental", "sampling", "logging"):
            value = getattr(self, key)
            if value:
                result[key] = dict(value)
        if self.roots is not None:
            result["roots"] = {"listChanged": self.roots.list_changed}
        return result


class TransportConfig(BaseModel):
    """Transport selection for an endpoint.

    ``type`` may be omitted; it is then detected from ``target``
    (``http://``/``https://`` selects HTTP, anything else a stdio command).
    """

    model_config = ConfigDict(frozen=True)

    type: TransportType | None = Field(default=None, description="Transport type (auto-detected if omitted)")
    target: str | None = Field(
        default=None,
        description="Command (stdio), URL (http) or server endpoint name (memory)",
    )
    args: list[str] = Field(default_factory=list, description="Arguments for a stdio command")
    env: dict[str, str] = Field(default_factory=dict, description="Extra environment for a stdio command")
    headers: dict[str, str] = Field(default_factory=dict, description="Extra HTTP headers")

    def resolved_type(self) -> TransportType:
        """Return the explicit type or detect it from the target."""
        if self.type is not None:
            return self.type
        if self.target and self.target.startswith(("http://", "https://")):
            return TransportType.HTTP
        return TransportType.STDIO


class DiscoveryConfig(BaseModel):
    """Where to look for capabilities of one kind."""

    model_config = ConfigDict(frozen=True)

    discover: list[str] = Field(default_factory=list, description="Directories or dotted module names")
    auto_register: bool = Field(default=False, description="Run discovery when the endpoint starts")


class RetryConfig(BaseModel):
    """Timeout retry policy for client calls."""

    model_config = ConfigDict(frozen=True)

    max_retries: int = Field(default=0, ge=0, le=10, description="Retries after a timeout")
    delay_ms: int = Field(default=1000, ge=0, description="Base delay between retries")
    backoff: BackoffPolicy = Field(default=BackoffPolicy.EXPONENTIAL, description="Delay growth policy")
    multiplier: float = Field(default=2.0, ge=1.0, description="Exponential backoff multiplier")


class EndpointConfig(BaseModel):
    """Settings common to servers and clients."""

    model_config = ConfigDict(frozen=True)

    name: str | None = Field(default=None, description="Implementation name sent during negotiation")
    version: str = Field(default="1.0.0", description="Implementation version")
    capabilities: CapabilitiesConfig = Field(default_factory=CapabilitiesConfig)
    transport: TransportConfig = Field(default_factory=TransportConfig)
    timeout: int = Field(default=30000, ge=1, description="Milliseconds before a call fails with a timeout")

    @property
    def timeout_seconds(self) -> float:
        return self.timeout / 1000.0


class ServerEndpointConfig(EndpointConfig):
    """Server endpoint configuration."""

    tools: DiscoveryConfig = Field(default_factory=DiscoveryConfig)
    resources: DiscoveryConfig = Field(default_factory=DiscoveryConfig)
    prompts: DiscoveryConfig = Field(default_factory=DiscoveryConfig)
    page_size: int | None = Field(default=None, ge=1, description="Items per list page (unpaginated if unset)")


class ClientEndpointConfig(EndpointConfig):
    """Client endpoint configuration."""

    retry: RetryConfig = Field(default_factory=RetryConfig)


def deep_merge(base: Mapping[str, Any], overrides: Mapping[str, Any]) -> dict[str, Any]:
    """Recursively merge ``overrides`` into a copy of ``base``."""
    merged: dict[str, Any] = dict(base)
    for key, value in overrides.items():
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def merge_config(
    model: type[EndpointConfig],
    base: EndpointConfig | None,
    overrides: EndpointConfig | Mapping[str, Any] | None,
) -> EndpointConfig:
    """Build one immutable endpoint config from configured values and overrides.

    Raises:
        ConfigurationError: If the merged values fail validation.
    """
    if isinstance(overrides, EndpointConfig):
        overrides = overrides.model_dump(exclude_unset=True, by_alias=True)
    data: dict[str, Any] = base.model_dump(exclude_unset=True, by_alias=True) if base else {}
    data = deep_merge(data, overrides or {})
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid endpoint configuration: {e}", cause=e) from e


class RuntimeSettings(BaseSettings):
    """Top-level runtime settings.

    Values can come from keyword arguments, ``MCP_*`` environment variables
    (``MCP_DEFAULT_SERVER``, ``MCP_LOG_LEVEL`` ...) or a YAML file via
    ``from_yaml``.
    """

    model_config = SettingsConfigDict(
        env_prefix="MCP_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    default_server: str | None = Field(default=None, description="Server used when no name is given")
    default_client: str | None = Field(default=None, description="Client used when no name is given")
    servers: dict[str, ServerEndpointConfig] = Field(default_factory=dict)
    clients: dict[str, ClientEndpointConfig] = Field(default_factory=dict)
    log_level: str = Field(default="INFO", description="Minimum log level")

    @classmethod
    def from_yaml(cls, config_path: str | Path) -> RuntimeSettings:
        """Load settings from YAML file with environment variable interpolation.

        Supports ${VAR_NAME} and ${VAR_NAME:-default} substitution.

        Args:
            config_path: Path to YAML configuration file

        Returns:
            RuntimeSettings instance

        Raises:
            ConfigurationError: If config file is invalid or missing required fields
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            yaml_content = config_file.read_text()
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration file: {config_path}", cause=e) from e

        try:
            yaml_content = cls._interpolate_env_vars(yaml_content)
        except ValueError as e:
            raise ConfigurationError(f"Invalid environment variable reference in config: {e}", cause=e) from e

        try:
            config_dict = yaml.safe_load(yaml_content) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax in {config_path}: {e}", cause=e) from e
        if not isinstance(config_dict, dict):
            raise ConfigurationError("Configuration must be a YAML object, not a list or scalar")

        try:
            return cls(**config_dict)
        except ValidationError as e:
            raise ConfigurationError(f"Failed to validate configuration: {e}", cause=e) from e

    @staticmethod
    def _interpolate_env_vars(content: str) -> str:
        """Interpolate ${VAR_NAME} placeholders with environment variables.

        YAML comment lines are left unchanged.

        Raises:
            ValueError: If a required environment variable is not set
        """
        pattern = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")

        def replace_var(match: re.Match[str]) -> str:
            var_name = match.group(1)
            default_value = match.group(2)
            value = os.getenv(var_name)

            if value is not None:
                return value
            elif default_value is not None:
                return default_value
            else:
                raise ValueError(f"Environment variable {var_name} is not set")

        def process_line(line: str) -> str:
            if line.lstrip().startswith("#"):
                return line
            return pattern.sub(replace_var, line)

        return "\n".join(process_line(line) for line in content.split("\n"))
