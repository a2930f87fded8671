"""Configuration models for the MCP runtime."""

from mcp_runtime.config.settings import (
    CapabilitiesConfig,
    ClientEndpointConfig,
    DiscoveryConfig,
    EndpointConfig,
    RetryConfig,
    RootsCapability,
    RuntimeSettings,
    ServerEndpointConfig,
    TransportConfig,
    deep_merge,
    merge_config,
)

__all__ = [
    "CapabilitiesConfig",
    "ClientEndpointConfig",
    "DiscoveryConfig",
    "EndpointConfig",
    "RetryConfig",
    "RootsCapability",
    "RuntimeSettings",
    "ServerEndpointConfig",
    "TransportConfig",
    "deep_merge",
    "merge_config",
]
