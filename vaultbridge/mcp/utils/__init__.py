"""Process settings and the checks run on capability handlers at registration."""

from .config import (
    SERVER_NAME,
    SERVER_VERSION,
    ConfigValidationResult,
    EmbeddedConfig,
    HostLinkConfig,
    RelayConfig,
    validate_config,
    validate_relay_config,
)
from .validators import parse_arg_descriptions, validate_capability_name

__all__ = [
    "SERVER_NAME",
    "SERVER_VERSION",
    "ConfigValidationResult",
    "EmbeddedConfig",
    "HostLinkConfig",
    "RelayConfig",
    "validate_config",
    "validate_relay_config",
    "parse_arg_descriptions",
    "validate_capability_name",
]
