"""
MCP (Model Context Protocol) bridge for a note vault

Architecture:
    core.py:          Capability and CapabilityRegistry
    handlers.py:      Router - MCP dialect methods onto the registry
    formatting.py:    text rendering of tool results
    errors.py:        error taxonomy and JSON-RPC error replies
    envelope.py:      envelope classification and decoding
    capabilities/:    vault, plugin, query, task and template providers
    transport/:       embedded server, relay, host link
"""

from . import transport, utils
from .capabilities import build_registry, discover
from .core import Capability, CapabilityRegistry
from .handlers import TOOL_NAME_MAP, Router
from .logger import get_logger, setup_logging

__all__ = [
    # Utilities for submodules
    "get_logger",
    "setup_logging",
    "utils",
    "transport",
    # Registry
    "Capability",
    "CapabilityRegistry",
    "discover",
    "build_registry",
    # Protocol
    "Router",
    "TOOL_NAME_MAP",
]
