"""
Capability providers.

``discover(host)`` inspects the host environment and returns every
capability it can offer: vault access first, then one group per extension.
"""

from typing import TYPE_CHECKING

from ..core import Capability, CapabilityRegistry
from ..logger import get_logger
from . import dataview, plugins, tasks, templater, vault

if TYPE_CHECKING:
    from ...vault import HostEnvironment

logger = get_logger("vaultbridge-discovery")


def discover(host: "HostEnvironment") -> list[Capability]:
    """Build the capability list for ``host``. Has no side effects."""
    found: list[Capability] = []
    found.extend(vault.capabilities(host.vault))
    found.extend(plugins.capabilities(host.plugins))
    found.extend(dataview.capabilities(host.plugins))
    found.extend(tasks.capabilities(host.vault, host.plugins))
    found.extend(templater.capabilities(host.plugins))
    return found


def build_registry(host: "HostEnvironment") -> CapabilityRegistry:
    """Registry populated from ``discover(host)``; later groups override earlier ones."""
    registry = CapabilityRegistry()
    for capability in discover(host):
        registry.register(capability, replace=True)
    logger.info(
        "Registered %d capabilities (%d plugins loaded)", len(registry), len(host.plugins)
    )
    return registry


__all__ = ["discover", "build_registry"]
