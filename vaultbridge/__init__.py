"""
This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU General Public License for more details.

You should have received a copy of the GNU General Public License
along with this program.  If not, see <http://www.gnu.org/licenses/>.
"""

from .mcp import errors
from .mcp.capabilities import build_registry, discover
from .mcp.core import Capability, CapabilityRegistry
from .mcp.handlers import Router
from .mcp.transport import EmbeddedServer, HostLink, RelayServer
from .mcp.utils.config import SERVER_NAME, SERVER_VERSION
from .vault import HostEnvironment, Vault

__version__ = SERVER_VERSION

__all__ = [
    # Vault
    "Vault",
    "HostEnvironment",
    # Registry
    "Capability",
    "CapabilityRegistry",
    "discover",
    "build_registry",
    # Protocol
    "Router",
    "errors",
    # Deployments
    "EmbeddedServer",
    "RelayServer",
    "HostLink",
    "SERVER_NAME",
]
