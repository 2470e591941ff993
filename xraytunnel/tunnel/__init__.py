"""
Tunnel module initialization.

Port allocation, configuration patching and the relay controller.
"""

from .controller import XrayTunnel
from .ipversion import IPVersion, address_family
from .patch import ConfigPatcher, patch_config, parse_config, build_inbound
from .ports import PortAllocator

__all__ = [
    "XrayTunnel",
    "IPVersion",
    "address_family",
    "ConfigPatcher",
    "patch_config",
    "parse_config",
    "build_inbound",
    "PortAllocator",
]
