"""
xraytunnel - Xray packet tunnel controller

Relays a virtual network interface's packets through a locally running
Xray engine via a SOCKS bridge, with configuration patching, local port
allocation and routing database provisioning.
"""

__version__ = "1.0.0"
__author__ = "xraytunnel Project"

from .core.config import TunnelConfig
from .core.models import (
    TunnelState, TransferCounters, SniffingOptions, JsonConfig, ShareLinkConfig
)
from .engine.libxray import LibXrayEngine
from .engine.process import XrayProcessEngine
from .network.geofiles import GeoFilesLoader
from .tunnel.controller import XrayTunnel
from .tunnel.patch import ConfigPatcher
from .tunnel.ports import PortAllocator

__all__ = [
    "TunnelConfig",
    "TunnelState",
    "TransferCounters",
    "SniffingOptions",
    "JsonConfig",
    "ShareLinkConfig",
    "LibXrayEngine",
    "XrayProcessEngine",
    "GeoFilesLoader",
    "XrayTunnel",
    "ConfigPatcher",
    "PortAllocator",
]
