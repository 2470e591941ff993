"""
Engine module initialization.

Abstract collaborator interfaces plus the libXray and external-process
engine adapters.
"""

from .base import (
    ProxyEngine, BridgeFactory, BridgeHandle, TunWriter, PacketFlow,
    build_endpoint_spec, parse_endpoint_spec
)
from .libxray import LibXrayEngine, CtypesLibXray
from .process import XrayProcessEngine
from .responses import XrayResponse

__all__ = [
    "ProxyEngine",
    "BridgeFactory",
    "BridgeHandle",
    "TunWriter",
    "PacketFlow",
    "build_endpoint_spec",
    "parse_endpoint_spec",
    "LibXrayEngine",
    "CtypesLibXray",
    "XrayProcessEngine",
    "XrayResponse",
]
