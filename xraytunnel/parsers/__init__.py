"""
Parsers module initialization.

This module provides access to all share link parsers for different
proxy protocols.
"""

from .uri_parser import (
    VMessParser,
    VLESSParser,
    TrojanParser,
    ShadowsocksParser,
    UniversalParser,
    ShareLinkConverter
)

__all__ = [
    "VMessParser",
    "VLESSParser",
    "TrojanParser",
    "ShadowsocksParser",
    "UniversalParser",
    "ShareLinkConverter"
]
