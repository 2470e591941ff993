"""
Network module initialization.

This module provides HTTP session management and the geo file loader.
"""

from .geofiles import GeoFilesLoader, ProgressAggregator, GEOIP_FILENAME, GEOSITE_FILENAME
from .http_client import HTTPClientManager

__all__ = [
    "GeoFilesLoader",
    "ProgressAggregator",
    "GEOIP_FILENAME",
    "GEOSITE_FILENAME",
    "HTTPClientManager",
]
