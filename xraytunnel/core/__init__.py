"""
Core module initialization.

This module provides access to core functionality including
configuration, models, errors and utilities.
"""

from .config import TunnelConfig
from .errors import (
    XrayTunnelError, InvalidResponseError, InvalidConfigError,
    PortAllocationError, TunnelSetupError, DownloadCancelledError
)
from .models import (
    TunnelState, TransferCounters, SniffingOptions, JsonConfig,
    ShareLinkConfig, IntermediateConfig, TunnelSession, DownloadJob,
    ParsedShareLink
)
from .utils import (
    safe_b64decode, to_base64, from_base64, clean_ps_string,
    resolve_executable_path, load_json, save_json, setup_logging
)

__all__ = [
    "TunnelConfig",
    "XrayTunnelError",
    "InvalidResponseError",
    "InvalidConfigError",
    "PortAllocationError",
    "TunnelSetupError",
    "DownloadCancelledError",
    "TunnelState",
    "TransferCounters",
    "SniffingOptions",
    "JsonConfig",
    "ShareLinkConfig",
    "IntermediateConfig",
    "TunnelSession",
    "DownloadJob",
    "ParsedShareLink",
    "safe_b64decode",
    "to_base64",
    "from_base64",
    "clean_ps_string",
    "resolve_executable_path",
    "load_json",
    "save_json",
    "setup_logging",
]
