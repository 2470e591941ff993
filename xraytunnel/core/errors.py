"""
Error types raised by the tunnel, the engine adapters and the geo file loader.
"""

from typing import Optional


class XrayTunnelError(Exception):
    """Base class for all xraytunnel errors."""


class InvalidResponseError(XrayTunnelError):
    """The proxy engine returned a malformed or failed response."""

    def __init__(self, raw: str):
        self.raw = raw
        super().__init__(f"Invalid response from Xray: {raw}")


class InvalidConfigError(XrayTunnelError):
    """The configuration document could not be parsed or has the wrong shape."""

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail
        message = "Invalid Xray configuration provided"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class PortAllocationError(XrayTunnelError):
    """No free local port could be obtained for the SOCKS listener."""

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail
        message = "Failed to allocate a free port for SOCKS5 tunnel"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class TunnelSetupError(XrayTunnelError):
    """The local SOCKS bridge could not be constructed."""

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(f"SOCKS5 setup error: {detail}")


class DownloadCancelledError(XrayTunnelError):
    """A geo file download was abandoned because its sibling failed."""

    def __init__(self, url: str):
        self.url = url
        super().__init__(f"Download cancelled: {url}")
