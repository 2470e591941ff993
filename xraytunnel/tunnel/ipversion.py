"""
IP version detection for packets coming out of the bridge.
"""

import socket
from enum import IntEnum
from typing import Optional


class IPVersion(IntEnum):
    IPV4 = 4
    IPV6 = 6

    @classmethod
    def scan(cls, data: bytes) -> Optional["IPVersion"]:
        """Version from the high nibble of the first byte, None if unknown or empty."""
        if not data:
            return None
        try:
            return cls(data[0] >> 4)
        except ValueError:
            return None


def address_family(data: bytes) -> int:
    """Address family tag for writing ``data`` back to the interface.

    Unrecognised versions are tagged as IPv4. This keeps compatibility with
    existing hosts but is probably a latent bug: such packets are not IP at
    all and would be better dropped.
    """
    version = IPVersion.scan(data) or IPVersion.IPV4
    return socket.AF_INET6 if version == IPVersion.IPV6 else socket.AF_INET
