"""
Proxy engine backed by the in-process libXray library.

The binding exposes the library's C entry points (``GetFreePorts``,
``RunXray``, ``StopXray``, ``XrayVersion``, ``ConvertShareLinksToXrayJson``),
each returning a base64 encoded JSON envelope.
"""

import ctypes
import logging
from typing import Any, List

from xraytunnel.core.errors import InvalidResponseError, PortAllocationError
from xraytunnel.core.utils import to_base64
from xraytunnel.engine.base import ProxyEngine
from xraytunnel.engine.responses import (
    encode_run_request, parse_bool_response, parse_config_response,
    parse_ports_response, parse_version_response
)


class CtypesLibXray:
    """ctypes binding for a libXray shared library build (c-shared)."""

    def __init__(self, library_path: str):
        self.library_path = library_path
        self._lib = ctypes.CDLL(library_path)

        self._lib.GetFreePorts.argtypes = [ctypes.c_int]
        self._lib.GetFreePorts.restype = ctypes.c_char_p
        self._lib.RunXray.argtypes = [ctypes.c_char_p]
        self._lib.RunXray.restype = ctypes.c_char_p
        self._lib.StopXray.argtypes = []
        self._lib.StopXray.restype = ctypes.c_char_p
        self._lib.XrayVersion.argtypes = []
        self._lib.XrayVersion.restype = ctypes.c_char_p
        self._lib.ConvertShareLinksToXrayJson.argtypes = [ctypes.c_char_p]
        self._lib.ConvertShareLinksToXrayJson.restype = ctypes.c_char_p

    @staticmethod
    def _text(value: bytes) -> str:
        return (value or b"").decode("utf-8", errors="replace")

    def GetFreePorts(self, count: int) -> str:
        return self._text(self._lib.GetFreePorts(count))

    def RunXray(self, request: str) -> str:
        return self._text(self._lib.RunXray(request.encode("utf-8")))

    def StopXray(self) -> str:
        return self._text(self._lib.StopXray())

    def XrayVersion(self) -> str:
        return self._text(self._lib.XrayVersion())

    def ConvertShareLinksToXrayJson(self, links: str) -> str:
        return self._text(self._lib.ConvertShareLinksToXrayJson(links.encode("utf-8")))


class LibXrayEngine(ProxyEngine):
    """ProxyEngine that forwards every call to a libXray binding."""

    def __init__(self, binding: Any):
        self.binding = binding
        self.logger = logging.getLogger(__name__)

    @classmethod
    def load(cls, library_path: str) -> "LibXrayEngine":
        return cls(CtypesLibXray(library_path))

    def allocate_ports(self, count: int) -> List[int]:
        raw = self.binding.GetFreePorts(count)
        try:
            return parse_ports_response(raw)
        except InvalidResponseError as e:
            raise PortAllocationError(e.raw)

    def start(self, data_dir: str, config_path: str) -> None:
        raw = self.binding.RunXray(encode_run_request(data_dir, config_path))
        parse_bool_response(raw)
        self.logger.info(f"Xray started with {config_path}")

    def stop(self) -> None:
        parse_bool_response(self.binding.StopXray())
        self.logger.info("Xray stopped")

    def version(self) -> str:
        return parse_version_response(self.binding.XrayVersion())

    def share_link_to_config(self, uri: str) -> str:
        return parse_config_response(self.binding.ConvertShareLinksToXrayJson(to_base64(uri)))
