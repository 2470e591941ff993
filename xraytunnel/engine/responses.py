"""
Response envelope of the in-process Xray library.

Every library call answers with base64 encoded JSON of the form
``{"success": bool, "data": ...}``. Requests that carry structured
arguments are JSON encoded and base64 encoded the same way.
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, List

from xraytunnel.core.errors import InvalidResponseError
from xraytunnel.core.utils import from_base64, to_base64


@dataclass
class XrayResponse:
    success: bool
    data: Any = None
    raw: str = ""

    @classmethod
    def from_base64(cls, base64_string: str) -> "XrayResponse":
        plain = from_base64(base64_string or "")
        if plain is None:
            raise InvalidResponseError(base64_string)
        try:
            body = json.loads(plain)
        except ValueError:
            raise InvalidResponseError(base64_string)
        if not isinstance(body, dict) or not isinstance(body.get("success"), bool):
            raise InvalidResponseError(base64_string)
        return cls(success=body["success"], data=body.get("data"), raw=base64_string)

    def require_success(self) -> "XrayResponse":
        if not self.success:
            raise InvalidResponseError(self.raw)
        return self


def parse_ports_response(base64_string: str) -> List[int]:
    response = XrayResponse.from_base64(base64_string)
    data = response.data if isinstance(response.data, dict) else {}
    ports = data.get("ports")
    if not isinstance(ports, list) or not all(isinstance(p, int) for p in ports):
        raise InvalidResponseError(base64_string)
    return ports


def parse_bool_response(base64_string: str) -> None:
    XrayResponse.from_base64(base64_string).require_success()


def parse_version_response(base64_string: str) -> str:
    response = XrayResponse.from_base64(base64_string).require_success()
    if not isinstance(response.data, str) or not response.data:
        raise InvalidResponseError(base64_string)
    return response.data


def parse_config_response(base64_string: str) -> str:
    """Return the nested config object of a share link conversion as JSON text."""
    response = XrayResponse.from_base64(base64_string)
    if not response.success:
        raise InvalidResponseError(json.dumps({"success": False, "data": response.data}))
    if not isinstance(response.data, dict):
        raise InvalidResponseError(base64_string)
    return json.dumps(response.data)


def encode_run_request(data_dir: str, config_path: str) -> str:
    request: Dict[str, str] = {"datDir": data_dir, "configPath": config_path}
    return to_base64(json.dumps(request))
