"""
Configuration patching.

The caller's Xray configuration is rewritten so that its only inbound is
the loopback SOCKS listener the bridge connects to. Multiple inbounds would
be unreachable since only the relay's port is wired to the interface.
"""

import json
from typing import Any, Dict, List, Mapping, Optional, Union

from xraytunnel.core.config import DEFAULT_NAME_SERVERS, DEFAULT_QUERY_STRATEGY
from xraytunnel.core.errors import InvalidConfigError
from xraytunnel.core.models import SniffingOptions

LOCAL_LISTEN_ADDRESS = "127.0.0.1"

ConfigDocument = Dict[str, Any]


def parse_config(document: Union[str, bytes, Mapping[str, Any]]) -> ConfigDocument:
    """Parse a JSON document into a config object or raise InvalidConfigError."""
    if isinstance(document, Mapping):
        return dict(document)
    try:
        config = json.loads(document)
    except (TypeError, ValueError) as e:
        raise InvalidConfigError(str(e))
    if not isinstance(config, dict):
        raise InvalidConfigError(f"expected a JSON object, got {type(config).__name__}")
    return config


def build_inbound(port: int, sniffing: Optional[SniffingOptions] = None) -> Dict[str, Any]:
    inbound: Dict[str, Any] = {
        "listen": LOCAL_LISTEN_ADDRESS,
        "port": port,
        "protocol": "socks",
        "settings": {"udp": True},
    }
    if sniffing is not None:
        inbound["sniffing"] = sniffing.to_dict()
    return inbound


class ConfigPatcher:
    """Merges the generated SOCKS inbound and a default DNS block into a config."""

    def __init__(self, name_servers: Optional[List[str]] = None,
                 query_strategy: str = DEFAULT_QUERY_STRATEGY):
        self.name_servers = list(name_servers or DEFAULT_NAME_SERVERS)
        self.query_strategy = query_strategy

    def patch(self, base: Union[str, Mapping[str, Any]], local_port: int,
              sniffing: Optional[SniffingOptions] = None) -> ConfigDocument:
        config = parse_config(base)

        if "dns" not in config:
            config["dns"] = {"servers": list(self.name_servers), "queryStrategy": self.query_strategy}

        config["inbounds"] = [build_inbound(local_port, sniffing)]
        return config


def patch_config(base: Union[str, Mapping[str, Any]], local_port: int,
                 sniffing: Optional[SniffingOptions] = None) -> ConfigDocument:
    """Patch with the default name servers."""
    return ConfigPatcher().patch(base, local_port, sniffing)
