"""
Share link parsers for different proxy protocols.

Each parser turns one share link into an Xray outbound. The converter
bundles the outbounds of one or more links into a configuration document
the tunnel can patch and hand to the engine.
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs, unquote, urlparse

from xraytunnel.core.errors import InvalidConfigError
from xraytunnel.core.models import ParsedShareLink
from xraytunnel.core.utils import clean_ps_string, safe_b64decode

logger = logging.getLogger(__name__)


def _param(params: Dict[str, List[str]], key: str, default: str = "") -> str:
    return params.get(key, [default])[0]


def _transport_settings(stream: Dict[str, Any], transport: str, params: Dict[str, List[str]]):
    if transport == "ws":
        stream["wsSettings"] = {
            "path": _param(params, "path", "/"),
            "headers": {"Host": _param(params, "host")},
        }
    elif transport == "grpc":
        stream["grpcSettings"] = {"serviceName": _param(params, "serviceName")}
    elif transport == "httpupgrade":
        stream["httpupgradeSettings"] = {
            "path": _param(params, "path", "/"),
            "host": _param(params, "host"),
        }
    elif transport in ("splithttp", "xhttp"):
        stream["xhttpSettings"] = {
            "path": _param(params, "path", "/"),
            "host": _param(params, "host"),
        }


class VMessParser:
    """Parser for VMess protocol URIs."""

    @staticmethod
    def parse(uri: str) -> Optional[ParsedShareLink]:
        """Parse VMess URI."""
        try:
            payload = uri[len("vmess://"):]
            decoded = safe_b64decode(payload).decode("utf-8", errors="ignore")
            j = json.loads(decoded)
        except ValueError:
            return None
        if not isinstance(j, dict):
            return None

        host = j.get("add")
        try:
            port = int(j.get("port", 0))
        except (TypeError, ValueError):
            return None
        uuid = j.get("id")
        ps = clean_ps_string(str(j.get("ps", "Unknown")))

        if not host or not port or not uuid or host == "0.0.0.0":
            return None

        network = j.get("net", "tcp") or "tcp"
        security = j.get("tls", "none") or "none"
        outbound: Dict[str, Any] = {
            "protocol": "vmess",
            "settings": {
                "vnext": [
                    {
                        "address": host,
                        "port": port,
                        "users": [
                            {
                                "id": uuid,
                                "alterId": int(j.get("aid", 0) or 0),
                                "security": j.get("scy", "auto") or "auto",
                            }
                        ],
                    }
                ]
            },
            "streamSettings": {
                "network": network,
                "security": security,
            },
        }

        if network == "ws":
            outbound["streamSettings"]["wsSettings"] = {
                "path": j.get("path", "/") or "/",
                "headers": {"Host": j.get("host", "")},
            }
        elif network == "grpc":
            outbound["streamSettings"]["grpcSettings"] = {"serviceName": j.get("path", "")}

        if security == "tls":
            outbound["streamSettings"]["tlsSettings"] = {
                "serverName": j.get("sni") or host,
                "allowInsecure": False,
            }

        return ParsedShareLink(uri=uri, outbound=outbound, host=host, port=port, identity=uuid, ps=ps)


class VLESSParser:
    """Parser for VLESS protocol URIs."""

    @staticmethod
    def parse(uri: str) -> Optional[ParsedShareLink]:
        """Parse VLESS URI."""
        try:
            parsed_url = urlparse(uri)
            port = parsed_url.port or 443
        except ValueError:
            return None
        uuid = parsed_url.username
        host = parsed_url.hostname
        params = parse_qs(parsed_url.query)
        ps = clean_ps_string(unquote(parsed_url.fragment or "Unknown"))

        if not host or not uuid or host == "0.0.0.0":
            return None

        security = _param(params, "security", "none")
        transport = _param(params, "type", "tcp")
        user: Dict[str, Any] = {"id": uuid, "encryption": _param(params, "encryption", "none")}
        flow = _param(params, "flow")
        if flow:
            user["flow"] = flow

        outbound: Dict[str, Any] = {
            "protocol": "vless",
            "settings": {
                "vnext": [
                    {
                        "address": host,
                        "port": int(port),
                        "users": [user],
                    }
                ]
            },
            "streamSettings": {
                "network": transport,
                "security": security,
            },
        }

        if security in ["tls", "reality"]:
            base_settings: Dict[str, Any] = {"serverName": _param(params, "sni", host)}
            if security == "reality":
                base_settings.update(
                    {
                        "fingerprint": _param(params, "fp", "chrome"),
                        "publicKey": _param(params, "pbk"),
                        "shortId": _param(params, "sid"),
                    }
                )
                outbound["streamSettings"]["realitySettings"] = base_settings
            else:
                base_settings["allowInsecure"] = False
                fp = _param(params, "fp")
                if fp:
                    base_settings["fingerprint"] = fp
                alpn = _param(params, "alpn")
                if alpn:
                    base_settings["alpn"] = alpn.split(",")
                outbound["streamSettings"]["tlsSettings"] = base_settings

        _transport_settings(outbound["streamSettings"], transport, params)

        return ParsedShareLink(uri=uri, outbound=outbound, host=host, port=int(port), identity=uuid, ps=ps)


class TrojanParser:
    """Parser for Trojan protocol URIs."""

    @staticmethod
    def parse(uri: str) -> Optional[ParsedShareLink]:
        """Parse Trojan URI."""
        try:
            parsed_url = urlparse(uri)
            port = parsed_url.port or 443
        except ValueError:
            return None
        password = unquote(parsed_url.username or "")
        host = parsed_url.hostname
        params = parse_qs(parsed_url.query)
        ps = clean_ps_string(unquote(parsed_url.fragment or "Unknown"))

        if not host or not password or host == "0.0.0.0":
            return None

        transport = _param(params, "type", "tcp")
        outbound: Dict[str, Any] = {
            "protocol": "trojan",
            "settings": {"servers": [{"address": host, "port": int(port), "password": password}]},
            "streamSettings": {
                "network": transport,
                "security": "tls",
                "tlsSettings": {
                    "serverName": _param(params, "sni", host),
                    "allowInsecure": _param(params, "allowInsecure", "0") == "1",
                },
            },
        }
        _transport_settings(outbound["streamSettings"], transport, params)

        return ParsedShareLink(uri=uri, outbound=outbound, host=host, port=int(port), identity=password, ps=ps)


class ShadowsocksParser:
    """Parser for Shadowsocks protocol URIs."""

    @staticmethod
    def parse(uri: str) -> Optional[ParsedShareLink]:
        """Parse Shadowsocks URI."""
        parsed = uri
        if "#" in parsed:
            parsed, tag = parsed.split("#", 1)
            ps = clean_ps_string(unquote(tag))
        else:
            ps = "Unknown"

        core = parsed[len("ss://"):].split("?", 1)[0].rstrip("/")
        if "@" not in core:
            try:
                core = safe_b64decode(core).decode("utf-8", errors="ignore")
            except ValueError:
                return None

        if "@" not in core:
            return None

        userinfo, hostport = core.rsplit("@", 1)
        if ":" not in hostport:
            return None

        # SIP002 encodes userinfo as base64, older links keep it plain
        method = None
        password = None
        try:
            decoded_userinfo = safe_b64decode(unquote(userinfo)).decode("utf-8")
            if ":" in decoded_userinfo:
                method, password = decoded_userinfo.split(":", 1)
        except ValueError:
            pass

        if (not method) or (password is None):
            if ":" in userinfo:
                method, password = unquote(userinfo).split(":", 1)
            else:
                return None

        host, port_str = hostport.rsplit(":", 1)
        host = host.strip("[]")
        digits = re.split(r"[^0-9]", port_str)[0]
        if not digits:
            return None
        port = int(digits)

        if not host or not port or host == "0.0.0.0":
            return None

        outbound: Dict[str, Any] = {
            "protocol": "shadowsocks",
            "settings": {"servers": [{"address": host, "port": port, "method": method, "password": password}]},
        }

        identity = f"{method}:{password}"
        return ParsedShareLink(uri=uri, outbound=outbound, host=host, port=port, identity=identity, ps=ps)


class UniversalParser:
    """Universal parser that can handle all supported protocols."""

    def __init__(self):
        self.parsers = {
            "vmess": VMessParser(),
            "vless": VLESSParser(),
            "trojan": TrojanParser(),
            "ss": ShadowsocksParser(),
            "shadowsocks": ShadowsocksParser(),
        }

    def parse(self, uri: str) -> Optional[ParsedShareLink]:
        """Parse URI using appropriate parser."""
        if not uri or "://" not in uri:
            return None

        proto = uri.split("://", 1)[0].lower()
        parser = self.parsers.get(proto)

        if parser:
            return parser.parse(uri.strip())

        return None


class ShareLinkConverter:
    """Builds an Xray configuration document from share links.

    Accepts a single link, several links separated by newlines, or a base64
    encoded subscription body. The first outbound gets the ``proxy`` tag,
    the rest are numbered.
    """

    def __init__(self, parser: Optional[UniversalParser] = None):
        self.parser = parser or UniversalParser()

    def _split_links(self, text: str) -> List[str]:
        text = text.strip()
        if text and "://" not in text:
            try:
                text = safe_b64decode(text).decode("utf-8", errors="ignore")
            except ValueError:
                return []
        return [line.strip() for line in text.splitlines() if line.strip()]

    def convert(self, links: str) -> Dict[str, Any]:
        outbounds: List[Dict[str, Any]] = []
        for link in self._split_links(links):
            parsed = self.parser.parse(link)
            if not parsed:
                logger.debug(f"Skipping unsupported share link: {link[:40]}")
                continue
            outbound = dict(parsed.outbound)
            outbound["tag"] = "proxy" if not outbounds else f"proxy-{len(outbounds)}"
            outbounds.append(outbound)

        if not outbounds:
            raise InvalidConfigError("no supported share link found")

        return {"outbounds": outbounds}
