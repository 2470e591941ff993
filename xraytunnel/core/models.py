"""
Core data models for the tunnel.

Value types exchanged between the controller, the configuration patcher
and the geo file loader.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple, Union

UINT32_MASK = 0xFFFFFFFF


class TunnelState(Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass(frozen=True)
class TransferCounters:
    """Bytes moved through the tunnel, as unsigned 32-bit counters.

    Every increment returns a new value. Counters wrap around on overflow
    instead of raising.
    """
    received: int = 0
    sent: int = 0

    def increment_received(self, value: int) -> "TransferCounters":
        return TransferCounters(received=(self.received + value) & UINT32_MASK, sent=self.sent)

    def increment_sent(self, value: int) -> "TransferCounters":
        return TransferCounters(received=self.received, sent=(self.sent + value) & UINT32_MASK)


@dataclass(frozen=True)
class SniffingOptions:
    """Traffic sniffing settings attached to the generated SOCKS inbound."""
    dest_override: Tuple[str, ...]
    enabled: bool
    route_only: bool
    domains_excluded: Tuple[str, ...]
    metadata_only: bool

    def __post_init__(self):
        # Accept any iterable of strings but keep the value hashable
        object.__setattr__(self, "dest_override", tuple(self.dest_override))
        object.__setattr__(self, "domains_excluded", tuple(self.domains_excluded))

    def to_dict(self) -> Dict[str, Any]:
        """Serialize using the key names Xray expects."""
        return {
            "destOverride": list(self.dest_override),
            "enabled": self.enabled,
            "routeOnly": self.route_only,
            "metadataOnly": self.metadata_only,
            "domainsExcluded": list(self.domains_excluded),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SniffingOptions":
        return cls(
            dest_override=data.get("destOverride", ()),
            enabled=bool(data.get("enabled", False)),
            route_only=bool(data.get("routeOnly", False)),
            domains_excluded=data.get("domainsExcluded", ()),
            metadata_only=bool(data.get("metadataOnly", False)),
        )


@dataclass(frozen=True)
class JsonConfig:
    """A literal Xray JSON configuration document."""
    document: str


@dataclass(frozen=True)
class ShareLinkConfig:
    """A share link (vless://, vmess://, ...) to be converted by the engine."""
    uri: str


IntermediateConfig = Union[JsonConfig, ShareLinkConfig]


@dataclass
class TunnelSession:
    """Mutable state of one running tunnel."""
    local_port: int
    client: Any = None
    bridge: Any = None
    running: bool = False
    counters: TransferCounters = field(default_factory=TransferCounters)


@dataclass
class DownloadJob:
    """One geo file transfer."""
    source_url: str
    destination: str
    fraction_complete: float = 0.0


@dataclass
class ParsedShareLink:
    """A share link decoded into an Xray outbound."""
    uri: str
    outbound: Dict[str, Any]
    host: str
    port: int
    identity: str
    ps: str


def iter_strings(values: Optional[Iterable[str]]) -> Tuple[str, ...]:
    """Normalize an optional comma separated string or iterable into a tuple."""
    if not values:
        return ()
    if isinstance(values, str):
        return tuple(v.strip() for v in values.split(",") if v.strip())
    return tuple(values)
