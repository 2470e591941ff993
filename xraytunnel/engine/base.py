"""
Collaborator interfaces consumed by the tunnel controller.

The proxy engine and the SOCKS bridge are foreign, stateful components.
The controller only talks to them through the abstract classes below so
that it can run against fakes as well as real bindings.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Sequence, Tuple

import yaml

from xraytunnel.core.errors import TunnelSetupError


class ProxyEngine(ABC):
    """Capability set of an Xray-compatible proxy engine."""

    @abstractmethod
    def allocate_ports(self, count: int) -> List[int]:
        """Return ``count`` currently unbound local TCP ports."""

    @abstractmethod
    def start(self, data_dir: str, config_path: str) -> None:
        """Start the engine with the config file at ``config_path``."""

    @abstractmethod
    def stop(self) -> None:
        """Stop the running engine."""

    @abstractmethod
    def version(self) -> str:
        """Return the engine version string."""

    @abstractmethod
    def share_link_to_config(self, uri: str) -> str:
        """Convert a share link to a JSON configuration document."""


class TunWriter(ABC):
    """Receiver of packets coming back out of the bridge."""

    @abstractmethod
    def write(self, data: bytes) -> None:
        """Deliver one inbound packet. May be called from any thread."""

    @abstractmethod
    def close(self) -> None:
        """The bridge has shut down."""


class BridgeHandle(ABC):
    """A connected SOCKS bridge carrying raw IP packets."""

    @abstractmethod
    def write(self, packet: bytes) -> int:
        """Write one outbound packet; return the number of bytes written."""

    @abstractmethod
    def disconnect(self) -> None:
        """Tear the bridge down."""


class BridgeFactory(ABC):
    """Builds bridge clients and connects them to a :class:`TunWriter`."""

    @abstractmethod
    def new_client(self, endpoint_spec: str) -> Any:
        """Create a client from a YAML endpoint spec."""

    @abstractmethod
    def connect(self, writer: TunWriter, client: Any, udp_enabled: bool) -> BridgeHandle:
        """Connect ``client`` and route inbound packets to ``writer``."""


class PacketFlow(ABC):
    """The virtual interface's packet source and sink."""

    @abstractmethod
    async def read_packets(self) -> Tuple[Sequence[bytes], Sequence[int]]:
        """Suspend until the next batch of outgoing packets is available."""

    @abstractmethod
    def write_packets(self, packets: Sequence[bytes], protocols: Sequence[int]) -> None:
        """Hand packets back to the interface, tagged with address families."""


def build_endpoint_spec(host: str, port: int) -> str:
    """Render the bridge client config pointing at a local SOCKS endpoint."""
    return yaml.safe_dump({"endpoint": f"{host}:{port}"}, default_flow_style=False)


def parse_endpoint_spec(spec: str) -> Tuple[str, int]:
    """Return ``(host, port)`` from an endpoint spec or raise TunnelSetupError."""
    try:
        data: Dict[str, Any] = yaml.safe_load(spec)
    except yaml.YAMLError as e:
        raise TunnelSetupError(f"invalid endpoint spec: {e}")

    endpoint = data.get("endpoint") if isinstance(data, dict) else None
    if not isinstance(endpoint, str) or ":" not in endpoint:
        raise TunnelSetupError(f"invalid endpoint spec: {spec!r}")

    host, port_str = endpoint.rsplit(":", 1)
    try:
        port = int(port_str)
    except ValueError:
        raise TunnelSetupError(f"invalid endpoint port: {port_str!r}")
    if not 0 < port < 65536:
        raise TunnelSetupError(f"endpoint port out of range: {port}")
    return host.strip("[]"), port
