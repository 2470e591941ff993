"""
Shared fakes for the engine, the SOCKS bridge and the packet flow.
"""

import asyncio
from typing import Any, List, Optional, Sequence, Tuple

import pytest

from xraytunnel.engine.base import BridgeFactory, BridgeHandle, PacketFlow, ProxyEngine, TunWriter


class FakeEngine(ProxyEngine):
    def __init__(self, ports: Optional[List[int]] = None):
        self.ports = ports if ports is not None else [1080]
        self.allocate_error: Optional[Exception] = None
        self.start_error: Optional[Exception] = None
        self.stop_error: Optional[Exception] = None
        self.share_link_result = '{"outbounds": [{"protocol": "freedom", "tag": "proxy"}]}'
        self.allocate_calls: List[int] = []
        self.start_calls: List[Tuple[str, str]] = []
        self.stop_calls = 0
        self.converted: List[str] = []

    def allocate_ports(self, count: int) -> List[int]:
        self.allocate_calls.append(count)
        if self.allocate_error is not None:
            raise self.allocate_error
        return list(self.ports)

    def start(self, data_dir: str, config_path: str) -> None:
        self.start_calls.append((data_dir, config_path))
        if self.start_error is not None:
            raise self.start_error

    def stop(self) -> None:
        self.stop_calls += 1
        if self.stop_error is not None:
            raise self.stop_error

    def version(self) -> str:
        return "1.8.24"

    def share_link_to_config(self, uri: str) -> str:
        self.converted.append(uri)
        return self.share_link_result


class FakeBridge(BridgeHandle):
    def __init__(self):
        self.packets: List[bytes] = []
        self.disconnected = False
        self.fail_on: Optional[bytes] = None

    def write(self, packet: bytes) -> int:
        if self.fail_on is not None and packet == self.fail_on:
            raise OSError("socket closed")
        self.packets.append(packet)
        return len(packet)

    def disconnect(self) -> None:
        self.disconnected = True


class FakeBridgeFactory(BridgeFactory):
    def __init__(self):
        self.bridge = FakeBridge()
        self.specs: List[str] = []
        self.writer: Optional[TunWriter] = None
        self.udp_enabled: Optional[bool] = None
        self.client_result: Any = "client"
        self.connect_result: Any = self.bridge
        self.connect_error: Optional[Exception] = None

    def new_client(self, endpoint_spec: str) -> Any:
        self.specs.append(endpoint_spec)
        return self.client_result

    def connect(self, writer: TunWriter, client: Any, udp_enabled: bool) -> BridgeHandle:
        if self.connect_error is not None:
            raise self.connect_error
        self.writer = writer
        self.udp_enabled = udp_enabled
        return self.connect_result


class FakePacketFlow(PacketFlow):
    """Packet batches are pushed by the test; exceptions are raised by the read."""

    def __init__(self):
        self.queue: "asyncio.Queue" = asyncio.Queue()
        self.written: List[Tuple[bytes, int]] = []

    def push(self, item):
        self.queue.put_nowait(item)

    async def read_packets(self) -> Tuple[Sequence[bytes], Sequence[int]]:
        item = await self.queue.get()
        if isinstance(item, Exception):
            raise item
        return list(item), [0] * len(item)

    def write_packets(self, packets: Sequence[bytes], protocols: Sequence[int]) -> None:
        self.written.extend(zip(packets, protocols))


async def wait_until(predicate, timeout: float = 2.0):
    """Yield to the loop until ``predicate()`` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def bridge_factory():
    return FakeBridgeFactory()
