import asyncio
import gc
import json
import socket
import threading
import time

import pytest
import yaml

from conftest import FakeEngine, FakePacketFlow, wait_until
from xraytunnel.core.errors import (
    InvalidConfigError, InvalidResponseError, PortAllocationError, TunnelSetupError
)
from xraytunnel.core.models import JsonConfig, ShareLinkConfig, SniffingOptions, TunnelState
from xraytunnel.tunnel.controller import XrayTunnel

BASE_CONFIG = json.dumps({
    "inbounds": [{"port": 9999, "protocol": "http"}],
    "outbounds": [{"protocol": "freedom", "tag": "direct"}],
})

IPV4_PACKET = bytes([0x45]) + bytes(19)
IPV6_PACKET = bytes([0x60]) + bytes(39)


async def start_tunnel(tmp_path, engine, bridge_factory, config=None, sniffing=None):
    flow = FakePacketFlow()
    tunnel = XrayTunnel(flow, engine, bridge_factory)
    final_path = tmp_path / "config_final.json"
    await tunnel.run(tmp_path, config or JsonConfig(BASE_CONFIG), final_path, sniffing)
    return tunnel, flow, final_path


def test_run_starts_engine_with_patched_config(tmp_path, engine, bridge_factory):
    async def scenario():
        tunnel, flow, final_path = await start_tunnel(tmp_path, engine, bridge_factory)

        assert tunnel.state == TunnelState.RUNNING
        assert tunnel.is_running
        assert tunnel.local_port == 1080
        assert engine.start_calls == [(str(tmp_path), str(final_path))]

        written = json.loads(final_path.read_text(encoding="utf-8"))
        assert written["inbounds"] == [{
            "listen": "127.0.0.1",
            "port": 1080,
            "protocol": "socks",
            "settings": {"udp": True},
        }]
        assert written["outbounds"] == [{"protocol": "freedom", "tag": "direct"}]
        assert written["dns"] == {"servers": ["8.8.8.8", "1.1.1.1"], "queryStrategy": "UseIPv4"}

        assert yaml.safe_load(bridge_factory.specs[0]) == {"endpoint": "127.0.0.1:1080"}
        assert bridge_factory.writer is tunnel
        assert bridge_factory.udp_enabled is True

        await tunnel.stop()

    asyncio.run(scenario())


def test_run_with_sniffing_attaches_sniffing_block(tmp_path, engine, bridge_factory):
    sniffing = SniffingOptions(["http", "tls"], True, False, ["example.com"], False)

    async def scenario():
        tunnel, _flow, final_path = await start_tunnel(tmp_path, engine, bridge_factory, sniffing=sniffing)
        written = json.loads(final_path.read_text(encoding="utf-8"))
        assert written["inbounds"][0]["sniffing"] == {
            "destOverride": ["http", "tls"],
            "enabled": True,
            "routeOnly": False,
            "metadataOnly": False,
            "domainsExcluded": ["example.com"],
        }
        await tunnel.stop()

    asyncio.run(scenario())


def test_run_twice_is_idempotent(tmp_path, engine, bridge_factory):
    async def scenario():
        tunnel, _flow, final_path = await start_tunnel(tmp_path, engine, bridge_factory)
        await tunnel.run(tmp_path, JsonConfig(BASE_CONFIG), final_path)

        assert engine.allocate_calls == [1]
        assert len(engine.start_calls) == 1
        assert tunnel.state == TunnelState.RUNNING
        await tunnel.stop()

    asyncio.run(scenario())


def test_stop_when_never_started(engine, bridge_factory):
    async def scenario():
        tunnel = XrayTunnel(FakePacketFlow(), engine, bridge_factory)
        await tunnel.stop()
        await tunnel.stop()
        assert tunnel.state == TunnelState.STOPPED
        assert engine.stop_calls == 2

    asyncio.run(scenario())


def test_stop_releases_bridge_and_engine(tmp_path, engine, bridge_factory):
    async def scenario():
        tunnel, _flow, _path = await start_tunnel(tmp_path, engine, bridge_factory)
        await tunnel.stop()

        assert tunnel.state == TunnelState.STOPPED
        assert not tunnel.is_running
        assert tunnel.local_port is None
        assert engine.stop_calls == 1
        assert bridge_factory.bridge.disconnected

        await tunnel.stop()
        assert engine.stop_calls == 2

    asyncio.run(scenario())


def test_stop_swallows_engine_errors(tmp_path, engine, bridge_factory):
    engine.stop_error = InvalidResponseError("c3RvcA==")

    async def scenario():
        tunnel, _flow, _path = await start_tunnel(tmp_path, engine, bridge_factory)
        await tunnel.stop()
        assert tunnel.state == TunnelState.STOPPED
        assert bridge_factory.bridge.disconnected

    asyncio.run(scenario())


def test_port_allocation_failure(tmp_path, engine, bridge_factory):
    engine.allocate_error = PortAllocationError("no ports")

    async def scenario():
        with pytest.raises(PortAllocationError):
            await start_tunnel(tmp_path, engine, bridge_factory)

    asyncio.run(scenario())
    assert engine.start_calls == []
    assert bridge_factory.specs == []


def test_empty_port_list_is_allocation_failure(tmp_path, bridge_factory):
    engine = FakeEngine(ports=[])

    async def scenario():
        tunnel = XrayTunnel(FakePacketFlow(), engine, bridge_factory)
        with pytest.raises(PortAllocationError):
            await tunnel.run(tmp_path, JsonConfig(BASE_CONFIG), tmp_path / "final.json")
        assert tunnel.state == TunnelState.STOPPED

    asyncio.run(scenario())


def test_missing_bridge_client_is_setup_error(tmp_path, engine, bridge_factory):
    bridge_factory.client_result = None

    async def scenario():
        tunnel = XrayTunnel(FakePacketFlow(), engine, bridge_factory)
        with pytest.raises(TunnelSetupError):
            await tunnel.run(tmp_path, JsonConfig(BASE_CONFIG), tmp_path / "final.json")
        assert tunnel.state == TunnelState.STOPPED
        assert not tunnel.is_running

    asyncio.run(scenario())
    assert engine.start_calls == []


def test_bridge_connect_failure_is_setup_error(tmp_path, engine, bridge_factory):
    bridge_factory.connect_error = RuntimeError("refused")

    async def scenario():
        tunnel = XrayTunnel(FakePacketFlow(), engine, bridge_factory)
        with pytest.raises(TunnelSetupError) as exc_info:
            await tunnel.run(tmp_path, JsonConfig(BASE_CONFIG), tmp_path / "final.json")
        assert "failed to bind XRay" in str(exc_info.value)
        assert tunnel.state == TunnelState.STOPPED

    asyncio.run(scenario())


def test_invalid_config_releases_bridge(tmp_path, engine, bridge_factory):
    async def scenario():
        tunnel = XrayTunnel(FakePacketFlow(), engine, bridge_factory)
        with pytest.raises(InvalidConfigError):
            await tunnel.run(tmp_path, JsonConfig("[1, 2, 3]"), tmp_path / "final.json")
        assert tunnel.state == TunnelState.STOPPED

    asyncio.run(scenario())
    assert bridge_factory.bridge.disconnected
    assert engine.start_calls == []


def test_engine_start_failure_propagates(tmp_path, engine, bridge_factory):
    engine.start_error = InvalidResponseError("eyJzdWNjZXNzIjogZmFsc2V9")

    async def scenario():
        tunnel = XrayTunnel(FakePacketFlow(), engine, bridge_factory)
        with pytest.raises(InvalidResponseError):
            await tunnel.run(tmp_path, JsonConfig(BASE_CONFIG), tmp_path / "final.json")
        assert tunnel.state == TunnelState.STOPPED
        assert not tunnel.is_running

    asyncio.run(scenario())
    assert bridge_factory.bridge.disconnected


def test_share_link_config_goes_through_engine(tmp_path, engine, bridge_factory):
    uri = "vless://11111111-2222-3333-4444-555555555555@example.com:443?security=tls#node"

    async def scenario():
        tunnel, _flow, final_path = await start_tunnel(
            tmp_path, engine, bridge_factory, config=ShareLinkConfig(uri)
        )
        written = json.loads(final_path.read_text(encoding="utf-8"))
        assert written["outbounds"] == [{"protocol": "freedom", "tag": "proxy"}]
        assert written["inbounds"][0]["port"] == 1080
        await tunnel.stop()

    asyncio.run(scenario())
    assert engine.converted == [uri]


def test_unsupported_config_type(tmp_path, engine, bridge_factory):
    async def scenario():
        tunnel = XrayTunnel(FakePacketFlow(), engine, bridge_factory)
        with pytest.raises(TypeError):
            await tunnel.run(tmp_path, {"outbounds": []}, tmp_path / "final.json")
        assert tunnel.state == TunnelState.STOPPED

    asyncio.run(scenario())


def test_outbound_packets_reach_bridge(tmp_path, engine, bridge_factory):
    async def scenario():
        tunnel, flow, _path = await start_tunnel(tmp_path, engine, bridge_factory)
        flow.push([IPV4_PACKET, IPV6_PACKET])
        flow.push([b"\x45\x00\x00"])

        bridge = bridge_factory.bridge
        await wait_until(lambda: len(bridge.packets) == 3)
        assert bridge.packets == [IPV4_PACKET, IPV6_PACKET, b"\x45\x00\x00"]
        await wait_until(lambda: tunnel.bytes_transferred.sent == 63)
        assert tunnel.bytes_transferred.received == 0
        await tunnel.stop()

    asyncio.run(scenario())


def test_outbound_write_errors_are_dropped(tmp_path, engine, bridge_factory):
    bridge_factory.bridge.fail_on = b"\x45bad"

    async def scenario():
        tunnel, flow, _path = await start_tunnel(tmp_path, engine, bridge_factory)
        flow.push([b"\x45bad", IPV4_PACKET])

        await wait_until(lambda: tunnel.bytes_transferred.sent == len(IPV4_PACKET))
        assert bridge_factory.bridge.packets == [IPV4_PACKET]
        assert tunnel.is_running
        await tunnel.stop()

    asyncio.run(scenario())


def test_read_failure_ends_relay_without_crash(tmp_path, engine, bridge_factory):
    async def scenario():
        tunnel, flow, _path = await start_tunnel(tmp_path, engine, bridge_factory)
        flow.push(OSError("interface gone"))
        flow.push([IPV4_PACKET])

        await wait_until(lambda: tunnel._relay_task.done())
        assert tunnel._relay_task.exception() is None
        assert bridge_factory.bridge.packets == []
        await tunnel.stop()
        assert tunnel.state == TunnelState.STOPPED

    asyncio.run(scenario())


def test_packets_read_after_stop_are_not_sent(tmp_path, engine, bridge_factory):
    async def scenario():
        tunnel, flow, _path = await start_tunnel(tmp_path, engine, bridge_factory)
        await asyncio.sleep(0)
        await tunnel.stop()

        flow.push([IPV4_PACKET])
        await wait_until(lambda: tunnel._relay_task.done())
        assert bridge_factory.bridge.packets == []
        assert tunnel.bytes_transferred.sent == 0

    asyncio.run(scenario())


def test_inbound_packets_classified_by_version(tmp_path, engine, bridge_factory):
    async def scenario():
        tunnel, flow, _path = await start_tunnel(tmp_path, engine, bridge_factory)
        tunnel.write(IPV4_PACKET)
        tunnel.write(IPV6_PACKET)
        tunnel.write(b"")
        tunnel.write(b"\x10\x00")

        await wait_until(lambda: len(flow.written) == 3)
        assert flow.written == [
            (IPV4_PACKET, socket.AF_INET),
            (IPV6_PACKET, socket.AF_INET6),
            (b"\x10\x00", socket.AF_INET),
        ]
        assert tunnel.bytes_transferred.received == 62
        assert tunnel.bytes_transferred.sent == 0
        await tunnel.stop()

    asyncio.run(scenario())


def test_inbound_write_from_another_thread(tmp_path, engine, bridge_factory):
    async def scenario():
        tunnel, flow, _path = await start_tunnel(tmp_path, engine, bridge_factory)

        def emit():
            for _ in range(10):
                tunnel.write(IPV4_PACKET)

        worker = threading.Thread(target=emit)
        worker.start()
        worker.join()

        await wait_until(lambda: len(flow.written) == 10)
        assert tunnel.bytes_transferred.received == 10 * len(IPV4_PACKET)
        await tunnel.stop()

    asyncio.run(scenario())


def test_inbound_packets_dropped_when_stopped(tmp_path, engine, bridge_factory):
    async def scenario():
        tunnel, flow, _path = await start_tunnel(tmp_path, engine, bridge_factory)
        await tunnel.stop()
        tunnel.write(IPV4_PACKET)
        await asyncio.sleep(0.05)
        assert flow.written == []

    asyncio.run(scenario())


def test_counters_survive_stop(tmp_path, engine, bridge_factory):
    async def scenario():
        tunnel, flow, _path = await start_tunnel(tmp_path, engine, bridge_factory)
        tunnel.write(IPV4_PACKET)
        await wait_until(lambda: tunnel.bytes_transferred.received == 20)
        await tunnel.stop()
        assert tunnel.bytes_transferred.received == 20

    asyncio.run(scenario())


def test_bridge_close_schedules_stop(tmp_path, engine, bridge_factory):
    async def scenario():
        tunnel, _flow, _path = await start_tunnel(tmp_path, engine, bridge_factory)
        threading.Thread(target=tunnel.close).start()

        await wait_until(lambda: tunnel.state == TunnelState.STOPPED)
        assert engine.stop_calls == 1
        assert bridge_factory.bridge.disconnected

    asyncio.run(scenario())


def test_restart_after_stop(tmp_path, engine, bridge_factory):
    async def scenario():
        tunnel, _flow, final_path = await start_tunnel(tmp_path, engine, bridge_factory)
        await tunnel.stop()
        engine.ports = [2080]
        await tunnel.run(tmp_path, JsonConfig(BASE_CONFIG), final_path)

        assert tunnel.local_port == 2080
        assert tunnel.bytes_transferred.sent == 0
        assert len(engine.start_calls) == 2
        await tunnel.stop()

    asyncio.run(scenario())


def test_stop_without_session_still_stops_engine(engine, bridge_factory):
    engine.stop_error = InvalidResponseError("c3RvcA==")

    async def scenario():
        tunnel = XrayTunnel(FakePacketFlow(), engine, bridge_factory)
        await tunnel.stop()
        assert tunnel.state == TunnelState.STOPPED

    asyncio.run(scenario())
    assert engine.stop_calls == 1


class SlowEngine(FakeEngine):
    def __init__(self, delay: float = 0.3):
        super().__init__()
        self.delay = delay

    def start(self, data_dir: str, config_path: str) -> None:
        time.sleep(self.delay)
        super().start(data_dir, config_path)

    def stop(self) -> None:
        time.sleep(self.delay)
        super().stop()


async def _count_ticks(ticks, done):
    while not done.is_set():
        ticks.append(None)
        await asyncio.sleep(0.02)


def test_slow_engine_does_not_block_the_loop(tmp_path, bridge_factory):
    engine = SlowEngine()

    async def scenario():
        ticks = []
        done = asyncio.Event()
        ticker = asyncio.ensure_future(_count_ticks(ticks, done))
        await asyncio.sleep(0)

        tunnel, _flow, _path = await start_tunnel(tmp_path, engine, bridge_factory)
        started_ticks = len(ticks)
        await tunnel.stop()
        stopped_ticks = len(ticks) - started_ticks

        done.set()
        await ticker
        return started_ticks, stopped_ticks

    started_ticks, stopped_ticks = asyncio.run(scenario())
    assert started_ticks > 3
    assert stopped_ticks > 3
    assert len(engine.start_calls) == 1
    assert engine.stop_calls == 1


def test_stop_during_run_ends_stopped(tmp_path, bridge_factory):
    engine = SlowEngine(delay=0.1)

    async def scenario():
        tunnel = XrayTunnel(FakePacketFlow(), engine, bridge_factory)
        await asyncio.gather(
            tunnel.run(tmp_path, JsonConfig(BASE_CONFIG), tmp_path / "final.json"),
            tunnel.stop(),
        )
        assert tunnel.state == TunnelState.STOPPED
        assert not tunnel.is_running
        assert tunnel.local_port is None

    asyncio.run(scenario())
    assert len(engine.start_calls) == 1
    assert engine.stop_calls == 1
    assert bridge_factory.bridge.disconnected


def test_released_packet_flow_ends_relay(tmp_path, engine, bridge_factory):
    async def scenario():
        tunnel, flow, _path = await start_tunnel(tmp_path, engine, bridge_factory)
        # relay is now parked in read_packets()
        await asyncio.sleep(0)
        queue = flow.queue
        del flow
        gc.collect()

        queue.put_nowait([IPV4_PACKET])
        await wait_until(lambda: tunnel._relay_task.done())
        assert tunnel._relay_task.exception() is None
        assert bridge_factory.bridge.packets == [IPV4_PACKET]

        tunnel.write(IPV4_PACKET)
        await asyncio.sleep(0.05)
        assert tunnel.bytes_transferred.received == 0

        await tunnel.stop()
        assert tunnel.state == TunnelState.STOPPED

    asyncio.run(scenario())
