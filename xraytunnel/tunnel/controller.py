"""
Tunnel relay and lifecycle controller.

Wires a virtual interface's packet flow to the Xray engine through a local
SOCKS bridge:

    packet flow --read--> bridge --SOCKS--> xray --> outbound proxy
    packet flow <--write-- bridge <--SOCKS-- xray <--

All session state is mutated on the event loop thread. Bridge callbacks
arriving from other threads are marshalled onto the loop first, and
``run``/``stop`` additionally serialize on an asyncio lock. Blocking engine
calls run on the default executor.
"""

import asyncio
import logging
import os
import weakref
from typing import Optional, Union

from xraytunnel.core.errors import TunnelSetupError
from xraytunnel.core.models import (
    IntermediateConfig, JsonConfig, ShareLinkConfig, SniffingOptions,
    TransferCounters, TunnelSession, TunnelState
)
from xraytunnel.core.utils import save_json
from xraytunnel.engine.base import (
    BridgeFactory, PacketFlow, ProxyEngine, TunWriter, build_endpoint_spec
)
from xraytunnel.tunnel.ipversion import address_family
from xraytunnel.tunnel.patch import LOCAL_LISTEN_ADDRESS, ConfigPatcher
from xraytunnel.tunnel.ports import PortAllocator

PathLike = Union[str, "os.PathLike[str]"]


class XrayTunnel(TunWriter):
    """Owns one tunnel session at a time: start, relay, stop."""

    def __init__(
        self,
        packet_flow: PacketFlow,
        engine: ProxyEngine,
        bridge_factory: BridgeFactory,
        patcher: Optional[ConfigPatcher] = None,
        port_allocator: Optional[PortAllocator] = None,
    ):
        # The interface belongs to the host; do not keep it alive
        self._packet_flow = weakref.ref(packet_flow)
        self.engine = engine
        self.bridge_factory = bridge_factory
        self.patcher = patcher or ConfigPatcher()
        self.port_allocator = port_allocator or PortAllocator(engine)
        self.logger = logging.getLogger(__name__)

        self._lock = asyncio.Lock()
        self._state = TunnelState.STOPPED
        self._session: Optional[TunnelSession] = None
        self._counters = TransferCounters()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._relay_task: Optional[asyncio.Task] = None
        self._stop_task: Optional[asyncio.Task] = None

    @property
    def state(self) -> TunnelState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == TunnelState.RUNNING

    @property
    def local_port(self) -> Optional[int]:
        session = self._session
        return session.local_port if session else None

    @property
    def bytes_transferred(self) -> TransferCounters:
        """Snapshot of the current session's counters, or the last session's."""
        session = self._session
        return session.counters if session else self._counters

    async def run(
        self,
        data_dir: PathLike,
        config: IntermediateConfig,
        final_config_path: PathLike,
        inbound_sniffing: Optional[SniffingOptions] = None,
    ) -> None:
        """Start the engine and the relay.

        Returns once the engine is up and the relay loop is scheduled. Does
        nothing if a session is already active.
        """
        async with self._lock:
            if self._state != TunnelState.STOPPED:
                self.logger.debug(f"run() ignored, tunnel is {self._state.value}")
                return

            self._state = TunnelState.STARTING
            self._loop = asyncio.get_running_loop()
            session: Optional[TunnelSession] = None
            try:
                port = self.port_allocator.allocate(1)[0]
                session = TunnelSession(local_port=port)
                self._setup_bridge(session)

                document = self._resolve_config(config)
                final_config = self.patcher.patch(document, port, inbound_sniffing)
                save_json(os.fspath(final_config_path), final_config)

                # engine start may block while the engine comes up
                await self._loop.run_in_executor(
                    None, self.engine.start, os.fspath(data_dir), os.fspath(final_config_path)
                )
            except BaseException:
                if session is not None:
                    self._release_bridge(session)
                self._state = TunnelState.STOPPED
                raise

            session.running = True
            self._session = session
            self._state = TunnelState.RUNNING
            self._relay_task = self._loop.create_task(self._relay_loop(session))

        self.logger.info(f"Tunnel running, SOCKS inbound on {LOCAL_LISTEN_ADDRESS}:{session.local_port}")

    async def stop(self) -> None:
        """Stop the engine and release the bridge. Safe to call at any time."""
        async with self._lock:
            session = self._session
            if session is not None:
                self._state = TunnelState.STOPPING
            await self._stop_engine()

            if session is None:
                self._state = TunnelState.STOPPED
                return

            self._release_bridge(session)
            session.running = False
            self._counters = session.counters
            self._session = None
            self._state = TunnelState.STOPPED

        self.logger.info(
            f"Tunnel stopped (received {self._counters.received} bytes, sent {self._counters.sent} bytes)"
        )

    async def _stop_engine(self):
        """Best-effort engine stop, run off the loop thread."""
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self.engine.stop)
        except Exception as e:
            self.logger.debug(f"Ignoring engine stop error: {e}")

    def _setup_bridge(self, session: TunnelSession):
        spec = build_endpoint_spec(LOCAL_LISTEN_ADDRESS, session.local_port)
        try:
            client = self.bridge_factory.new_client(spec)
        except TunnelSetupError:
            raise
        except Exception as e:
            raise TunnelSetupError(str(e))
        if client is None:
            raise TunnelSetupError("no client returned")
        session.client = client

        try:
            bridge = self.bridge_factory.connect(self, client, True)
        except TunnelSetupError:
            raise
        except Exception as e:
            raise TunnelSetupError(f"failed to bind XRay: {e}")
        if bridge is None:
            raise TunnelSetupError("failed to bind XRay: no bridge returned")
        session.bridge = bridge

    def _release_bridge(self, session: TunnelSession):
        bridge = session.bridge
        session.bridge = None
        session.client = None
        if bridge is None:
            return
        try:
            bridge.disconnect()
        except Exception as e:
            self.logger.warning(f"Bridge disconnect failed: {e}")

    def _resolve_config(self, config: IntermediateConfig) -> str:
        if isinstance(config, JsonConfig):
            return config.document
        if isinstance(config, ShareLinkConfig):
            return self.engine.share_link_to_config(config.uri)
        raise TypeError(f"unsupported config type: {type(config).__name__}")

    async def _relay_loop(self, session: TunnelSession):
        """Move packets from the interface into the bridge until stopped."""
        while session.running:
            flow = self._packet_flow()
            if flow is None:
                self.logger.warning("Packet flow is gone, relay loop exiting")
                break

            try:
                packets, _protocols = await flow.read_packets()
            except Exception as e:
                self.logger.warning(f"Packet flow read failed, relay loop exiting: {e}")
                break
            finally:
                flow = None

            # stop() during a pending read takes effect here
            bridge = session.bridge
            if not session.running or bridge is None:
                break

            total_written = 0
            for packet in packets:
                try:
                    total_written += bridge.write(packet)
                except Exception as e:
                    self.logger.debug(f"Dropped outbound packet ({len(packet)} bytes): {e}")

            session.counters = session.counters.increment_sent(total_written)

        self.logger.debug("Relay loop finished")

    # TunWriter, called by the bridge from its own threads

    def write(self, data: bytes) -> None:
        if not data:
            return
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._deliver, bytes(data))
        except RuntimeError:
            # Loop shut down between the check and the call
            pass

    def close(self) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._schedule_stop)
        except RuntimeError:
            pass

    def _schedule_stop(self):
        self._stop_task = asyncio.get_running_loop().create_task(self.stop())

    def _deliver(self, data: bytes):
        session = self._session
        if session is None or not session.running:
            return
        flow = self._packet_flow()
        if flow is None:
            return
        flow.write_packets([data], [address_family(data)])
        session.counters = session.counters.increment_received(len(data))
