"""
Local port allocation through the proxy engine.
"""

import logging
from typing import List

from xraytunnel.core.errors import PortAllocationError
from xraytunnel.engine.base import ProxyEngine

logger = logging.getLogger(__name__)


class PortAllocator:
    """Asks the engine for unbound local ports.

    Allocation is best-effort: another process may bind a returned port
    before the caller does.
    """

    def __init__(self, engine: ProxyEngine):
        self.engine = engine

    def allocate(self, count: int = 1) -> List[int]:
        if count < 1:
            raise ValueError(f"port count must be positive, got {count}")

        try:
            ports = list(self.engine.allocate_ports(count))
        except PortAllocationError:
            raise
        except Exception as e:
            raise PortAllocationError(str(e)) from e

        if len(ports) < count:
            raise PortAllocationError(f"requested {count} ports, engine returned {len(ports)}")
        ports = ports[:count]
        if len(set(ports)) != len(ports):
            raise PortAllocationError(f"engine returned duplicate ports: {ports}")
        for port in ports:
            if not isinstance(port, int) or not 0 < port < 65536:
                raise PortAllocationError(f"engine returned invalid port: {port!r}")

        logger.debug(f"Allocated local ports {ports}")
        return ports
