"""
Proxy engine backed by an external xray executable.

The engine is started as a child process (``xray run -c <config>``) with
the routing databases looked up in the data directory. Share links are
converted locally by the bundled parsers.
"""

import json
import logging
import os
import re
import socket
import subprocess
import sys
import tempfile
import time
from contextlib import ExitStack
from typing import IO, List, Optional

import psutil

from xraytunnel.core.errors import InvalidResponseError, PortAllocationError
from xraytunnel.core.utils import load_json, resolve_executable_path
from xraytunnel.engine.base import ProxyEngine
from xraytunnel.parsers import ShareLinkConverter

XRAY_PATH_FALLBACKS = [
    os.path.join(os.getcwd(), "bin", "xray"),
    "/usr/local/bin/xray",
    "/usr/local/share/xray/xray",
]

_CREATION_FLAGS = subprocess.CREATE_NO_WINDOW if sys.platform == "win32" else 0


def _is_port_alive(port: int) -> bool:
    """Quick check if a local port is accepting TCP connections."""
    try:
        with socket.create_connection(("127.0.0.1", port), timeout=0.5):
            return True
    except OSError:
        return False


class XrayProcessEngine(ProxyEngine):
    """Runs xray as a managed child process."""

    def __init__(self, xray_path: str = "", startup_timeout: float = 3.0,
                 converter: Optional[ShareLinkConverter] = None):
        self.xray_path = resolve_executable_path("xray", xray_path, XRAY_PATH_FALLBACKS) or xray_path or "xray"
        self.startup_timeout = startup_timeout
        self.converter = converter or ShareLinkConverter()
        self.logger = logging.getLogger(__name__)
        self._process: Optional[subprocess.Popen] = None
        self._stderr_log: Optional[IO[bytes]] = None

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.poll() is None

    def allocate_ports(self, count: int) -> List[int]:
        """Let the OS pick ``count`` ports by binding them all at once."""
        ports: List[int] = []
        try:
            with ExitStack() as stack:
                for _ in range(count):
                    sock = stack.enter_context(socket.socket(socket.AF_INET, socket.SOCK_STREAM))
                    sock.bind(("127.0.0.1", 0))
                    ports.append(sock.getsockname()[1])
        except OSError as e:
            raise PortAllocationError(str(e))
        return ports

    def _inbound_ports(self, config_path: str) -> List[int]:
        config = load_json(config_path, {})
        ports = []
        for inbound in config.get("inbounds") or []:
            port = inbound.get("port") if isinstance(inbound, dict) else None
            if isinstance(port, int):
                ports.append(port)
        return ports

    def start(self, data_dir: str, config_path: str) -> None:
        if self.is_running:
            self.logger.info("Xray already running, restarting")
            self.stop()

        env = os.environ.copy()
        env["XRAY_LOCATION_ASSET"] = data_dir
        # a file, not a pipe: nobody drains stderr while xray runs
        self._stderr_log = tempfile.TemporaryFile(prefix="xray_stderr_")
        try:
            self._process = subprocess.Popen(
                [self.xray_path, "run", "-c", config_path],
                stdout=subprocess.DEVNULL,
                stderr=self._stderr_log,
                env=env,
                creationflags=_CREATION_FLAGS,
            )
        except OSError as e:
            self._close_stderr_log()
            raise InvalidResponseError(f"failed to launch {self.xray_path}: {e}")

        ports = self._inbound_ports(config_path)
        deadline = time.monotonic() + self.startup_timeout
        while time.monotonic() < deadline:
            if self._process.poll() is not None:
                self._raise_early_exit()
            if ports and all(_is_port_alive(p) for p in ports):
                break
            time.sleep(0.1)

        if self._process.poll() is not None:
            self._raise_early_exit()

        self.logger.info(f"Xray started (pid {self._process.pid}) with {config_path}")

    def _raise_early_exit(self):
        process = self._process
        self._process = None
        rc = process.returncode
        stderr_out = self._read_stderr_tail()
        self._close_stderr_log()
        err_msg = stderr_out.decode("utf-8", errors="ignore").strip()
        if len(err_msg) > 800:
            err_msg = err_msg[-800:]
        raise InvalidResponseError(f"xray exited early (code {rc}): {err_msg}")

    def _read_stderr_tail(self, limit: int = 800) -> bytes:
        log = self._stderr_log
        if log is None:
            return b""
        try:
            log.seek(0, os.SEEK_END)
            log.seek(max(0, log.tell() - limit))
            return log.read()
        except (OSError, ValueError):
            return b""

    def _close_stderr_log(self):
        log = self._stderr_log
        self._stderr_log = None
        if log is not None:
            log.close()

    def stop(self) -> None:
        process = self._process
        self._process = None
        if process is None or process.poll() is not None:
            self._close_stderr_log()
            return

        # xray may have spawned helpers; reap them together with the parent
        try:
            children = psutil.Process(process.pid).children(recursive=True)
        except psutil.Error:
            children = []

        process.terminate()
        try:
            process.wait(timeout=3)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait(timeout=1)

        for child in children:
            try:
                child.kill()
            except psutil.Error:
                pass
        self._close_stderr_log()
        self.logger.info("Xray stopped")

    def version(self) -> str:
        try:
            result = subprocess.run(
                [self.xray_path, "version"],
                capture_output=True, text=True, timeout=5,
                creationflags=_CREATION_FLAGS,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise InvalidResponseError(str(e))
        output = (result.stdout or "").strip()
        m = re.search(r"Xray\s+(\d+\.\d+(?:\.\d+)?\S*)", output)
        if result.returncode != 0 or not m:
            raise InvalidResponseError(output or (result.stderr or "").strip())
        return m.group(1)

    def share_link_to_config(self, uri: str) -> str:
        return json.dumps(self.converter.convert(uri))
