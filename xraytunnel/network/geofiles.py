"""
Routing database (geo file) provisioning.

Downloads ``geoip.dat`` and ``geosite.dat`` in parallel before the tunnel
starts. The engine reads them from its data directory for geoip:/geosite:
routing rules. Use lightweight builds of these files, the VPN setup waits
for them.
"""

import asyncio
import functools
import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional

import requests

from xraytunnel.core.config import DEFAULT_GEOIP_URL, DEFAULT_GEOSITE_URL
from xraytunnel.core.errors import DownloadCancelledError
from xraytunnel.core.models import DownloadJob
from xraytunnel.network.http_client import HTTPClientManager

GEOIP_FILENAME = "geoip.dat"
GEOSITE_FILENAME = "geosite.dat"

ProgressCallback = Callable[[float], None]


class ProgressAggregator:
    """Combines per-file fractions into one progress value.

    The reported value is the mean of the latest fraction of every file.
    Updates come from worker threads; the callback is invoked on ``loop``
    (or inline when no loop is given) in the order updates were merged.
    """

    def __init__(self, callback: Optional[ProgressCallback], count: int = 2,
                 loop: Optional[asyncio.AbstractEventLoop] = None):
        self.callback = callback
        self.loop = loop
        self._fractions: List[float] = [0.0] * count
        self._lock = threading.Lock()

    @property
    def total(self) -> float:
        with self._lock:
            return sum(self._fractions) / len(self._fractions)

    def update(self, index: int, fraction: float) -> float:
        with self._lock:
            self._fractions[index] = fraction
            total = sum(self._fractions) / len(self._fractions)
            if self.callback is not None:
                if self.loop is not None:
                    self.loop.call_soon_threadsafe(self.callback, total)
                else:
                    self.callback(total)
        return total


class GeoFilesLoader:
    """Downloads the geoip and geosite databases concurrently."""

    def __init__(
        self,
        http_manager: Optional[HTTPClientManager] = None,
        geoip_url: str = DEFAULT_GEOIP_URL,
        geosite_url: str = DEFAULT_GEOSITE_URL,
        timeout: float = 60,
        chunk_size: int = 64 * 1024,
    ):
        # failures surface to the caller as-is, without transport retries
        self.http_manager = http_manager or HTTPClientManager(retries=0)
        self.geoip_url = geoip_url
        self.geosite_url = geosite_url
        self.timeout = timeout
        self.chunk_size = chunk_size
        self.logger = logging.getLogger(__name__)

    async def load_geo_files(
        self,
        directory: str,
        geosite_url: Optional[str] = None,
        geoip_url: Optional[str] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> None:
        """Download both files into ``directory``, replacing existing ones.

        Raises the first transport or filesystem error. When one download
        fails the other one is cancelled; partially written files are left
        behind.
        """
        directory = os.fspath(directory)
        os.makedirs(directory, exist_ok=True)

        jobs = [
            DownloadJob(geoip_url or self.geoip_url, os.path.join(directory, GEOIP_FILENAME)),
            DownloadJob(geosite_url or self.geosite_url, os.path.join(directory, GEOSITE_FILENAME)),
        ]

        loop = asyncio.get_running_loop()
        aggregator = ProgressAggregator(progress_callback, len(jobs), loop)
        cancel_event = threading.Event()
        session = self.http_manager.get_session()
        executor = ThreadPoolExecutor(max_workers=len(jobs), thread_name_prefix="geofiles")

        self.logger.info(f"Downloading geo files into {directory}")
        try:
            futures = [
                loop.run_in_executor(
                    executor,
                    self._download_file,
                    session,
                    job,
                    functools.partial(aggregator.update, index),
                    cancel_event,
                )
                for index, job in enumerate(jobs)
            ]
            done, pending = await asyncio.wait(futures, return_when=asyncio.FIRST_EXCEPTION)

            errors = [f.exception() for f in futures if f in done and f.exception() is not None]
            if errors:
                cancel_event.set()
                if pending:
                    await asyncio.wait(pending)
                for f in pending:
                    if f.exception() is not None:
                        self.logger.debug(f"Sibling download ended with: {f.exception()}")
                raise errors[0]
        except BaseException:
            cancel_event.set()
            raise
        finally:
            executor.shutdown(wait=False)
            self.http_manager.reset_session()

        self.logger.info("Geo files downloaded")

    def _download_file(self, session: requests.Session, job: DownloadJob,
                       report: Callable[[float], float], cancel_event: threading.Event) -> None:
        """Blocking transfer of one file, run on a worker thread."""
        if cancel_event.is_set():
            raise DownloadCancelledError(job.source_url)

        part_path = job.destination + ".part"

        with session.get(job.source_url, stream=True, timeout=self.timeout) as response:
            if response.status_code != 200:
                raise requests.HTTPError(
                    f"{response.status_code} Error for url: {job.source_url}", response=response
                )

            total = int(response.headers.get("Content-Length") or 0)
            received = 0
            with open(part_path, "wb") as f:
                for chunk in response.iter_content(chunk_size=self.chunk_size):
                    if cancel_event.is_set():
                        raise DownloadCancelledError(job.source_url)
                    if not chunk:
                        continue
                    f.write(chunk)
                    received += len(chunk)
                    if total > 0:
                        # 1.0 is reported once the file is in place
                        fraction = min(received / total, 1.0)
                        if job.fraction_complete < fraction < 1.0:
                            job.fraction_complete = fraction
                            report(fraction)

        os.replace(part_path, job.destination)
        job.fraction_complete = 1.0
        report(1.0)
        self.logger.debug(f"Downloaded {job.source_url} -> {job.destination} ({received} bytes)")
