"""
HTTP session management.

Pooled requests sessions with retry on transient server errors, shared by
the geo file loader's download workers.
"""

import logging
from typing import Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

DEFAULT_USER_AGENT = "xraytunnel/1.0 (+https://github.com/XTLS/Xray-core)"


class HTTPClientManager:
    """Owns one requests session with connection pooling."""

    def __init__(self, pool_connections: int = 4, pool_maxsize: int = 4, retries: int = 2):
        self.pool_connections = pool_connections
        self.pool_maxsize = pool_maxsize
        self.retries = retries
        self.logger = logging.getLogger(__name__)
        self._session: Optional[requests.Session] = None

    def _create_session(self) -> requests.Session:
        """Create a requests session with connection pooling."""
        session = requests.Session()
        retry_strategy = Retry(
            total=self.retries,
            backoff_factor=0.3,
            status_forcelist=[500, 502, 503, 504] if self.retries else [],
            allowed_methods=["GET", "HEAD"],
            raise_on_status=False,
        )
        adapter = HTTPAdapter(
            pool_connections=self.pool_connections,
            pool_maxsize=self.pool_maxsize,
            max_retries=retry_strategy
        )
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        session.headers["User-Agent"] = DEFAULT_USER_AGENT
        return session

    def get_session(self) -> requests.Session:
        """Get or create the shared HTTP session."""
        if self._session is None:
            self._session = self._create_session()
        return self._session

    def reset_session(self):
        """Close and reset session."""
        if self._session:
            try:
                self._session.close()
            except Exception as e:
                self.logger.debug(f"Session close failed: {e}")
            self._session = None
