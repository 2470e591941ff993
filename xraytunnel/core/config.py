"""
Configuration management for the tunnel.

Defaults are overridden by an optional env file and then by environment
variables, so a host application can tune the tunnel without code changes.
"""

import logging
import os
import re
from typing import Any, Dict, List, Optional

DEFAULT_GEOIP_URL = "https://github.com/Loyalsoldier/v2ray-rules-dat/releases/latest/download/geoip.dat"
DEFAULT_GEOSITE_URL = "https://github.com/Loyalsoldier/v2ray-rules-dat/releases/latest/download/geosite.dat"
DEFAULT_NAME_SERVERS = ["8.8.8.8", "1.1.1.1"]
DEFAULT_QUERY_STRATEGY = "UseIPv4"

QUERY_STRATEGIES = {"UseIP", "UseIPv4", "UseIPv6"}
LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def _split_list(value: str) -> List[str]:
    return [v.strip() for v in value.split(",") if v.strip()]


class TunnelConfig:
    """Central configuration manager for the tunnel."""

    def __init__(self, env_file: Optional[str] = None):
        self.env_file = env_file or os.getenv("XRAYTUNNEL_ENV_FILE", "xraytunnel.env")
        self._config: Dict[str, Any] = {}
        self._load_default_config()
        self._load_env_file()
        self._load_from_environment()

    def _load_default_config(self):
        """Load default configuration values."""
        runtime_dir = os.path.join(os.getcwd(), "runtime")

        self._config = {
            # Engine
            "xray_path": "",
            "engine_startup_timeout": 3.0,

            # Paths
            "data_dir": runtime_dir,
            "final_config_path": os.path.join(runtime_dir, "config_final.json"),

            # Geo files
            "geoip_url": DEFAULT_GEOIP_URL,
            "geosite_url": DEFAULT_GEOSITE_URL,
            "download_timeout": 60,
            "download_chunk_size": 64 * 1024,

            # DNS block injected when the base config has none
            "name_servers": list(DEFAULT_NAME_SERVERS),
            "query_strategy": DEFAULT_QUERY_STRATEGY,

            # Logging
            "log_level": "INFO",
            "log_file": None,
        }

    def _load_env_file(self):
        """Load configuration from environment file."""
        try:
            if not self.env_file or not os.path.exists(self.env_file):
                return

            with open(self.env_file, "r", encoding="utf-8") as f:
                for raw_line in f:
                    line = raw_line.strip()
                    if not line or line.startswith("#"):
                        continue

                    key = None
                    value = None

                    # Handle PowerShell environment files
                    if line.lower().startswith("$env:"):
                        m = re.match(r"^\$env:([A-Za-z_][A-Za-z0-9_]*)\s*=\s*(.+)$", line)
                        if m:
                            key = m.group(1).strip()
                            value = m.group(2).strip()
                    elif "=" in line:
                        left, right = line.split("=", 1)
                        key = left.strip()
                        value = right.strip()

                    if key and value is not None:
                        if value.startswith('"') and value.endswith('"') and len(value) >= 2:
                            value = value[1:-1]
                        elif value.startswith("'") and value.endswith("'") and len(value) >= 2:
                            value = value[1:-1]

                        os.environ.setdefault(key, value)
        except OSError as e:
            logging.getLogger(__name__).warning(f"Failed to load env file: {e}")

    def _load_from_environment(self):
        """Override configuration with environment variables."""
        env_mappings = {
            "XRAYTUNNEL_XRAY_PATH": ("xray_path", str),
            "XRAY_PATH": ("xray_path", str),
            "XRAYTUNNEL_STARTUP_TIMEOUT": ("engine_startup_timeout", float),
            "XRAYTUNNEL_DATA_DIR": ("data_dir", str),
            "XRAYTUNNEL_FINAL_CONFIG": ("final_config_path", str),
            "XRAYTUNNEL_GEOIP_URL": ("geoip_url", str),
            "XRAYTUNNEL_GEOSITE_URL": ("geosite_url", str),
            "XRAYTUNNEL_DOWNLOAD_TIMEOUT": ("download_timeout", int),
            "XRAYTUNNEL_DOWNLOAD_CHUNK": ("download_chunk_size", int),
            "XRAYTUNNEL_NAME_SERVERS": ("name_servers", _split_list),
            "XRAYTUNNEL_QUERY_STRATEGY": ("query_strategy", str),
            "XRAYTUNNEL_LOG_LEVEL": ("log_level", lambda x: x.upper()),
            "XRAYTUNNEL_LOG_FILE": ("log_file", str),
        }

        for env_key, (config_key, converter) in env_mappings.items():
            if env_key in os.environ:
                try:
                    self._config[config_key] = converter(os.environ[env_key])
                except (ValueError, TypeError):
                    logging.getLogger(__name__).warning(
                        f"Invalid value for {env_key}: {os.environ[env_key]}"
                    )

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value."""
        return self._config.get(key, default)

    def set(self, key: str, value: Any):
        """Set configuration value."""
        self._config[key] = value

    def update(self, config_dict: Dict[str, Any]):
        """Update multiple configuration values."""
        self._config.update(config_dict)

    def to_dict(self) -> Dict[str, Any]:
        """Get configuration as dictionary."""
        return self._config.copy()

    def validate(self) -> List[str]:
        """Validate configuration and return list of errors."""
        errors = []

        numeric_fields = [
            ("download_timeout", 1, 3600),
            ("download_chunk_size", 1024, 16 * 1024 * 1024),
        ]
        for field, min_val, max_val in numeric_fields:
            value = self.get(field)
            if not isinstance(value, int) or value < min_val or value > max_val:
                errors.append(f"{field} must be between {min_val} and {max_val}")

        timeout = self.get("engine_startup_timeout")
        if not isinstance(timeout, (int, float)) or timeout <= 0:
            errors.append("engine_startup_timeout must be positive")

        if not self.get("name_servers"):
            errors.append("name_servers must not be empty")

        if self.get("query_strategy") not in QUERY_STRATEGIES:
            errors.append(f"query_strategy must be one of {', '.join(sorted(QUERY_STRATEGIES))}")

        if self.get("log_level") not in LOG_LEVELS:
            errors.append(f"log_level must be one of {', '.join(sorted(LOG_LEVELS))}")

        return errors
