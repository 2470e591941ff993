"""
Core utilities and helper functions.

Base64 text helpers used by the engine envelope, JSON persistence,
executable lookup and logging setup.
"""

import base64
import binascii
import json
import logging
import os
import re
import shutil
import sys
from typing import Any, Dict, List, Optional


def safe_b64decode(data: str) -> bytes:
    """Safely decode base64 data with proper padding."""
    data = data.strip()
    padded = data + "=" * (-len(data) % 4)
    if "-" in data or "_" in data:
        return base64.urlsafe_b64decode(padded)
    return base64.b64decode(padded)


def to_base64(text: str) -> str:
    """Encode text as UTF-8 and return it base64 encoded."""
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


def from_base64(text: str) -> Optional[str]:
    """Decode base64 into UTF-8 text, or None if the input is not valid."""
    try:
        return base64.b64decode(text, validate=True).decode("utf-8")
    except (binascii.Error, ValueError):
        return None


def clean_ps_string(ps: str) -> str:
    """Clean proxy name string by removing non-ASCII characters."""
    return re.sub(r'[^\x00-\x7F]+', '', ps).strip() or "Unknown"


def resolve_executable_path(name: str, primary: Optional[str], fallbacks: List[str]) -> Optional[str]:
    """Resolve executable path with fallbacks."""
    candidates: List[str] = []
    if primary:
        candidates.append(primary)
    candidates.extend(fallbacks)
    candidates.append(name)

    seen = set()
    for path in candidates:
        if not path:
            continue

        normalized = os.path.expandvars(os.path.expanduser(path))
        if normalized in seen:
            continue
        seen.add(normalized)

        if os.path.exists(normalized):
            return normalized
        if not os.path.isabs(normalized):
            resolved = shutil.which(normalized)
            if resolved and os.path.exists(resolved):
                return resolved

    return None


def load_json(path: str, default: Dict[str, Any]) -> Dict[str, Any]:
    """Load JSON file with default fallback."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
            if isinstance(data, dict):
                return data
            return default
    except (OSError, ValueError):
        return default


def save_json(path: str, data: Dict[str, Any]) -> None:
    """Write data to a JSON file, creating the parent directory if needed.

    Errors are raised to the caller; the tunnel must not start from a
    config file that was never written.
    """
    parent = os.path.dirname(os.path.abspath(path))
    os.makedirs(parent, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, ensure_ascii=False)


def setup_logging(level: int = logging.INFO, log_file: Optional[str] = None):
    """Setup colored logging for the application."""
    from colorama import Fore, Style, init

    init(autoreset=True)

    class ColoredFormatter(logging.Formatter):
        FORMAT = "%(asctime)s | %(levelname)s | %(message)s"
        DATEFMT = "%Y-%m-%d %H:%M:%S"
        FORMATS = {
            logging.DEBUG: Fore.CYAN + FORMAT + Style.RESET_ALL,
            logging.INFO: Fore.GREEN + FORMAT + Style.RESET_ALL,
            logging.WARNING: Fore.YELLOW + FORMAT + Style.RESET_ALL,
            logging.ERROR: Fore.RED + FORMAT + Style.RESET_ALL,
            logging.CRITICAL: Fore.RED + Style.BRIGHT + FORMAT + Style.RESET_ALL,
        }

        def format(self, record):
            log_fmt = self.FORMATS.get(record.levelno, self.FORMAT)
            formatter = logging.Formatter(log_fmt, datefmt=self.DATEFMT)
            return formatter.format(record)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(ColoredFormatter())
    handlers: List[logging.Handler] = [console_handler]

    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8", mode="a")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s | %(levelname)-7s | %(name)s | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))
        handlers.append(file_handler)

    logging.basicConfig(level=logging.DEBUG, handlers=handlers, force=True)

    # Reduce noise from external libraries
    logging.getLogger("urllib3.connectionpool").setLevel(logging.ERROR)
