"""Defaults for symbol resolution.

Environment variables follow the debugger conventions:
    _NT_SYMBOL_PATH      search path used when none is passed explicitly
    _NT_SYMCACHE_PATH    default symbol cache directory
"""
import os
import tempfile
from typing import Optional

# Seconds before a single network probe is abandoned and treated as a miss
DEFAULT_TIMEOUT = 5.0

# Identifying client string sent to symbol servers
USER_AGENT = "Microsoft-Symbol-Server/6.13.0009.1140"

# Temporary files older than this are leftovers from abandoned attempts
STALE_TEMP_SECONDS = 60 * 60

SYMBOL_PATH_ENV = "_NT_SYMBOL_PATH"
SYMBOL_CACHE_ENV = "_NT_SYMCACHE_PATH"


def default_symbol_path() -> str:
    """Search path from the environment, or an empty path."""
    return os.environ.get(SYMBOL_PATH_ENV, "")


def default_symbol_cache() -> str:
    """Default cache directory used by servers that don't name their own."""
    configured: Optional[str] = os.environ.get(SYMBOL_CACHE_ENV)
    if configured and configured.strip():
        return configured.strip()
    return os.path.join(tempfile.gettempdir(), "symbols")
