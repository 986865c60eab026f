"""In-memory positive and negative resolution caches."""
import threading
from typing import Dict, Hashable, Optional, Set


class ResolutionCache:
    """
    Remembers identities already resolved and identities known to be absent.

    Lives as long as its owning locator; nothing is persisted or evicted.
    A key is never held in both maps at once.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._found: Dict[Hashable, str] = {}
        self._missing: Set[Hashable] = set()

    def get(self, key: Hashable) -> Optional[str]:
        with self._lock:
            return self._found.get(key)

    def is_missing(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._missing

    def record_found(self, key: Hashable, path: str):
        with self._lock:
            self._missing.discard(key)
            self._found[key] = path

    def record_missing(self, key: Hashable):
        with self._lock:
            if key not in self._found:
                self._missing.add(key)

    def clear(self):
        with self._lock:
            self._found.clear()
            self._missing.clear()

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return {'found': len(self._found), 'missing': len(self._missing)}

    def __len__(self) -> int:
        with self._lock:
            return len(self._found) + len(self._missing)
