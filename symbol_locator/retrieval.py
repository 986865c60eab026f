"""Symbol server retrieval strategy.

For one server target the artifact is looked up as, in order:
    1. the compressed payload (last character of the name replaced by '_')
    2. the artifact itself
    3. a file.ptr redirection record in the same index directory
The first hit is placed in the cache directory and its path returned.
"""
import os
import platform
import posixpath
import subprocess
import threading
import uuid
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, Optional

import requests

from .cache_store import TEMP_PREFIX, LocalCacheStore
from .config import DEFAULT_TIMEOUT
from .keys import compressed_index_path, pointer_index_path
from .transport import Transport, create_session, is_remote_target, transport_for
from .utils import log

PATH_PREFIX = "PATH:"
MESSAGE_PREFIX = "MSG:"

EXPAND_TIMEOUT = 60


def expand_cab(cab_path: str, output_path: str) -> bool:
    """Decompress a CAB file (compressed PDB)."""
    try:
        if platform.system() == 'Windows':
            # CREATE_NO_WINDOW flag prevents console window from appearing
            result = subprocess.run(
                ['expand', cab_path, output_path],
                capture_output=True,
                timeout=EXPAND_TIMEOUT,
                creationflags=getattr(subprocess, 'CREATE_NO_WINDOW', 0)
            )
            return result.returncode == 0 and os.path.isfile(output_path)

        # cabextract names the output after the file stored in the cabinet,
        # so pipe it to the requested path instead
        with open(output_path, 'wb') as out:
            result = subprocess.run(
                ['cabextract', '--pipe', cab_path],
                stdout=out,
                stderr=subprocess.PIPE,
                timeout=EXPAND_TIMEOUT
            )
        return result.returncode == 0 and os.path.getsize(output_path) > 0
    except (OSError, subprocess.SubprocessError) as e:
        log(f"Expanding {cab_path} failed: {e}")
        return False


class ServerRetriever:
    """
    Pulls artifacts from symbol servers into local caches.

    Concurrent requests for the same artifact are serialized so that only
    one transfer happens; requests for different artifacts don't block
    each other.
    """

    def __init__(self, timeout: float = DEFAULT_TIMEOUT,
                 decompressor: Optional[Callable[[str, str], bool]] = None,
                 session: Optional[requests.Session] = None):
        self.timeout = timeout
        self.decompressor = decompressor or expand_cab
        self._session = session
        self._session_lock = threading.Lock()
        # final path -> [lock, number of callers holding or waiting on it]
        self._path_locks: Dict[str, List] = {}
        self._path_locks_guard = threading.Lock()

    def _get_session(self) -> requests.Session:
        with self._session_lock:
            if self._session is None:
                self._session = create_session()
            return self._session

    def _transport(self, target: str) -> Transport:
        session = self._get_session() if is_remote_target(target) else None
        return transport_for(target, timeout=self.timeout, session=session)

    @contextmanager
    def _locked(self, final_path: str) -> Iterator[None]:
        with self._path_locks_guard:
            entry = self._path_locks.get(final_path)
            if entry is None:
                entry = self._path_locks[final_path] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._path_locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._path_locks[final_path]

    def try_get_file_from_server(self, target: str, index_path: str, cache_dir: str) -> Optional[str]:
        """
        Retrieve one artifact from one server into cache_dir.

        Args:
            target: Server URL or share path; empty for a cache-only element
            index_path: Index path of the artifact
            cache_dir: Cache directory that receives the artifact

        Returns:
            Local path of the artifact, or None if this server doesn't have it
        """
        store = LocalCacheStore(cache_dir)
        if store.exists(index_path):
            return str(store.path_for(index_path))
        if not target:
            return None

        with self._locked(str(store.path_for(index_path))):
            transport = self._transport(target)
            attempts = (
                ("compressed", self._try_compressed),
                ("direct", self._try_direct),
                ("file.ptr", self._try_pointer),
            )
            for name, attempt in attempts:
                if store.exists(index_path):
                    return str(store.path_for(index_path))
                try:
                    path = attempt(transport, index_path, store)
                except (OSError, requests.RequestException) as e:
                    log(f"  {name} fetch of '{index_path}' from '{target}' failed: {e}")
                    continue
                if path:
                    return path
        return None

    def _try_compressed(self, transport: Transport, index_path: str,
                        store: LocalCacheStore) -> Optional[str]:
        compressed_path = compressed_index_path(index_path)
        if compressed_path == index_path:
            return None

        # The payload lands on a private staging name, never a cache path.
        # Nothing is created locally until the server reports a hit.
        staged_as = posixpath.join(posixpath.dirname(index_path), f"{TEMP_PREFIX}{uuid.uuid4().hex}.cab")
        downloaded = store.path_for(staged_as)
        expanded = None
        try:
            if not transport.fetch_to_store(compressed_path, store, store_as=staged_as):
                return None

            expanded = store.staging_path(index_path)
            try:
                ok = self.decompressor(str(downloaded), str(expanded))
            except Exception as e:
                log(f"  Exception encountered while expanding '{compressed_path}': {e}")
                ok = False
            if not ok:
                log(f"  Could not expand '{compressed_path}' from '{transport.target}'")
                return None

            path = store.commit(expanded, index_path)
            log(f"  Expanded '{compressed_path}' from '{transport.target}' to '{path}'")
            return path
        finally:
            for leftover in (downloaded, expanded):
                if leftover and os.path.exists(str(leftover)):
                    os.remove(str(leftover))

    def _try_direct(self, transport: Transport, index_path: str,
                    store: LocalCacheStore) -> Optional[str]:
        return transport.fetch_to_store(index_path, store)

    def _try_pointer(self, transport: Transport, index_path: str,
                     store: LocalCacheStore) -> Optional[str]:
        ptr_path = pointer_index_path(index_path)
        content = transport.fetch_text(ptr_path)
        if content is None:
            return None

        content = content.strip()
        if content.startswith(PATH_PREFIX):
            redirect = content[len(PATH_PREFIX):].strip()
            if redirect and os.path.isfile(redirect):
                path = store.materialize_file(index_path, redirect)
                if path:
                    log(f"  Followed file.ptr from '{transport.target}' to '{redirect}'")
                return path
            log(f"  file.ptr target '{redirect}' from '{transport.target}' does not exist")
        elif content.startswith(MESSAGE_PREFIX):
            log(f"  file.ptr from '{transport.target}': {content[len(MESSAGE_PREFIX):].strip()}")
        else:
            log(f"  Error resolving file.ptr: content '{content}' from '{ptr_path}'")
        return None
