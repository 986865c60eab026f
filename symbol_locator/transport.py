"""Fetching artifacts from a symbol server.

Two variants share one interface: HTTP endpoints (remote) and directories
or UNC shares (local). Both treat "not there" as a miss and return None.
"""
import os
from typing import Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .cache_store import LocalCacheStore
from .config import DEFAULT_TIMEOUT, USER_AGENT
from .utils import log

DOWNLOAD_CHUNK_SIZE = 8192


def create_session() -> requests.Session:
    """Create an HTTP session with retry configuration."""
    session = requests.Session()
    retry_strategy = Retry(
        total=2,
        backoff_factor=0.5,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods=["GET"],
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retry_strategy)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    session.headers.update({'User-Agent': USER_AGENT})
    return session


def is_remote_target(target: str) -> bool:
    lowered = target.lower()
    return lowered.startswith('http:') or lowered.startswith('https:')


class Transport:
    """Fetch capability for one symbol server target."""

    def __init__(self, target: str):
        self.target = target

    def fetch_to_store(self, index_path: str, store: LocalCacheStore,
                       store_as: Optional[str] = None) -> Optional[str]:
        """
        Copy the artifact at index_path into the store.

        store_as overrides the index path used inside the store. Returns the
        local path, or None on a miss.
        """
        raise NotImplementedError

    def fetch_text(self, index_path: str) -> Optional[str]:
        """Return the text content at index_path; None on a miss."""
        raise NotImplementedError


class HttpTransport(Transport):
    """Remote symbol server reached with GET requests."""

    def __init__(self, target: str, timeout: float = DEFAULT_TIMEOUT,
                 session: Optional[requests.Session] = None):
        super().__init__(target)
        self.timeout = timeout
        self.session = session or create_session()

    def url_for(self, index_path: str) -> str:
        relative = index_path.replace('\\', '/').lstrip('/')
        return f"{self.target.rstrip('/')}/{relative}"

    def _get(self, url: str) -> Optional[requests.Response]:
        try:
            response = self.session.get(url, stream=True, timeout=self.timeout,
                                        headers={'User-Agent': USER_AGENT})
        except requests.Timeout:
            log(f"    -> Timeout after {self.timeout}s: {url}")
            return None
        except requests.RequestException as e:
            log(f"    -> Probe of {url} failed: {str(e)[:80]}")
            return None

        if response.status_code != 200:
            log(f"    -> HTTP {response.status_code}: {url}")
            response.close()
            return None
        return response

    def fetch_to_store(self, index_path: str, store: LocalCacheStore,
                       store_as: Optional[str] = None) -> Optional[str]:
        url = self.url_for(index_path)
        response = self._get(url)
        if response is None:
            return None

        # Content-Length counts encoded bytes; only trust it for identity bodies
        length = None
        content_length = response.headers.get('Content-Length')
        encoding = response.headers.get('Content-Encoding', 'identity')
        if content_length and content_length.isdigit() and encoding == 'identity':
            length = int(content_length)

        try:
            path = store.materialize(store_as or index_path, response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE), length)
        except requests.RequestException as e:
            log(f"    -> Download of {url} interrupted: {str(e)[:80]}")
            return None
        finally:
            response.close()

        if path:
            log(f"    -> Downloaded {url}")
        return path

    def fetch_text(self, index_path: str) -> Optional[str]:
        url = self.url_for(index_path)
        response = self._get(url)
        if response is None:
            return None
        try:
            return response.text
        except requests.RequestException as e:
            log(f"    -> Reading {url} failed: {str(e)[:80]}")
            return None
        finally:
            response.close()


class FileShareTransport(Transport):
    """Symbol server laid out on a local directory or file share."""

    def source_path(self, index_path: str) -> str:
        parts = [p for p in index_path.replace('\\', '/').split('/') if p]
        return os.path.join(self.target, *parts)

    def fetch_to_store(self, index_path: str, store: LocalCacheStore,
                       store_as: Optional[str] = None) -> Optional[str]:
        source = self.source_path(index_path)
        if not os.path.isfile(source):
            return None
        path = store.materialize_file(store_as or index_path, source)
        if path:
            log(f"    -> Copied {source}")
        return path

    def fetch_text(self, index_path: str) -> Optional[str]:
        source = self.source_path(index_path)
        if not os.path.isfile(source):
            return None
        try:
            with open(source, 'r', encoding='utf-8', errors='replace') as f:
                return f.read()
        except OSError as e:
            log(f"    -> Reading {source} failed: {e}")
            return ""


def transport_for(target: str, timeout: float = DEFAULT_TIMEOUT,
                  session: Optional[requests.Session] = None) -> Transport:
    """Pick the transport variant for a server target."""
    if is_remote_target(target):
        return HttpTransport(target, timeout=timeout, session=session)
    return FileShareTransport(target)
