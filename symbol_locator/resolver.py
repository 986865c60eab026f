"""Symbol and binary resolution.

SymbolLocator finds a PDB (by name, GUID and age) or a PE image (by name,
build timestamp and image size) on the configured symbol path and returns
a validated local path. Results, including failures, are remembered for
the lifetime of the locator so repeated requests cost nothing.
"""
from __future__ import annotations

import os
import re
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Hashable, List, Optional, Tuple

import requests

from .cache_store import LocalCacheStore
from .config import DEFAULT_TIMEOUT, STALE_TEMP_SECONDS, default_symbol_cache, default_symbol_path
from .keys import BinaryKey, GuidLike, PdbKey, to_uuid
from .memo import ResolutionCache
from .retrieval import ServerRetriever
from .search_path import SymPathElement, format_symbol_path, parse_symbol_path
from .utils import log
from .validation import read_pdb_info_from_pe, validate_binary, validate_pdb


class ResolveStatus(Enum):
    """Outcome of a resolution request."""
    FOUND = "found"
    NOT_FOUND = "not_found"
    INVALID_REQUEST = "invalid_request"


@dataclass
class ResolveResult:
    """Result of find_pdb / find_binary. Truthy only when a file was found."""
    status: ResolveStatus
    path: Optional[str] = None
    source: Optional[str] = None  # "direct", "memo", "local" or "server"
    error: Optional[str] = None

    def __bool__(self) -> bool:
        return self.status is ResolveStatus.FOUND

    @classmethod
    def found(cls, path: str, source: str) -> 'ResolveResult':
        return cls(ResolveStatus.FOUND, path=path, source=source)

    @classmethod
    def not_found(cls) -> 'ResolveResult':
        return cls(ResolveStatus.NOT_FOUND)

    @classmethod
    def invalid(cls, error: str) -> 'ResolveResult':
        return cls(ResolveStatus.INVALID_REQUEST, error=error)


MAX_U32 = 0xFFFFFFFF
MIN_I32 = -0x80000000


def simple_name(name: str) -> str:
    """File name component of a Windows or POSIX path."""
    return re.split(r"[\\/]", name)[-1]


@dataclass
class _Request:
    """Everything the decision table needs about one request."""
    key: Hashable
    requested: str  # name exactly as the caller passed it
    lookup_name: str  # file name joined onto local directories
    validate_direct: Callable[[str], bool]
    validate_candidate: Callable[[str], bool]
    validate_server_copy: Optional[Callable[[str], bool]]


# (label, applies to request?, action). An action returns a result to stop,
# or None to fall through to the next row.
_Step = Tuple[str, Callable[[_Request], bool],
              Callable[['SymbolLocator', _Request], Optional[ResolveResult]]]


def _always(request: _Request) -> bool:
    return True


def _is_full_path(request: _Request) -> bool:
    return request.requested != request.lookup_name


class SymbolLocator:
    """
    Locates PDBs and binaries on a symbol path.

    The symbol path mixes local directories and symbol servers (HTTP or
    file share), e.g. "C:\\symbols;SRV*C:\\cache*https://msdl.microsoft.com/download/symbols".
    Server artifacts are copied into a local cache; servers without their
    own cache directory share symbol_cache.

    Safe to call from several threads at once; the locator never starts
    threads itself.
    """

    def __init__(self, symbol_path: Optional[str] = None,
                 symbol_cache: Optional[str] = None,
                 timeout: float = DEFAULT_TIMEOUT,
                 decompressor: Optional[Callable[[str, str], bool]] = None,
                 session: Optional[requests.Session] = None):
        """
        Initialize the locator.

        Args:
            symbol_path: Search path. Defaults to _NT_SYMBOL_PATH.
            symbol_cache: Default cache directory. Defaults to _NT_SYMCACHE_PATH or <temp>/symbols.
            timeout: Seconds before a network probe is abandoned
            decompressor: Callable(compressed_path, output_path) -> bool for compressed payloads
            session: HTTP session to use for remote servers
        """
        self._elements: List[SymPathElement] = []
        self.symbol_path = symbol_path if symbol_path is not None else default_symbol_path()
        self.symbol_cache = symbol_cache or default_symbol_cache()
        self.cache = ResolutionCache()
        self.retriever = ServerRetriever(timeout=timeout, decompressor=decompressor, session=session)

        self._stats_lock = threading.Lock()
        self.stats = {
            'resolved': 0,
            'memo_hits': 0,
            'negative_hits': 0,
            'not_found': 0,
            'invalid': 0,
            'server_fetches': 0,
            'mismatches': 0,
        }

    @property
    def symbol_path(self) -> str:
        return format_symbol_path(self._elements)

    @symbol_path.setter
    def symbol_path(self, value: Optional[str]):
        self._elements = parse_symbol_path(value)

    @property
    def elements(self) -> List[SymPathElement]:
        return list(self._elements)

    @property
    def timeout(self) -> float:
        return self.retriever.timeout

    @timeout.setter
    def timeout(self, value: float):
        self.retriever.timeout = value

    def _count(self, stat: str):
        with self._stats_lock:
            self.stats[stat] += 1

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def find_pdb(self, pdb_name: str, guid: GuidLike, age: int) -> ResolveResult:
        """
        Locate a PDB.

        Args:
            pdb_name: Name (or full build path) the PDB is indexed under
            guid: PDB GUID
            age: PDB age

        Returns:
            ResolveResult; FOUND results carry a local path
        """
        if not pdb_name:
            return self._invalid("empty pdb name")
        name = simple_name(pdb_name)
        if not name:
            return self._invalid(f"no file name in '{pdb_name}'")
        try:
            guid = to_uuid(guid)
        except (ValueError, TypeError) as e:
            return self._invalid(f"bad guid {guid!r}: {e}")
        try:
            age = int(age)
        except (ValueError, TypeError):
            return self._invalid(f"bad age {age!r}")
        if age < 0 or age > MAX_U32:
            return self._invalid(f"bad age {age}")

        def matches(path: str) -> bool:
            return validate_pdb(path, guid, age)

        request = _Request(
            key=PdbKey(name, guid, age),
            lookup_name=name,
            requested=pdb_name,
            validate_direct=matches,
            validate_candidate=matches,
            validate_server_copy=None,
        )
        return self._run(self._PDB_STEPS, request)

    def find_binary(self, file_name: str, timestamp: int, image_size: int,
                    check_properties: bool = True) -> ResolveResult:
        """
        Locate a PE image, copying it from a symbol server if needed.

        Args:
            file_name: Name or full original path of the image
            timestamp: Build timestamp the image is indexed under
            image_size: Image size the image is indexed under
            check_properties: Whether the caller-supplied path must match
                timestamp and size, or merely exist

        Returns:
            ResolveResult; FOUND results carry a local path
        """
        if not file_name:
            return self._invalid("empty file name")
        name = simple_name(file_name)
        if not name:
            return self._invalid(f"no file name in '{file_name}'")
        try:
            timestamp = int(timestamp)
            image_size = int(image_size)
        except (ValueError, TypeError):
            return self._invalid(f"bad timestamp {timestamp!r} or image size {image_size!r}")
        # Negative values are signed 32-bit fields and wrap; wider values are not PE fields
        if not (MIN_I32 <= timestamp <= MAX_U32 and MIN_I32 <= image_size <= MAX_U32):
            return self._invalid(f"timestamp {timestamp} or image size {image_size} out of 32-bit range")

        def matches(path: str) -> bool:
            return validate_binary(path, timestamp, image_size, True)

        request = _Request(
            key=BinaryKey(name, timestamp, image_size),
            lookup_name=name,
            requested=file_name,
            validate_direct=lambda path: validate_binary(path, timestamp, image_size, check_properties),
            validate_candidate=matches,
            validate_server_copy=matches,
        )
        return self._run(self._BINARY_STEPS, request)

    def find_pdb_for_binary(self, binary_path: str) -> ResolveResult:
        """Locate the PDB named by a PE file's CodeView debug record."""
        info = read_pdb_info_from_pe(binary_path)
        if info is None:
            return self._invalid(f"no CodeView record in '{binary_path}'")
        pdb_path, guid, age = info
        log(f"'{binary_path}' references {pdb_path} (GUID={guid}, age={age})")
        return self.find_pdb(pdb_path, guid, age)

    # ------------------------------------------------------------------
    # Decision table steps
    # ------------------------------------------------------------------

    def _check_direct_path(self, request: _Request) -> Optional[ResolveResult]:
        if request.validate_direct(request.requested):
            log(f"Using '{request.requested}' as given")
            self._count('resolved')
            return ResolveResult.found(request.requested, "direct")
        return None

    def _check_memo(self, request: _Request) -> Optional[ResolveResult]:
        path = self.cache.get(request.key)
        if path is not None:
            self._count('memo_hits')
            return ResolveResult.found(path, "memo")
        return None

    def _check_known_missing(self, request: _Request) -> Optional[ResolveResult]:
        if self.cache.is_missing(request.key):
            self._count('negative_hits')
            return ResolveResult.not_found()
        return None

    def _search(self, request: _Request) -> Optional[ResolveResult]:
        index_path = request.key.index_path
        for element in self.elements:
            if element.is_symbol_server:
                result = self._search_server(element, index_path, request)
            else:
                result = self._search_directory(element, request)
            if result is not None:
                self.cache.record_found(request.key, result.path)
                self._count('resolved')
                return result

        self.cache.record_missing(request.key)
        self._count('not_found')
        log(f"'{request.lookup_name}' not found on the symbol path ({index_path})")
        return ResolveResult.not_found()

    # PDBs: the caller's path is only tried as-is when it is a real path.
    _PDB_STEPS: Tuple[_Step, ...] = (
        ("direct path", _is_full_path, _check_direct_path),
        ("memo", _always, _check_memo),
        ("known missing", _always, _check_known_missing),
        ("search path", _always, _search),
    )
    # Binaries: the caller's path is always tried first, even a bare name.
    _BINARY_STEPS: Tuple[_Step, ...] = (
        ("direct path", _always, _check_direct_path),
        ("memo", _always, _check_memo),
        ("known missing", _always, _check_known_missing),
        ("search path", _always, _search),
    )

    def _run(self, steps: Tuple[_Step, ...], request: _Request) -> ResolveResult:
        for _label, applies, step in steps:
            if not applies(request):
                continue
            result = step(self, request)
            if result is not None:
                return result
        return ResolveResult.not_found()

    # ------------------------------------------------------------------
    # Search path elements
    # ------------------------------------------------------------------

    def _search_directory(self, element: SymPathElement, request: _Request) -> Optional[ResolveResult]:
        candidate = os.path.join(element.target, request.lookup_name)
        if not os.path.isfile(candidate):
            return None
        if request.validate_candidate(candidate):
            log(f"Found '{request.lookup_name}' at '{candidate}'")
            return ResolveResult.found(candidate, "local")
        self._count('mismatches')
        log(f"Mismatched file found at '{candidate}'")
        return None

    def _search_server(self, element: SymPathElement, index_path: str,
                       request: _Request) -> Optional[ResolveResult]:
        cache_dir = element.cache or self.symbol_cache
        path = self.retriever.try_get_file_from_server(element.target, index_path, cache_dir)
        if path is None:
            log(f"No matching file found on server '{element.target or cache_dir}' on path '{index_path}'")
            return None

        if request.validate_server_copy is not None and not request.validate_server_copy(path):
            self._count('mismatches')
            log(f"'{path}' from server '{element.target}' does not match the request")
            return None

        self._count('server_fetches')
        log(f"Found '{request.lookup_name}' from server '{element.target or cache_dir}'. Copied to '{path}'")
        return ResolveResult.found(path, "server")

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def _invalid(self, error: str) -> ResolveResult:
        self._count('invalid')
        log(f"Invalid request: {error}")
        return ResolveResult.invalid(error)

    def cache_dirs(self) -> List[str]:
        """Every cache directory the symbol path can write to."""
        dirs = [self.symbol_cache]
        for element in self._elements:
            if element.is_symbol_server and element.cache and element.cache not in dirs:
                dirs.append(element.cache)
        return dirs

    def sweep_stale_temp_files(self, max_age_seconds: float = STALE_TEMP_SECONDS) -> int:
        """Remove temporary files left behind by abandoned downloads."""
        return sum(LocalCacheStore(d).sweep_stale_temp_files(max_age_seconds) for d in self.cache_dirs())

    def get_statistics(self) -> Dict[str, Any]:
        """Get symbol resolution statistics."""
        with self._stats_lock:
            stats = dict(self.stats)
        return {**stats, **{f"cache_{k}": v for k, v in self.cache.snapshot().items()}}
