"""Symbol search path parsing.

A search path is a ';' separated list of segments, tried in order:

    C:\\symbols                          local directory
    SRV*https://msdl.microsoft.com/...   symbol server, default cache
    SRV*C:\\cache*\\\\share\\symbols        symbol server with its own cache
    symsrv*symsrv.dll*C:\\cache*http://  same as SRV*
    https://symbols.example.com/         bare URL, symbol server
    CACHE*C:\\cache                      cache only, never goes to a server
"""
from dataclasses import dataclass
from typing import List, Optional

from .utils import log

SEPARATOR = ';'


@dataclass(frozen=True)
class SymPathElement:
    """One entry of the search path."""
    target: str
    cache: Optional[str] = None
    is_symbol_server: bool = False

    @property
    def is_cache_only(self) -> bool:
        return self.is_symbol_server and not self.target

    def __str__(self) -> str:
        if not self.is_symbol_server:
            return self.target
        if self.is_cache_only:
            return f"CACHE*{self.cache}"
        if self.cache:
            return f"SRV*{self.cache}*{self.target}"
        return f"SRV*{self.target}"


def _is_url(text: str) -> bool:
    lowered = text.lower()
    return lowered.startswith('http:') or lowered.startswith('https:')


def _parse_server(parts: List[str]) -> Optional[SymPathElement]:
    parts = [p.strip() for p in parts]
    if not parts or not parts[-1]:
        return None
    target = parts[-1]
    # Anything between the first cache and the target is a downstream store
    cache = parts[0] if len(parts) > 1 and parts[0] else None
    return SymPathElement(target=target, cache=cache, is_symbol_server=True)


def parse_segment(segment: str) -> Optional[SymPathElement]:
    """Parse a single segment, returning None when it is empty or malformed."""
    segment = segment.strip()
    if not segment:
        return None

    head, star, rest = segment.partition('*')
    keyword = head.strip().lower()

    if star and keyword == 'srv':
        return _parse_server(rest.split('*'))

    if star and keyword == 'symsrv':
        # symsrv*<dll>*[cache*]target
        _dll, star, rest = rest.partition('*')
        if not star:
            return None
        return _parse_server(rest.split('*'))

    if star and keyword == 'cache':
        cache = rest.strip()
        if not cache or '*' in cache:
            return None
        return SymPathElement(target="", cache=cache, is_symbol_server=True)

    if _is_url(segment):
        return SymPathElement(target=segment, is_symbol_server=True)

    if star:
        # Unknown '*' directive
        return None

    return SymPathElement(target=segment)


def parse_symbol_path(text: Optional[str]) -> List[SymPathElement]:
    """Turn a search path string into its ordered elements.

    Malformed segments are skipped; an empty or missing path gives [].
    """
    elements: List[SymPathElement] = []
    if not text:
        return elements

    for segment in text.split(SEPARATOR):
        element = parse_segment(segment)
        if element is None:
            if segment.strip():
                log(f"Ignoring malformed symbol path segment '{segment.strip()}'")
            continue
        elements.append(element)
    return elements


def format_symbol_path(elements: List[SymPathElement]) -> str:
    return SEPARATOR.join(str(e) for e in elements)
