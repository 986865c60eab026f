"""Symbol Locator package.

Resolves debug symbols and executable images for crash dump analysis:
- Symbol path parsing (local directories, SRV* servers, CACHE* entries)
- Retrieval from HTTP symbol servers and file shares, including compressed
  payloads and file.ptr redirection
- Atomic, content-addressable local symbol cache
- PDB (GUID/age) and PE (timestamp/size) identity validation
- Per-locator memory of resolved and missing files
"""
from .cache_store import LocalCacheStore
from .keys import (
    BinaryKey,
    PdbKey,
    binary_index_path,
    compressed_index_path,
    pdb_index_path,
    pointer_index_path,
)
from .memo import ResolutionCache
from .resolver import ResolveResult, ResolveStatus, SymbolLocator
from .retrieval import ServerRetriever, expand_cab
from .search_path import SymPathElement, format_symbol_path, parse_symbol_path
from .transport import FileShareTransport, HttpTransport, Transport, transport_for
from .validation import (
    read_pdb_info_from_pe,
    read_pdb_signature,
    read_pe_properties,
    validate_binary,
    validate_pdb,
)

__all__ = [
    # Resolver
    "SymbolLocator",
    "ResolveResult",
    "ResolveStatus",
    # Identity keys
    "PdbKey",
    "BinaryKey",
    "pdb_index_path",
    "binary_index_path",
    "compressed_index_path",
    "pointer_index_path",
    # Search path
    "SymPathElement",
    "parse_symbol_path",
    "format_symbol_path",
    # Caches
    "LocalCacheStore",
    "ResolutionCache",
    # Retrieval
    "ServerRetriever",
    "Transport",
    "HttpTransport",
    "FileShareTransport",
    "transport_for",
    "expand_cab",
    # Validation
    "read_pdb_signature",
    "read_pe_properties",
    "read_pdb_info_from_pe",
    "validate_pdb",
    "validate_binary",
]

__version__ = "1.0.0"
