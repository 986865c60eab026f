"""Identity keys and the index paths derived from them.

The index path is shared by the remote servers and the local cache:

    PDB:     {name}/{GUID without dashes}{age in hex}/{name}
    Binary:  {name}/{timestamp in hex}{image size in hex}/{name}

Example: ntdll.pdb/1b4e28ba2fa1c69a9d0c6a2f1d4e3b8c2/ntdll.pdb
"""
from __future__ import annotations

import posixpath
import uuid
from dataclasses import dataclass
from typing import Union

GuidLike = Union[uuid.UUID, str, bytes]


def to_uuid(guid: GuidLike) -> uuid.UUID:
    """Normalize a GUID given as UUID, string or 16 little-endian bytes.

    Raises ValueError for anything that isn't a GUID.
    """
    if isinstance(guid, uuid.UUID):
        return guid
    if isinstance(guid, bytes):
        return uuid.UUID(bytes_le=guid)
    if isinstance(guid, str):
        return uuid.UUID(guid.strip().strip('{}'))
    raise ValueError(f"not a GUID: {guid!r}")


def _u32(value: int) -> int:
    return int(value) & 0xFFFFFFFF


@dataclass(frozen=True)
class PdbKey:
    """Identity of a PDB. The name keeps its case."""
    name: str
    guid: uuid.UUID
    age: int

    @property
    def index_path(self) -> str:
        return pdb_index_path(self.name, self.guid, self.age)


@dataclass(frozen=True)
class BinaryKey:
    """Identity of a PE image. The name is stored lower-cased."""
    name: str
    timestamp: int
    image_size: int

    def __post_init__(self):
        object.__setattr__(self, 'name', self.name.lower())
        object.__setattr__(self, 'timestamp', _u32(self.timestamp))
        object.__setattr__(self, 'image_size', _u32(self.image_size))

    @property
    def index_path(self) -> str:
        return binary_index_path(self.name, self.timestamp, self.image_size)


def pdb_index_path(name: str, guid: GuidLike, age: int) -> str:
    signature = f"{to_uuid(guid).hex}{_u32(age):x}"
    return f"{name}/{signature}/{name}"


def binary_index_path(name: str, timestamp: int, image_size: int) -> str:
    signature = f"{_u32(timestamp):x}{_u32(image_size):x}"
    return f"{name}/{signature}/{name}"


def compressed_index_path(index_path: str) -> str:
    """Compressed variant: last character replaced with '_' (foo.pdb -> foo.pd_)."""
    return index_path[:-1] + '_'


def pointer_index_path(index_path: str) -> str:
    """The file.ptr redirection record next to the artifact."""
    return posixpath.join(posixpath.dirname(index_path), "file.ptr")
