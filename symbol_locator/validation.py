"""Identity checks for candidate files on disk.

A candidate is valid only when the identity embedded in the file matches
the requested one. Unreadable, truncated or foreign files are simply
invalid; nothing here raises.
"""
import os
import struct
import uuid
from typing import Optional, Tuple

from .keys import GuidLike, to_uuid
from .utils import log

MSF7_MAGIC = b"Microsoft C/C++ MSF 7.00\r\n\x1aDS\x00\x00\x00"
PORTABLE_PDB_MAGIC = b"BSJB"

PDB_INFO_STREAM = 1
DBI_STREAM = 3
NIL_STREAM_SIZE = 0xFFFFFFFF

PE_HEADER_READ_SIZE = 0x10000
IMAGE_DEBUG_TYPE_CODEVIEW = 2


def _read_msf_stream_prefix(f, block_size: int, directory: bytes, stream: int,
                            count: int) -> Optional[bytes]:
    """Read the first `count` bytes of an MSF stream."""
    num_streams = struct.unpack_from("<I", directory, 0)[0]
    if stream >= num_streams or 4 + 4 * num_streams > len(directory):
        return None

    sizes = struct.unpack_from(f"<{num_streams}I", directory, 4)
    sizes = [0 if s == NIL_STREAM_SIZE else s for s in sizes]
    if sizes[stream] < count:
        return None

    # Block lists for every stream follow the size table
    blocks_off = 4 + 4 * num_streams
    for s in range(stream):
        blocks_off += 4 * ((sizes[s] + block_size - 1) // block_size)

    needed = (count + block_size - 1) // block_size
    if blocks_off + 4 * needed > len(directory):
        return None

    data = b""
    for block in struct.unpack_from(f"<{needed}I", directory, blocks_off):
        f.seek(block * block_size)
        data += f.read(block_size)
    return data[:count] if len(data) >= count else None


def _read_msf_signature(f) -> Optional[Tuple[uuid.UUID, int]]:
    f.seek(len(MSF7_MAGIC))
    superblock = f.read(24)
    if len(superblock) < 24:
        return None

    block_size, _, num_blocks, dir_bytes, _, block_map_addr = struct.unpack("<6I", superblock)
    if block_size not in (512, 1024, 2048, 4096, 8192, 16384, 32768) or dir_bytes == 0:
        return None
    if block_map_addr >= num_blocks:
        return None

    dir_block_count = (dir_bytes + block_size - 1) // block_size
    f.seek(block_map_addr * block_size)
    block_map = f.read(4 * dir_block_count)
    if len(block_map) < 4 * dir_block_count:
        return None

    directory = b""
    for block in struct.unpack(f"<{dir_block_count}I", block_map):
        if block >= num_blocks:
            return None
        f.seek(block * block_size)
        directory += f.read(block_size)
    directory = directory[:dir_bytes]
    if len(directory) < dir_bytes:
        return None

    # PDB info stream: version, signature, age, guid
    info = _read_msf_stream_prefix(f, block_size, directory, PDB_INFO_STREAM, 28)
    if info is None:
        return None
    _, _, age = struct.unpack_from("<III", info, 0)
    guid = uuid.UUID(bytes_le=info[12:28])

    # The DBI stream carries the age recorded in the image's debug record
    dbi = _read_msf_stream_prefix(f, block_size, directory, DBI_STREAM, 12)
    if dbi is not None:
        age = struct.unpack_from("<I", dbi, 8)[0]

    return guid, age


def _read_portable_pdb_guid(f) -> Optional[uuid.UUID]:
    f.seek(0)
    header = f.read(16)
    if len(header) < 16:
        return None
    version_length = struct.unpack_from("<I", header, 12)[0]
    if version_length > 255:
        return None

    f.seek(16 + version_length)
    flags_streams = f.read(4)
    if len(flags_streams) < 4:
        return None
    stream_count = struct.unpack_from("<H", flags_streams, 2)[0]

    headers = f.read(stream_count * 40)
    pos = 0
    for _ in range(stream_count):
        if pos + 8 > len(headers):
            return None
        offset, size = struct.unpack_from("<II", headers, pos)
        end = headers.find(b"\x00", pos + 8)
        if end < 0:
            return None
        name = headers[pos + 8:end]
        # Stream names are padded to 4 bytes
        pos = pos + 8 + ((end - (pos + 8)) // 4 + 1) * 4
        if name == b"#Pdb":
            if size < 20:
                return None
            f.seek(offset)
            pdb_id = f.read(16)
            return uuid.UUID(bytes_le=pdb_id) if len(pdb_id) == 16 else None
    return None


def read_pdb_signature(path: str) -> Optional[Tuple[uuid.UUID, int]]:
    """
    Read the identity (GUID, age) embedded in a PDB file.

    Handles MSF 7.00 (Windows) PDBs and portable PDBs; portable PDBs have
    no age and report 1.
    """
    if not path or not os.path.isfile(path):
        return None
    try:
        with open(path, 'rb') as f:
            magic = f.read(len(MSF7_MAGIC))
            if magic == MSF7_MAGIC:
                return _read_msf_signature(f)
            if magic[:4] == PORTABLE_PDB_MAGIC:
                guid = _read_portable_pdb_guid(f)
                return (guid, 1) if guid else None
    except (OSError, struct.error, ValueError) as e:
        log(f"Could not read PDB signature from '{path}': {e}")
    return None


def is_portable_pdb(path: str) -> bool:
    try:
        with open(path, 'rb') as f:
            return f.read(4) == PORTABLE_PDB_MAGIC
    except OSError:
        return False


def _pe_header_offsets(data: bytes) -> Optional[Tuple[int, int, int]]:
    """Return (file header offset, optional header offset, optional header size)."""
    if len(data) < 0x40 or data[:2] != b"MZ":
        return None

    # DOS header e_lfanew
    e_lfanew = struct.unpack_from("<I", data, 0x3C)[0]
    if e_lfanew <= 0 or e_lfanew + 24 > len(data):
        return None

    # PE signature
    if data[e_lfanew:e_lfanew + 4] != b"PE\x00\x00":
        return None

    file_header_off = e_lfanew + 4
    size_opt_header = struct.unpack_from("<H", data, file_header_off + 16)[0]
    opt_off = file_header_off + 20
    if size_opt_header < 60 or opt_off + size_opt_header > len(data):
        return None
    return file_header_off, opt_off, size_opt_header


def read_pe_properties(path: str) -> Optional[Tuple[int, int]]:
    """Read (TimeDateStamp, SizeOfImage) from a PE file's headers."""
    if not path or not os.path.isfile(path):
        return None
    try:
        with open(path, "rb") as f:
            data = f.read(PE_HEADER_READ_SIZE)

        offsets = _pe_header_offsets(data)
        if offsets is None:
            return None
        file_header_off, opt_off, _ = offsets

        timestamp = struct.unpack_from("<I", data, file_header_off + 4)[0]
        # SizeOfImage sits at the same offset for PE32 and PE32+
        size_of_image = struct.unpack_from("<I", data, opt_off + 56)[0]
        return timestamp, size_of_image
    except (OSError, struct.error) as e:
        log(f"Could not read PE header from '{path}': {e}")
        return None


def read_pdb_info_from_pe(pe_path: str) -> Optional[Tuple[str, uuid.UUID, int]]:
    """Extract PDB info (name, GUID, age) from a PE file's CodeView (RSDS) debug record."""
    if not pe_path or not os.path.isfile(pe_path):
        return None

    try:
        with open(pe_path, "rb") as f:
            data = f.read()

        offsets = _pe_header_offsets(data)
        if offsets is None:
            return None
        file_header_off, opt_off, size_opt_header = offsets
        num_sections = struct.unpack_from("<H", data, file_header_off + 2)[0]

        magic = struct.unpack_from("<H", data, opt_off)[0]
        is_pe64 = magic == 0x20B

        # Data directory offset
        data_dir_off = opt_off + (112 if is_pe64 else 96)
        if data_dir_off + 8 * 7 > opt_off + size_opt_header:
            return None

        # IMAGE_DIRECTORY_ENTRY_DEBUG = index 6
        debug_rva, debug_size = struct.unpack_from("<II", data, data_dir_off + 8 * 6)
        if debug_rva == 0 or debug_size == 0:
            return None

        # Section table
        sections_off = opt_off + size_opt_header
        sections = []
        for i in range(num_sections):
            sec_off = sections_off + i * 40
            if sec_off + 40 > len(data):
                break
            virtual_size, virtual_address, size_raw, ptr_raw = struct.unpack_from("<IIII", data, sec_off + 8)
            sections.append((virtual_address, max(virtual_size, size_raw), ptr_raw, size_raw))

        def rva_to_file_offset(rva: int) -> Optional[int]:
            for va, vsz, ptr, rawsz in sections:
                if va <= rva < va + vsz:
                    delta = rva - va
                    if delta < rawsz:
                        return ptr + delta
            return None

        debug_off = rva_to_file_offset(debug_rva)
        if debug_off is None:
            return None

        # IMAGE_DEBUG_DIRECTORY entries are 28 bytes each
        entry_size = 28
        for i in range(debug_size // entry_size):
            off = debug_off + i * entry_size
            if off + entry_size > len(data):
                break
            _, _, _, _, debug_type, _, addr_raw, ptr_raw = struct.unpack_from("<IIHHIIII", data, off)
            if debug_type != IMAGE_DEBUG_TYPE_CODEVIEW:
                continue

            # Prefer pointer to raw data if available
            cv_off = ptr_raw if ptr_raw != 0 else rva_to_file_offset(addr_raw)
            if cv_off is None or cv_off + 24 > len(data):
                continue
            if data[cv_off:cv_off + 4] != b"RSDS":
                continue

            guid = uuid.UUID(bytes_le=data[cv_off + 4:cv_off + 20])
            age = struct.unpack_from("<I", data, cv_off + 20)[0]

            # PDB path is null-terminated string
            pdb_path_bytes = data[cv_off + 24:cv_off + 24 + 260]
            pdb_path = pdb_path_bytes.split(b"\x00", 1)[0].decode("utf-8", errors="ignore")
            if pdb_path:
                return pdb_path, guid, age

        return None
    except (OSError, struct.error) as e:
        log(f"Could not read debug directory from '{pe_path}': {e}")
        return None


def validate_pdb(path: str, guid: GuidLike, age: int) -> bool:
    """Check that the PDB at path carries the requested GUID and age."""
    signature = read_pdb_signature(path)
    if signature is None:
        return False

    found_guid, found_age = signature
    expected = to_uuid(guid)
    if found_guid != expected:
        log(f"Mismatched pdb '{path}': guid {found_guid} != {expected}")
        return False
    if found_age != age and not is_portable_pdb(path):
        log(f"Mismatched pdb '{path}': age {found_age} != {age}")
        return False
    return True


def validate_binary(path: str, timestamp: int, image_size: int,
                    check_properties: bool = True) -> bool:
    """
    Check that the image at path matches the requested timestamp and size.

    With check_properties=False the file merely has to exist.
    """
    if not path or not os.path.isfile(path):
        return False
    if not check_properties:
        return True

    properties = read_pe_properties(path)
    if properties is None:
        log(f"Could not read PE properties of '{path}'")
        return False

    found_timestamp, found_size = properties
    if found_timestamp != (timestamp & 0xFFFFFFFF) or found_size != (image_size & 0xFFFFFFFF):
        log(f"Mismatched binary '{path}': timestamp={found_timestamp:x} size={found_size:x}, "
            f"wanted timestamp={timestamp & 0xFFFFFFFF:x} size={image_size & 0xFFFFFFFF:x}")
        return False
    return True
