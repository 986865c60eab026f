"""Content-addressable on-disk symbol cache.

Files live at ``root/<index path>``. Writers stage into a private temporary
file next to the destination and rename it into place, so a file seen at
its final path is always complete.
"""
import os
import shutil
import tempfile
import time
from pathlib import Path
from typing import BinaryIO, Iterable, Optional

from .utils import log

TEMP_PREFIX = ".symtmp-"
COPY_CHUNK_SIZE = 8192


def _iter_file(fh: BinaryIO, chunk_size: int = COPY_CHUNK_SIZE) -> Iterable[bytes]:
    while True:
        chunk = fh.read(chunk_size)
        if not chunk:
            return
        yield chunk


class LocalCacheStore:
    """Symbol cache directory keyed by index path."""

    def __init__(self, root: str):
        self.root = Path(root)

    def __repr__(self) -> str:
        return f"LocalCacheStore({str(self.root)!r})"

    def path_for(self, index_path: str) -> Path:
        parts = [p for p in index_path.replace('\\', '/').split('/') if p]
        return self.root.joinpath(*parts)

    def exists(self, index_path: str) -> bool:
        return self.path_for(index_path).is_file()

    def staging_path(self, index_path: str, suffix: str = "") -> Path:
        """Create a private temporary file beside the final location."""
        final_path = self.path_for(index_path)
        final_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=TEMP_PREFIX, suffix=suffix, dir=str(final_path.parent))
        os.close(fd)
        return Path(tmp_name)

    def commit(self, staged: Path, index_path: str) -> str:
        """Atomically move a fully written staging file to its final path."""
        final_path = self.path_for(index_path)
        os.replace(str(staged), str(final_path))
        return str(final_path)

    def materialize(self, index_path: str, chunks: Iterable[bytes],
                    length: Optional[int] = None) -> Optional[str]:
        """
        Write a stream of bytes into the cache.

        Args:
            index_path: Index path of the artifact
            chunks: Iterable of byte chunks
            length: Expected size; a short or long stream is discarded

        Returns:
            Final local path, or None if the byte count didn't match
        """
        staged = self.staging_path(index_path)
        try:
            written = 0
            with open(staged, 'wb') as f:
                for chunk in chunks:
                    if chunk:
                        f.write(chunk)
                        written += len(chunk)

            if length is not None and length >= 0 and written != length:
                log(f"Discarding {index_path}: expected {length} bytes, got {written}")
                return None

            return self.commit(staged, index_path)
        finally:
            if staged.exists():
                staged.unlink()

    def materialize_file(self, index_path: str, source_path: str) -> Optional[str]:
        """Copy an existing local file into the cache."""
        with open(source_path, 'rb') as fh:
            length = os.fstat(fh.fileno()).st_size
            return self.materialize(index_path, _iter_file(fh), length)

    def sweep_stale_temp_files(self, max_age_seconds: float) -> int:
        """Delete staging files left behind by abandoned attempts."""
        if not self.root.is_dir():
            return 0

        removed = 0
        cutoff = time.time() - max_age_seconds
        for path in self.root.rglob(f"{TEMP_PREFIX}*"):
            try:
                if path.is_file() and path.stat().st_mtime < cutoff:
                    path.unlink()
                    removed += 1
            except OSError as e:
                log(f"Could not remove stale temp file {path}: {e}")
        return removed

    def get_cache_size(self) -> int:
        """Get the total size of cached symbols in bytes."""
        total = 0
        if not self.root.is_dir():
            return total
        for path in self.root.rglob('*'):
            if path.is_file():
                total += path.stat().st_size
        return total

    def clear(self):
        """Remove every cached artifact."""
        if self.root.exists():
            shutil.rmtree(self.root)
