"""
Compression utilities for strata

Artifacts are tarballs of an image layer, compressed or not. The format is
auto-detected from magic bytes:
- zstd (default for new artifacts)
- gzip
- xz/lzma
- bzip2
"""

import bz2
import gzip
import lzma
import tarfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Union

import zstandard as zstd

# Magic bytes for format detection
MAGIC_ZSTD = b'\x28\xb5\x2f\xfd'
MAGIC_GZIP = b'\x1f\x8b'
MAGIC_XZ = b'\xfd7zXZ\x00'
MAGIC_BZ2 = b'BZh'

# Errors raised while reading a damaged or foreign artifact
READ_ERRORS = (OSError, EOFError, lzma.LZMAError, tarfile.TarError, zstd.ZstdError)


def detect_format(data: bytes) -> str:
    """Detect compression format from magic bytes.

    Args:
        data: First 8+ bytes of the file

    Returns:
        Format name: 'zstd', 'gzip', 'xz', 'bzip2', or 'plain'
    """
    if data[:4] == MAGIC_ZSTD:
        return 'zstd'
    elif data[:2] == MAGIC_GZIP:
        return 'gzip'
    elif data[:6] == MAGIC_XZ:
        return 'xz'
    elif data[:3] == MAGIC_BZ2:
        return 'bzip2'
    else:
        return 'plain'


def compress_bytes(data: bytes, fmt: str = 'zstd') -> bytes:
    """Compress bytes with the given format ('plain' returns data as is)."""
    if fmt == 'zstd':
        return zstd.ZstdCompressor().compress(data)
    elif fmt == 'gzip':
        return gzip.compress(data)
    elif fmt == 'xz':
        return lzma.compress(data)
    elif fmt == 'bzip2':
        return bz2.compress(data)
    elif fmt == 'plain':
        return data
    raise ValueError(f"Unknown compression format: {fmt}")


def decompress_bytes(data: bytes) -> bytes:
    """Decompress bytes, auto-detecting format."""
    fmt = detect_format(data)

    if fmt == 'zstd':
        dctx = zstd.ZstdDecompressor()
        return dctx.stream_reader(data).read()
    elif fmt == 'gzip':
        return gzip.decompress(data)
    elif fmt == 'xz':
        return lzma.decompress(data)
    elif fmt == 'bzip2':
        return bz2.decompress(data)
    else:
        return data


def decompress_stream(filename: Union[str, Path]):
    """Open a compressed file and return a binary stream.

    Args:
        filename: Path to compressed file

    Returns:
        File-like object for reading decompressed data
    """
    path = Path(filename)

    with open(path, 'rb') as f:
        magic = f.read(8)

    fmt = detect_format(magic)

    if fmt == 'zstd':
        dctx = zstd.ZstdDecompressor()
        return dctx.stream_reader(open(path, 'rb'), closefd=True)
    elif fmt == 'gzip':
        return gzip.open(path, 'rb')
    elif fmt == 'xz':
        return lzma.open(path, 'rb')
    elif fmt == 'bzip2':
        return bz2.open(path, 'rb')
    else:
        return open(path, 'rb')


@contextmanager
def open_tar(filename: Union[str, Path]) -> Iterator[tarfile.TarFile]:
    """Open an artifact tarball for sequential reading, whatever its compression.

    Raises:
        tarfile.TarError: if the decompressed content is not a tar archive
    """
    stream = decompress_stream(filename)
    try:
        with tarfile.open(fileobj=stream, mode='r|') as tar:
            yield tar
    finally:
        stream.close()


def tar_members(filename: Union[str, Path]) -> list:
    """Names of the regular files and symlinks in an artifact tarball."""
    with open_tar(filename) as tar:
        return [m.name for m in tar if m.isfile() or m.issym() or m.islnk()]
