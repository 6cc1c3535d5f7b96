"""Streaming decompression of trace files and endlessly repeating sources."""

from __future__ import annotations

import bz2
import enum
import lzma
import os
import zlib
from typing import Any, BinaryIO, Callable, Generic, TypeVar, Union

_CHUNK = 1 << 16
_GZIP_WINDOW = 15 + 16


class Codec(enum.Enum):
    """Supported compression formats."""

    BZIP2 = "bzip2"
    GZIP = "gzip"
    XZ = "xz"

    def decompressor(self) -> Any:
        if self is Codec.BZIP2:
            return bz2.BZ2Decompressor()
        if self is Codec.GZIP:
            return zlib.decompressobj(_GZIP_WINDOW)
        return lzma.LZMADecompressor(format=lzma.FORMAT_XZ)


def compress(data: bytes, codec: Codec) -> bytes:
    """Compress ``data`` into the given format."""
    if codec is Codec.BZIP2:
        return bz2.compress(data, 9)
    if codec is Codec.GZIP:
        compressor = zlib.compressobj(zlib.Z_DEFAULT_COMPRESSION, zlib.DEFLATED, _GZIP_WINDOW)
        return compressor.compress(data) + compressor.flush()
    return lzma.compress(data, format=lzma.FORMAT_XZ, check=lzma.CHECK_CRC64, preset=lzma.PRESET_DEFAULT)


class InflatingStream:
    """Reads decompressed bytes from a compressed file or binary stream."""

    def __init__(self, source: Union[str, os.PathLike, BinaryIO], codec: Codec) -> None:
        if isinstance(source, (str, os.PathLike)):
            self._source: BinaryIO = open(source, "rb")
            self._owns_source = True
        else:
            self._source = source
            self._owns_source = False
        self._decompressor = codec.decompressor()
        self._buffer = bytearray()
        self._total_out = 0
        self._exhausted = False
        self._gcount = 0
        self._eof = False

    def _pull(self) -> bool:
        """Decompress more input into the buffer; return False once nothing more can come."""
        while not (self._exhausted or self._decompressor.eof):
            chunk = self._source.read(_CHUNK)
            if not chunk:
                self._exhausted = True
                break
            out = self._decompressor.decompress(chunk)
            if out:
                self._buffer.extend(out)
                self._total_out += len(out)
                return True
        return False

    def read(self, count: int) -> bytes:
        """Read up to ``count`` decompressed bytes; fewer means the end was reached."""
        if count < 0:
            raise ValueError("count must not be negative")
        while len(self._buffer) < count and self._pull():
            pass
        data = bytes(self._buffer[:count])
        del self._buffer[:count]
        self._gcount = len(data)
        self._eof = len(data) < count
        return data

    def eof(self) -> bool:
        """Whether the last read came up short."""
        return self._eof

    def gcount(self) -> int:
        """Number of bytes returned by the last read."""
        return self._gcount

    def bytes_read(self) -> int:
        """Total decompressed bytes handed out so far."""
        return self._total_out - len(self._buffer)

    def close(self) -> None:
        if self._owns_source:
            self._source.close()

    def __enter__(self) -> "InflatingStream":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


T = TypeVar("T")


def _format_arg(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (str, os.PathLike)):
        return f'"{os.fspath(value)}"'
    return str(value)


class Repeatable(Generic[T]):
    """Wraps a source that runs out, recreating it from the same arguments whenever it does."""

    def __init__(self, factory: Callable[..., Any], *args: Any) -> None:
        self._factory = factory
        self._args = args
        self._inner = factory(*args)

    def __call__(self) -> T:
        if self._inner.eof():
            print(f"*** Reached end of trace: ({', '.join(_format_arg(a) for a in self._args)})")
            close = getattr(self._inner, "close", None)
            if callable(close):
                close()
            self._inner = self._factory(*self._args)
        return self._inner()

    def eof(self) -> bool:
        return False