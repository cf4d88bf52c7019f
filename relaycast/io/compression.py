"""
Compression codecs for broadcast files.

A codec wraps a raw binary stream in a compressing writer or a
decompressing reader. Closing the wrapper finishes the compressed
stream but leaves the raw stream open; the caller owns it.

Files carry no header naming the codec, so writer and reader must be
configured identically.
"""

import bz2
import gzip
import logging
import lzma
from abc import ABC, abstractmethod
from typing import BinaryIO, Dict, Type

logger = logging.getLogger(__name__)

DEFAULT_CODEC = "gzip"


class CompressionCodec(ABC):
    """Wraps binary streams with compression."""

    name: str = "none"

    def __init__(self, level: int = 6):
        self.level = level

    @abstractmethod
    def compressed_output_stream(self, raw: BinaryIO) -> BinaryIO:
        """Return a writer that compresses into ``raw``."""

    @abstractmethod
    def compressed_input_stream(self, raw: BinaryIO) -> BinaryIO:
        """Return a reader that decompresses from ``raw``."""

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(level={self.level})"


class GzipCodec(CompressionCodec):
    name = "gzip"

    def compressed_output_stream(self, raw: BinaryIO) -> BinaryIO:
        # mtime=0 keeps files byte-identical for identical payloads
        return gzip.GzipFile(fileobj=raw, mode="wb", compresslevel=self.level, mtime=0)

    def compressed_input_stream(self, raw: BinaryIO) -> BinaryIO:
        return gzip.GzipFile(fileobj=raw, mode="rb")


class Bz2Codec(CompressionCodec):
    name = "bz2"

    def __init__(self, level: int = 9):
        super().__init__(level=max(1, min(level, 9)))

    def compressed_output_stream(self, raw: BinaryIO) -> BinaryIO:
        return bz2.BZ2File(raw, mode="wb", compresslevel=self.level)

    def compressed_input_stream(self, raw: BinaryIO) -> BinaryIO:
        return bz2.BZ2File(raw, mode="rb")


class LzmaCodec(CompressionCodec):
    name = "lzma"

    def compressed_output_stream(self, raw: BinaryIO) -> BinaryIO:
        return lzma.LZMAFile(raw, mode="wb", preset=self.level)

    def compressed_input_stream(self, raw: BinaryIO) -> BinaryIO:
        return lzma.LZMAFile(raw, mode="rb")


CODECS: Dict[str, Type[CompressionCodec]] = {
    GzipCodec.name: GzipCodec,
    Bz2Codec.name: Bz2Codec,
    LzmaCodec.name: LzmaCodec,
}


def create_codec(name: str = DEFAULT_CODEC, level: int = 6) -> CompressionCodec:
    """
    Create a codec by short name.

    Args:
        name: One of "gzip", "bz2", "lzma"
        level: Compression level passed to the codec

    Raises:
        ValueError: Unknown codec name
    """
    codec_cls = CODECS.get(name.lower())
    if codec_cls is None:
        raise ValueError(
            f"Unknown compression codec {name!r}; expected one of {sorted(CODECS)}"
        )
    codec = codec_cls(level=level)
    logger.debug(f"Created compression codec {codec!r}")
    return codec
