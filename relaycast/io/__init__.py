"""
Stream codecs used by the transfer protocol.
"""

from .compression import CompressionCodec, create_codec
from .serializer import (
    Serializer,
    PickleSerializer,
    JsonSerializer,
    create_serializer,
)

__all__ = [
    "CompressionCodec",
    "create_codec",
    "Serializer",
    "PickleSerializer",
    "JsonSerializer",
    "create_serializer",
]
