"""
Value serializers.

Serializers turn a binary stream into an object stream. Closing a
serialization stream flushes and closes the binary stream it wraps.
"""

import io
import json
import pickle
from abc import ABC, abstractmethod
from typing import Any, BinaryIO


class SerializationStream(ABC):
    """Writes objects to a wrapped binary stream."""

    def __init__(self, out: BinaryIO):
        self.out = out

    @abstractmethod
    def write_object(self, value: Any) -> "SerializationStream":
        ...

    def flush(self) -> None:
        self.out.flush()

    def close(self) -> None:
        if not self.out.closed:
            self.out.flush()
            self.out.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


class DeserializationStream(ABC):
    """Reads objects from a wrapped binary stream."""

    def __init__(self, inp: BinaryIO):
        self.inp = inp

    @abstractmethod
    def read_object(self) -> Any:
        ...

    def close(self) -> None:
        self.inp.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


class Serializer(ABC):
    """Factory for serialization/deserialization streams."""

    name: str = "abstract"

    @abstractmethod
    def serialize_stream(self, out: BinaryIO) -> SerializationStream:
        ...

    @abstractmethod
    def deserialize_stream(self, inp: BinaryIO) -> DeserializationStream:
        ...

    def serialize(self, value: Any) -> bytes:
        """Serialize a single value to bytes."""
        buffer = io.BytesIO()
        stream = self.serialize_stream(buffer)
        stream.write_object(value)
        stream.flush()
        return buffer.getvalue()

    def deserialize(self, data: bytes) -> Any:
        """Deserialize a single value from bytes."""
        with self.deserialize_stream(io.BytesIO(data)) as stream:
            return stream.read_object()


# ==================== Pickle ====================

class _PickleSerializationStream(SerializationStream):
    def __init__(self, out: BinaryIO, protocol: int):
        super().__init__(out)
        self._pickler = pickle.Pickler(out, protocol=protocol)

    def write_object(self, value: Any) -> SerializationStream:
        self._pickler.dump(value)
        return self


class _PickleDeserializationStream(DeserializationStream):
    def __init__(self, inp: BinaryIO):
        super().__init__(inp)
        self._unpickler = pickle.Unpickler(inp)

    def read_object(self) -> Any:
        return self._unpickler.load()


class PickleSerializer(Serializer):
    """
    Serializes arbitrary Python objects with pickle.

    Only use between nodes that trust each other: unpickling runs code.
    """

    name = "pickle"

    def __init__(self, protocol: int = pickle.HIGHEST_PROTOCOL):
        self.protocol = protocol

    def serialize_stream(self, out: BinaryIO) -> SerializationStream:
        return _PickleSerializationStream(out, self.protocol)

    def deserialize_stream(self, inp: BinaryIO) -> DeserializationStream:
        return _PickleDeserializationStream(inp)


# ==================== JSON ====================

class _JsonSerializationStream(SerializationStream):
    def write_object(self, value: Any) -> SerializationStream:
        line = json.dumps(value, separators=(',', ':')) + "\n"
        self.out.write(line.encode("utf-8"))
        return self


class _JsonDeserializationStream(DeserializationStream):
    def read_object(self) -> Any:
        line = self.inp.readline()
        if not line:
            raise EOFError("No JSON object in stream")
        return json.loads(line.decode("utf-8"))


class JsonSerializer(Serializer):
    """Serializes JSON-compatible values, one object per line."""

    name = "json"

    def serialize_stream(self, out: BinaryIO) -> SerializationStream:
        return _JsonSerializationStream(out)

    def deserialize_stream(self, inp: BinaryIO) -> DeserializationStream:
        return _JsonDeserializationStream(inp)


SERIALIZERS = {
    PickleSerializer.name: PickleSerializer,
    JsonSerializer.name: JsonSerializer,
}


def create_serializer(name: str = "pickle") -> Serializer:
    """Create a serializer by short name ("pickle" or "json")."""
    serializer_cls = SERIALIZERS.get(name.lower())
    if serializer_cls is None:
        raise ValueError(f"Unknown serializer {name!r}; expected one of {sorted(SERIALIZERS)}")
    return serializer_cls()
