"""
Value codecs for the remote tier.
"""

import gzip
import json
from typing import Any

import msgpack

from .exceptions import SerializationError

GZIP_MAGIC = b'\x1f\x8b'


def _json_dumps(value: Any) -> bytes:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str).encode('utf-8')


def _json_loads(data: bytes) -> Any:
    return json.loads(data.decode('utf-8'))


def _msgpack_dumps(value: Any) -> bytes:
    return msgpack.packb(value, use_bin_type=True, default=str)


def _msgpack_loads(data: bytes) -> Any:
    return msgpack.unpackb(data, raw=False)


class Serializer:
    """Encode values to bytes and back, gzip-compressing large payloads."""

    codecs = {
        'json': (_json_dumps, _json_loads),
        'msgpack': (_msgpack_dumps, _msgpack_loads),
    }

    def __init__(self, name: str = 'json', compression: bool = True,
                 compression_threshold: int = 1024):
        if name not in self.codecs:
            raise SerializationError(f"Unknown serializer: {name}")
        self.name = name
        self.compression = compression
        self.compression_threshold = compression_threshold
        self._dumps, self._loads = self.codecs[name]

    def dumps(self, value: Any) -> bytes:
        """Serialize value for storage."""
        try:
            data = self._dumps(value)
        except (TypeError, ValueError, OverflowError) as e:
            raise SerializationError(f"Cannot serialize {type(value).__name__}: {e}") from e

        if self.compression and len(data) > self.compression_threshold:
            data = gzip.compress(data)

        return data

    def loads(self, data: Any) -> Any:
        """Deserialize value from storage."""
        if data is None:
            return None
        if isinstance(data, str):
            data = data.encode('utf-8')

        try:
            if data[:2] == GZIP_MAGIC:
                data = gzip.decompress(data)
            return self._loads(data)
        except Exception as e:
            raise SerializationError(f"Cannot deserialize stored value: {e}") from e
