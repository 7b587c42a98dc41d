"""
nocturne/dreams/compression.py

Byte-level compression capability used by the persistent store for large payloads.
"""

from __future__ import annotations

import zlib
from abc import ABC, abstractmethod


class Compressor(ABC):
    name: str = "identity"

    @abstractmethod
    def compress(self, data: bytes) -> bytes:
        ...

    @abstractmethod
    def decompress(self, data: bytes) -> bytes:
        ...


class ZlibCompressor(Compressor):
    name = "zlib"

    def __init__(self, level: int = 6):
        self.level = level

    def compress(self, data: bytes) -> bytes:
        return zlib.compress(data, self.level)

    def decompress(self, data: bytes) -> bytes:
        return zlib.decompress(data)
