"""
Chunk payload generation shared by the chunk endpoint and the upload client.

The pattern payload is a pure function of (chunk id, byte offset): every
little-endian 32-bit word at offset ``i`` holds ``pattern(id) + (i & 0xffff)``.
The word sequence therefore repeats every 64 KiB, which lets a chunk of any
size be built from a single 64 KiB block.
"""

import re
import secrets
import struct
from typing import List, Optional

PERIOD = 0x10000  # bytes before the word sequence repeats
WORD = struct.Struct("<I")
_CHUNK_INDEX = re.compile(r"^\s*(\d+)")


def parse_chunk_id(token: Optional[str]) -> int:
    """
    Extract the integer index from a ``<anything>-<index>`` identity token.

    Falls back to 0 when the token is missing or has no numeric suffix.
    """
    if not token or "-" not in token:
        return 0
    match = _CHUNK_INDEX.match(token.rpartition("-")[2])
    return int(match.group(1)) if match else 0


def pattern_seed(chunk_id: int) -> int:
    return (chunk_id & 0xFFFF) | ((chunk_id & 0xFF) << 16)


def _pattern_block(chunk_id: int) -> bytes:
    seed = pattern_seed(chunk_id)
    words = [(seed + offset) & 0xFFFFFFFF for offset in range(0, PERIOD, WORD.size)]
    return struct.pack(f"<{len(words)}I", *words)


def pattern_chunk(chunk_id: int, size: int) -> bytes:
    """Return exactly ``size`` bytes of the deterministic pattern for ``chunk_id``."""
    if size <= 0:
        return b""
    block = _pattern_block(chunk_id)
    repeats, tail = divmod(size, PERIOD)
    return block * repeats + block[:tail]


def fill_pattern(buffer: bytearray, chunk_id: int) -> bytearray:
    """Overwrite ``buffer`` in place with the pattern for ``chunk_id``."""
    size = len(buffer)
    block = _pattern_block(chunk_id)
    view = memoryview(buffer)
    for start in range(0, size, PERIOD):
        end = min(start + PERIOD, size)
        view[start:end] = block[: end - start]
    return buffer


def random_chunk(size: int) -> bytes:
    """Cryptographically random payload, for deployments that want incompressible data."""
    return secrets.token_bytes(size) if size > 0 else b""


def decode_pattern(data: bytes) -> List[int]:
    """Unpack the whole 32-bit words of a payload."""
    usable = len(data) - len(data) % WORD.size
    return [word for (word,) in WORD.iter_unpack(data[:usable])]


def expected_words(chunk_id: int, count: int) -> List[int]:
    seed = pattern_seed(chunk_id)
    return [(seed + ((i * WORD.size) & 0xFFFF)) & 0xFFFFFFFF for i in range(count)]


def verify_pattern(data: bytes, chunk_id: int) -> bool:
    """True if ``data`` is the pattern payload for ``chunk_id`` (any length)."""
    return data == pattern_chunk(chunk_id, len(data))
