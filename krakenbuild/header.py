"""
Reads record geometry from the fixed header of an on-disk k-mer hash table.

Only the first 56 bytes are read. The header is a run of native-endian
unsigned 64-bit words; the pipeline uses three of them.
"""

import logging
import pathlib
from dataclasses import dataclass
from typing import Union

import numpy as np

from .exceptions import InvalidHeaderError

logger = logging.getLogger(__name__)

KEY_BITS_OFFSET = 8
VALUE_LEN_OFFSET = 16
KEY_COUNT_OFFSET = 48
HEADER_SIZE = KEY_COUNT_OFFSET + 8

_HEADER_DTYPE = np.dtype("=u8")


@dataclass(frozen=True)
class HashTableHeader:
    key_bits: int
    value_len: int
    key_count: int

    @property
    def key_len(self) -> int:
        """Key length in whole bytes, ``ceil(key_bits / 8)``."""
        return (self.key_bits + 7) // 8

    @property
    def record_len(self) -> int:
        return self.key_len + self.value_len


def parse_hash_table_header(raw: bytes) -> HashTableHeader:
    if len(raw) < HEADER_SIZE:
        raise InvalidHeaderError(
            "Hash table header is truncated",
            details={"expected_bytes": HEADER_SIZE, "got_bytes": len(raw)},
        )
    words = np.frombuffer(raw, dtype=_HEADER_DTYPE, count=HEADER_SIZE // 8)
    return HashTableHeader(
        key_bits=int(words[KEY_BITS_OFFSET // 8]),
        value_len=int(words[VALUE_LEN_OFFSET // 8]),
        key_count=int(words[KEY_COUNT_OFFSET // 8]),
    )


def read_hash_table_header(path: Union[str, pathlib.Path]) -> HashTableHeader:
    """
    Reads key bit-width, value length and key count from a hash-table file.

    Args:
        path: Hash table produced by the counting engine.

    Returns:
        The parsed header.

    Raises:
        InvalidHeaderError: If the file is shorter than the header.
    """
    with open(path, "rb") as handle:
        raw = handle.read(HEADER_SIZE)
    try:
        header = parse_hash_table_header(raw)
    except InvalidHeaderError as e:
        e.details["path"] = str(path)
        raise
    logger.debug(
        f"{path}: key_bits={header.key_bits} value_len={header.value_len} "
        f"key_count={header.key_count} record_len={header.record_len}"
    )
    return header
