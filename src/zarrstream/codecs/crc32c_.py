from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
from crc32c import crc32c

from zarrstream.abc.codec import BytesBytesCodec
from zarrstream.codecs.registry import register_codec
from zarrstream.common import JSON, parse_named_configuration
from zarrstream.errors import ShardChecksumError

if TYPE_CHECKING:
    from typing import Self

    from zarrstream.common import BytesLike

CHECKSUM_SIZE = 4


def update_checksum(value: int, data: BytesLike) -> int:
    """Extend the running CRC32C ``value`` with ``data``."""
    return int(crc32c(bytes(data), value))


def checksum_to_bytes(value: int) -> bytes:
    return np.uint32(value).astype("<u4").tobytes()


def compute_checksum(data: BytesLike) -> bytes:
    """Little-endian CRC32C of ``data``."""
    return checksum_to_bytes(update_checksum(0, data))


@dataclass(frozen=True)
class Crc32cCodec(BytesBytesCodec):
    """Appends a CRC32C checksum to the encoded bytes."""

    name = "crc32c"
    is_fixed_size = True

    @classmethod
    def from_dict(cls, data: dict[str, JSON]) -> Self:
        parse_named_configuration(data, "crc32c", require_configuration=False)
        return cls()

    def to_dict(self) -> dict[str, JSON]:
        return {"name": "crc32c"}

    def decode(self, chunk_bytes: BytesLike) -> bytes:
        data = bytes(chunk_bytes)
        inner_bytes = data[:-CHECKSUM_SIZE]
        stored_checksum = data[-CHECKSUM_SIZE:]
        computed_checksum = compute_checksum(inner_bytes)
        if computed_checksum != stored_checksum:
            raise ShardChecksumError(stored_checksum, computed_checksum)
        return inner_bytes

    def encode(self, chunk_bytes: BytesLike) -> bytes:
        return bytes(chunk_bytes) + compute_checksum(chunk_bytes)

    def compute_encoded_size(self, input_byte_length: int) -> int:
        return input_byte_length + CHECKSUM_SIZE


register_codec("crc32c", Crc32cCodec)
