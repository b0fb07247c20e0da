from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Final, Literal

import numpy as np

from zarrstream.abc.codec import ArrayBytesCodec
from zarrstream.codecs.registry import register_codec
from zarrstream.common import JSON, parse_named_configuration

if TYPE_CHECKING:
    from typing import Self

    import numpy.typing as npt

    from zarrstream.common import BytesLike, ChunkCoords

EndiannessStr = Literal["little", "big"]
ENDIANNESS_STR: Final = "little", "big"


def parse_endianness(data: object) -> EndiannessStr:
    if data in ENDIANNESS_STR:
        return data  # type: ignore [return-value]
    raise ValueError(f"Invalid endianness: {data!r}. Expected one of {ENDIANNESS_STR}")


@dataclass(frozen=True)
class BytesCodec(ArrayBytesCodec):
    """Serializes a chunk to its raw bytes in the configured byte order."""

    name = "bytes"
    is_fixed_size = True

    endian: EndiannessStr = "little"

    def __init__(self, *, endian: EndiannessStr = "little") -> None:
        object.__setattr__(self, "endian", parse_endianness(endian))

    @classmethod
    def from_dict(cls, data: dict[str, JSON]) -> Self:
        _, configuration = parse_named_configuration(data, "bytes", require_configuration=False)
        return cls(**(configuration or {}))  # type: ignore[arg-type]

    def to_dict(self) -> dict[str, JSON]:
        return {"name": "bytes", "configuration": {"endian": self.endian}}

    def _target_dtype(self, dtype: npt.DTypeLike) -> np.dtype:
        dtype = np.dtype(dtype)
        if dtype.itemsize == 1:
            return dtype
        return dtype.newbyteorder("<" if self.endian == "little" else ">")

    def encode(self, chunk_array: np.ndarray) -> bytes:
        target = self._target_dtype(chunk_array.dtype)
        if chunk_array.dtype != target:
            chunk_array = chunk_array.astype(target)
        return np.ascontiguousarray(chunk_array).tobytes()

    def decode(self, chunk_bytes: BytesLike, chunk_shape: ChunkCoords, dtype: npt.DTypeLike) -> np.ndarray:
        chunk_array = np.frombuffer(chunk_bytes, dtype=self._target_dtype(dtype))
        # ensure correct chunk shape
        if chunk_array.shape != chunk_shape:
            chunk_array = chunk_array.reshape(chunk_shape)
        return chunk_array

    def compute_encoded_size(self, input_byte_length: int) -> int:
        return input_byte_length


register_codec("bytes", BytesCodec)
