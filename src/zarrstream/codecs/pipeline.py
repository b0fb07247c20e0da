from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from functools import reduce
from typing import TYPE_CHECKING

from zarrstream.abc.codec import ArrayBytesCodec, BaseCodec, BytesBytesCodec
from zarrstream.codecs.blosc import BloscCname, BloscCodec, BloscShuffle
from zarrstream.codecs.bytes import BytesCodec, EndiannessStr
from zarrstream.codecs.registry import parse_codec
from zarrstream.common import parse_enum
from zarrstream.errors import ConfigurationError, EncodingError

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

    import numpy as np
    import numpy.typing as npt

    from zarrstream.common import JSON, BytesLike, ChunkCoords
    from zarrstream.dtype import DataType


class Compressor(Enum):
    none = "none"
    blosc1 = "blosc1"


class CompressionCodec(Enum):
    none = "none"
    blosc_lz4 = "blosc-lz4"
    blosc_zstd = "blosc-zstd"


@dataclass(frozen=True)
class CompressionSettings:
    """
    How chunks are compressed, in the terms used by the acquisition side.

    ``shuffle`` follows blosc's integer convention: 0 no shuffle, 1 byte shuffle, 2 bit shuffle.
    """

    compressor: Compressor = Compressor.blosc1
    codec: CompressionCodec = CompressionCodec.blosc_lz4
    level: int = 1
    shuffle: int = 1

    def __post_init__(self) -> None:
        try:
            object.__setattr__(self, "compressor", parse_enum(self.compressor, Compressor))
            object.__setattr__(self, "codec", parse_enum(self.codec, CompressionCodec))
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid compression settings: {e}") from e
        if self.compressor is Compressor.blosc1 and self.codec is CompressionCodec.none:
            raise ConfigurationError("compression.codec", "a blosc codec for the blosc1 compressor", "none")
        if self.level not in range(10):
            raise ConfigurationError("compression.level", "an integer between 0 and 9", self.level)
        if self.shuffle not in (0, 1, 2):
            raise ConfigurationError("compression.shuffle", "0, 1 or 2", self.shuffle)

    def to_codec(self, data_type: DataType) -> BytesBytesCodec | None:
        if self.compressor is Compressor.none:
            return None
        cname = BloscCname.lz4 if self.codec is CompressionCodec.blosc_lz4 else BloscCname.zstd
        return BloscCodec(
            typesize=data_type.byte_count,
            cname=cname,
            clevel=self.level,
            shuffle=BloscShuffle.from_int(self.shuffle),
        )


def codecs_from_list(
    codecs: Iterable[BaseCodec],
) -> tuple[ArrayBytesCodec, tuple[BytesBytesCodec, ...]]:
    """Split a codec list into its serializer and compressors, validating their order."""
    array_bytes_maybe: ArrayBytesCodec | None = None
    bytes_bytes: list[BytesBytesCodec] = []
    for codec in codecs:
        if isinstance(codec, ArrayBytesCodec):
            if array_bytes_maybe is not None:
                raise ConfigurationError(
                    f"Got two instances of ArrayBytesCodec: {array_bytes_maybe} and {codec}. "
                    "Only one array-to-bytes codec is allowed."
                )
            if bytes_bytes:
                raise ConfigurationError(
                    f"ArrayBytesCodec '{type(codec)}' cannot follow after "
                    f"BytesBytesCodec '{type(bytes_bytes[-1])}'."
                )
            array_bytes_maybe = codec
        elif isinstance(codec, BytesBytesCodec):
            bytes_bytes.append(codec)
        else:
            raise TypeError(f"Expected a codec, got {type(codec)}")
    if array_bytes_maybe is None:
        raise ConfigurationError("Required ArrayBytesCodec was not found.")
    return array_bytes_maybe, tuple(bytes_bytes)


@dataclass(frozen=True)
class CodecPipeline:
    """
    The ordered chain of codecs applied to each chunk: one serializer followed by any number of
    bytes-to-bytes codecs.

    The pipeline holds no state between chunks, so chunks may be encoded concurrently.
    """

    array_bytes_codec: ArrayBytesCodec
    bytes_bytes_codecs: tuple[BytesBytesCodec, ...]

    @classmethod
    def from_codecs(cls, codecs: Iterable[BaseCodec | dict[str, JSON] | str]) -> CodecPipeline:
        array_bytes_codec, bytes_bytes_codecs = codecs_from_list(parse_codec(c) for c in codecs)
        return cls(array_bytes_codec=array_bytes_codec, bytes_bytes_codecs=bytes_bytes_codecs)

    @classmethod
    def from_compression(
        cls, compression: CompressionSettings | None, data_type: DataType, endian: EndiannessStr = "little"
    ) -> CodecPipeline:
        compressor = compression.to_codec(data_type) if compression is not None else None
        return cls(
            array_bytes_codec=BytesCodec(endian=endian),
            bytes_bytes_codecs=(compressor,) if compressor is not None else (),
        )

    def __iter__(self) -> Iterator[BaseCodec]:
        yield self.array_bytes_codec
        yield from self.bytes_bytes_codecs

    @property
    def is_fixed_size(self) -> bool:
        return all(codec.is_fixed_size for codec in self)

    def to_dict(self) -> list[dict[str, JSON]]:
        return [codec.to_dict() for codec in self]

    def encode(self, chunk_array: np.ndarray) -> bytes:
        """
        Encode one chunk.

        Raises
        ------
        EncodingError
            If any codec in the chain fails.
        """
        codec: BaseCodec = self.array_bytes_codec
        try:
            chunk_bytes = self.array_bytes_codec.encode(chunk_array)
            for bb_codec in self.bytes_bytes_codecs:
                codec = bb_codec
                chunk_bytes = bb_codec.encode(chunk_bytes)
        except Exception as e:
            raise EncodingError(
                f"Codec {codec.name!r} failed to encode a chunk of shape {chunk_array.shape}: {e}"
            ) from e
        return chunk_bytes

    def decode(self, chunk_bytes: BytesLike, chunk_shape: ChunkCoords, dtype: npt.DTypeLike) -> np.ndarray:
        for bb_codec in self.bytes_bytes_codecs[::-1]:
            chunk_bytes = bb_codec.decode(chunk_bytes)
        return self.array_bytes_codec.decode(chunk_bytes, chunk_shape, dtype)

    def compute_encoded_size(self, byte_length: int) -> int:
        return reduce(lambda acc, codec: codec.compute_encoded_size(acc), self, byte_length)
