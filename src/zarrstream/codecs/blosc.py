from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from functools import cached_property
from typing import TYPE_CHECKING

import numcodecs
import numpy as np
from numcodecs.blosc import Blosc

from zarrstream.abc.codec import BytesBytesCodec
from zarrstream.codecs.registry import register_codec
from zarrstream.common import JSON, parse_enum, parse_named_configuration

if TYPE_CHECKING:
    from typing import Self

    from zarrstream.common import BytesLike


class BloscShuffle(Enum):
    """
    Enum for shuffle filter used by blosc.
    """

    noshuffle = "noshuffle"
    shuffle = "shuffle"
    bitshuffle = "bitshuffle"

    @classmethod
    def from_int(cls, num: int) -> BloscShuffle:
        blosc_shuffle_int_to_str = {
            0: "noshuffle",
            1: "shuffle",
            2: "bitshuffle",
        }
        if num not in blosc_shuffle_int_to_str:
            raise ValueError(f"Value must be between 0 and 2. Got {num}.")
        return BloscShuffle[blosc_shuffle_int_to_str[num]]


class BloscCname(Enum):
    """
    Enum for compression library used by blosc.
    """

    lz4 = "lz4"
    lz4hc = "lz4hc"
    blosclz = "blosclz"
    zstd = "zstd"
    snappy = "snappy"
    zlib = "zlib"


# Encoding already runs on a worker pool, so blosc's own threads are disabled.
numcodecs.blosc.use_threads = False


def parse_typesize(data: JSON) -> int:
    if isinstance(data, int):
        if data > 0:
            return data
        else:
            raise ValueError(
                f"Value must be greater than 0. Got {data}, which is less or equal to 0."
            )
    raise TypeError(f"Value must be an int. Got {type(data)} instead.")


def parse_clevel(data: JSON) -> int:
    if isinstance(data, int):
        if data not in range(10):
            raise ValueError(f"Value must be between 0 and 9. Got {data} instead.")
        return data
    raise TypeError(f"Value should be an int. Got {type(data)} instead.")


def parse_blocksize(data: JSON) -> int:
    if isinstance(data, int):
        return data
    raise TypeError(f"Value should be an int. Got {type(data)} instead.")


@dataclass(frozen=True)
class BloscCodec(BytesBytesCodec):
    """
    Blosc compression codec.

    Attributes
    ----------
    typesize : int
        The data type size in bytes used for shuffle filtering.
    cname : BloscCname
        The compression algorithm being used.
    clevel : int
        The compression level (0-9).
    shuffle : BloscShuffle
        The shuffle filter mode (noshuffle, shuffle, or bitshuffle).
    blocksize : int
        The size of compressed blocks in bytes (0 for automatic).
    """

    name = "blosc"
    is_fixed_size = False

    typesize: int
    cname: BloscCname
    clevel: int
    shuffle: BloscShuffle
    blocksize: int

    def __init__(
        self,
        *,
        typesize: int = 1,
        cname: BloscCname | str = BloscCname.zstd,
        clevel: int = 5,
        shuffle: BloscShuffle | str | int = BloscShuffle.noshuffle,
        blocksize: int = 0,
    ) -> None:
        if isinstance(shuffle, int) and not isinstance(shuffle, bool):
            shuffle = BloscShuffle.from_int(shuffle)
        object.__setattr__(self, "typesize", parse_typesize(typesize))
        object.__setattr__(self, "cname", parse_enum(cname, BloscCname))
        object.__setattr__(self, "clevel", parse_clevel(clevel))
        object.__setattr__(self, "shuffle", parse_enum(shuffle, BloscShuffle))
        object.__setattr__(self, "blocksize", parse_blocksize(blocksize))

    @classmethod
    def from_dict(cls, data: dict[str, JSON]) -> Self:
        _, configuration = parse_named_configuration(data, "blosc")
        return cls(**configuration)  # type: ignore[arg-type]

    def to_dict(self) -> dict[str, JSON]:
        return {
            "name": "blosc",
            "configuration": {
                "typesize": self.typesize,
                "cname": self.cname.value,
                "clevel": self.clevel,
                "shuffle": self.shuffle.value,
                "blocksize": self.blocksize,
            },
        }

    @cached_property
    def _blosc_codec(self) -> Blosc:
        map_shuffle_str_to_int = {
            BloscShuffle.noshuffle: 0,
            BloscShuffle.shuffle: 1,
            BloscShuffle.bitshuffle: 2,
        }
        config_dict = {
            "cname": self.cname.value,
            "clevel": self.clevel,
            "shuffle": map_shuffle_str_to_int[self.shuffle],
            "blocksize": self.blocksize,
        }
        return Blosc.from_config(config_dict)

    def decode(self, chunk_bytes: BytesLike) -> bytes:
        return bytes(self._blosc_codec.decode(chunk_bytes))

    def encode(self, chunk_bytes: BytesLike) -> bytes:
        # blosc takes the shuffle element size from the itemsize of its input
        if self.typesize in (1, 2, 4, 8):
            chunk_bytes = np.frombuffer(chunk_bytes, dtype=f"u{self.typesize}")
        return bytes(self._blosc_codec.encode(chunk_bytes))


register_codec("blosc", BloscCodec)
