from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, ClassVar

if TYPE_CHECKING:
    from typing import Self

    import numpy as np
    import numpy.typing as npt

    from zarrstream.common import JSON, BytesLike, ChunkCoords

__all__ = [
    "ArrayBytesCodec",
    "BaseCodec",
    "BytesBytesCodec",
]


class BaseCodec(ABC):
    """Generic base class for codecs.

    Codecs are registered by name via zarrstream.codecs.registry.

    Warnings
    --------
    This class is not intended to be used directly, please use
    ArrayBytesCodec or BytesBytesCodec for subclassing.
    """

    name: ClassVar[str]
    is_fixed_size: bool

    @classmethod
    @abstractmethod
    def from_dict(cls, data: dict[str, JSON]) -> Self:
        """Create a codec from its Zarr v3 JSON representation."""

    @abstractmethod
    def to_dict(self) -> dict[str, JSON]:
        """The Zarr v3 JSON representation of this codec, as written to ``zarr.json``."""

    def compute_encoded_size(self, input_byte_length: int) -> int:
        """Given an input byte length, this method returns the output byte length.
        Raises a NotImplementedError for codecs with variable-sized outputs (e.g. compressors).
        """
        raise NotImplementedError


class ArrayBytesCodec(BaseCodec):
    """Base class for array-to-bytes codecs, the serializer at the head of every pipeline."""

    @abstractmethod
    def encode(self, chunk_array: np.ndarray) -> bytes:
        pass

    @abstractmethod
    def decode(self, chunk_bytes: BytesLike, chunk_shape: ChunkCoords, dtype: npt.DTypeLike) -> np.ndarray:
        pass


class BytesBytesCodec(BaseCodec):
    """Base class for bytes-to-bytes codecs, such as compressors and checksums."""

    @abstractmethod
    def encode(self, chunk_bytes: BytesLike) -> bytes:
        pass

    @abstractmethod
    def decode(self, chunk_bytes: BytesLike) -> bytes:
        pass
