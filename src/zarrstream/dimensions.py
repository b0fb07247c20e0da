"""
The description of an array's dimensions: how large the array is, how it is cut into chunks, and
how many chunks are grouped into each shard.

Dimensions are listed slowest varying first. The last two are the frame plane (height and width)
and must be spatial; every dimension before them is addressed by a frame coordinate.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from functools import cached_property
from typing import TYPE_CHECKING, Any, TypedDict

from zarrstream.common import ChunkCoords, ceildiv, parse_enum, product
from zarrstream.errors import ConfigurationError

if TYPE_CHECKING:
    from collections.abc import Iterator
    from typing import Self

FRAME_NDIM = 2


class DimensionType(Enum):
    """
    Enum for the kind of a dimension.
    """

    space = "space"
    channel = "channel"
    time = "time"
    other = "other"


class DimensionJSON(TypedDict):
    name: str
    kind: str
    array_size_px: int
    chunk_size_px: int
    shard_size_chunks: int


def _parse_extent(name: str, field: str, data: Any, minimum: int = 1) -> int:
    if not isinstance(data, int) or isinstance(data, bool):
        raise ConfigurationError(f"{name}.{field}", "an integer", data)
    if data < minimum:
        raise ConfigurationError(f"{name}.{field}", f"a value of at least {minimum}", data)
    return data


@dataclass(frozen=True)
class Dimension:
    """
    One axis of the array.

    Attributes
    ----------
    name : str
        The dimension name, written to ``dimension_names``.
    kind : DimensionType
        What the axis represents.
    array_size_px : int
        Extent of the array along this axis. 0 marks an unlimited append dimension, which grows
        with the frames written; only the first dimension may be unlimited.
    chunk_size_px : int
        Extent of one chunk (the sharding codec's inner chunk) along this axis.
    shard_size_chunks : int
        Number of chunks per shard along this axis.
    """

    name: str
    kind: DimensionType
    array_size_px: int
    chunk_size_px: int
    shard_size_chunks: int = 1

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name:
            raise ConfigurationError("name", "a non-empty string", self.name)
        try:
            kind_parsed = parse_enum(self.kind, DimensionType)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"{self.name}.kind", "a DimensionType", self.kind) from e
        object.__setattr__(self, "kind", kind_parsed)
        _parse_extent(self.name, "array_size_px", self.array_size_px, minimum=0)
        _parse_extent(self.name, "chunk_size_px", self.chunk_size_px)
        _parse_extent(self.name, "shard_size_chunks", self.shard_size_chunks)

    @property
    def unlimited(self) -> bool:
        return self.array_size_px == 0

    @property
    def shard_size_px(self) -> int:
        return self.chunk_size_px * self.shard_size_chunks

    @property
    def chunk_count(self) -> int:
        return ceildiv(self.array_size_px, self.chunk_size_px)

    @property
    def shard_count(self) -> int:
        return ceildiv(self.chunk_count, self.shard_size_chunks)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Self:
        return cls(
            name=data["name"],
            kind=data.get("kind", DimensionType.other),
            array_size_px=data["array_size_px"],
            chunk_size_px=data["chunk_size_px"],
            shard_size_chunks=data.get("shard_size_chunks", 1),
        )

    def to_dict(self) -> DimensionJSON:
        return {
            "name": self.name,
            "kind": self.kind.value,
            "array_size_px": self.array_size_px,
            "chunk_size_px": self.chunk_size_px,
            "shard_size_chunks": self.shard_size_chunks,
        }


DimensionLike = Dimension | Mapping[str, Any]


def parse_dimension(data: DimensionLike) -> Dimension:
    if isinstance(data, Dimension):
        return data
    if isinstance(data, Mapping):
        try:
            return Dimension.from_dict(data)
        except KeyError as e:
            raise ConfigurationError(f"Dimension is missing the {e.args[0]!r} key.") from e
    raise ConfigurationError("dimension", "a Dimension or a mapping", data)


@dataclass(frozen=True)
class ArrayDimensions:
    """
    The immutable, validated dimension list of one array, with every shape derived from it.
    """

    dimensions: tuple[Dimension, ...]

    def __init__(self, dimensions: Iterable[DimensionLike]) -> None:
        dimensions_parsed = tuple(parse_dimension(d) for d in dimensions)
        if len(dimensions_parsed) < FRAME_NDIM + 1:
            raise ConfigurationError(
                "dimensions", f"at least {FRAME_NDIM + 1} dimensions", len(dimensions_parsed)
            )
        names = [d.name for d in dimensions_parsed]
        if len(set(names)) != len(names):
            raise ConfigurationError("dimensions", "unique dimension names", names)
        for dim in dimensions_parsed[1:]:
            if dim.unlimited:
                raise ConfigurationError(
                    f"{dim.name}.array_size_px", "a value of at least 1 past the first dimension", 0
                )
        for dim in dimensions_parsed[-FRAME_NDIM:]:
            if dim.kind is not DimensionType.space:
                raise ConfigurationError(f"{dim.name}.kind", "'space' for a frame dimension", dim.kind.value)
        object.__setattr__(self, "dimensions", dimensions_parsed)

    def __len__(self) -> int:
        return len(self.dimensions)

    def __iter__(self) -> Iterator[Dimension]:
        return iter(self.dimensions)

    def __getitem__(self, index: int) -> Dimension:
        return self.dimensions[index]

    @property
    def ndim(self) -> int:
        return len(self.dimensions)

    @property
    def unlimited(self) -> bool:
        """Whether the first dimension grows with the frames written."""
        return self.dimensions[0].unlimited

    @cached_property
    def names(self) -> tuple[str, ...]:
        return tuple(d.name for d in self.dimensions)

    @cached_property
    def shape(self) -> ChunkCoords:
        return tuple(d.array_size_px for d in self.dimensions)

    @cached_property
    def chunk_shape(self) -> ChunkCoords:
        """Shape of one inner chunk."""
        return tuple(d.chunk_size_px for d in self.dimensions)

    @cached_property
    def shard_shape(self) -> ChunkCoords:
        """Shape of one shard, which is the chunk shape of the regular chunk grid."""
        return tuple(d.shard_size_px for d in self.dimensions)

    @cached_property
    def chunks_per_shard(self) -> ChunkCoords:
        return tuple(d.shard_size_chunks for d in self.dimensions)

    @cached_property
    def chunk_grid_shape(self) -> ChunkCoords:
        return tuple(d.chunk_count for d in self.dimensions)

    @cached_property
    def shard_grid_shape(self) -> ChunkCoords:
        return tuple(d.shard_count for d in self.dimensions)

    @property
    def frame_dimensions(self) -> tuple[Dimension, ...]:
        """The dimensions addressed by a frame coordinate."""
        return self.dimensions[:-FRAME_NDIM]

    @cached_property
    def frame_shape(self) -> ChunkCoords:
        return self.shape[-FRAME_NDIM:]

    @cached_property
    def frame_count(self) -> int | None:
        """Number of frames needed to fill the array, None when it has an unlimited dimension."""
        if self.unlimited:
            return None
        return product(self.shape[:-FRAME_NDIM])

    def chunks_in_shard(self, shard_index: ChunkCoords) -> int:
        """Number of slots of the shard at ``shard_index`` that fall inside the chunk grid."""
        count = 1
        for dim, s in zip(self.dimensions, shard_index, strict=True):
            if dim.unlimited:
                count *= dim.shard_size_chunks
                continue
            first = s * dim.shard_size_chunks
            count *= max(0, min(dim.shard_size_chunks, dim.chunk_count - first))
        return count

    def to_dict(self) -> list[DimensionJSON]:
        return [d.to_dict() for d in self.dimensions]
