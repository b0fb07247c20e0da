from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, NamedTuple

import numpy as np

from zarrstream.common import ChunkCoords, product
from zarrstream.dimensions import FRAME_NDIM
from zarrstream.errors import OutOfBoundsError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from zarrstream.dimensions import ArrayDimensions


class ChunkLocation(NamedTuple):
    """Where a chunk lives: its grid index, the shard holding it and its slot in that shard."""

    chunk: ChunkCoords
    shard: ChunkCoords
    slot: int


def chunk_index_of(coord: Sequence[int], dims: ArrayDimensions) -> ChunkCoords:
    """Chunk grid index of an array coordinate. ``coord`` may cover only the leading dimensions."""
    return tuple(c // d.chunk_size_px for c, d in zip(coord, dims, strict=False))


def shard_index_of(chunk_index: ChunkCoords, dims: ArrayDimensions) -> ChunkCoords:
    return tuple(c // n for c, n in zip(chunk_index, dims.chunks_per_shard, strict=True))


def slot_coords_of(chunk_index: ChunkCoords, dims: ArrayDimensions) -> ChunkCoords:
    """Position of a chunk within its shard."""
    return tuple(c % n for c, n in zip(chunk_index, dims.chunks_per_shard, strict=True))


def slot_index_of(chunk_index: ChunkCoords, dims: ArrayDimensions) -> int:
    """Row-major linear slot of a chunk within its shard."""
    slot = 0
    for c, n in zip(slot_coords_of(chunk_index, dims), dims.chunks_per_shard, strict=True):
        slot = slot * n + c
    return slot


def map_chunk(chunk_index: ChunkCoords, dims: ArrayDimensions) -> ChunkLocation:
    return ChunkLocation(
        chunk=chunk_index,
        shard=shard_index_of(chunk_index, dims),
        slot=slot_index_of(chunk_index, dims),
    )


def check_bounds(coord: Sequence[int], dims: ArrayDimensions) -> ChunkCoords:
    """
    Validate a frame coordinate against the leading dimensions and return it as a tuple.

    Raises
    ------
    OutOfBoundsError
        If the coordinate has the wrong rank or any entry lies outside its dimension. An unlimited
        dimension only rejects negative entries.
    """
    frame_dims = dims.frame_dimensions
    if len(coord) != len(frame_dims):
        raise OutOfBoundsError(
            f"Expected a coordinate with {len(frame_dims)} entries "
            f"({', '.join(d.name for d in frame_dims)}). Got {tuple(coord)}."
        )
    coord_parsed = tuple(int(c) for c in coord)
    for c, d in zip(coord_parsed, frame_dims, strict=True):
        if c < 0 or (not d.unlimited and c >= d.array_size_px):
            raise OutOfBoundsError(c, d.name, d.array_size_px)
    return coord_parsed


def frame_coordinate(frame_index: int, dims: ArrayDimensions) -> ChunkCoords:
    """Coordinate of the ``frame_index``-th frame when frames arrive in row-major order."""
    if frame_index < 0:
        raise OutOfBoundsError(f"Expected a non-negative frame index. Got {frame_index}.")
    leading_shape = dims.shape[:-FRAME_NDIM]
    if dims.unlimited:
        inner_shape = leading_shape[1:]
        outer, inner = divmod(frame_index, product(inner_shape))
        inner_coord = np.unravel_index(inner, inner_shape) if inner_shape else ()
        return (outer, *(int(i) for i in inner_coord))
    if frame_index >= product(leading_shape):
        raise OutOfBoundsError(
            f"Frame {frame_index} is past the end of the array, which holds {dims.frame_count} frames."
        )
    return tuple(int(i) for i in np.unravel_index(frame_index, leading_shape))


@dataclass(frozen=True)
class FrameTile:
    """The part of a frame that lands in one chunk."""

    location: ChunkLocation
    frame_selection: tuple[slice, slice]
    chunk_selection: tuple[slice, slice]


class FrameLocation(NamedTuple):
    coordinate: ChunkCoords
    # chunk index and within-chunk offset along the leading dimensions
    leading_chunk: ChunkCoords
    leading_offset: ChunkCoords
    tiles: tuple[FrameTile, ...]


class FrameMapper:
    """
    Maps frame coordinates to every chunk the frame touches.

    The spatial tiling of a frame does not depend on its coordinate, so it is computed once.
    """

    def __init__(self, dims: ArrayDimensions) -> None:
        self.dims = dims
        height, width = (dims[-2], dims[-1])
        self._spatial: list[tuple[ChunkCoords, tuple[slice, slice], tuple[slice, slice]]] = []
        for iy in range(height.chunk_count):
            y0 = iy * height.chunk_size_px
            y1 = min(y0 + height.chunk_size_px, height.array_size_px)
            for ix in range(width.chunk_count):
                x0 = ix * width.chunk_size_px
                x1 = min(x0 + width.chunk_size_px, width.array_size_px)
                self._spatial.append(
                    (
                        (iy, ix),
                        (slice(y0, y1), slice(x0, x1)),
                        (slice(0, y1 - y0), slice(0, x1 - x0)),
                    )
                )

    @property
    def tiles_per_frame(self) -> int:
        return len(self._spatial)

    def locate(self, coord: Sequence[int]) -> FrameLocation:
        coord_parsed = check_bounds(coord, self.dims)
        frame_dims = self.dims.frame_dimensions
        leading_chunk = tuple(c // d.chunk_size_px for c, d in zip(coord_parsed, frame_dims, strict=True))
        leading_offset = tuple(c % d.chunk_size_px for c, d in zip(coord_parsed, frame_dims, strict=True))
        tiles = tuple(
            FrameTile(
                location=map_chunk(leading_chunk + spatial_chunk, self.dims),
                frame_selection=frame_selection,
                chunk_selection=chunk_selection,
            )
            for spatial_chunk, frame_selection, chunk_selection in self._spatial
        )
        return FrameLocation(coord_parsed, leading_chunk, leading_offset, tiles)
