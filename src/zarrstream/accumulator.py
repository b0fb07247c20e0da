"""
Collects frames into chunk buffers until each chunk is complete.

Every frame lands in one chunk per spatial tile. All of these chunks share the frame's leading
chunk index, so completion is tracked once per leading chunk with a mask over the leading
positions it covers.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, NamedTuple

import numpy as np

from zarrstream.errors import ChunkCompletedError, FrameSizeError

if TYPE_CHECKING:
    from zarrstream.common import BytesLike, ChunkCoords
    from zarrstream.dimensions import ArrayDimensions
    from zarrstream.indexing import ChunkLocation, FrameLocation

logger = logging.getLogger(__name__)


class CompletedChunk(NamedTuple):
    location: ChunkLocation
    data: np.ndarray


class ChunkAccumulator:
    """
    Open chunk buffers keyed by chunk index.

    Buffers are allocated at the full chunk shape on first use and pre-filled with the fill value,
    so positions past the edge of the array or never written keep the fill value. A chunk is
    complete once every leading position it covers inside the array has received a frame. Once
    complete, its buffers are handed out and later frames for it are rejected.

    Not thread safe; one session feeds it from one thread.
    """

    def __init__(self, dims: ArrayDimensions, dtype: np.dtype[Any], fill_value: Any) -> None:
        self.dims = dims
        self.dtype = np.dtype(dtype)
        self.fill_value = fill_value
        self.frame_shape = dims.frame_shape
        self.frame_nbytes = int(np.prod(self.frame_shape)) * self.dtype.itemsize
        self._chunks: dict[ChunkCoords, CompletedChunk] = {}
        self._written: dict[ChunkCoords, np.ndarray] = {}
        self._completed: set[ChunkCoords] = set()

    def __len__(self) -> int:
        return len(self._chunks)

    @property
    def nbytes(self) -> int:
        """Bytes held by open chunk buffers."""
        return sum(chunk.data.nbytes for chunk in self._chunks.values())

    def as_frame(self, frame: np.ndarray | BytesLike) -> np.ndarray:
        """
        View ``frame`` as one plane of the frame shape and sample type.

        Arrays and buffers are reinterpreted byte for byte, so a frame may arrive as raw bytes.

        Raises
        ------
        FrameSizeError
            If ``frame`` does not hold exactly one frame's worth of bytes.
        """
        if isinstance(frame, np.ndarray):
            data = np.ascontiguousarray(frame)
            if data.nbytes != self.frame_nbytes:
                raise FrameSizeError(self.frame_nbytes, self.frame_shape, data.nbytes)
            if data.dtype == self.dtype and data.shape == self.frame_shape:
                return data
            return data.reshape(-1).view(np.uint8).view(self.dtype).reshape(self.frame_shape)
        view = memoryview(frame)
        if view.nbytes != self.frame_nbytes:
            raise FrameSizeError(self.frame_nbytes, self.frame_shape, view.nbytes)
        return np.frombuffer(view.cast("B"), dtype=self.dtype).reshape(self.frame_shape)

    def _new_mask(self, leading_chunk: ChunkCoords) -> np.ndarray:
        # leading positions beyond the array count as written
        leading_dims = self.dims.frame_dimensions
        mask = np.zeros(tuple(d.chunk_size_px for d in leading_dims), dtype=bool)
        for axis, (c, d) in enumerate(zip(leading_chunk, leading_dims, strict=True)):
            if d.unlimited:
                continue
            valid = d.array_size_px - c * d.chunk_size_px
            if valid < d.chunk_size_px:
                selection = [slice(None)] * mask.ndim
                selection[axis] = slice(valid, None)
                mask[tuple(selection)] = True
        return mask

    def _buffer(self, location: ChunkLocation) -> np.ndarray:
        chunk = self._chunks.get(location.chunk)
        if chunk is None:
            data = np.full(self.dims.chunk_shape, self.fill_value, dtype=self.dtype)
            chunk = CompletedChunk(location, data)
            self._chunks[location.chunk] = chunk
        return chunk.data

    def write(self, location: FrameLocation, frame: np.ndarray | BytesLike) -> list[CompletedChunk]:
        """
        Copy ``frame`` into the chunks it touches and return the chunks it completed.

        The frame is copied before this returns, so the caller may reuse its buffer.

        Raises
        ------
        ChunkCompletedError
            If the frame falls in a chunk that was already completed. Nothing is written.
        FrameSizeError
            If ``frame`` is not exactly one frame. Nothing is written.
        """
        if location.leading_chunk in self._completed:
            raise ChunkCompletedError(location.coordinate, location.leading_chunk)
        data = self.as_frame(frame)
        mask = self._written.get(location.leading_chunk)
        if mask is None:
            mask = self._new_mask(location.leading_chunk)
            self._written[location.leading_chunk] = mask
        if mask[location.leading_offset]:
            logger.warning("Frame at %s was written before; overwriting it", location.coordinate)
        mask[location.leading_offset] = True

        for tile in location.tiles:
            buffer = self._buffer(tile.location)
            buffer[location.leading_offset + tile.chunk_selection] = data[tile.frame_selection]

        if not mask.all():
            return []
        del self._written[location.leading_chunk]
        self._completed.add(location.leading_chunk)
        return [self._chunks.pop(tile.location.chunk) for tile in location.tiles]

    def drain(self) -> list[CompletedChunk]:
        """Remove and return every open chunk, complete or not, in chunk grid order."""
        chunks = [self._chunks[key] for key in sorted(self._chunks)]
        if chunks:
            logger.debug("Draining %d partially filled chunks", len(chunks))
        self._chunks.clear()
        self._completed.update(self._written)
        self._written.clear()
        return chunks


def split_frames(data: np.ndarray | BytesLike, frame_nbytes: int) -> np.ndarray:
    """
    View a batch of frames as rows of ``frame_nbytes`` bytes, one row per frame.

    Raises
    ------
    FrameSizeError
        If the batch is not a whole number of frames.
    """
    if isinstance(data, np.ndarray):
        raw = np.ascontiguousarray(data).reshape(-1).view(np.uint8)
    else:
        raw = np.frombuffer(memoryview(data).cast("B"), dtype=np.uint8)
    if raw.size % frame_nbytes != 0:
        raise FrameSizeError(
            f"Expected a whole number of frames of {frame_nbytes} bytes. Got {raw.size} bytes."
        )
    return raw.reshape(-1, frame_nbytes)
