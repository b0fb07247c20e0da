from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
import pytest

from zarrstream import ArrayDimensions, ChecksumScope, Dimension, StreamSettings, config
from zarrstream.codecs.sharding import ShardReader
from zarrstream.common import ARRAY_PATH, ceildiv
from zarrstream.metadata import MetadataWriter
from zarrstream.storage import LocalStore

if TYPE_CHECKING:
    from collections.abc import Callable, Generator
    from pathlib import Path
    from typing import Any


@pytest.fixture(autouse=True)
def reset_config() -> Generator[None, None, None]:
    config.reset()
    yield
    config.reset()


def tczyx_dimensions(
    t: int = 4,
    c: int = 2,
    y: int = 12,
    x: int = 10,
    *,
    chunks: tuple[int, int, int, int] = (2, 1, 4, 4),
    shards: tuple[int, int, int, int] = (1, 2, 2, 2),
) -> ArrayDimensions:
    return ArrayDimensions(
        [
            Dimension("t", "time", t, chunks[0], shards[0]),
            Dimension("c", "channel", c, chunks[1], shards[1]),
            Dimension("y", "space", y, chunks[2], shards[2]),
            Dimension("x", "space", x, chunks[3], shards[3]),
        ]
    )


def acquisition_dimensions() -> ArrayDimensions:
    """16 frames of 1080 x 1920 cut into 7 and a bit chunks per axis, 8 x 8 chunks per shard."""
    return ArrayDimensions(
        [
            Dimension("t", "time", 16, 16, 1),
            Dimension("c", "channel", 1, 1, 1),
            Dimension("y", "space", 1080, 1080 // 7, 8),
            Dimension("x", "space", 1920, 1920 // 7, 8),
        ]
    )


@pytest.fixture
def dims() -> ArrayDimensions:
    return tczyx_dimensions()


@pytest.fixture
def make_settings(tmp_path: Path) -> Callable[..., StreamSettings]:
    def _make_settings(dimensions: ArrayDimensions | None = None, **kwargs: Any) -> StreamSettings:
        kwargs.setdefault("store_path", tmp_path / "out.zarr")
        return StreamSettings(dimensions=dimensions or tczyx_dimensions(), **kwargs)

    return _make_settings


def frame_stack(dims: ArrayDimensions, dtype: str = "uint16") -> np.ndarray:
    """A distinct, recognizable value at every sample of the array."""
    return np.arange(np.prod(dims.shape), dtype="uint64").astype(dtype).reshape(dims.shape)


def read_array(root: Path, checksum_scope: ChecksumScope = ChecksumScope.shard) -> np.ndarray:
    """Assemble the whole array from its shards, verifying every shard on the way."""
    store = LocalStore(root)
    metadata = MetadataWriter(store).read_array()
    codec = metadata.sharding_codec
    assert codec is not None
    dtype = metadata.data_type.to_numpy()
    out = np.full(metadata.shape, metadata.fill_value, dtype=dtype)
    chunks_per_shard = codec.chunks_per_shard(metadata.chunk_shape)
    shard_grid = tuple(ceildiv(s, c) for s, c in zip(metadata.shape, metadata.chunk_shape, strict=True))
    for shard_index in np.ndindex(shard_grid):
        buf = store.get(f"{ARRAY_PATH}/{metadata.encode_chunk_key(shard_index)}")
        if buf is None:
            continue
        shard = ShardReader.from_bytes(buf, chunks_per_shard, checksum_scope)
        for slot in shard:
            slot_coords = np.unravel_index(slot, chunks_per_shard)
            selection = []
            for s, n, c, chunk_size, size in zip(
                shard_index, chunks_per_shard, slot_coords, codec.chunk_shape, metadata.shape, strict=True
            ):
                start = (s * n + int(c)) * chunk_size
                selection.append(slice(start, min(start + chunk_size, size)))
            chunk = codec.decode_chunk(shard[slot], dtype)
            out[tuple(selection)] = chunk[tuple(slice(0, sl.stop - sl.start) for sl in selection)]
    return out
