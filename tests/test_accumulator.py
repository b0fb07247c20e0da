from __future__ import annotations

import logging

import numpy as np
import pytest

from tests.conftest import frame_stack, tczyx_dimensions
from zarrstream.accumulator import ChunkAccumulator, split_frames
from zarrstream.dimensions import ArrayDimensions
from zarrstream.errors import ChunkCompletedError, FrameSizeError
from zarrstream.indexing import FrameMapper


def make_accumulator(dims: ArrayDimensions, fill_value: int = 0) -> tuple[ChunkAccumulator, FrameMapper]:
    return ChunkAccumulator(dims, np.dtype("uint16"), fill_value), FrameMapper(dims)


def test_as_frame() -> None:
    accumulator, _ = make_accumulator(tczyx_dimensions())
    assert accumulator.frame_shape == (12, 10)
    assert accumulator.frame_nbytes == 240
    frame = np.arange(120, dtype="uint16").reshape(12, 10)
    assert accumulator.as_frame(frame) is frame
    assert np.array_equal(accumulator.as_frame(frame.tobytes()), frame)
    assert np.array_equal(accumulator.as_frame(frame.ravel().view("uint8")), frame)


@pytest.mark.parametrize("nbytes", [0, 239, 241, 480])
def test_as_frame_wrong_size(nbytes: int) -> None:
    accumulator, _ = make_accumulator(tczyx_dimensions())
    with pytest.raises(FrameSizeError, match=f"Got {nbytes} bytes"):
        accumulator.as_frame(bytes(nbytes))
    with pytest.raises(FrameSizeError):
        accumulator.as_frame(np.zeros(nbytes, dtype="uint8"))


def test_chunks_complete_with_leading_chunk() -> None:
    dims = tczyx_dimensions()
    accumulator, mapper = make_accumulator(dims, fill_value=7)
    frames = frame_stack(dims)
    assert accumulator.write(mapper.locate((0, 0)), frames[0, 0]) == []
    # chunks along c hold one channel each, so (0, 1) opens new chunks
    assert accumulator.write(mapper.locate((0, 1)), frames[0, 1]) == []
    assert len(accumulator) == 18
    completed = accumulator.write(mapper.locate((1, 0)), frames[1, 0])
    assert [c.location.chunk for c in completed] == [
        (0, 0, y, x) for y in range(3) for x in range(3)
    ]
    assert len(accumulator) == 9

    corner = completed[-1]
    assert corner.location.shard == (0, 0, 1, 1)
    assert corner.data.shape == (2, 1, 4, 4)
    assert np.array_equal(corner.data[:, 0, :, :2], frames[0:2, 0, 8:12, 8:10])
    # past the right edge of the frame
    assert (corner.data[..., 2:] == 7).all()


def test_partial_leading_chunk_completes_early() -> None:
    # t = 3 in chunks of 2, so the second leading chunk only covers t = 2
    dims = tczyx_dimensions(t=3, c=1, chunks=(2, 1, 4, 4), shards=(1, 1, 2, 2))
    accumulator, mapper = make_accumulator(dims, fill_value=9)
    frame = np.ones(dims.frame_shape, dtype="uint16")
    completed = accumulator.write(mapper.locate((2, 0)), frame)
    assert len(completed) == 9
    assert (completed[0].data[0] == 1).all()
    assert (completed[0].data[1] == 9).all()


def test_duplicate_frame(caplog: pytest.LogCaptureFixture) -> None:
    dims = tczyx_dimensions()
    accumulator, mapper = make_accumulator(dims)
    first = np.full(dims.frame_shape, 1, dtype="uint16")
    second = np.full(dims.frame_shape, 2, dtype="uint16")
    accumulator.write(mapper.locate((0, 0)), first)
    with caplog.at_level(logging.WARNING):
        assert accumulator.write(mapper.locate((0, 0)), second) == []
    assert "written before" in caplog.text
    completed = accumulator.write(mapper.locate((1, 0)), first)
    assert len(completed) == 9
    assert (completed[0].data[0] == 2).all()



def test_rewrite_into_completed_chunk_rejected() -> None:
    dims = tczyx_dimensions()
    accumulator, mapper = make_accumulator(dims)
    frames = frame_stack(dims)
    accumulator.write(mapper.locate((0, 0)), frames[0, 0])
    assert len(accumulator.write(mapper.locate((1, 0)), frames[1, 0])) == 9
    with pytest.raises(ChunkCompletedError, match=r"Frame \(0, 0\) falls in chunk \(0, 0\)"):
        accumulator.write(mapper.locate((0, 0)), frames[0, 0])
    # no fill-valued buffers were opened for the stored chunk
    assert len(accumulator) == 0
    assert accumulator.drain() == []
    # other leading chunks are unaffected
    assert accumulator.write(mapper.locate((0, 1)), frames[0, 1]) == []


def test_unlimited_leading_chunk_waits_for_every_frame() -> None:
    dims = tczyx_dimensions(t=0, c=1, chunks=(2, 1, 4, 4), shards=(1, 1, 2, 2))
    accumulator, mapper = make_accumulator(dims)
    frame = np.ones(dims.frame_shape, dtype="uint16")
    assert accumulator.write(mapper.locate((6, 0)), frame) == []
    assert len(accumulator.write(mapper.locate((7, 0)), frame)) == 9


def test_frame_is_copied() -> None:
    dims = tczyx_dimensions()
    accumulator, mapper = make_accumulator(dims)
    frame = np.full(dims.frame_shape, 5, dtype="uint16")
    accumulator.write(mapper.locate((0, 0)), frame)
    frame[:] = 0
    completed = accumulator.write(mapper.locate((1, 0)), frame)
    assert (completed[0].data[0] == 5).all()


def test_drain() -> None:
    dims = tczyx_dimensions()
    accumulator, mapper = make_accumulator(dims)
    frame = np.ones(dims.frame_shape, dtype="uint16")
    accumulator.write(mapper.locate((3, 1)), frame)
    accumulator.write(mapper.locate((0, 0)), frame)
    assert accumulator.nbytes == 18 * 2 * 4 * 4 * 2
    drained = accumulator.drain()
    assert [c.location.chunk for c in drained][:2] == [(0, 0, 0, 0), (0, 0, 0, 1)]
    assert drained[-1].location.chunk == (1, 1, 2, 2)
    assert len(accumulator) == 0
    assert accumulator.drain() == []


def test_split_frames() -> None:
    dims = tczyx_dimensions()
    frames = frame_stack(dims)
    rows = split_frames(frames[0], 240)
    assert rows.shape == (2, 240)
    assert np.array_equal(rows[1].view("uint16").reshape(12, 10), frames[0, 1])
    assert split_frames(frames.tobytes(), 240).shape == (8, 240)
    with pytest.raises(FrameSizeError, match="whole number of frames"):
        split_frames(bytes(300), 240)
