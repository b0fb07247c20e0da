"""
The array session: one stream of frames written to one sharded Zarr v3 array.

```python
from zarrstream import ArraySession, Dimension, StreamSettings

settings = StreamSettings(
    store_path="out.zarr",
    dimensions=[
        Dimension("t", "time", array_size_px=16, chunk_size_px=16),
        Dimension("y", "space", array_size_px=1080, chunk_size_px=154, shard_size_chunks=8),
        Dimension("x", "space", array_size_px=1920, chunk_size_px=274, shard_size_chunks=8),
    ],
    data_type="uint8",
)
with ArraySession(settings) as session:
    for frame in frames:
        session.write(frame)
```
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from zarrstream.accumulator import ChunkAccumulator, CompletedChunk, split_frames
from zarrstream.codecs.bytes import parse_endianness
from zarrstream.codecs.pipeline import CodecPipeline, CompressionSettings
from zarrstream.codecs.sharding import ShardSet, parse_checksum_scope
from zarrstream.common import ARRAY_PATH, ZARR_JSON, ChunkCoords, parse_separator, product
from zarrstream.config import config, parse_max_pending_chunks, parse_max_workers
from zarrstream.dimensions import ArrayDimensions, Dimension
from zarrstream.dtype import DataType, parse_data_type, parse_fill_value
from zarrstream.errors import (
    ConfigurationError,
    ContainsArrayError,
    EncodingError,
    ShardWriteError,
    StreamStateError,
)
from zarrstream.indexing import FrameMapper, frame_coordinate
from zarrstream.metadata import (
    ArrayMetadata,
    GroupMetadata,
    MetadataWriter,
    PixelScale,
    multiscales_attributes,
    parse_external_metadata,
    parse_pixel_scale,
)
from zarrstream.storage import LocalStore, WriterLock

if TYPE_CHECKING:
    from types import TracebackType

    import numpy as np

    from zarrstream.common import JSON, BytesLike, SeparatorLiteral

logger = logging.getLogger(__name__)


def parse_compression(data: object) -> CompressionSettings | None:
    if data is None or isinstance(data, CompressionSettings):
        return data
    if isinstance(data, Mapping):
        try:
            return CompressionSettings(**data)
        except TypeError as e:
            raise ConfigurationError(f"Invalid compression settings: {e}") from e
    raise ConfigurationError("compression", "CompressionSettings, a mapping or None", data)


def parse_store_path(data: object) -> Path:
    if isinstance(data, str | Path) and str(data):
        return Path(data)
    raise ConfigurationError("store_path", "a non-empty path", data)


@dataclass(frozen=True)
class StreamSettings:
    """
    Everything needed to open a stream. All values are validated on construction, so invalid
    settings fail before anything is created on disk.

    Attributes
    ----------
    store_path : Path
        Root directory of the output. The group lives here and the array under ``0``.
    dimensions : ArrayDimensions
        The array's dimensions, slowest varying first, ending with the frame height and width.
    data_type : DataType
        Sample type of every frame.
    compression : CompressionSettings or None
        How chunks are compressed. None stores them raw.
    custom_metadata : dict
        External metadata, written as its own document next to the group metadata.
    fill_value : int or float
        Value of samples never written. Defaults to ``array.fill_value`` from the config.
    separator : {"/", "."}
        Chunk key separator. Defaults to ``array.separator`` from the config.
    sample_spacing : PixelScale
        Physical size of one sample along x and y, recorded in the group attributes.
    overwrite : bool
        Replace an existing array at ``store_path`` instead of refusing to open.
    """

    store_path: Path
    dimensions: ArrayDimensions
    data_type: DataType
    compression: CompressionSettings | None
    custom_metadata: dict[str, JSON]
    fill_value: int | float
    separator: SeparatorLiteral
    sample_spacing: PixelScale
    overwrite: bool

    def __init__(
        self,
        *,
        store_path: str | Path,
        dimensions: ArrayDimensions | Iterable[Dimension | Mapping[str, Any]],
        data_type: DataType | str | np.dtype[Any] = DataType.uint8,
        compression: CompressionSettings | Mapping[str, Any] | None = None,
        custom_metadata: Mapping[str, JSON] | str | None = None,
        fill_value: int | float | None = None,
        separator: SeparatorLiteral | None = None,
        sample_spacing: PixelScale | tuple[float, float] | None = None,
        overwrite: bool = False,
    ) -> None:
        if not isinstance(dimensions, ArrayDimensions):
            dimensions = ArrayDimensions(dimensions)
        data_type_parsed = parse_data_type(data_type)
        if fill_value is None:
            fill_value = config.get("array.fill_value")
        if separator is None:
            separator = config.get("array.separator")
        try:
            separator_parsed = parse_separator(separator)
        except ValueError as e:
            raise ConfigurationError("separator", "'/' or '.'", separator) from e

        object.__setattr__(self, "store_path", parse_store_path(store_path))
        object.__setattr__(self, "dimensions", dimensions)
        object.__setattr__(self, "data_type", data_type_parsed)
        object.__setattr__(self, "compression", parse_compression(compression))
        object.__setattr__(self, "custom_metadata", parse_external_metadata(custom_metadata))
        object.__setattr__(self, "fill_value", parse_fill_value(fill_value, data_type_parsed))
        object.__setattr__(self, "separator", separator_parsed)
        object.__setattr__(self, "sample_spacing", parse_pixel_scale(sample_spacing))
        object.__setattr__(self, "overwrite", bool(overwrite))


class SessionState(Enum):
    created = "created"
    open = "open"
    finalized = "finalized"
    failed = "failed"


class ArraySession:
    """
    Writes frames to a sharded Zarr v3 array.

    ``write`` copies each frame into chunk buffers and hands every chunk it completes to a pool of
    encoder threads, which append the encoded bytes to the chunk's shard. ``finalize`` waits for
    the pool, flushes the chunks still open, seals every shard and writes the metadata.

    At most ``threading.max_pending_chunks`` completed chunks wait for the pool; ``write`` blocks
    until an encoder catches up. With an unlimited first dimension the array's final extent along
    it is the furthest frame written.

    Frames are written from a single thread.
    """

    def __init__(self, settings: StreamSettings) -> None:
        self.settings = settings
        self.state = SessionState.created
        self.frames_written = 0
        self.bytes_written = 0
        self.append_extent = 0
        self.store = LocalStore(settings.store_path)
        self.metadata: ArrayMetadata | None = None
        self._lock: WriterLock | None = None
        self._executor: ThreadPoolExecutor | None = None
        self._max_workers: int | None = None
        self._max_pending_chunks = 1
        self._futures: list[Future[bool]] = []
        self._encoding_errors: list[EncodingError] = []

    def __repr__(self) -> str:
        return f"ArraySession({str(self.store)!r}, state={self.state.value!r})"

    def __enter__(self) -> ArraySession:
        if self.state is SessionState.created:
            self.open()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        if exc_type is None:
            self.finalize()
        elif self.state is SessionState.open:
            # keep the original exception; still leave readable output behind
            try:
                self.finalize()
            except (EncodingError, ShardWriteError, OSError):
                logger.exception("Failed to finalize %s after an error", self.store)

    @property
    def dims(self) -> ArrayDimensions:
        return self.settings.dimensions

    def _check_state(self, action: str) -> None:
        if self.state is not SessionState.open:
            raise StreamStateError(action, self.state.value)

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            logger.debug("Creating zarrstream ThreadPoolExecutor with max_workers=%s", self._max_workers)
            self._executor = ThreadPoolExecutor(
                max_workers=self._max_workers, thread_name_prefix="zarrstream_pool"
            )
        return self._executor

    def open(self) -> None:
        """
        Validate the layout, take the writer lock and prepare the buffers. Writes no data.

        Raises
        ------
        StreamStateError
            If the session was opened before, or another writer holds the lock.
        ContainsArrayError
            If an array exists at the store path and ``overwrite`` is not set.
        ConfigurationError
            If the configured endianness, checksum scope or pool size is invalid.
        """
        if self.state is not SessionState.created:
            raise StreamStateError("open", self.state.value)
        settings = self.settings
        try:
            endian = parse_endianness(config.get("array.endian"))
        except ValueError as e:
            raise ConfigurationError(str(e)) from e
        checksum_scope = parse_checksum_scope(config.get("sharding.checksum_scope"))
        max_workers = parse_max_workers(config.get("threading.max_workers", None))
        max_pending_chunks = parse_max_pending_chunks(config.get("threading.max_pending_chunks"))
        pipeline = CodecPipeline.from_compression(settings.compression, settings.data_type, endian)
        metadata = ArrayMetadata.from_dimensions(
            self.dims,
            settings.data_type,
            pipeline,
            fill_value=settings.fill_value,
            separator=settings.separator,
        )
        sharding_codec = metadata.sharding_codec
        assert sharding_codec is not None

        if config.get("store.lock"):
            self._lock = WriterLock(self.store.root)
            self._lock.acquire()
        try:
            if self.store.exists(ZARR_JSON) or self.store.exists(ARRAY_PATH):
                if not settings.overwrite:
                    raise ContainsArrayError(str(self.store), ARRAY_PATH)
                logger.debug("Removing existing array at %s", self.store)
                self.store.clear()
        except BaseException:
            self._release_lock()
            raise

        self.metadata = metadata
        self._max_workers = max_workers
        self._max_pending_chunks = max_pending_chunks
        self._sharding_codec = sharding_codec
        self._mapper = FrameMapper(self.dims)
        self._accumulator = ChunkAccumulator(self.dims, settings.data_type.to_numpy(), settings.fill_value)
        self._shards = ShardSet(
            self.store,
            ARRAY_PATH,
            self.dims.chunks_per_shard,
            self.dims.chunks_in_shard,
            metadata.encode_chunk_key,
            checksum_scope=checksum_scope,
        )
        self._metadata_writer = MetadataWriter(self.store)
        self.state = SessionState.open
        logger.debug(
            "Opened %s: shape=%s chunks=%s shards=%s", self.store, self.dims.shape, self.dims.chunk_shape, self.dims.shard_shape
        )

    @property
    def frame_nbytes(self) -> int:
        return product(self.dims.frame_shape) * self.settings.data_type.byte_count

    def write(self, frame: np.ndarray | BytesLike, coordinate: Iterable[int] | None = None) -> int:
        """
        Write one frame and return the number of bytes consumed.

        Without a ``coordinate`` the frame goes to the next position of a row-major counter over
        the leading dimensions. The counter advances with every accepted frame. The frame is copied
        before this returns.

        Raises
        ------
        StreamStateError
            If the session is not open.
        OutOfBoundsError
            If the coordinate lies outside the array. Nothing is written.
        FrameSizeError
            If ``frame`` is not exactly one frame. Nothing is written.
        ShardWriteError
            If an earlier chunk could not be stored. The session is unusable afterwards.
        """
        self._check_state("write")
        self._collect(wait_all=False)
        if coordinate is None:
            coordinate = frame_coordinate(self.frames_written, self.dims)
        location = self._mapper.locate(tuple(coordinate))
        completed = self._accumulator.write(location, frame)
        if self.dims.unlimited:
            self.append_extent = max(self.append_extent, location.coordinate[0] + 1)
        self.frames_written += 1
        for chunk in completed:
            self._submit(chunk)
        self.bytes_written += self._accumulator.frame_nbytes
        return self._accumulator.frame_nbytes

    def write_frames(self, data: np.ndarray | BytesLike) -> int:
        """
        Write a batch of frames at the frame counter and return the number of bytes consumed.

        ``data`` may be an array of shape ``(..., height, width)`` or a buffer holding a whole
        number of frames.
        """
        self._check_state("write")
        consumed = 0
        for frame in split_frames(data, self._accumulator.frame_nbytes):
            consumed += self.write(frame)
        return consumed

    def _encode_and_store(self, chunk: CompletedChunk) -> bool:
        try:
            chunk_bytes = self._sharding_codec.encode_chunk(chunk.data)
        except EncodingError:
            logger.warning(
                "Failed to encode chunk %s; slot %d of shard %s stays missing",
                chunk.location.chunk,
                chunk.location.slot,
                chunk.location.shard,
            )
            raise
        return self._shards.put(chunk.location.shard, chunk.location.slot, chunk_bytes)

    @property
    def pending_chunks(self) -> int:
        """Completed chunks handed to the pool and not yet collected."""
        return len(self._futures)

    def _submit(self, chunk: CompletedChunk) -> None:
        while len(self._futures) >= self._max_pending_chunks:
            wait(self._futures, return_when=FIRST_COMPLETED)
            self._collect(wait_all=False)
        self._futures.append(self._get_executor().submit(self._encode_and_store, chunk))

    def _collect(self, *, wait_all: bool) -> None:
        if wait_all:
            wait(self._futures)
        pending = []
        for future in self._futures:
            if not future.done():
                pending.append(future)
                continue
            exc = future.exception()
            if isinstance(exc, EncodingError):
                self._encoding_errors.append(exc)
            elif exc is not None:
                self._futures = []
                self._fail()
                raise exc
        self._futures = pending

    def _fail(self) -> None:
        self.state = SessionState.failed
        if self._executor is not None:
            self._executor.shutdown(wait=True, cancel_futures=True)
        self._shards.abort_all()
        self._release_lock()

    def _release_lock(self) -> None:
        if self._lock is not None:
            self._lock.release()
            self._lock = None

    def finalize(self) -> None:
        """
        Flush every open chunk, seal every shard and write the metadata. A no-op once finalized.

        Chunks still incomplete are stored padded with the fill value. If no frame was written, an
        empty shard is sealed at the origin so the array always has at least one shard.

        Raises
        ------
        StreamStateError
            If the session was never opened or has failed.
        EncodingError
            The first chunk that failed to encode, raised after the output was written.
        """
        if self.state is SessionState.finalized:
            return
        self._check_state("finalize")
        self._collect(wait_all=True)
        for chunk in self._accumulator.drain():
            self._submit(chunk)
        self._collect(wait_all=True)
        if len(self._shards) == 0:
            origin: ChunkCoords = (0,) * self.dims.ndim
            self._shards.writer_for(origin)
        assert self.metadata is not None
        if self.dims.unlimited:
            self.metadata = self.metadata.update_shape((self.append_extent, *self.metadata.shape[1:]))
        group_metadata = GroupMetadata(
            attributes=multiscales_attributes(self.dims, self.settings.sample_spacing, self.store.root.name)
        )
        try:
            self._shards.seal_all()
            self._metadata_writer.write(self.metadata, group_metadata, self.settings.custom_metadata)
        except OSError:
            self._fail()
            raise

        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
        self._release_lock()
        self.state = SessionState.finalized
        logger.debug(
            "Finalized %s with shape %s after %d frames in %d shards",
            self.store,
            self.metadata.shape,
            self.frames_written,
            len(self._shards),
        )
        if self._encoding_errors:
            raise self._encoding_errors[0]
