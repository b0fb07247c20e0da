"""
Shards: the files holding a grid of encoded chunks followed by an index table and a checksum.

A shard file is laid out as::

    [chunk payloads, in arrival order][index table][crc32c]

The index holds one little-endian ``uint64`` ``(offset, length)`` pair per slot, slots in row-major
order, with ``(2**64 - 1, 2**64 - 1)`` marking a missing chunk. The checksum is a little-endian
CRC32C. With ``ChecksumScope.shard`` it covers every byte before it; with ``ChecksumScope.index`` it
covers the index table only, as the ``crc32c`` entry of ``index_codecs`` describes.
"""

from __future__ import annotations

import logging
import os
import threading
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from functools import cached_property
from typing import TYPE_CHECKING, Any, BinaryIO, NamedTuple

import numpy as np
import numpy.typing as npt

from zarrstream.abc.codec import BaseCodec
from zarrstream.codecs.bytes import BytesCodec
from zarrstream.codecs.crc32c_ import (
    CHECKSUM_SIZE,
    Crc32cCodec,
    checksum_to_bytes,
    update_checksum,
)
from zarrstream.codecs.pipeline import CodecPipeline
from zarrstream.codecs.registry import register_codec
from zarrstream.common import (
    JSON,
    MAX_UINT_64,
    ChunkCoords,
    parse_enum,
    parse_named_configuration,
    parse_shapelike,
    product,
)
from zarrstream.errors import ConfigurationError, ShardChecksumError, ShardWriteError

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path
    from typing import Self

    from zarrstream.common import BytesLike
    from zarrstream.storage import LocalStore

logger = logging.getLogger(__name__)

# one (offset, length) pair of uint64 per slot
INDEX_ENTRY_SIZE = 16


class ShardingCodecIndexLocation(Enum):
    """
    Enum for index location used by the sharding codec.
    """

    end = "end"


class ChecksumScope(Enum):
    """
    The bytes covered by the checksum trailer of a shard.
    """

    shard = "shard"
    index = "index"


def parse_index_location(data: object) -> ShardingCodecIndexLocation:
    return parse_enum(data, ShardingCodecIndexLocation)


def parse_checksum_scope(data: object) -> ChecksumScope:
    try:
        return parse_enum(data, ChecksumScope)
    except (TypeError, ValueError) as e:
        raise ConfigurationError("sharding.checksum_scope", "'shard' or 'index'", data) from e


def shard_index_size(chunks_per_shard: ChunkCoords) -> int:
    """Size of the index table plus checksum trailer."""
    return INDEX_ENTRY_SIZE * product(chunks_per_shard) + CHECKSUM_SIZE


class ShardIndex(NamedTuple):
    # dtype uint64, shape (chunks_per_shard_0, chunks_per_shard_1, ..., 2)
    offsets_and_lengths: npt.NDArray[np.uint64]

    @property
    def chunks_per_shard(self) -> ChunkCoords:
        return tuple(self.offsets_and_lengths.shape[0:-1])

    @property
    def _flat(self) -> npt.NDArray[np.uint64]:
        return self.offsets_and_lengths.reshape(-1, 2)

    def __len__(self) -> int:
        return int(self.offsets_and_lengths.size // 2)

    def is_all_empty(self) -> bool:
        return bool(np.array_equiv(self.offsets_and_lengths, MAX_UINT_64))

    def is_missing(self, slot: int) -> bool:
        return int(self._flat[slot, 0]) == MAX_UINT_64

    def missing_slots(self) -> list[int]:
        return [int(i) for i in np.flatnonzero(self._flat[:, 0] == MAX_UINT_64)]

    def get_full_chunk_map(self) -> npt.NDArray[np.bool_]:
        return np.not_equal(self.offsets_and_lengths[..., 0], MAX_UINT_64)

    def get_chunk_slice(self, slot: int) -> tuple[int, int] | None:
        chunk_start, chunk_len = self._flat[slot]
        if (chunk_start, chunk_len) == (MAX_UINT_64, MAX_UINT_64):
            return None
        else:
            return (int(chunk_start), int(chunk_start + chunk_len))

    def set_chunk_slice(self, slot: int, chunk_slice: slice | None) -> None:
        if chunk_slice is None:
            self._flat[slot] = (MAX_UINT_64, MAX_UINT_64)
        else:
            self._flat[slot] = (
                chunk_slice.start,
                chunk_slice.stop - chunk_slice.start,
            )

    def to_bytes(self) -> bytes:
        """The index table as stored in a shard, without the checksum."""
        return BytesCodec().encode(self.offsets_and_lengths)

    @classmethod
    def from_bytes(cls, table: BytesLike, chunks_per_shard: ChunkCoords) -> ShardIndex:
        offsets_and_lengths = BytesCodec().decode(table, chunks_per_shard + (2,), np.dtype("<u8"))
        return cls(offsets_and_lengths.copy())

    @classmethod
    def create_empty(cls, chunks_per_shard: ChunkCoords) -> ShardIndex:
        offsets_and_lengths = np.zeros(chunks_per_shard + (2,), dtype="<u8", order="C")
        offsets_and_lengths.fill(MAX_UINT_64)
        return cls(offsets_and_lengths)


@dataclass(frozen=True)
class ShardingCodec(BaseCodec):
    """
    The ``sharding_indexed`` codec: the zarr-level chunk is a shard holding a grid of inner chunks,
    each encoded with ``codecs``, followed by an index encoded with ``index_codecs``.
    """

    name = "sharding_indexed"
    is_fixed_size = False

    chunk_shape: ChunkCoords
    codecs: tuple[BaseCodec, ...]
    index_codecs: tuple[BaseCodec, ...]
    index_location: ShardingCodecIndexLocation = ShardingCodecIndexLocation.end

    def __init__(
        self,
        *,
        chunk_shape: Iterable[int],
        codecs: Iterable[Any] = (BytesCodec(),),
        index_codecs: Iterable[Any] = (BytesCodec(), Crc32cCodec()),
        index_location: ShardingCodecIndexLocation | str = ShardingCodecIndexLocation.end,
    ) -> None:
        chunk_shape_parsed = parse_shapelike(chunk_shape)
        codecs_parsed = tuple(CodecPipeline.from_codecs(codecs))
        index_codecs_parsed = tuple(CodecPipeline.from_codecs(index_codecs))
        index_location_parsed = parse_index_location(index_location)

        object.__setattr__(self, "chunk_shape", chunk_shape_parsed)
        object.__setattr__(self, "codecs", codecs_parsed)
        object.__setattr__(self, "index_codecs", index_codecs_parsed)
        object.__setattr__(self, "index_location", index_location_parsed)

    @classmethod
    def from_dict(cls, data: dict[str, JSON]) -> Self:
        _, configuration_parsed = parse_named_configuration(data, "sharding_indexed")
        return cls(**configuration_parsed)  # type: ignore[arg-type]

    def to_dict(self) -> dict[str, JSON]:
        return {
            "name": "sharding_indexed",
            "configuration": {
                "chunk_shape": list(self.chunk_shape),
                "codecs": [s.to_dict() for s in self.codecs],
                "index_codecs": [s.to_dict() for s in self.index_codecs],
                "index_location": self.index_location.value,
            },
        }

    @cached_property
    def codec_pipeline(self) -> CodecPipeline:
        return CodecPipeline.from_codecs(self.codecs)

    def validate(self, shard_shape: ChunkCoords) -> None:
        if len(self.chunk_shape) != len(shard_shape):
            raise ConfigurationError(
                "The shard's `chunk_shape` and array's `shape` need to have the "
                "same number of dimensions."
            )
        if not all(s % c == 0 for s, c in zip(shard_shape, self.chunk_shape, strict=True)):
            raise ConfigurationError(
                "The array's `chunk_shape` needs to be divisible by the shard's inner `chunk_shape`."
            )

    def chunks_per_shard(self, shard_shape: ChunkCoords) -> ChunkCoords:
        return tuple(s // c for s, c in zip(shard_shape, self.chunk_shape, strict=True))

    def encode_chunk(self, chunk_array: np.ndarray) -> bytes:
        return self.codec_pipeline.encode(chunk_array)

    def decode_chunk(self, chunk_bytes: BytesLike, dtype: npt.DTypeLike) -> np.ndarray:
        return self.codec_pipeline.decode(chunk_bytes, self.chunk_shape, dtype)


register_codec("sharding_indexed", ShardingCodec)


class ShardWriter:
    """
    Writes one shard file.

    The file is opened on the first ``put``. Encoded chunks are appended in arrival order and the
    index records where each one landed, so chunks of one shard may arrive in any order. The
    shard seals itself once ``expected_chunks`` slots are filled; ``seal`` forces it early.
    A lock per shard keeps appends to the file from interleaving.
    """

    def __init__(
        self,
        store: LocalStore,
        key: str,
        chunks_per_shard: ChunkCoords,
        expected_chunks: int,
        checksum_scope: ChecksumScope = ChecksumScope.shard,
    ) -> None:
        self.store = store
        self.key = key
        self.index = ShardIndex.create_empty(chunks_per_shard)
        self.expected_chunks = expected_chunks
        self.checksum_scope = checksum_scope
        self.offset = 0
        self.filled = 0
        self.sealed = False
        self.committed = False
        self._checksum = 0
        self._file: BinaryIO | None = None
        self._tmp_path: Path | None = None
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"ShardWriter({self.key!r}, filled={self.filled}/{self.expected_chunks}, sealed={self.sealed})"

    def _open(self) -> BinaryIO:
        if self._file is None:
            try:
                self._file, self._tmp_path = self.store.open_for_write(self.key)
            except OSError as e:
                raise ShardWriteError(self.key, e) from e
            logger.debug("Opened shard %s", self.key)
        return self._file

    def _write(self, data: BytesLike) -> None:
        f = self._open()
        try:
            f.write(data)
        except OSError as e:
            raise ShardWriteError(self.key, e) from e
        if self.checksum_scope is ChecksumScope.shard:
            self._checksum = update_checksum(self._checksum, data)

    def put(self, slot: int, chunk_bytes: BytesLike) -> bool:
        """
        Append an encoded chunk at ``slot``. Returns True if this put sealed the shard.
        """
        with self._lock:
            if self.sealed:
                raise ShardWriteError(self.key, f"slot {slot} arrived after the shard was sealed")
            if not 0 <= slot < len(self.index):
                raise ShardWriteError(self.key, f"slot {slot} is outside the index of {len(self.index)} slots")
            self._write(chunk_bytes)
            length = len(chunk_bytes)
            if self.index.is_missing(slot):
                self.filled += 1
            else:
                # the earlier bytes stay in the file but are no longer referenced
                logger.warning("Slot %d of shard %s was written twice; keeping the latest chunk", slot, self.key)
            self.index.set_chunk_slice(slot, slice(self.offset, self.offset + length))
            self.offset += length
            if self.filled >= self.expected_chunks:
                self._seal()
                return True
            return False

    def seal(self) -> None:
        """Write the index and checksum, close the file and move it into place. Idempotent."""
        with self._lock:
            if not self.sealed:
                self._seal()

    def _seal(self) -> None:
        try:
            table = self.index.to_bytes()
            self._write(table)
            if self.checksum_scope is ChecksumScope.index:
                self._checksum = update_checksum(0, table)
            self._write(checksum_to_bytes(self._checksum))
            assert self._file is not None and self._tmp_path is not None
            self._file.close()
            self.store.commit(self._tmp_path, self.key)
        except ShardWriteError:
            raise
        except OSError as e:
            raise ShardWriteError(self.key, e) from e
        finally:
            # no further puts, even when sealing failed
            self.sealed = True
        self.committed = True
        logger.debug(
            "Sealed shard %s with %d of %d slots filled", self.key, self.filled, len(self.index)
        )

    def abort(self) -> None:
        """Close and remove the file unless it was moved into place."""
        with self._lock:
            if self._file is not None and not self._file.closed:
                self._file.close()
            if self._tmp_path is not None and not self.committed:
                self._tmp_path.unlink(missing_ok=True)
            self.sealed = True


class ShardSet:
    """
    The shard writers of one array, created on first use and keyed by shard grid index.

    ``expected_chunks`` gives the number of slots of a shard that will ever be filled and
    ``encode_key`` its store key relative to ``prefix``.
    """

    def __init__(
        self,
        store: LocalStore,
        prefix: str,
        chunks_per_shard: ChunkCoords,
        expected_chunks: Callable[[ChunkCoords], int],
        encode_key: Callable[[ChunkCoords], str],
        checksum_scope: ChecksumScope = ChecksumScope.shard,
    ) -> None:
        self.store = store
        self.prefix = prefix
        self.chunks_per_shard = chunks_per_shard
        self.checksum_scope = checksum_scope
        self._expected_chunks = expected_chunks
        self._encode_key = encode_key
        self._writers: dict[ChunkCoords, ShardWriter] = {}
        self._lock = threading.Lock()

    def key_for(self, shard_index: ChunkCoords) -> str:
        key = self._encode_key(shard_index)
        return f"{self.prefix}/{key}" if self.prefix else key

    def writer_for(self, shard_index: ChunkCoords) -> ShardWriter:
        with self._lock:
            writer = self._writers.get(shard_index)
            if writer is None:
                writer = ShardWriter(
                    self.store,
                    self.key_for(shard_index),
                    self.chunks_per_shard,
                    self._expected_chunks(shard_index),
                    checksum_scope=self.checksum_scope,
                )
                self._writers[shard_index] = writer
            return writer

    def put(self, shard_index: ChunkCoords, slot: int, chunk_bytes: BytesLike) -> bool:
        return self.writer_for(shard_index).put(slot, chunk_bytes)

    def seal_all(self) -> None:
        with self._lock:
            writers = list(self._writers.values())
        for writer in writers:
            writer.seal()

    def abort_all(self) -> None:
        with self._lock:
            writers = list(self._writers.values())
        for writer in writers:
            writer.abort()

    def __iter__(self) -> Iterator[ChunkCoords]:
        return iter(list(self._writers))

    def __len__(self) -> int:
        return len(self._writers)

    def __getitem__(self, shard_index: ChunkCoords) -> ShardWriter:
        return self._writers[shard_index]


def _verify(buf: bytes, checksum_scope: ChecksumScope, index_size: int) -> None:
    stored = buf[-CHECKSUM_SIZE:]
    if checksum_scope is ChecksumScope.shard:
        covered = buf[:-CHECKSUM_SIZE]
    else:
        covered = buf[-index_size:-CHECKSUM_SIZE]
    computed = checksum_to_bytes(update_checksum(0, covered))
    if stored != computed:
        raise ShardChecksumError(stored, computed)


class ShardReader(Mapping[int, bytes]):
    """
    Read access to a sealed shard: the index and the encoded bytes of each filled slot.
    """

    buf: bytes
    index: ShardIndex

    @classmethod
    def from_bytes(
        cls,
        buf: BytesLike,
        chunks_per_shard: ChunkCoords,
        checksum_scope: ChecksumScope = ChecksumScope.shard,
    ) -> ShardReader:
        """
        Raises
        ------
        ShardChecksumError
            If the stored checksum does not match.
        """
        index_size = shard_index_size(chunks_per_shard)
        obj = cls()
        obj.buf = bytes(buf)
        if len(obj.buf) < index_size:
            raise ValueError(
                f"Shard of {len(obj.buf)} bytes is too small to hold an index of {index_size} bytes."
            )
        _verify(obj.buf, checksum_scope, index_size)
        obj.index = ShardIndex.from_bytes(obj.buf[-index_size:-CHECKSUM_SIZE], chunks_per_shard)
        return obj

    def __getitem__(self, slot: int) -> bytes:
        chunk_byte_slice = self.index.get_chunk_slice(slot)
        if chunk_byte_slice:
            return self.buf[chunk_byte_slice[0] : chunk_byte_slice[1]]
        raise KeyError(slot)

    def __len__(self) -> int:
        return len(self.index) - len(self.index.missing_slots())

    def __iter__(self) -> Iterator[int]:
        return (slot for slot in range(len(self.index)) if not self.index.is_missing(slot))

    @property
    def payload_size(self) -> int:
        return len(self.buf) - shard_index_size(self.index.chunks_per_shard)


def read_shard_index(
    path: Path | str,
    chunks_per_shard: ChunkCoords,
    checksum_scope: ChecksumScope = ChecksumScope.shard,
) -> ShardIndex:
    """Read and verify the index at the end of the shard file at ``path``."""
    index_size = shard_index_size(chunks_per_shard)
    with open(path, "rb") as f:
        if checksum_scope is ChecksumScope.shard:
            return ShardReader.from_bytes(f.read(), chunks_per_shard, checksum_scope).index
        f.seek(0, os.SEEK_END)
        file_size = f.tell()
        if file_size < index_size:
            raise ValueError(
                f"Shard {path} of {file_size} bytes is too small to hold an index of {index_size} bytes."
            )
        f.seek(file_size - index_size)
        tail = f.read(index_size)
    _verify(tail, checksum_scope, index_size)
    return ShardIndex.from_bytes(tail[:-CHECKSUM_SIZE], chunks_per_shard)


def read_chunk(
    path: Path | str,
    slot: int,
    chunks_per_shard: ChunkCoords,
    checksum_scope: ChecksumScope = ChecksumScope.shard,
) -> bytes | None:
    """The encoded bytes stored at ``slot``, or None if the slot is missing."""
    chunk_slice = read_shard_index(path, chunks_per_shard, checksum_scope).get_chunk_slice(slot)
    if chunk_slice is None:
        return None
    start, stop = chunk_slice
    with open(path, "rb") as f:
        f.seek(start)
        return f.read(stop - start)
