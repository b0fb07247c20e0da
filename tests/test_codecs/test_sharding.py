from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import numpy as np
import pytest

from zarrstream.chunk_key_encodings import DefaultChunkKeyEncoding
from zarrstream.codecs import (
    BloscCodec,
    BytesCodec,
    ChecksumScope,
    Crc32cCodec,
    ShardIndex,
    ShardingCodec,
    ShardReader,
    ShardSet,
    ShardWriter,
    parse_codec,
    read_chunk,
    read_shard_index,
)
from zarrstream.codecs.crc32c_ import compute_checksum
from zarrstream.codecs.sharding import shard_index_size
from zarrstream.common import MAX_UINT_64
from zarrstream.errors import ConfigurationError, ShardChecksumError, ShardWriteError
from zarrstream.storage import LocalStore

if TYPE_CHECKING:
    from pathlib import Path


@pytest.fixture
def store(tmp_path: Path) -> LocalStore:
    return LocalStore(tmp_path)


def test_shard_index_empty() -> None:
    index = ShardIndex.create_empty((2, 2))
    assert len(index) == 4
    assert index.chunks_per_shard == (2, 2)
    assert index.is_all_empty()
    assert index.missing_slots() == [0, 1, 2, 3]
    assert index.get_chunk_slice(0) is None
    assert index.to_bytes() == b"\xff" * 64


def test_shard_index_set_chunk_slice() -> None:
    index = ShardIndex.create_empty((2, 2))
    index.set_chunk_slice(1, slice(10, 25))
    assert index.get_chunk_slice(1) == (10, 25)
    assert not index.is_missing(1)
    assert index.missing_slots() == [0, 2, 3]
    assert index.get_full_chunk_map().tolist() == [[False, True], [False, False]]
    # row major (offset, length) pairs of little-endian uint64
    table = index.to_bytes()
    assert table[16:32] == (10).to_bytes(8, "little") + (15).to_bytes(8, "little")
    assert np.array_equal(ShardIndex.from_bytes(table, (2, 2)).offsets_and_lengths, index.offsets_and_lengths)
    index.set_chunk_slice(1, None)
    assert index.is_all_empty()


def test_shard_index_size() -> None:
    assert shard_index_size((1, 1, 8, 8)) == 64 * 16 + 4


def test_sharding_codec_to_dict() -> None:
    codec = ShardingCodec(chunk_shape=(2, 2))
    expected = {
        "name": "sharding_indexed",
        "configuration": {
            "chunk_shape": [2, 2],
            "codecs": [{"name": "bytes", "configuration": {"endian": "little"}}],
            "index_codecs": [
                {"name": "bytes", "configuration": {"endian": "little"}},
                {"name": "crc32c"},
            ],
            "index_location": "end",
        },
    }
    assert codec.to_dict() == expected
    assert parse_codec(expected) == codec
    assert codec.index_codecs == (BytesCodec(), Crc32cCodec())


def test_sharding_codec_validate() -> None:
    codec = ShardingCodec(chunk_shape=(2, 3))
    codec.validate((4, 6))
    assert codec.chunks_per_shard((4, 6)) == (2, 2)
    with pytest.raises(ConfigurationError, match="divisible"):
        codec.validate((4, 5))
    with pytest.raises(ConfigurationError, match="same number of dimensions"):
        codec.validate((4,))


def test_sharding_codec_invalid_index_location() -> None:
    with pytest.raises(ValueError):
        ShardingCodec(chunk_shape=(2, 2), index_location="start")


def test_sharding_codec_chunk_roundtrip() -> None:
    codec = ShardingCodec(
        chunk_shape=(4, 8), codecs=(BytesCodec(), BloscCodec(typesize=2, cname="lz4", shuffle=1))
    )
    data = np.arange(32, dtype="uint16").reshape(4, 8)
    assert np.array_equal(codec.decode_chunk(codec.encode_chunk(data), "uint16"), data)


def test_shard_writer_out_of_order(store: LocalStore, tmp_path: Path) -> None:
    writer = ShardWriter(store, "0/c/0/0", (2, 2), expected_chunks=4)
    assert writer.put(3, b"ddd") is False
    assert writer.put(0, b"a") is False
    assert writer.put(2, b"cc") is False
    assert not (tmp_path / "0" / "c" / "0" / "0").exists()
    assert writer.put(1, b"bbbb") is True
    assert writer.sealed

    path = tmp_path / "0" / "c" / "0" / "0"
    buf = path.read_bytes()
    assert len(buf) == 10 + shard_index_size((2, 2))
    assert buf[:10] == b"dddaccbbbb"
    assert buf[-4:] == compute_checksum(buf[:-4])

    shard = ShardReader.from_bytes(buf, (2, 2))
    assert dict(shard) == {0: b"a", 1: b"bbbb", 2: b"cc", 3: b"ddd"}
    assert shard.payload_size == 10
    assert shard.index.get_chunk_slice(3) == (0, 3)
    assert read_chunk(path, 2, (2, 2)) == b"cc"
    assert [p.name for p in path.parent.iterdir()] == ["0"]


def test_shard_writer_sealed(store: LocalStore) -> None:
    writer = ShardWriter(store, "c/0", (2,), expected_chunks=1)
    assert writer.put(0, b"a")
    with pytest.raises(ShardWriteError, match="after the shard was sealed"):
        writer.put(1, b"b")
    # idempotent
    writer.seal()


def test_shard_writer_slot_out_of_range(store: LocalStore) -> None:
    writer = ShardWriter(store, "c/0", (2,), expected_chunks=2)
    with pytest.raises(ShardWriteError, match="outside the index"):
        writer.put(2, b"a")


def test_shard_writer_duplicate_slot(store: LocalStore, tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    writer = ShardWriter(store, "c/0", (2,), expected_chunks=2)
    writer.put(0, b"x")
    with caplog.at_level(logging.WARNING):
        writer.put(0, b"yy")
    assert "written twice" in caplog.text
    assert writer.filled == 1
    writer.seal()
    shard = ShardReader.from_bytes((tmp_path / "c" / "0").read_bytes(), (2,))
    assert shard[0] == b"yy"
    assert 1 not in shard


def test_shard_writer_seal_partial(store: LocalStore, tmp_path: Path) -> None:
    writer = ShardWriter(store, "c/0/0", (2, 2), expected_chunks=4)
    writer.put(1, b"abc")
    writer.seal()
    path = tmp_path / "c" / "0" / "0"
    index = read_shard_index(path, (2, 2))
    assert index.missing_slots() == [0, 2, 3]
    assert index.offsets_and_lengths[0, 0].tolist() == [MAX_UINT_64, MAX_UINT_64]
    assert read_chunk(path, 0, (2, 2)) is None
    assert read_chunk(path, 1, (2, 2)) == b"abc"
    with pytest.raises(KeyError):
        ShardReader.from_bytes(path.read_bytes(), (2, 2))[0]


def test_shard_writer_empty(store: LocalStore, tmp_path: Path) -> None:
    writer = ShardWriter(store, "c/0/0", (2, 2), expected_chunks=4)
    writer.seal()
    buf = (tmp_path / "c" / "0" / "0").read_bytes()
    assert len(buf) == shard_index_size((2, 2))
    shard = ShardReader.from_bytes(buf, (2, 2))
    assert shard.index.is_all_empty()
    assert len(shard) == 0


def test_index_checksum_scope(store: LocalStore, tmp_path: Path) -> None:
    writer = ShardWriter(store, "c/0", (2,), expected_chunks=2, checksum_scope=ChecksumScope.index)
    writer.put(0, b"payload")
    writer.put(1, b"more")
    path = tmp_path / "c" / "0"
    buf = path.read_bytes()
    assert buf[-4:] == compute_checksum(buf[-shard_index_size((2,)) : -4])
    assert read_chunk(path, 1, (2,), ChecksumScope.index) == b"more"
    # the index codecs of zarr.json decode the same bytes
    table = buf[-shard_index_size((2,)) :]
    assert Crc32cCodec().decode(table) == table[:-4]


@pytest.mark.parametrize("scope", list(ChecksumScope))
def test_corrupted_index(store: LocalStore, tmp_path: Path, scope: ChecksumScope) -> None:
    writer = ShardWriter(store, "c/0", (2,), expected_chunks=2, checksum_scope=scope)
    writer.put(0, b"payload")
    writer.put(1, b"more")
    path = tmp_path / "c" / "0"
    buf = bytearray(path.read_bytes())
    buf[-10] ^= 0xFF
    path.write_bytes(bytes(buf))
    with pytest.raises(ShardChecksumError):
        read_shard_index(path, (2,), scope)


def test_corrupted_payload(store: LocalStore, tmp_path: Path) -> None:
    writer = ShardWriter(store, "c/0", (2,), expected_chunks=2)
    writer.put(0, b"payload")
    writer.put(1, b"more")
    buf = bytearray((tmp_path / "c" / "0").read_bytes())
    buf[0] ^= 0xFF
    with pytest.raises(ShardChecksumError):
        ShardReader.from_bytes(buf, (2,))


def test_shard_too_small() -> None:
    with pytest.raises(ValueError, match="too small"):
        ShardReader.from_bytes(b"\x00" * 10, (2, 2))


def test_shard_writer_abort(store: LocalStore, tmp_path: Path) -> None:
    writer = ShardWriter(store, "c/0", (2,), expected_chunks=2)
    writer.put(0, b"a")
    writer.abort()
    assert list((tmp_path / "c").iterdir()) == []
    with pytest.raises(ShardWriteError):
        writer.put(1, b"b")



def test_shard_writer_failed_commit_is_removed(
    store: LocalStore, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    def commit(self: LocalStore, partial: Path, key: str) -> None:
        raise OSError(5, "Input/output error")

    monkeypatch.setattr(LocalStore, "commit", commit)
    writer = ShardWriter(store, "c/0", (2,), expected_chunks=1)
    with pytest.raises(ShardWriteError, match="Input/output error"):
        writer.put(0, b"a")
    assert writer.sealed
    assert not writer.committed
    assert [p.suffix for p in (tmp_path / "c").iterdir()] == [".partial"]
    writer.abort()
    assert list((tmp_path / "c").iterdir()) == []


def test_shard_writer_io_error(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_bytes(b"")
    writer = ShardWriter(LocalStore(blocker), "0/c/0", (2,), expected_chunks=2)
    with pytest.raises(ShardWriteError, match="0/c/0"):
        writer.put(0, b"a")


def test_shard_set(store: LocalStore, tmp_path: Path) -> None:
    shards = ShardSet(
        store,
        "0",
        (1, 2),
        expected_chunks=lambda shard_index: 2 if shard_index == (0, 0) else 1,
        encode_key=DefaultChunkKeyEncoding().encode_chunk_key,
    )
    assert shards.key_for((0, 1)) == "0/c/0/1"
    assert shards.put((0, 0), 1, b"b") is False
    assert shards.put((0, 1), 0, b"c") is True
    assert len(shards) == 2
    assert shards[(0, 1)].sealed
    assert not shards[(0, 0)].sealed
    assert shards.writer_for((0, 0)) is shards[(0, 0)]
    shards.seal_all()
    assert sorted(shards) == [(0, 0), (0, 1)]
    index = read_shard_index(tmp_path / "0" / "c" / "0" / "0", (1, 2))
    assert index.missing_slots() == [0]
