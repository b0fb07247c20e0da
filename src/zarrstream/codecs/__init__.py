from __future__ import annotations

from zarrstream.codecs.blosc import BloscCname, BloscCodec, BloscShuffle
from zarrstream.codecs.bytes import BytesCodec, EndiannessStr
from zarrstream.codecs.crc32c_ import Crc32cCodec
from zarrstream.codecs.pipeline import (
    CodecPipeline,
    CompressionCodec,
    CompressionSettings,
    Compressor,
)
from zarrstream.codecs.registry import get_codec_class, parse_codec, register_codec
from zarrstream.codecs.sharding import (
    ChecksumScope,
    ShardIndex,
    ShardingCodec,
    ShardingCodecIndexLocation,
    ShardReader,
    ShardSet,
    ShardWriter,
    read_chunk,
    read_shard_index,
)

__all__ = [
    "BloscCname",
    "BloscCodec",
    "BloscShuffle",
    "BytesCodec",
    "ChecksumScope",
    "CodecPipeline",
    "CompressionCodec",
    "CompressionSettings",
    "Compressor",
    "Crc32cCodec",
    "EndiannessStr",
    "ShardIndex",
    "ShardReader",
    "ShardSet",
    "ShardWriter",
    "ShardingCodec",
    "ShardingCodecIndexLocation",
    "get_codec_class",
    "parse_codec",
    "read_chunk",
    "read_shard_index",
    "register_codec",
]
