from zarrstream._version import version as __version__
from zarrstream.codecs import (
    BloscCodec,
    BytesCodec,
    ChecksumScope,
    CodecPipeline,
    CompressionCodec,
    CompressionSettings,
    Compressor,
    ShardingCodec,
)
from zarrstream.config import config
from zarrstream.dimensions import ArrayDimensions, Dimension, DimensionType
from zarrstream.dtype import DataType
from zarrstream.errors import (
    BaseZarrStreamError,
    ChunkCompletedError,
    ConfigurationError,
    ContainsArrayError,
    EncodingError,
    FrameSizeError,
    OutOfBoundsError,
    ShardChecksumError,
    ShardWriteError,
    StreamStateError,
)
from zarrstream.metadata import ArrayMetadata, GroupMetadata, PixelScale
from zarrstream.session import ArraySession, SessionState, StreamSettings
from zarrstream.stream import StreamResult, StreamStatus, ZarrStream

__all__ = [
    "ArrayDimensions",
    "ArrayMetadata",
    "ArraySession",
    "BaseZarrStreamError",
    "BloscCodec",
    "BytesCodec",
    "ChecksumScope",
    "ChunkCompletedError",
    "CodecPipeline",
    "CompressionCodec",
    "CompressionSettings",
    "Compressor",
    "ConfigurationError",
    "ContainsArrayError",
    "DataType",
    "Dimension",
    "DimensionType",
    "EncodingError",
    "FrameSizeError",
    "GroupMetadata",
    "OutOfBoundsError",
    "PixelScale",
    "SessionState",
    "ShardChecksumError",
    "ShardWriteError",
    "ShardingCodec",
    "StreamResult",
    "StreamSettings",
    "StreamStatus",
    "ZarrStream",
    "__version__",
    "config",
]
