__all__ = [
    "BaseZarrStreamError",
    "ChunkCompletedError",
    "ConfigurationError",
    "ContainsArrayError",
    "EncodingError",
    "FrameSizeError",
    "MetadataValidationError",
    "OutOfBoundsError",
    "ShardChecksumError",
    "ShardWriteError",
    "StreamStateError",
]


class BaseZarrStreamError(ValueError):
    """
    Base error which all zarrstream errors are sub-classed from.
    """

    _msg: str = "{}"

    def __init__(self, *args: object) -> None:
        """
        If a single argument is passed, treat it as a pre-formatted message.

        If multiple arguments are passed, they are used as arguments for the template string class
        variable.
        """
        if len(args) == 1:
            super().__init__(args[0])
        else:
            super().__init__(self._msg.format(*args))


class ConfigurationError(BaseZarrStreamError):
    """
    Raised when the array settings are invalid, e.g. a zero extent or mismatched shapes.

    Nothing is created on disk when this is raised.
    """

    _msg = "Invalid value for '{}'. Expected {}. Got {!r}."


class FrameSizeError(ConfigurationError):
    """Raised when a frame does not hold exactly one plane of the configured frame shape."""

    _msg = "Expected a frame of {} bytes with shape {}. Got {} bytes."


class OutOfBoundsError(BaseZarrStreamError, IndexError):
    """
    Raised when a frame coordinate lies outside the array.

    The accumulator is left untouched, so the caller can decide whether to abort the run.
    """

    _msg = "Coordinate {} is out of bounds for dimension {!r} with size {}."


class ChunkCompletedError(OutOfBoundsError):
    """
    Raised when a frame falls in a chunk that was already completed and handed to its shard.

    The stored chunk is left as it is.
    """

    _msg = "Frame {} falls in chunk {}, which is complete and already stored."


class ShardWriteError(BaseZarrStreamError, OSError):
    """
    Raised when a shard file could not be created, appended to, or sealed.

    The session that raised it cannot be used for further writes.
    """

    _msg = "Failed to write shard {!r}: {}"


class EncodingError(BaseZarrStreamError):
    """Raised when a codec fails to encode a chunk. The chunk's slot stays missing."""

    _msg = "Failed to encode chunk {} with codec {!r}: {}"


class ShardChecksumError(BaseZarrStreamError):
    """Raised when the stored checksum of a shard index does not match its contents."""

    _msg = "Stored and computed checksum do not match. Stored: {!r}. Computed: {!r}."


class StreamStateError(BaseZarrStreamError, RuntimeError):
    """Raised when an operation is not valid in the current state of the session."""

    _msg = "Cannot {} while the session is {!r}."


class ContainsArrayError(StreamStateError):
    """Raised when opening a session over an existing array without ``overwrite``."""

    _msg = "An array exists in store {!r} at path {!r}."


class MetadataValidationError(BaseZarrStreamError):
    """Raised when a metadata document read back does not describe a valid array or group."""

    _msg = "Invalid value for '{}'. Expected '{}'. Got '{}'."
