"""
A status-returning front end over ``ArraySession`` for acquisition loops that poll results instead
of handling exceptions.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from zarrstream.errors import (
    BaseZarrStreamError,
    ConfigurationError,
    EncodingError,
    OutOfBoundsError,
    ShardWriteError,
    StreamStateError,
)
from zarrstream.session import ArraySession, SessionState, StreamSettings

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable
    from types import TracebackType

    import numpy as np

    from zarrstream.common import BytesLike

logger = logging.getLogger(__name__)


class StreamStatus(Enum):
    ok = 0
    invalid_argument = 1
    out_of_bounds = 2
    invalid_state = 3
    io_error = 4
    encoding_error = 5


# most specific first
_STATUS_BY_ERROR: tuple[tuple[type[Exception], StreamStatus], ...] = (
    (ConfigurationError, StreamStatus.invalid_argument),
    (OutOfBoundsError, StreamStatus.out_of_bounds),
    (StreamStateError, StreamStatus.invalid_state),
    (ShardWriteError, StreamStatus.io_error),
    (EncodingError, StreamStatus.encoding_error),
    (OSError, StreamStatus.io_error),
)


def status_of(error: Exception) -> StreamStatus:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return status
    return StreamStatus.invalid_argument


@dataclass(frozen=True)
class StreamResult:
    status: StreamStatus = StreamStatus.ok
    message: str = ""
    bytes_consumed: int = 0

    def __bool__(self) -> bool:
        return self.status is StreamStatus.ok

    @classmethod
    def from_error(cls, error: Exception) -> StreamResult:
        return cls(status_of(error), str(error))


class ZarrStream:
    """
    ``configure``, ``start``, ``append`` repeatedly, then ``stop``.

    Errors raised by the session are reported as a ``StreamResult`` with a status code and message.
    """

    def __init__(self, settings: StreamSettings | Mapping[str, Any] | None = None) -> None:
        self.settings: StreamSettings | None = None
        self._session: ArraySession | None = None
        if settings is not None:
            result = self.configure(settings)
            if not result:
                raise ConfigurationError(result.message)

    def __repr__(self) -> str:
        return f"ZarrStream(active={self.is_active()}, session={self._session!r})"

    def __enter__(self) -> ZarrStream:
        result = self.start()
        if not result:
            raise StreamStateError(result.message)
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        if self.is_active():
            self.stop()

    def _call(self, action: str, fn: Callable[[], int | None]) -> StreamResult:
        try:
            consumed = fn()
        except (BaseZarrStreamError, OSError) as e:
            logger.warning("Stream %s failed: %s", action, e)
            return StreamResult.from_error(e)
        return StreamResult(bytes_consumed=consumed or 0)

    def configure(self, settings: StreamSettings | Mapping[str, Any]) -> StreamResult:
        """Set the stream settings. Not allowed while the stream is active."""
        if self.is_active():
            return StreamResult(StreamStatus.invalid_state, "Cannot configure an active stream.")

        def _configure() -> None:
            if isinstance(settings, StreamSettings):
                self.settings = settings
                return
            try:
                self.settings = StreamSettings(**settings)
            except TypeError as e:
                raise ConfigurationError(f"Invalid stream settings: {e}") from e

        return self._call("configure", _configure)

    def start(self) -> StreamResult:
        if self.settings is None:
            return StreamResult(StreamStatus.invalid_state, "Cannot start a stream before it is configured.")
        if self.is_active():
            return StreamResult(StreamStatus.invalid_state, "The stream is already active.")
        settings = self.settings

        def _start() -> None:
            session = ArraySession(settings)
            session.open()
            self._session = session

        return self._call("start", _start)

    def append(
        self, data: np.ndarray | BytesLike, coordinate: Iterable[int] | None = None
    ) -> StreamResult:
        """
        Write ``data``: one frame at ``coordinate``, or any whole number of frames at the frame
        counter when ``coordinate`` is None.
        """
        if self._session is None:
            return StreamResult(StreamStatus.invalid_state, "Cannot append to a stream that was not started.")
        session = self._session
        if coordinate is None:
            return self._call("append", lambda: session.write_frames(data))
        return self._call("append", lambda: session.write(data, coordinate))

    def stop(self) -> StreamResult:
        """Finalize the array. Stopping a stream that was never started is a no-op."""
        if self._session is None:
            return StreamResult()
        return self._call("stop", self._session.finalize)

    def is_active(self) -> bool:
        return self._session is not None and self._session.state is SessionState.open

    @property
    def frames_written(self) -> int:
        return self._session.frames_written if self._session is not None else 0
