from __future__ import annotations

import contextlib
import logging
import shutil
import uuid
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO, Literal

import fasteners

from zarrstream.errors import StreamStateError

if TYPE_CHECKING:
    from collections.abc import Iterator

    from zarrstream.common import BytesLike

logger = logging.getLogger(__name__)


def partial_path(path: Path) -> Path:
    """The temporary sibling a file is written to before being moved into place."""
    return path.with_name(f"{path.name}.{uuid.uuid4().hex}.partial")


@contextlib.contextmanager
def _atomic_write(path: Path, mode: Literal["wb"] = "wb") -> Iterator[BinaryIO]:
    tmp_path = partial_path(path)
    try:
        with tmp_path.open(mode) as f:
            yield f
        tmp_path.replace(path)
    except Exception:
        tmp_path.unlink(missing_ok=True)
        raise


class LocalStore:
    """
    Store for the local file system.

    Keys are ``/``-separated paths relative to ``root``.

    Parameters
    ----------
    root : str or Path
        Directory to use as root of store.
    """

    root: Path

    def __init__(self, root: Path | str) -> None:
        if isinstance(root, str):
            root = Path(root)
        if not isinstance(root, Path):
            raise TypeError(
                f"'root' must be a string or Path instance. Got an instance of {type(root)} instead."
            )
        self.root = root

    def path_for(self, key: str) -> Path:
        return self.root.joinpath(*key.split("/")) if key else self.root

    def exists(self, key: str = "") -> bool:
        return self.path_for(key).exists()

    def get(self, key: str) -> bytes | None:
        try:
            return self.path_for(key).read_bytes()
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError):
            return None

    def set(self, key: str, value: BytesLike) -> int:
        path = self.path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        with _atomic_write(path) as f:
            return f.write(value)

    def open_for_write(self, key: str) -> tuple[BinaryIO, Path]:
        """
        Open a temporary file that will become ``key`` once moved into place with ``commit``.
        """
        path = self.path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = partial_path(path)
        return tmp_path.open("wb"), tmp_path

    def commit(self, tmp_path: Path, key: str) -> None:
        tmp_path.replace(self.path_for(key))

    def clear(self) -> None:
        if self.root.exists():
            shutil.rmtree(self.root)

    def __str__(self) -> str:
        return f"file://{self.root.as_posix()}"

    def __repr__(self) -> str:
        return f"LocalStore('{self}')"

    def __eq__(self, other: object) -> bool:
        return isinstance(other, type(self)) and self.root == other.root


class WriterLock:
    """
    An inter-process lock held by the one session writing to an array.

    Uses file locks via the `fasteners <https://fasteners.readthedocs.io/en/latest/api/inter_process/>`_
    package. The lock file sits next to the array directory, not inside it.
    """

    def __init__(self, root: Path) -> None:
        self.path = root.with_name(f"{root.name}.lock")
        self._lock = fasteners.InterProcessLock(str(self.path))

    @property
    def acquired(self) -> bool:
        return bool(self._lock.acquired)

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not self._lock.acquire(blocking=False):
            raise StreamStateError(f"Another writer holds the lock on {self.path}.")
        logger.debug("Acquired writer lock %s", self.path)

    def release(self) -> None:
        if not self._lock.acquired:
            return
        self._lock.release()
        self.path.unlink(missing_ok=True)
        logger.debug("Released writer lock %s", self.path)
