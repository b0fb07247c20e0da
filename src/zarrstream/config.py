"""
The config module is responsible for managing the configuration of zarrstream and is based on the
Donfig python library.

Example:
    The size of the worker pool used to encode chunks is read from ``threading.max_workers``. It can
    be set programmatically, for the duration of a ``with`` block or globally:

    ```python
    from zarrstream.config import config

    with config.set({"threading.max_workers": 4}):
        ...
    ```

    Or with an environment variable. The double underscore ``__`` is used to indicate nested
    access.

    ```bash
    export ZARRSTREAM_THREADING__MAX_WORKERS=4
    ```

For more information, see the Donfig documentation at https://github.com/pytroll/donfig.
"""

from __future__ import annotations

from typing import Any

from donfig import Config as DConfig

from zarrstream.errors import ConfigurationError


class Config(DConfig):  # type: ignore[misc]
    """The Config will collect configuration from config files and environment variables

    Example environment variables:
    Grabs environment variables of the form "ZARRSTREAM_FOO__BAR_BAZ=123" and
    turns these into config variables of the form ``{"foo": {"bar-baz": 123}}``
    It transforms the key and value in the following way:

    -  Lower-cases the key text
    -  Treats ``__`` (double-underscore) as nested access
    -  Calls ``ast.literal_eval`` on the value

    """

    def reset(self) -> None:
        self.clear()
        self.refresh()


# The default configuration for zarrstream
config = Config(
    "zarrstream",
    defaults=[
        {
            "array": {
                "fill_value": 0,
                "separator": "/",
                "endian": "little",
            },
            "threading": {"max_workers": None, "max_pending_chunks": 64},
            "json_indent": 2,
            "sharding": {"checksum_scope": "shard"},
            "store": {
                "lock": True,
                "external_metadata_key": "acquire.json",
            },
        }
    ],
)


def _parse_positive_int(key: str, data: Any) -> int:
    if isinstance(data, int) and not isinstance(data, bool) and data > 0:
        return data
    raise ConfigurationError(key, "a positive integer", data)


def parse_max_workers(data: Any) -> int | None:
    if data is None:
        return None
    return _parse_positive_int("threading.max_workers", data)


def parse_max_pending_chunks(data: Any) -> int:
    """Number of completed chunks that may wait for an encoder before ``write`` blocks."""
    return _parse_positive_int("threading.max_pending_chunks", data)
