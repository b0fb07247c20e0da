"""
The registry maps the codec names found in ``zarr.json`` to the classes implementing them.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from zarrstream.common import parse_named_configuration
from zarrstream.errors import ConfigurationError

if TYPE_CHECKING:
    from zarrstream.abc.codec import BaseCodec
    from zarrstream.common import JSON

__all__ = ["get_codec_class", "parse_codec", "register_codec"]

__codec_registry: dict[str, type[BaseCodec]] = {}


def register_codec(key: str, codec_cls: type[BaseCodec]) -> None:
    __codec_registry[key] = codec_cls


def get_codec_class(key: str) -> type[BaseCodec]:
    try:
        return __codec_registry[key]
    except KeyError as e:
        raise ConfigurationError(
            f"Codec {key!r} is not supported. Registered codecs: {sorted(__codec_registry)}."
        ) from e


def parse_codec(data: BaseCodec | dict[str, JSON] | str) -> BaseCodec:
    """Take a codec instance, its name, or its JSON representation and return a codec instance."""
    from zarrstream.abc.codec import BaseCodec

    if isinstance(data, BaseCodec):
        return data
    if isinstance(data, str):
        data = {"name": data}
    name, _ = parse_named_configuration(data, require_configuration=False)
    return get_codec_class(name).from_dict(data)
