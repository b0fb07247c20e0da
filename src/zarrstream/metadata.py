from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Literal, NamedTuple

from zarrstream.chunk_key_encodings import DefaultChunkKeyEncoding
from zarrstream.codecs.registry import parse_codec
from zarrstream.codecs.sharding import ShardingCodec
from zarrstream.common import (
    ARRAY_PATH,
    JSON,
    ZARR_JSON,
    ChunkCoords,
    json_default,
    parse_named_configuration,
    parse_shapelike,
)
from zarrstream.config import config
from zarrstream.dimensions import DimensionType
from zarrstream.dtype import DataType, parse_data_type, parse_fill_value
from zarrstream.errors import ConfigurationError, MetadataValidationError

if TYPE_CHECKING:
    from typing import Self

    from zarrstream.abc.codec import BaseCodec
    from zarrstream.codecs.pipeline import CodecPipeline
    from zarrstream.dimensions import ArrayDimensions
    from zarrstream.storage import LocalStore

logger = logging.getLogger(__name__)

NGFF_VERSION = "0.4"


def parse_zarr_format(data: object) -> Literal[3]:
    if data == 3:
        return 3
    raise MetadataValidationError("zarr_format", 3, data)


def parse_node_type(data: object, expected: Literal["array", "group"]) -> Literal["array", "group"]:
    if data == expected:
        return expected
    raise MetadataValidationError("node_type", expected, data)


def parse_attributes(data: Mapping[str, JSON] | None) -> dict[str, JSON]:
    if data is None:
        return {}
    return dict(data)


def parse_dimension_names(data: object) -> tuple[str | None, ...] | None:
    if data is None:
        return data
    elif isinstance(data, Iterable) and all(isinstance(x, type(None) | str) for x in data):
        return tuple(data)
    else:
        msg = f"Expected either None or a iterable of str, got {type(data)}"
        raise TypeError(msg)


def parse_chunk_grid(data: object) -> ChunkCoords:
    """The chunk shape of a ``regular`` chunk grid."""
    if isinstance(data, dict):
        _, configuration = parse_named_configuration(data, "regular")
        assert configuration is not None
        data = configuration.get("chunk_shape")
    return parse_shapelike(data)  # type: ignore[arg-type]


def parse_extensions(data: object) -> tuple[JSON, ...]:
    if data is None or data == {}:
        return ()
    if isinstance(data, list | tuple):
        return tuple(data)
    raise MetadataValidationError("extensions", "a list", data)


def parse_external_metadata(data: object) -> dict[str, JSON]:
    """
    Accept a mapping or the JSON text of an object. ``None`` and the empty string become ``{}``.

    Raises
    ------
    ConfigurationError
        If ``data`` is not a JSON object.
    """
    if data is None or data == "":
        return {}
    if isinstance(data, str | bytes):
        try:
            data = json.loads(data)
        except json.JSONDecodeError as e:
            raise ConfigurationError("external_metadata", "valid JSON", data) from e
    if not isinstance(data, Mapping):
        raise ConfigurationError("external_metadata", "a JSON object", data)
    try:
        json.dumps(data, default=json_default)
    except (TypeError, ValueError) as e:
        raise ConfigurationError("external_metadata", "a JSON-serializable object", data) from e
    return dict(data)


def dumps(data: Any) -> bytes:
    json_indent = config.get("json_indent")
    return json.dumps(data, indent=json_indent, allow_nan=True, default=json_default).encode()


class PixelScale(NamedTuple):
    """Physical size of one sample along the frame axes, in micrometers."""

    x: float = 1.0
    y: float = 1.0


def parse_pixel_scale(data: object) -> PixelScale:
    if data is None:
        return PixelScale()
    if isinstance(data, PixelScale):
        return data
    if isinstance(data, Mapping):
        data = (data.get("x", 1.0), data.get("y", 1.0))
    try:
        x, y = data  # type: ignore[misc]
        scale = PixelScale(float(x), float(y))
    except (TypeError, ValueError) as e:
        raise ConfigurationError("sample_spacing", "a pair of positive numbers (x, y)", data) from e
    if scale.x <= 0 or scale.y <= 0:
        raise ConfigurationError("sample_spacing", "a pair of positive numbers (x, y)", data)
    return scale


def multiscales_attributes(
    dims: ArrayDimensions, sample_spacing: PixelScale, name: str = ""
) -> dict[str, JSON]:
    """OME-NGFF ``multiscales`` attributes describing a single level stored at ``0``."""
    axes: list[JSON] = []
    for dim in dims:
        axis: dict[str, JSON] = {"name": dim.name}
        if dim.kind is not DimensionType.other:
            axis["type"] = dim.kind.value
        if dim.kind is DimensionType.space:
            axis["unit"] = "micrometer"
        axes.append(axis)
    scale = [1.0] * (dims.ndim - 2) + [sample_spacing.y, sample_spacing.x]
    return {
        "multiscales": [
            {
                "version": NGFF_VERSION,
                "name": name,
                "axes": axes,
                "datasets": [
                    {
                        "path": ARRAY_PATH,
                        "coordinateTransformations": [{"type": "scale", "scale": scale}],
                    }
                ],
            }
        ]
    }


@dataclass(frozen=True, kw_only=True)
class ArrayMetadata:
    """
    The ``zarr.json`` document of a sharded Zarr v3 array.

    ``chunk_shape`` is the shape of the regular chunk grid, which is the shard shape. The inner
    chunk shape lives on the sharding codec.
    """

    shape: ChunkCoords
    data_type: DataType
    chunk_shape: ChunkCoords
    chunk_key_encoding: DefaultChunkKeyEncoding
    fill_value: Any
    codecs: tuple[BaseCodec, ...]
    attributes: dict[str, JSON] = field(default_factory=dict)
    dimension_names: tuple[str | None, ...] | None = None
    storage_transformers: tuple[JSON, ...] = ()
    extensions: tuple[JSON, ...] = ()
    zarr_format: Literal[3] = field(default=3, init=False)
    node_type: Literal["array"] = field(default="array", init=False)

    def __init__(
        self,
        *,
        shape: Iterable[int],
        data_type: DataType | str,
        chunk_shape: Iterable[int],
        chunk_key_encoding: DefaultChunkKeyEncoding | dict[str, JSON],
        fill_value: Any,
        codecs: Iterable[BaseCodec | dict[str, JSON] | str],
        attributes: Mapping[str, JSON] | None = None,
        dimension_names: Iterable[str | None] | None = None,
        storage_transformers: Iterable[JSON] | None = None,
        extensions: Iterable[JSON] | None = None,
    ) -> None:
        """
        Because the class is a frozen dataclass, we set attributes using object.__setattr__
        """
        shape_parsed = parse_shapelike(shape)
        data_type_parsed = parse_data_type(data_type)
        chunk_shape_parsed = parse_chunk_grid(chunk_shape)
        if isinstance(chunk_key_encoding, dict):
            chunk_key_encoding = DefaultChunkKeyEncoding.from_dict(chunk_key_encoding)
        fill_value_parsed = parse_fill_value(fill_value, data_type_parsed)
        codecs_parsed = tuple(parse_codec(c) for c in codecs)
        dimension_names_parsed = parse_dimension_names(dimension_names)

        object.__setattr__(self, "shape", shape_parsed)
        object.__setattr__(self, "data_type", data_type_parsed)
        object.__setattr__(self, "chunk_shape", chunk_shape_parsed)
        object.__setattr__(self, "chunk_key_encoding", chunk_key_encoding)
        object.__setattr__(self, "fill_value", fill_value_parsed)
        object.__setattr__(self, "codecs", codecs_parsed)
        object.__setattr__(self, "attributes", parse_attributes(attributes))
        object.__setattr__(self, "dimension_names", dimension_names_parsed)
        object.__setattr__(self, "storage_transformers", tuple(storage_transformers or ()))
        object.__setattr__(self, "extensions", parse_extensions(extensions))
        object.__setattr__(self, "zarr_format", 3)
        object.__setattr__(self, "node_type", "array")

        self._validate_metadata()

    def _validate_metadata(self) -> None:
        if len(self.shape) != len(self.chunk_shape):
            raise ValueError(
                "`chunk_shape` and `shape` need to have the same number of dimensions."
            )
        if self.dimension_names is not None and len(self.shape) != len(self.dimension_names):
            raise ValueError(
                "`dimension_names` and `shape` need to have the same number of dimensions."
            )
        sharding_codec = self.sharding_codec
        if sharding_codec is not None:
            sharding_codec.validate(self.chunk_shape)

    @classmethod
    def from_dimensions(
        cls,
        dims: ArrayDimensions,
        data_type: DataType,
        pipeline: CodecPipeline,
        *,
        fill_value: Any = 0,
        separator: Literal[".", "/"] = "/",
        attributes: Mapping[str, JSON] | None = None,
    ) -> Self:
        sharding_codec = ShardingCodec(chunk_shape=dims.chunk_shape, codecs=tuple(pipeline))
        return cls(
            shape=dims.shape,
            data_type=data_type,
            chunk_shape=dims.shard_shape,
            chunk_key_encoding=DefaultChunkKeyEncoding(separator=separator),
            fill_value=fill_value,
            codecs=(sharding_codec,),
            attributes=attributes,
            dimension_names=dims.names,
        )

    @property
    def ndim(self) -> int:
        return len(self.shape)

    @property
    def sharding_codec(self) -> ShardingCodec | None:
        if len(self.codecs) == 1 and isinstance(self.codecs[0], ShardingCodec):
            return self.codecs[0]
        return None

    @property
    def chunks(self) -> ChunkCoords:
        """Shape of the inner chunks."""
        sharding_codec = self.sharding_codec
        if sharding_codec is not None:
            return sharding_codec.chunk_shape
        return self.chunk_shape

    @property
    def shards(self) -> ChunkCoords | None:
        if self.sharding_codec is not None:
            return self.chunk_shape
        return None

    def update_shape(self, shape: ChunkCoords) -> Self:
        return replace(self, shape=shape)

    def encode_chunk_key(self, chunk_coords: ChunkCoords) -> str:
        return self.chunk_key_encoding.encode_chunk_key(chunk_coords)

    @classmethod
    def from_dict(cls, data: dict[str, JSON]) -> Self:
        # make a copy because we are modifying the dict
        _data = dict(data)
        parse_zarr_format(_data.pop("zarr_format", None))
        parse_node_type(_data.pop("node_type", None), "array")
        return cls(
            shape=_data["shape"],  # type: ignore[arg-type]
            data_type=_data["data_type"],  # type: ignore[arg-type]
            chunk_shape=_data["chunk_grid"],  # type: ignore[arg-type]
            chunk_key_encoding=_data["chunk_key_encoding"],  # type: ignore[arg-type]
            fill_value=_data["fill_value"],
            codecs=_data["codecs"],  # type: ignore[arg-type]
            attributes=_data.get("attributes"),  # type: ignore[arg-type]
            dimension_names=_data.get("dimension_names"),  # type: ignore[arg-type]
            storage_transformers=_data.get("storage_transformers"),  # type: ignore[arg-type]
            extensions=_data.get("extensions"),  # type: ignore[arg-type]
        )

    def to_dict(self) -> dict[str, JSON]:
        out_dict: dict[str, JSON] = {
            "zarr_format": self.zarr_format,
            "node_type": self.node_type,
            "shape": list(self.shape),
            "data_type": self.data_type.value,
            "chunk_grid": {
                "name": "regular",
                "configuration": {"chunk_shape": list(self.chunk_shape)},
            },
            "chunk_key_encoding": self.chunk_key_encoding.to_dict(),
            "fill_value": self.fill_value,
            "codecs": [codec.to_dict() for codec in self.codecs],
            "attributes": self.attributes,
            "storage_transformers": list(self.storage_transformers),
            "extensions": list(self.extensions),
        }
        # if `dimension_names` is `None`, we do not include it in
        # the metadata document
        if self.dimension_names is not None:
            out_dict["dimension_names"] = list(self.dimension_names)
        return out_dict

    def to_bytes(self) -> bytes:
        return dumps(self.to_dict())


@dataclass(frozen=True)
class GroupMetadata:
    """
    Metadata for a Group.
    """

    attributes: dict[str, JSON] = field(default_factory=dict)
    zarr_format: Literal[3] = 3
    node_type: Literal["group"] = field(default="group", init=False)

    def __init__(self, attributes: Mapping[str, JSON] | None = None, zarr_format: int = 3) -> None:
        object.__setattr__(self, "attributes", parse_attributes(attributes))
        object.__setattr__(self, "zarr_format", parse_zarr_format(zarr_format))
        object.__setattr__(self, "node_type", "group")

    @classmethod
    def from_dict(cls, data: dict[str, JSON]) -> GroupMetadata:
        _data = dict(data)
        parse_node_type(_data.pop("node_type", None), "group")
        return cls(
            attributes=_data.get("attributes"),  # type: ignore[arg-type]
            zarr_format=_data.get("zarr_format"),  # type: ignore[arg-type]
        )

    def to_dict(self) -> dict[str, JSON]:
        return {
            "zarr_format": self.zarr_format,
            "node_type": self.node_type,
            "attributes": self.attributes,
        }

    def to_bytes(self) -> bytes:
        return dumps(self.to_dict())


class MetadataWriter:
    """
    Writes the three metadata documents of a stream: the group ``zarr.json`` at the root, the
    array ``zarr.json`` under ``array_path`` and the external metadata document next to them.
    """

    def __init__(
        self,
        store: LocalStore,
        array_path: str = ARRAY_PATH,
        external_metadata_key: str | None = None,
    ) -> None:
        self.store = store
        self.array_path = array_path
        if external_metadata_key is None:
            external_metadata_key = config.get("store.external_metadata_key")
        self.external_metadata_key = external_metadata_key

    def write_group(self, metadata: GroupMetadata) -> None:
        self.store.set(ZARR_JSON, metadata.to_bytes())
        logger.debug("Wrote group metadata to %s", self.store.path_for(ZARR_JSON))

    def write_array(self, metadata: ArrayMetadata) -> None:
        key = f"{self.array_path}/{ZARR_JSON}"
        self.store.set(key, metadata.to_bytes())
        logger.debug("Wrote array metadata to %s", self.store.path_for(key))

    def write_external(self, external_metadata: object) -> None:
        self.store.set(self.external_metadata_key, dumps(parse_external_metadata(external_metadata)))
        logger.debug("Wrote external metadata to %s", self.store.path_for(self.external_metadata_key))

    def write(
        self,
        array_metadata: ArrayMetadata,
        group_metadata: GroupMetadata | None = None,
        external_metadata: object = None,
    ) -> None:
        self.write_group(group_metadata if group_metadata is not None else GroupMetadata())
        self.write_array(array_metadata)
        self.write_external(external_metadata)

    def read_array(self) -> ArrayMetadata:
        return ArrayMetadata.from_dict(self._read(f"{self.array_path}/{ZARR_JSON}"))

    def read_group(self) -> GroupMetadata:
        return GroupMetadata.from_dict(self._read(ZARR_JSON))

    def read_external(self) -> dict[str, JSON]:
        return self._read(self.external_metadata_key)

    def _read(self, key: str) -> dict[str, JSON]:
        buf = self.store.get(key)
        if buf is None:
            raise FileNotFoundError(self.store.path_for(key))
        data = json.loads(buf)
        if not isinstance(data, dict):
            raise MetadataValidationError(key, "a JSON object", type(data).__name__)
        return data
