from __future__ import annotations

import json
import math
from typing import TYPE_CHECKING, Any

import pytest

from tests.conftest import acquisition_dimensions, tczyx_dimensions
from zarrstream.codecs import CodecPipeline, CompressionSettings, ShardingCodec
from zarrstream.config import config
from zarrstream.dtype import DataType, parse_data_type, parse_fill_value
from zarrstream.errors import ConfigurationError, MetadataValidationError
from zarrstream.metadata import (
    ArrayMetadata,
    GroupMetadata,
    MetadataWriter,
    PixelScale,
    multiscales_attributes,
    parse_external_metadata,
    parse_pixel_scale,
)
from zarrstream.storage import LocalStore

if TYPE_CHECKING:
    from pathlib import Path


def acquisition_metadata(**kwargs: Any) -> ArrayMetadata:
    pipeline = CodecPipeline.from_compression(None, DataType.uint8)
    return ArrayMetadata.from_dimensions(acquisition_dimensions(), DataType.uint8, pipeline, **kwargs)


def test_array_metadata_from_dimensions() -> None:
    metadata = acquisition_metadata()
    assert metadata.shape == (16, 1, 1080, 1920)
    assert metadata.chunk_shape == (16, 1, 1232, 2192)
    assert metadata.shards == (16, 1, 1232, 2192)
    assert metadata.chunks == (16, 1, 154, 274)
    assert metadata.dimension_names == ("t", "c", "y", "x")
    assert metadata.encode_chunk_key((0, 0, 0, 0)) == "c/0/0/0/0"
    assert metadata.to_dict() == {
        "zarr_format": 3,
        "node_type": "array",
        "shape": [16, 1, 1080, 1920],
        "data_type": "uint8",
        "chunk_grid": {"name": "regular", "configuration": {"chunk_shape": [16, 1, 1232, 2192]}},
        "chunk_key_encoding": {"name": "default", "configuration": {"separator": "/"}},
        "fill_value": 0,
        "codecs": [
            {
                "name": "sharding_indexed",
                "configuration": {
                    "chunk_shape": [16, 1, 154, 274],
                    "codecs": [{"name": "bytes", "configuration": {"endian": "little"}}],
                    "index_codecs": [
                        {"name": "bytes", "configuration": {"endian": "little"}},
                        {"name": "crc32c"},
                    ],
                    "index_location": "end",
                },
            }
        ],
        "attributes": {},
        "storage_transformers": [],
        "extensions": [],
        "dimension_names": ["t", "c", "y", "x"],
    }


def test_array_metadata_roundtrip() -> None:
    pipeline = CodecPipeline.from_compression(CompressionSettings(codec="blosc-zstd"), DataType.uint16)
    metadata = ArrayMetadata.from_dimensions(
        tczyx_dimensions(), DataType.uint16, pipeline, fill_value=3, separator="."
    )
    data = json.loads(metadata.to_bytes())
    assert data["chunk_key_encoding"]["configuration"]["separator"] == "."
    assert data["codecs"][0]["configuration"]["codecs"][1]["name"] == "blosc"
    assert ArrayMetadata.from_dict(data) == metadata
    assert metadata.encode_chunk_key((1, 0, 1, 1)) == "c.1.0.1.1"



def test_array_metadata_update_shape() -> None:
    metadata = ArrayMetadata.from_dimensions(
        tczyx_dimensions(t=0), DataType.uint16, CodecPipeline.from_compression(None, DataType.uint16)
    )
    assert metadata.shape == (0, 2, 12, 10)
    grown = metadata.update_shape((7, 2, 12, 10))
    assert grown.shape == (7, 2, 12, 10)
    assert grown.chunk_shape == metadata.chunk_shape
    assert grown.codecs == metadata.codecs
    assert metadata.shape == (0, 2, 12, 10)


def test_array_metadata_json_indent() -> None:
    with config.set({"json_indent": None}):
        assert b"\n" not in acquisition_metadata().to_bytes()
    assert acquisition_metadata().to_bytes().startswith(b'{\n  "zarr_format": 3')


@pytest.mark.parametrize(
    ("key", "value"),
    [("zarr_format", 2), ("node_type", "group")],
)
def test_array_metadata_from_invalid_dict(key: str, value: object) -> None:
    data = acquisition_metadata().to_dict()
    data[key] = value
    with pytest.raises(MetadataValidationError, match=key):
        ArrayMetadata.from_dict(data)


def test_array_metadata_mismatched_shard_shape() -> None:
    with pytest.raises(ConfigurationError, match="divisible"):
        ArrayMetadata(
            shape=(10, 10, 10),
            data_type="uint8",
            chunk_shape=(4, 4, 5),
            chunk_key_encoding={"name": "default"},
            fill_value=0,
            codecs=[ShardingCodec(chunk_shape=(2, 2, 2))],
        )


def test_group_metadata() -> None:
    group = GroupMetadata(attributes={"a": 1})
    assert group.to_dict() == {"zarr_format": 3, "node_type": "group", "attributes": {"a": 1}}
    assert GroupMetadata.from_dict(json.loads(group.to_bytes())) == group
    with pytest.raises(MetadataValidationError):
        GroupMetadata.from_dict({"zarr_format": 3, "node_type": "array"})
    with pytest.raises(MetadataValidationError):
        GroupMetadata(zarr_format=2)


def test_multiscales_attributes() -> None:
    attrs = multiscales_attributes(tczyx_dimensions(), PixelScale(x=0.5, y=0.25), "run")
    (multiscale,) = attrs["multiscales"]  # type: ignore[misc]
    assert multiscale["version"] == "0.4"
    assert multiscale["name"] == "run"
    assert multiscale["axes"] == [
        {"name": "t", "type": "time"},
        {"name": "c", "type": "channel"},
        {"name": "y", "type": "space", "unit": "micrometer"},
        {"name": "x", "type": "space", "unit": "micrometer"},
    ]
    assert multiscale["datasets"] == [
        {
            "path": "0",
            "coordinateTransformations": [{"type": "scale", "scale": [1.0, 1.0, 0.25, 0.5]}],
        }
    ]


@pytest.mark.parametrize(
    ("data", "expected"),
    [
        (None, PixelScale(1.0, 1.0)),
        ((0.5, 2), PixelScale(0.5, 2.0)),
        ({"x": 3}, PixelScale(3.0, 1.0)),
    ],
)
def test_parse_pixel_scale(data: object, expected: PixelScale) -> None:
    assert parse_pixel_scale(data) == expected


@pytest.mark.parametrize("data", [(0, 1), (1, -1), "ab", (1, 2, 3), 5])
def test_parse_pixel_scale_invalid(data: object) -> None:
    with pytest.raises(ConfigurationError, match="sample_spacing"):
        parse_pixel_scale(data)


@pytest.mark.parametrize(
    ("data", "expected"),
    [
        (None, {}),
        ("", {}),
        ('{"objective": "20x", "na": 0.75}', {"objective": "20x", "na": 0.75}),
        ({"nested": {"a": [1, 2]}}, {"nested": {"a": [1, 2]}}),
    ],
)
def test_parse_external_metadata(data: object, expected: dict[str, Any]) -> None:
    assert parse_external_metadata(data) == expected


@pytest.mark.parametrize("data", ["{not json", "[1, 2]", 42, {"a": object()}])
def test_parse_external_metadata_invalid(data: object) -> None:
    with pytest.raises(ConfigurationError, match="external_metadata"):
        parse_external_metadata(data)


def test_metadata_writer(tmp_path: Path) -> None:
    store = LocalStore(tmp_path)
    writer = MetadataWriter(store)
    metadata = acquisition_metadata()
    group = GroupMetadata(attributes=multiscales_attributes(acquisition_dimensions(), PixelScale()))
    writer.write(metadata, group, {"exposure_ms": 10})
    assert sorted(p.name for p in tmp_path.iterdir()) == ["0", "acquire.json", "zarr.json"]
    assert writer.read_array() == metadata
    assert writer.read_group() == group
    assert writer.read_external() == {"exposure_ms": 10}


def test_metadata_writer_external_key(tmp_path: Path) -> None:
    with config.set({"store.external_metadata_key": "run.json"}):
        writer = MetadataWriter(LocalStore(tmp_path))
    writer.write(acquisition_metadata())
    assert json.loads((tmp_path / "run.json").read_bytes()) == {}
    assert writer.read_group() == GroupMetadata()


def test_metadata_writer_missing(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        MetadataWriter(LocalStore(tmp_path)).read_array()


@pytest.mark.parametrize(
    ("data", "expected"),
    [
        ("uint16", DataType.uint16),
        (DataType.float32, DataType.float32),
        ("<i4", DataType.int32),
    ],
)
def test_parse_data_type(data: object, expected: DataType) -> None:
    assert parse_data_type(data) is expected


@pytest.mark.parametrize("data", ["complex64", "bool", "not a dtype"])
def test_parse_data_type_invalid(data: object) -> None:
    with pytest.raises(ConfigurationError, match="data_type"):
        parse_data_type(data)


def test_parse_fill_value() -> None:
    assert parse_fill_value(None, DataType.float32) == 0.0
    assert parse_fill_value(255, DataType.uint8) == 255
    assert math.isnan(parse_fill_value(float("nan"), DataType.float64))


@pytest.mark.parametrize(
    ("value", "data_type"),
    [(256, DataType.uint8), (-1, DataType.uint16), (1.5, DataType.int8), ([1, 2], DataType.uint8)],
)
def test_parse_fill_value_invalid(value: object, data_type: DataType) -> None:
    with pytest.raises(ConfigurationError, match="fill_value"):
        parse_fill_value(value, data_type)
