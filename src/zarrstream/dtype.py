from __future__ import annotations

from enum import Enum
from typing import Any

import numpy as np

from zarrstream.errors import ConfigurationError


class DataType(Enum):
    uint8 = "uint8"
    uint16 = "uint16"
    uint32 = "uint32"
    uint64 = "uint64"
    int8 = "int8"
    int16 = "int16"
    int32 = "int32"
    int64 = "int64"
    float32 = "float32"
    float64 = "float64"

    @property
    def byte_count(self) -> int:
        return self.to_numpy().itemsize

    def to_numpy(self, endian: str = "little") -> np.dtype[Any]:
        prefix = "<" if endian == "little" else ">"
        return np.dtype(self.value).newbyteorder(prefix)

    def default_fill_value(self) -> int | float:
        if self in (DataType.float32, DataType.float64):
            return 0.0
        return 0


def parse_data_type(data: Any) -> DataType:
    """Accept a ``DataType``, its name (``"uint16"``) or anything numpy can turn into a dtype."""
    if isinstance(data, DataType):
        return data
    if isinstance(data, str) and data in DataType.__members__:
        return DataType[data]
    try:
        dtype = np.dtype(data)
    except TypeError as e:
        raise ConfigurationError("data_type", "a numeric sample type", data) from e
    if dtype.name not in DataType.__members__:
        raise ConfigurationError("data_type", f"one of {list(DataType.__members__)}", data)
    return DataType[dtype.name]


def parse_fill_value(data: Any, data_type: DataType) -> int | float:
    if data is None:
        return data_type.default_fill_value()
    try:
        value = np.asarray(data).astype(data_type.value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError("fill_value", f"a scalar of type {data_type.value}", data) from e
    if value.ndim != 0:
        raise ConfigurationError("fill_value", f"a scalar representable as {data_type.value}", data)
    if value.dtype.kind == "f" and np.isnan(value):
        return value.item()
    if value != data:
        raise ConfigurationError("fill_value", f"a scalar representable as {data_type.value}", data)
    return value.item()
