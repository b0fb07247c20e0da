from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, ClassVar, Literal

from zarrstream.common import (
    JSON,
    ChunkCoords,
    SeparatorLiteral,
    parse_named_configuration,
    parse_separator,
)

if TYPE_CHECKING:
    from typing import Self


@dataclass(frozen=True)
class DefaultChunkKeyEncoding:
    """
    Maps shard grid coordinates to store keys of the form ``c/1/0/3``.
    """

    name: ClassVar[Literal["default"]] = "default"
    separator: SeparatorLiteral = "/"

    def __post_init__(self) -> None:
        separator_parsed = parse_separator(self.separator)
        object.__setattr__(self, "separator", separator_parsed)

    @classmethod
    def from_dict(cls, data: dict[str, JSON]) -> Self:
        _, config_parsed = parse_named_configuration(data, "default", require_configuration=False)
        return cls(**config_parsed if config_parsed else {})  # type: ignore[arg-type]

    def to_dict(self) -> dict[str, JSON]:
        return {"name": self.name, "configuration": {"separator": self.separator}}

    def decode_chunk_key(self, chunk_key: str) -> ChunkCoords:
        if chunk_key == "c":
            return ()
        return tuple(map(int, chunk_key.split(self.separator)[1:]))

    def encode_chunk_key(self, chunk_coords: ChunkCoords) -> str:
        return self.separator.join(map(str, ("c",) + chunk_coords))
