"""SDK type definitions.

Field names follow Python conventions; aliases match the server's
camelCase payloads.
"""

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class ValueType(str, Enum):
    """Value types accepted by the `store` method."""

    UINT8 = "uint8"
    UINT16 = "uint16"
    UINT32 = "uint32"
    UINT64 = "uint64"
    FLOAT = "float"
    DOUBLE = "double"
    STRING = "string"
    BLOB = "blob"


class VolumeInfo(BaseModel):
    """A mounted volume, as returned by get_volumes_list."""

    model_config = ConfigDict(populate_by_name=True)

    volume_id: int = Field(alias="volumeId")
    volume_path: str = Field(alias="volumePath")
    volume_name: str = Field(alias="volumeName")
    mount_point_path: str = Field(alias="mountPointPath")


class DirEntry(BaseModel):
    """One entry of a directory listing."""

    type: Literal["dir", "key"]
    name: str
    value: Any = None

    @property
    def is_dir(self) -> bool:
        return self.type == "dir"


class DirListing(BaseModel):
    """Result of get_dir_entries."""

    dir: str
    content: list[DirEntry] = Field(default_factory=list)


class LookupResult(BaseModel):
    """Result of lookup: the stored value and its type."""

    type: str
    value: Any = None
