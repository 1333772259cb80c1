"""JSON-RPC 2.0 message definitions.

Requests go from client to server and carry an `id` used to correlate the
response. Responses carry either `result` or `error` and echo the `id`.

Wire example (one WebSocket text frame per message):
    -> {"jsonrpc":"2.0","id":"1","method":"get_volumes_list","params":{}}
    <- {"jsonrpc":"2.0","id":"1","result":[]}
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

JSONRPC_VERSION = "2.0"

RequestId = str | int


class RemoteMethod(str, Enum):
    """Methods implemented by the PHKVStorage server."""

    # Volumes
    GET_VOLUMES_LIST = "get_volumes_list"
    CREATE_AND_MOUNT_VOLUME = "create_and_mount_volume"
    MOUNT_VOLUME = "mount_volume"
    UNMOUNT_VOLUME = "unmount_volume"

    # Key namespace
    GET_DIR_ENTRIES = "get_dir_entries"
    LOOKUP = "lookup"
    STORE = "store"
    ERASE_KEY = "erase_key"
    ERASE_DIR_RECURSIVE = "erase_dir_recursive"


class JsonRpcRequest(BaseModel):
    """A method call from client to server.

    Field order matters: it is the serialization order on the wire.
    """

    jsonrpc: str = JSONRPC_VERSION
    id: RequestId
    method: str
    params: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def create(
        cls,
        method: str | RemoteMethod,
        params: dict[str, Any] | None,
        request_id: RequestId,
    ) -> JsonRpcRequest:
        """Factory method for creating requests."""
        return cls(
            id=request_id,
            method=method.value if isinstance(method, RemoteMethod) else method,
            params=params or {},
        )

    def to_frame(self) -> str:
        """Serialize to a compact JSON text frame."""
        return self.model_dump_json()


class JsonRpcErrorObject(BaseModel):
    """The `error` member of a failed response."""

    code: int
    message: str
    data: Any = None


class JsonRpcResponse(BaseModel):
    """A response from server to client.

    Unknown members are ignored so that server notifications (which carry
    `method` and no `id`) validate and are then dropped as uncorrelated.
    """

    model_config = ConfigDict(extra="ignore")

    jsonrpc: str = JSONRPC_VERSION
    id: RequestId | None = None
    result: Any = None
    error: JsonRpcErrorObject | None = None

    @property
    def correlation_key(self) -> str | None:
        """Key used for pending-table lookup.

        Ids are compared as strings, so a server that echoes `1` for a
        request sent with id `"1"` still matches.
        """
        if self.id is None:
            return None
        return str(self.id)

    def is_error(self) -> bool:
        """Check if this response reports a failure."""
        return self.error is not None
