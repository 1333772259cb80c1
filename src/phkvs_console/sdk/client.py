"""Storage console client.

Typed wrappers over the PHKVStorage JSON-RPC methods. Every operation is
a single `transport.call`; the client holds no state of its own.

This is the recommended entry point for scripts and the CLI.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from ..protocol.errors import TransportError
from ..protocol.messages import RemoteMethod
from .transport import (
    BaseRpcTransport,
    ConnectionObserver,
    MockRpcTransport,
    create_mock_transport,
    create_websocket_transport,
)
from .types import DirListing, LookupResult, ValueType, VolumeInfo


def _volume_id(result: Any) -> int | None:
    if isinstance(result, dict) and isinstance(result.get("volumeId"), int):
        return result["volumeId"]
    return None


@dataclass
class VolumesAPI:
    """Volume operations."""

    _client: StorageConsoleClient

    async def list(self) -> list[VolumeInfo]:
        """List mounted volumes."""
        result = await self._client.call(RemoteMethod.GET_VOLUMES_LIST)
        return [VolumeInfo.model_validate(v) for v in result or []]

    async def create_and_mount(
        self,
        volume_path: str,
        volume_name: str,
        mount_point_path: str,
    ) -> int | None:
        """Create a new volume and mount it.

        Args:
            volume_path: Directory holding the volume files (relative paths
                are resolved by the server)
            volume_name: Volume file name prefix
            mount_point_path: Key path the volume is mounted at, e.g. "/"

        Returns:
            The new volume id if the server reports one
        """
        result = await self._client.call(
            RemoteMethod.CREATE_AND_MOUNT_VOLUME,
            {
                "volumePath": volume_path,
                "volumeName": volume_name,
                "mountPointPath": mount_point_path,
            },
        )
        return _volume_id(result)

    async def mount(
        self,
        volume_path: str,
        volume_name: str,
        mount_point_path: str,
    ) -> int | None:
        """Mount an existing volume. Same arguments as create_and_mount()."""
        result = await self._client.call(
            RemoteMethod.MOUNT_VOLUME,
            {
                "volumePath": volume_path,
                "volumeName": volume_name,
                "mountPointPath": mount_point_path,
            },
        )
        return _volume_id(result)

    async def unmount(self, volume_id: int) -> None:
        """Unmount a volume by id."""
        await self._client.call(RemoteMethod.UNMOUNT_VOLUME, {"volumeId": volume_id})


@dataclass
class DataAPI:
    """Key namespace operations."""

    _client: StorageConsoleClient

    async def list_dir(self, dir: str = "/") -> DirListing:
        """List the entries of a directory."""
        result = await self._client.call(RemoteMethod.GET_DIR_ENTRIES, {"dir": dir})
        return DirListing.model_validate(result)

    async def lookup(self, key: str) -> LookupResult:
        """Look up a key's type and value."""
        result = await self._client.call(RemoteMethod.LOOKUP, {"key": key})
        return LookupResult.model_validate(result)

    async def store(self, key: str, type: str | ValueType, value: str) -> None:
        """Store a typed value under a key.

        The value is sent as text; the server parses and range-checks it
        and reports failures as RpcError.
        """
        type_name = type.value if isinstance(type, ValueType) else type
        await self._client.call(
            RemoteMethod.STORE,
            {"key": key, "type": type_name, "value": value},
        )

    async def erase_key(self, key: str) -> None:
        """Erase a single key."""
        await self._client.call(RemoteMethod.ERASE_KEY, {"key": key})

    async def erase_dir_recursive(self, dir: str) -> None:
        """Erase a directory and everything below it."""
        await self._client.call(RemoteMethod.ERASE_DIR_RECURSIVE, {"dir": dir})


@dataclass
class StorageConsoleClient:
    """Client for a PHKVStorage server.

    Works with any BaseRpcTransport:
    - WebSocketRpcTransport: Connect to a running server
    - MockRpcTransport: For testing

    Usage:
        async with create_client("http://127.0.0.1:18759") as client:
            for volume in await client.volumes.list():
                print(volume.volume_name)

        # Testing
        transport = create_mock_transport()
        transport.set_result("lookup", {"type": "string", "value": "x"})
        client = create_test_client(transport)
    """

    _transport: BaseRpcTransport
    _observer: ConnectionObserver | None = field(default=None)
    _owns_transport: bool = field(default=True)

    @property
    def transport(self) -> BaseRpcTransport:
        """Access the underlying transport."""
        return self._transport

    @property
    def volumes(self) -> VolumesAPI:
        """Volume operations."""
        return VolumesAPI(_client=self)

    @property
    def data(self) -> DataAPI:
        """Key namespace operations."""
        return DataAPI(_client=self)

    @property
    def is_connected(self) -> bool:
        """Check if transport is connected."""
        return self._transport.is_connected

    async def call(self, method: str | RemoteMethod, params: dict[str, Any] | None = None) -> Any:
        """Invoke any remote method directly."""
        return await self._transport.call(method, params)

    async def connect(self) -> None:
        """Connect the transport.

        Raises:
            TransportError: If the connection could not be opened
        """
        await self._transport.connect(self._observer)
        if not self._transport.is_connected:
            raise TransportError(
                f"Could not connect (state={self._transport.state.value})"
            )

    async def disconnect(self) -> None:
        """Disconnect the transport."""
        if self._owns_transport:
            await self._transport.disconnect()

    async def __aenter__(self) -> StorageConsoleClient:
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.disconnect()


# Factory functions


def create_client(
    base_url: str | None = None,
    *,
    observer: ConnectionObserver | None = None,
    numeric_request_ids: bool | None = None,
    reject_pending_on_disconnect: bool | None = None,
) -> StorageConsoleClient:
    """Create a client that connects to a server over WebSocket.

    Args:
        base_url: Server origin, e.g. "http://127.0.0.1:18759"
        observer: Optional connection lifecycle observer
        numeric_request_ids: Send integer request ids
        reject_pending_on_disconnect: Fail outstanding calls on disconnect

    Returns:
        StorageConsoleClient with WebSocketRpcTransport
    """
    transport = create_websocket_transport(
        base_url,
        numeric_request_ids=numeric_request_ids,
        reject_pending_on_disconnect=reject_pending_on_disconnect,
    )
    return StorageConsoleClient(_transport=transport, _observer=observer)


def create_test_client(
    transport: MockRpcTransport | None = None,
    observer: ConnectionObserver | None = None,
) -> StorageConsoleClient:
    """Create a client for testing.

    Args:
        transport: Pre-configured mock transport (creates new if None)
        observer: Optional connection lifecycle observer

    Returns:
        StorageConsoleClient with MockRpcTransport
    """
    return StorageConsoleClient(
        _transport=transport or create_mock_transport(),
        _observer=observer,
        _owns_transport=transport is None,
    )
