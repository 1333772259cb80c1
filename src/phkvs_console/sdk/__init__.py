"""PHKVS Console SDK - Client for a PHKVStorage JSON-RPC server.

Transport modes:
- websocket: Connect to a running server at <origin>/json_ws
- mock: For testing without real I/O

StorageConsoleClient wraps a transport with typed volume and data APIs.
"""

from .client import (
    DataAPI,
    StorageConsoleClient,
    VolumesAPI,
    create_client,
    create_test_client,
)
from .transport import (
    DEFAULT_BASE_URL,
    DEFAULT_WS_PATH,
    BaseRpcTransport,
    ClientTransportConfig,
    ConnectionObserver,
    MockRpcTransport,
    PendingRequestTable,
    TransportState,
    WebSocketRpcTransport,
    create_mock_transport,
    create_websocket_transport,
    derive_ws_url,
)
from .types import DirEntry, DirListing, LookupResult, ValueType, VolumeInfo

__all__ = [
    # Client
    "StorageConsoleClient",
    "VolumesAPI",
    "DataAPI",
    "create_client",
    "create_test_client",
    # Transport Protocol & Base
    "ConnectionObserver",
    "BaseRpcTransport",
    "ClientTransportConfig",
    "PendingRequestTable",
    "TransportState",
    "DEFAULT_BASE_URL",
    "DEFAULT_WS_PATH",
    "derive_ws_url",
    # Transport Implementations
    "WebSocketRpcTransport",
    "MockRpcTransport",
    # Transport Factory Functions
    "create_websocket_transport",
    "create_mock_transport",
    # Types
    "VolumeInfo",
    "DirEntry",
    "DirListing",
    "LookupResult",
    "ValueType",
]
