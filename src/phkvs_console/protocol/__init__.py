"""JSON-RPC 2.0 protocol layer.

Defines the request/response objects exchanged with the PHKVStorage
server and the errors surfaced to callers.

Key concepts:
- Requests: Client -> Server calls with a correlation id
- Responses: Server -> Client replies echoing that id
- Errors: transport failures vs. per-call RPC errors
"""

from .errors import (
    JsonRpcErrorCode,
    RpcError,
    TransportClosedError,
    TransportError,
    TransportNotConnectedError,
)
from .messages import (
    JSONRPC_VERSION,
    JsonRpcErrorObject,
    JsonRpcRequest,
    JsonRpcResponse,
    RemoteMethod,
    RequestId,
)

__all__ = [
    "JSONRPC_VERSION",
    "JsonRpcRequest",
    "JsonRpcResponse",
    "JsonRpcErrorObject",
    "RemoteMethod",
    "RequestId",
    "JsonRpcErrorCode",
    "RpcError",
    "TransportError",
    "TransportNotConnectedError",
    "TransportClosedError",
]
