"""Error taxonomy for the console.

Two families:
- Transport errors: the socket could not be used (never opened, closed,
  failed). Subclasses of ConnectionError.
- RpcError: the server answered a specific call with an `error` object.
"""

from __future__ import annotations

from enum import IntEnum
from typing import Any

from .messages import JsonRpcErrorObject


class JsonRpcErrorCode(IntEnum):
    """Error codes produced by the PHKVStorage JSON-RPC service."""

    # JSON-RPC 2.0 reserved codes
    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603

    # Server-defined codes
    FILE_OPEN_ERROR = -32000
    TABLE_NOT_FOUND = -32001
    FILE_PARSE_ERROR = -32002


class TransportError(ConnectionError):
    """Base class for socket-level failures."""


class TransportNotConnectedError(TransportError):
    """A call was issued while the transport was not open."""


class TransportClosedError(TransportError):
    """The connection ended before the call could complete."""


class RpcError(Exception):
    """The server rejected a call.

    Attributes:
        code: JSON-RPC error code (see JsonRpcErrorCode for known values)
        message: Human readable message from the server
        data: Optional extra payload from the server
    """

    def __init__(self, code: int, message: str, data: Any = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data

    @classmethod
    def from_error_object(cls, error: JsonRpcErrorObject) -> RpcError:
        return cls(error.code, error.message, error.data)

    @property
    def known_code(self) -> JsonRpcErrorCode | None:
        """The code as a JsonRpcErrorCode, or None if the server used another value."""
        try:
            return JsonRpcErrorCode(self.code)
        except ValueError:
            return None

    def __repr__(self) -> str:
        return f"RpcError(code={self.code}, message={self.message!r})"
