"""PHKVS Console - operator console for a PHKVStorage key-value server.

Talks JSON-RPC 2.0 over a single WebSocket to the server's /json_ws
endpoint. See `phkvs_console.sdk` for the client API and
`phkvs_console.cli` for the `phkvs-console` command.
"""

__version__ = "0.1.0"
