"""
Communication Module

This module carries server function calls across the process boundary:
protocol definitions, the dispatcher, the streaming channel, the HTTP server
and the HTTP client.
"""

from .rpc_protocol import (
    InvocationEnvelope,
    ResponseEnvelope,
    ErrorDescriptor,
    InvocationMode,
    ResponseMode,
    ResponseStatus,
    FrameType,
    DispatchEndpoint,
    validate_invocation
)

from .streaming import (
    Responder,
    ResponseStream,
    FrameReader,
    RemoteStream,
    RemoteDeferred
)

from .dispatcher import (
    Dispatcher
)

from .rpc_server import (
    DispatchServer,
    DispatchRequestHandler
)

from .rpc_client import (
    RPCClient
)

__all__ = [
    # Protocol classes
    "InvocationEnvelope",
    "ResponseEnvelope",
    "ErrorDescriptor",
    "InvocationMode",
    "ResponseMode",
    "ResponseStatus",
    "FrameType",
    "DispatchEndpoint",

    # Streaming
    "Responder",
    "ResponseStream",
    "FrameReader",
    "RemoteStream",
    "RemoteDeferred",

    # Server classes
    "Dispatcher",
    "DispatchServer",
    "DispatchRequestHandler",

    # Client classes
    "RPCClient",

    # Utility functions
    "validate_invocation"
]
