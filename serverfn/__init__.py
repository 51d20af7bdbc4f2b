"""
serverfn: server functions callable from anywhere.

A function wrapped with ``server_function`` runs in the serving process. In
every other process the same name is a proxy that performs an HTTP call to
the dispatch endpoint and hands back the result, including streamed
sequences and values that resolve later.
"""

from .core import (
    ErrorKind,
    ServerFunctionError,
    NotFound,
    Unencodable,
    CodecFailure,
    TransportFailure,
    RemoteFailure,
    RegistryError,
    ContextExpiredError,
    FunctionDescriptor,
    FunctionKind,
    FunctionRegistry,
    ValueCodec,
    RequestContext,
    Headers,
    Cookies,
    get_request_context,
    ExecutionMode,
    ServerFunctionProxy
)

from .communication import (
    DispatchServer,
    RPCClient,
    RemoteStream,
    RemoteDeferred
)

from .runtime import (
    Runtime,
    configure_default_runtime,
    get_default_runtime,
    server_function
)

__version__ = "0.1.0"

__all__ = [
    'ErrorKind',
    'ServerFunctionError',
    'NotFound',
    'Unencodable',
    'CodecFailure',
    'TransportFailure',
    'RemoteFailure',
    'RegistryError',
    'ContextExpiredError',
    'FunctionDescriptor',
    'FunctionKind',
    'FunctionRegistry',
    'ValueCodec',
    'RequestContext',
    'Headers',
    'Cookies',
    'get_request_context',
    'ExecutionMode',
    'ServerFunctionProxy',
    'DispatchServer',
    'RPCClient',
    'RemoteStream',
    'RemoteDeferred',
    'Runtime',
    'configure_default_runtime',
    'get_default_runtime',
    'server_function'
]
