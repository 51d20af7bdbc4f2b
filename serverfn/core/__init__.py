"""
Core module for server functions

This module provides the pieces that do not depend on a transport: function
descriptors, the identifier registry, the value codec, the request context,
the local execution strategy and the dual-mode proxy.
"""

from .errors import (
    ErrorKind,
    ServerFunctionError,
    NotFound,
    Unencodable,
    CodecFailure,
    TransportFailure,
    RemoteFailure,
    RegistryError,
    ContextExpiredError,
    status_code_for
)

from .function_interface import (
    FunctionDescriptor,
    FunctionKind,
    compute_identifier
)

from .registry import FunctionRegistry

from .codec import ValueCodec

from .context import (
    RequestContext,
    Headers,
    Cookies,
    bind_context,
    get_request_context,
    environment_snapshot
)

from .local_executor import (
    LocalExecutor,
    FunctionLoader,
    FunctionLoadError
)

from .proxy import (
    ExecutionMode,
    ServerFunctionProxy
)

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
    'status_code_for',
    'FunctionDescriptor',
    'FunctionKind',
    'compute_identifier',
    'FunctionRegistry',
    'ValueCodec',
    'RequestContext',
    'Headers',
    'Cookies',
    'bind_context',
    'get_request_context',
    'environment_snapshot',
    'LocalExecutor',
    'FunctionLoader',
    'FunctionLoadError',
    'ExecutionMode',
    'ServerFunctionProxy'
]
