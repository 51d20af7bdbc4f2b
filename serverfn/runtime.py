"""
Runtime wiring for server functions.

A Runtime owns the registry, the codec and the invoker of one process. The
invoker is chosen once, from the execution mode: the local executor in the
serving process, the HTTP client in a calling process.
"""

import logging
import threading
from typing import Any, Callable, Dict, Optional, Type

from .communication.rpc_client import RPCClient
from .communication.rpc_server import DispatchServer
from .config import Config, config as default_config
from .core.codec import ValueCodec
from .core.function_interface import FunctionDescriptor
from .core.local_executor import LocalExecutor
from .core.proxy import ExecutionMode, Invoker, ServerFunctionProxy
from .core.registry import FunctionRegistry


logger = logging.getLogger(__name__)


class Runtime:
    """
    Execution environment of server functions in one process.
    """

    def __init__(self,
                 mode: Optional[ExecutionMode] = None,
                 endpoint: Optional[str] = None,
                 registry: Optional[FunctionRegistry] = None,
                 codec: Optional[ValueCodec] = None,
                 settings: Optional[Config] = None,
                 headers: Optional[Dict[str, str]] = None):
        """
        Initialize the runtime.

        Args:
            mode: Execution side of this process (from SERVERFN_MODE if None)
            endpoint: Dispatch endpoint URL for REMOTE mode (from configuration if None)
            registry: Function registry (a new one if None)
            codec: Value codec (a new one if None)
            settings: Configuration (the global one if None)
            headers: Extra headers a REMOTE runtime sends with every call
        """
        self.config = settings or default_config
        self.mode = mode or ExecutionMode.from_role(self.config.runtime.mode)
        self.endpoint = endpoint or self.config.endpoint_url()
        self.registry = registry or FunctionRegistry()
        self.codec = codec or ValueCodec()
        self.executor = LocalExecutor(self.registry)

        self.client: Optional[RPCClient] = None
        if self.mode is ExecutionMode.REMOTE:
            self.client = RPCClient(
                self.endpoint,
                self.codec,
                timeout=self.config.rpc.timeout_seconds,
                headers=headers
            )
        self.invoker: Invoker = self.executor if self.mode is ExecutionMode.LOCAL else self.client

        logger.debug(f"Runtime created in {self.mode.value} mode")

    def server_function(self, func: Optional[Callable] = None, *, with_context: bool = False) -> Any:
        """
        Register a function and return its proxy.

        Usable directly or as a decorator, with or without arguments::

            @runtime.server_function
            def add(a, b): ...

            @runtime.server_function(with_context=True)
            def whoami(ctx): ...
        """
        def wrap(body: Callable) -> ServerFunctionProxy:
            descriptor = FunctionDescriptor.from_function(body, takes_context=with_context)
            self.registry.register(descriptor)
            return ServerFunctionProxy(descriptor, self.invoker)

        if func is None:
            return wrap
        return wrap(func)

    def register_error(self, error_type: Type[BaseException]) -> Type[BaseException]:
        """Allow a custom exception class to be rebuilt on the calling side."""
        return self.codec.register_error(error_type)

    def create_server(self, host: Optional[str] = None, port: Optional[int] = None) -> DispatchServer:
        """Build the dispatch server exposing this runtime's functions."""
        return DispatchServer(self, host=host, port=port, settings=self.config)


_default_runtime: Optional[Runtime] = None
_default_lock = threading.Lock()


def configure_default_runtime(**kwargs: Any) -> Runtime:
    """Replace the process default runtime; accepts Runtime's arguments."""
    global _default_runtime
    with _default_lock:
        _default_runtime = Runtime(**kwargs)
    return _default_runtime


def get_default_runtime() -> Runtime:
    """Get the process default runtime, creating it from configuration."""
    global _default_runtime
    if _default_runtime is None:
        with _default_lock:
            if _default_runtime is None:
                _default_runtime = Runtime()
    return _default_runtime


def server_function(func: Optional[Callable] = None, *, with_context: bool = False) -> Any:
    """Register a function with the process default runtime."""
    return get_default_runtime().server_function(func, with_context=with_context)
