"""
Dual-Mode Proxy for Server Functions

The proxy is what callers hold in place of a wrapped function. It forwards
every call to the invoker of its runtime: the local executor in the serving
process, the HTTP client everywhere else. The invoker is chosen once when the
runtime is built, never per call.
"""

import functools
from enum import Enum
from typing import Any, Dict, Protocol, Tuple

from .function_interface import FunctionDescriptor, FunctionKind


class ExecutionMode(Enum):
    """Which side of the process boundary a runtime executes on."""
    LOCAL = "local"
    REMOTE = "remote"

    @classmethod
    def from_role(cls, role: str) -> 'ExecutionMode':
        """Parse a process role name ("server"/"local" or "client"/"remote")."""
        value = role.strip().lower()
        if value in ("server", "local"):
            return cls.LOCAL
        if value in ("client", "remote"):
            return cls.REMOTE
        raise ValueError(f"Unknown execution role: {role!r}")


class Invoker(Protocol):
    """Strategy that carries out a proxy call."""

    def invoke(self, descriptor: FunctionDescriptor, args: Tuple[Any, ...], kwargs: Dict[str, Any]) -> Any:
        ...


class ServerFunctionProxy:
    """
    Callable standing in for a wrapped function.

    Calling the proxy has the same arity as calling the original function and
    returns the same shape: a value, an awaitable, a generator or an async
    generator, depending on how the function was declared.
    """

    def __init__(self, descriptor: FunctionDescriptor, invoker: Invoker):
        self._descriptor = descriptor
        self._invoker = invoker
        functools.update_wrapper(self, descriptor.body)

    @property
    def descriptor(self) -> FunctionDescriptor:
        return self._descriptor

    @property
    def identifier(self) -> str:
        return self._descriptor.identifier

    @property
    def kind(self) -> FunctionKind:
        return self._descriptor.kind

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        return self._invoker.invoke(self._descriptor, args, kwargs)

    def __repr__(self) -> str:
        return f"<ServerFunctionProxy {self._descriptor.identifier} via {type(self._invoker).__name__}>"
