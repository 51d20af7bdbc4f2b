"""
Local Execution Environment for Server Functions

This module runs wrapped function bodies inside the serving process, both for
ordinary in-process calls and as the target of a dispatched invocation, and
loads modules that define server functions.
"""

import importlib.util
import inspect
import logging
import sys
import threading
import time
from pathlib import Path
from types import ModuleType
from typing import Any, Dict, Tuple, Union

from .context import RequestContext, get_request_context
from .function_interface import FunctionDescriptor
from .registry import FunctionRegistry


logger = logging.getLogger(__name__)


class FunctionLoadError(Exception):
    """Exception raised when a module of server functions cannot be loaded."""
    pass


class FunctionLoader:
    """Loads modules that define server functions."""

    @staticmethod
    def load_from_file(file_path: Union[str, Path]) -> ModuleType:
        """
        Import a Python file so its server functions register themselves.

        The module is named after the file stem, which keeps identifiers equal
        between a server and a client loading the same file.

        Args:
            file_path: Path to the Python file containing server functions

        Returns:
            The imported module

        Raises:
            FunctionLoadError: If loading fails
        """
        file_path = Path(file_path)
        if not file_path.exists():
            raise FunctionLoadError(f"Function file not found: {file_path}")

        module_name = file_path.stem
        try:
            spec = importlib.util.spec_from_file_location(module_name, file_path)
            if spec is None or spec.loader is None:
                raise FunctionLoadError(f"Could not load module from {file_path}")

            module = importlib.util.module_from_spec(spec)
            sys.modules[module_name] = module
            spec.loader.exec_module(module)
            return module

        except FunctionLoadError:
            raise
        except Exception as e:
            sys.modules.pop(module_name, None)
            raise FunctionLoadError(f"Error loading functions from {file_path}: {e}") from e

    @staticmethod
    def find_server_functions(module: ModuleType) -> Dict[str, Any]:
        """Map attribute names to the server function proxies a module defines."""
        return {name: obj for name, obj in inspect.getmembers(module)
                if hasattr(obj, "descriptor") and isinstance(obj.descriptor, FunctionDescriptor)}


class LocalExecutor:
    """
    Execution strategy of the serving process.

    In-process calls run the body directly with whatever request context is
    active; dispatched calls run it with the context built for the request.
    """

    def __init__(self, registry: FunctionRegistry):
        """
        Initialize the local executor.

        Args:
            registry: Registry that dispatched identifiers are resolved against
        """
        self.registry = registry
        self._stats_lock = threading.Lock()
        self.stats = {
            "local_calls": 0,
            "dispatched_calls": 0,
            "failed_calls": 0,
            "total_execution_time_ms": 0.0,
        }

    def invoke(self, descriptor: FunctionDescriptor, args: Tuple[Any, ...], kwargs: Dict[str, Any]) -> Any:
        """
        Call a function in-process.

        No codec and no network are involved; the return value is whatever the
        body returns (value, coroutine or generator).
        """
        descriptor.check_arguments(args, kwargs)
        context = get_request_context() or RequestContext.inert()
        self._count("local_calls")
        return self._call_body(descriptor, context, args, kwargs)

    async def run(self,
                  identifier: str,
                  args: Tuple[Any, ...],
                  kwargs: Dict[str, Any],
                  context: RequestContext) -> Any:
        """
        Run a function as the target of a dispatched invocation.

        A returned awaitable is resolved here; generators are returned as-is
        for the streaming layer to drain.

        Raises:
            NotFound: If the identifier is not registered
            Exception: Whatever the function body raises
        """
        descriptor = self.registry.resolve(identifier)
        descriptor.check_arguments(args, kwargs)
        self._count("dispatched_calls")

        start_time = time.time()
        try:
            result = self._call_body(descriptor, context, args, kwargs)
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            self._count("failed_calls")
            logger.debug(f"{descriptor.name} raised {e.__class__.__name__}: {e}")
            raise
        finally:
            execution_time_ms = (time.time() - start_time) * 1000
            with self._stats_lock:
                self.stats["total_execution_time_ms"] += execution_time_ms

        logger.debug(f"{descriptor.name} completed in {execution_time_ms:.2f}ms")
        return result

    @staticmethod
    def _call_body(descriptor: FunctionDescriptor,
                   context: RequestContext,
                   args: Tuple[Any, ...],
                   kwargs: Dict[str, Any]) -> Any:
        if descriptor.takes_context:
            return descriptor.body(context, *args, **kwargs)
        return descriptor.body(*args, **kwargs)

    def _count(self, key: str) -> None:
        with self._stats_lock:
            self.stats[key] += 1

    def get_statistics(self) -> Dict[str, Any]:
        """Get execution statistics."""
        with self._stats_lock:
            stats = dict(self.stats)

        dispatched = stats["dispatched_calls"]
        if dispatched:
            stats["success_rate"] = (dispatched - stats["failed_calls"]) / dispatched
            stats["average_execution_time_ms"] = stats["total_execution_time_ms"] / dispatched
        else:
            stats["success_rate"] = 0.0
            stats["average_execution_time_ms"] = 0.0
        return stats
