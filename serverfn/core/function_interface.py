"""
Core Function Interface for Server Functions

This module defines the descriptor created for every wrapped function and the
rules that derive its stable identifier from the function's source.
"""

import hashlib
import inspect
import textwrap
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple


IDENTIFIER_DIGEST_LENGTH = 12


class FunctionKind(Enum):
    """Return shape declared by a wrapped function."""
    PLAIN = "plain"
    PROMISE = "promise"
    SEQUENCE = "sequence"
    ASYNC_SEQUENCE = "async_sequence"

    @property
    def is_sequence(self) -> bool:
        return self in (FunctionKind.SEQUENCE, FunctionKind.ASYNC_SEQUENCE)

    @classmethod
    def of(cls, func: Callable) -> 'FunctionKind':
        """Detect the declared kind of a callable."""
        if inspect.isasyncgenfunction(func):
            return cls.ASYNC_SEQUENCE
        if inspect.isgeneratorfunction(func):
            return cls.SEQUENCE
        if inspect.iscoroutinefunction(func):
            return cls.PROMISE
        return cls.PLAIN


def _source_fingerprint(func: Callable) -> str:
    try:
        return textwrap.dedent(inspect.getsource(func))
    except (OSError, TypeError):
        # No source on disk (REPL, exec); fall back to the compiled body
        code = getattr(func, "__code__", None)
        if code is None:
            return repr(func)
        return code.co_code.hex() + repr(code.co_consts)


def compute_identifier(func: Callable) -> str:
    """
    Derive the stable identifier of a function.

    The identifier combines the defining module, the qualified name and a
    digest of the source text, so it stays the same for one deployed version
    of the code and changes whenever the function's source changes.

    Args:
        func: The function to identify

    Returns:
        Identifier string of the form ``module.qualname:digest``
    """
    module = getattr(func, "__module__", None) or "__main__"
    qualname = getattr(func, "__qualname__", None) or getattr(func, "__name__", "anonymous")
    material = f"{module}\n{qualname}\n{_source_fingerprint(func)}"
    digest = hashlib.sha256(material.encode("utf-8")).hexdigest()[:IDENTIFIER_DIGEST_LENGTH]
    return f"{module}.{qualname}:{digest}"


@dataclass(frozen=True)
class FunctionDescriptor:
    """
    Immutable description of a wrapped function.

    Attributes:
        identifier: Stable identifier derived from the source
        body: The original callable
        kind: Declared return shape
        takes_context: Whether the body expects the request context as its first argument
        name: Human readable name of the function
    """
    identifier: str
    body: Callable[..., Any]
    kind: FunctionKind
    takes_context: bool = False
    name: str = ""
    signature: Optional[inspect.Signature] = field(default=None, compare=False, repr=False)

    @classmethod
    def from_function(cls, func: Callable, takes_context: bool = False) -> 'FunctionDescriptor':
        """Create a descriptor for a function."""
        if not callable(func):
            raise TypeError(f"Server functions must be callable, got {type(func).__name__}")

        code = getattr(func, "__code__", None)
        if code is not None and code.co_freevars:
            # Captured variables stay behind in the defining process
            raise TypeError(
                f"{func.__qualname__} closes over {', '.join(code.co_freevars)}; "
                f"server functions must be defined at module level"
            )

        signature = inspect.signature(func)
        if takes_context:
            params = list(signature.parameters.values())
            if not params or params[0].kind not in (inspect.Parameter.POSITIONAL_ONLY,
                                                    inspect.Parameter.POSITIONAL_OR_KEYWORD):
                raise TypeError(
                    f"{func.__qualname__} must accept the request context as its first positional parameter"
                )
            signature = signature.replace(parameters=params[1:])

        return cls(
            identifier=compute_identifier(func),
            body=func,
            kind=FunctionKind.of(func),
            takes_context=takes_context,
            name=getattr(func, "__qualname__", getattr(func, "__name__", "")),
            signature=signature,
        )

    def check_arguments(self, args: Tuple[Any, ...], kwargs: Dict[str, Any]) -> None:
        """Raise TypeError when the arguments do not fit the function's signature."""
        signature = self.signature
        if signature is None:
            signature = inspect.signature(self.body)
            if self.takes_context:
                signature = signature.replace(parameters=list(signature.parameters.values())[1:])
        try:
            signature.bind(*args, **kwargs)
        except TypeError as e:
            raise TypeError(f"{self.name}(): {e}") from None

    def get_metadata(self) -> Dict[str, Any]:
        """
        Get metadata about this function.

        Returns:
            Dictionary containing function metadata
        """
        return {
            "identifier": self.identifier,
            "function_name": self.name,
            "module": getattr(self.body, "__module__", None),
            "kind": self.kind.value,
            "takes_context": self.takes_context,
        }
