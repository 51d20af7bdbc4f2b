"""
Function Registry for Server Functions

This module maps stable identifiers to wrapped function descriptors. Entries
are written while modules are imported and only read once serving starts.
"""

import logging
import threading
from typing import Any, Dict, List, Optional

from .errors import NotFound, RegistryError
from .function_interface import FunctionDescriptor


logger = logging.getLogger(__name__)


def _same_body(a: Any, b: Any) -> bool:
    if a is b:
        return True
    code_a, code_b = getattr(a, "__code__", None), getattr(b, "__code__", None)
    if code_a is None or code_b is None:
        return False
    return (code_a == code_b
            and getattr(a, "__defaults__", None) == getattr(b, "__defaults__", None)
            and getattr(a, "__kwdefaults__", None) == getattr(b, "__kwdefaults__", None))


class FunctionRegistry:
    """In-memory registry of wrapped functions keyed by identifier."""

    def __init__(self):
        self._functions: Dict[str, FunctionDescriptor] = {}
        self._lock = threading.Lock()
        self._frozen = False

    def register(self, descriptor: FunctionDescriptor) -> str:
        """
        Register a function descriptor.

        Args:
            descriptor: Descriptor to register

        Returns:
            The identifier the descriptor is reachable under

        Raises:
            RegistryError: If the registry was frozen because serving started, or
                the identifier is already bound to a different body
        """
        with self._lock:
            if self._frozen:
                raise RegistryError(
                    f"Cannot register '{descriptor.identifier}': registry is frozen while serving"
                )
            existing = self._functions.get(descriptor.identifier)
            if existing is not None:
                if not _same_body(existing.body, descriptor.body):
                    raise RegistryError(
                        f"Identifier '{descriptor.identifier}' is already bound to a different function"
                    )
                # Same code under the same identifier, e.g. a reloaded module
                logger.debug(f"Replacing registration for {descriptor.identifier}")
            self._functions[descriptor.identifier] = descriptor

        logger.debug(f"Registered server function {descriptor.identifier} ({descriptor.kind.value})")
        return descriptor.identifier

    def resolve(self, identifier: str) -> FunctionDescriptor:
        """
        Resolve an identifier to its descriptor.

        Raises:
            NotFound: If nothing is registered under the identifier
        """
        descriptor = self._functions.get(identifier)
        if descriptor is None:
            raise NotFound(identifier)
        return descriptor

    def get(self, identifier: str) -> Optional[FunctionDescriptor]:
        """Get a descriptor, or None if the identifier is unknown."""
        return self._functions.get(identifier)

    def freeze(self) -> None:
        """Reject further registrations."""
        with self._lock:
            self._frozen = True

    @property
    def is_frozen(self) -> bool:
        return self._frozen

    def list_identifiers(self) -> List[str]:
        """Get list of registered identifiers."""
        return sorted(self._functions)

    def describe(self) -> Dict[str, Dict[str, Any]]:
        """Get metadata for every registered function."""
        return {identifier: descriptor.get_metadata()
                for identifier, descriptor in sorted(self._functions.items())}

    def __contains__(self, identifier: object) -> bool:
        return identifier in self._functions

    def __len__(self) -> int:
        return len(self._functions)
