"""
Test Suite for Function Descriptors and the Identifier Registry
"""

import unittest

from serverfn.core.errors import NotFound, RegistryError
from serverfn.core.function_interface import FunctionDescriptor, FunctionKind, compute_identifier
from serverfn.core.registry import FunctionRegistry


def add(a, b=1):
    return a + b


async def fetch(key):
    return key


def numbers(limit):
    yield from range(limit)


async def ticks(limit):
    for i in range(limit):
        yield i


def greet(ctx, name):
    return f"{ctx!r} {name}"


def make_adder(n):
    def add_n(x):
        return x + n
    return add_n


add_one, add_two = (lambda x: x + 1), (lambda x: x + 2)


class TestFunctionDescriptor(unittest.TestCase):
    """Test descriptor creation and argument checking."""

    def test_kinds(self):
        """Test the declared return shape is detected."""
        self.assertIs(FunctionKind.of(add), FunctionKind.PLAIN)
        self.assertIs(FunctionKind.of(fetch), FunctionKind.PROMISE)
        self.assertIs(FunctionKind.of(numbers), FunctionKind.SEQUENCE)
        self.assertIs(FunctionKind.of(ticks), FunctionKind.ASYNC_SEQUENCE)
        self.assertTrue(FunctionKind.SEQUENCE.is_sequence)
        self.assertFalse(FunctionKind.PROMISE.is_sequence)

    def test_identifier_format(self):
        """Test identifiers name the function and carry a source digest."""
        identifier = compute_identifier(add)
        name, digest = identifier.split(":")
        self.assertEqual(name, f"{add.__module__}.add")
        self.assertEqual(len(digest), 12)
        int(digest, 16)

    def test_identifier_is_stable(self):
        """Test the identifier does not change between computations."""
        self.assertEqual(compute_identifier(add), compute_identifier(add))
        self.assertNotEqual(compute_identifier(add), compute_identifier(fetch))

    def test_identifier_follows_source(self):
        """Test functions with the same name but different bodies differ."""
        namespace_a, namespace_b = {}, {}
        exec("def twin(x):\n    return x + 1\n", namespace_a)
        exec("def twin(x):\n    return x + 2\n", namespace_b)
        self.assertNotEqual(compute_identifier(namespace_a["twin"]), compute_identifier(namespace_b["twin"]))

    def test_check_arguments(self):
        """Test arity errors raise TypeError before any call."""
        descriptor = FunctionDescriptor.from_function(add)
        descriptor.check_arguments((1,), {})
        descriptor.check_arguments((1,), {"b": 2})
        with self.assertRaises(TypeError):
            descriptor.check_arguments((), {})
        with self.assertRaises(TypeError):
            descriptor.check_arguments((1, 2, 3), {})
        with self.assertRaises(TypeError):
            descriptor.check_arguments((1,), {"c": 3})

    def test_context_parameter_is_hidden(self):
        """Test the context parameter is not part of the caller's signature."""
        descriptor = FunctionDescriptor.from_function(greet, takes_context=True)
        self.assertTrue(descriptor.takes_context)
        descriptor.check_arguments(("Ada",), {})
        with self.assertRaises(TypeError):
            descriptor.check_arguments(("ctx", "Ada"), {})

    def test_context_function_needs_a_parameter(self):
        """Test with_context requires a first positional parameter."""
        def no_params():
            return None

        with self.assertRaises(TypeError):
            FunctionDescriptor.from_function(no_params, takes_context=True)

    def test_closures_are_rejected(self):
        """Test functions that capture variables cannot be wrapped."""
        with self.assertRaises(TypeError) as cm:
            FunctionDescriptor.from_function(make_adder(1))
        self.assertIn("closes over n", str(cm.exception))

    def test_built_without_signature(self):
        """Test a descriptor built directly still checks arguments."""
        descriptor = FunctionDescriptor(identifier="direct.add:000000000000", body=add, kind=FunctionKind.PLAIN)
        descriptor.check_arguments((1,), {})
        with self.assertRaises(TypeError):
            descriptor.check_arguments((), {})

        contextual = FunctionDescriptor(identifier="direct.greet:000000000000", body=greet,
                                        kind=FunctionKind.PLAIN, takes_context=True)
        contextual.check_arguments(("Ada",), {})
        with self.assertRaises(TypeError):
            contextual.check_arguments(("ctx", "Ada"), {})

    def test_metadata(self):
        """Test descriptor metadata."""
        metadata = FunctionDescriptor.from_function(numbers).get_metadata()
        self.assertEqual(metadata["function_name"], "numbers")
        self.assertEqual(metadata["kind"], "sequence")
        self.assertFalse(metadata["takes_context"])


class TestFunctionRegistry(unittest.TestCase):
    """Test the identifier registry."""

    def setUp(self):
        self.registry = FunctionRegistry()
        self.descriptor = FunctionDescriptor.from_function(add)

    def test_register_and_resolve(self):
        """Test registration returns the identifier it resolves under."""
        identifier = self.registry.register(self.descriptor)
        self.assertEqual(identifier, self.descriptor.identifier)
        self.assertIs(self.registry.resolve(identifier), self.descriptor)
        self.assertIn(identifier, self.registry)
        self.assertEqual(len(self.registry), 1)

    def test_unknown_identifier(self):
        """Test resolving an unknown identifier raises NotFound."""
        with self.assertRaises(NotFound) as cm:
            self.registry.resolve("missing.fn:000000000000")
        self.assertEqual(cm.exception.identifier, "missing.fn:000000000000")
        self.assertIsNone(self.registry.get("missing.fn:000000000000"))

    def test_reregistration_replaces(self):
        """Test registering the same identifier twice keeps one entry."""
        again = FunctionDescriptor.from_function(add)
        self.registry.register(self.descriptor)
        self.registry.register(again)
        self.assertEqual(len(self.registry), 1)
        self.assertIs(self.registry.resolve(again.identifier), again)

    def test_same_identifier_different_body(self):
        """Test an identifier shared by two different bodies is refused."""
        first = FunctionDescriptor.from_function(add_one)
        second = FunctionDescriptor.from_function(add_two)
        self.assertEqual(first.identifier, second.identifier)

        self.registry.register(first)
        with self.assertRaises(RegistryError):
            self.registry.register(second)
        self.assertIs(self.registry.resolve(first.identifier), first)
        self.assertEqual(self.registry.resolve(first.identifier).body(5), 6)

    def test_freeze(self):
        """Test registration is refused once frozen."""
        self.registry.register(self.descriptor)
        self.registry.freeze()
        self.assertTrue(self.registry.is_frozen)
        with self.assertRaises(RegistryError):
            self.registry.register(FunctionDescriptor.from_function(fetch))
        self.assertIs(self.registry.resolve(self.descriptor.identifier), self.descriptor)

    def test_listing(self):
        """Test identifiers and metadata listings."""
        for func in (add, fetch, numbers):
            self.registry.register(FunctionDescriptor.from_function(func))

        identifiers = self.registry.list_identifiers()
        self.assertEqual(identifiers, sorted(identifiers))
        self.assertEqual(len(identifiers), 3)

        description = self.registry.describe()
        self.assertEqual(set(description), set(identifiers))
        self.assertEqual(description[compute_identifier(fetch)]["kind"], "promise")


if __name__ == "__main__":
    unittest.main(verbosity=2)
