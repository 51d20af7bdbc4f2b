"""
Value Codec for Server Function Arguments and Results

Encodes Python values into a JSON-compatible wire shape and back. Containers
are stored once in a node table and referenced by index, so shared and cyclic
references survive a round trip. Awaitables and generators are replaced by
deferred markers that the streaming layer settles later in the response.

Wire shape::

    {"version": 1, "root": <entry>, "nodes": [[tag, payload], ...]}

An entry is a JSON scalar, a node reference ``{"#": index}`` or a tagged
scalar ``{"$": tag, ...}``.
"""

import base64
import builtins
import datetime
import decimal
import inspect
import math
import uuid
from collections.abc import AsyncIterator
from typing import Any, Dict, List, Optional, Protocol, Tuple, Type

from .errors import CodecFailure, Unencodable


WIRE_VERSION = 1

PROMISE_MARKER = "promise"
STREAM_MARKER = "stream"

_MUTABLE_TAGS = ("list", "dict", "set")
_IMMUTABLE_TAGS = ("tuple", "frozenset")


class DeferredSink(Protocol):
    """Accepts deferred values found while encoding and numbers them."""

    def register_deferred(self, value: Any) -> Tuple[str, int]:
        ...


class DeferredSource(Protocol):
    """Produces placeholders for deferred markers found while decoding."""

    def promise(self, ident: int) -> Any:
        ...

    def stream(self, ident: int) -> Any:
        ...


def is_stream_value(value: Any) -> bool:
    """Whether a value is carried as a stream marker."""
    return inspect.isgenerator(value) or isinstance(value, AsyncIterator)


def is_deferred_value(value: Any) -> bool:
    """Whether a value is carried as a promise or stream marker."""
    return is_stream_value(value) or inspect.isawaitable(value)


class _Encoder:

    def __init__(self, deferreds: Optional[DeferredSink]):
        self.deferreds = deferreds
        self.nodes: List[Any] = []
        self.seen: Dict[int, int] = {}
        self.in_progress: set = set()

    def entry(self, value: Any) -> Any:
        kind = type(value)

        if value is None or kind in (bool, str, int):
            return value
        if kind is float:
            if math.isfinite(value):
                return value
            return {"$": "float", "v": "nan" if math.isnan(value) else ("inf" if value > 0 else "-inf")}
        if kind in (bytes, bytearray):
            return {"$": "bytes", "v": base64.b64encode(bytes(value)).decode("ascii")}
        if kind is datetime.datetime:
            return {"$": "datetime", "v": value.isoformat()}
        if kind is datetime.date:
            return {"$": "date", "v": value.isoformat()}
        if kind is uuid.UUID:
            return {"$": "uuid", "v": str(value)}
        if kind is decimal.Decimal:
            return {"$": "decimal", "v": str(value)}
        if kind in (list, dict, set, tuple, frozenset):
            return {"#": self.node(value)}
        if is_deferred_value(value):
            if self.deferreds is None:
                raise Unencodable(
                    f"Cannot encode {kind.__name__} outside a streamed response"
                )
            marker, ident = self.deferreds.register_deferred(value)
            return {"$": marker, "id": ident}

        raise Unencodable(f"Cannot encode value of type {kind.__name__}")

    def node(self, value: Any) -> int:
        key = id(value)
        if key in self.seen:
            if key in self.in_progress:
                raise Unencodable(
                    f"Cannot encode a reference cycle through an immutable {type(value).__name__}"
                )
            return self.seen[key]

        index = len(self.nodes)
        self.seen[key] = index
        self.nodes.append(None)
        kind = type(value)

        if kind is list:
            self.nodes[index] = ["list", [self.entry(item) for item in value]]
        elif kind is dict:
            self.nodes[index] = ["dict", [[self.entry(k), self.entry(v)] for k, v in value.items()]]
        elif kind is set:
            self.nodes[index] = ["set", [self.entry(item) for item in value]]
        else:
            self.in_progress.add(key)
            try:
                self.nodes[index] = [kind.__name__, [self.entry(item) for item in value]]
            finally:
                self.in_progress.discard(key)
        return index


_BUILDING = object()


class _Decoder:

    def __init__(self, nodes: List[Any], deferreds: Optional[DeferredSource]):
        self.nodes = nodes
        self.deferreds = deferreds
        self.memo: Dict[int, Any] = {}

    def entry(self, raw: Any) -> Any:
        if raw is None or isinstance(raw, (bool, str, int, float)):
            return raw
        if not isinstance(raw, dict):
            raise CodecFailure(f"Unexpected wire entry of type {type(raw).__name__}")
        if "#" in raw:
            return self.node(raw["#"])
        if "$" in raw:
            return self.tagged(raw)
        raise CodecFailure(f"Unrecognized wire entry: {sorted(raw)}")

    def tagged(self, raw: Dict[str, Any]) -> Any:
        tag = raw["$"]
        try:
            if tag == "float":
                return float(raw["v"])
            if tag == "bytes":
                return base64.b64decode(raw["v"], validate=True)
            if tag == "datetime":
                return datetime.datetime.fromisoformat(raw["v"])
            if tag == "date":
                return datetime.date.fromisoformat(raw["v"])
            if tag == "uuid":
                return uuid.UUID(raw["v"])
            if tag == "decimal":
                return decimal.Decimal(raw["v"])
            if tag in (PROMISE_MARKER, STREAM_MARKER):
                ident = raw["id"]
                if type(ident) is not int:
                    raise CodecFailure(f"Invalid {tag} marker id: {ident!r}")
                if self.deferreds is None:
                    raise CodecFailure(f"Unexpected {tag} marker outside a streamed response")
                if tag == PROMISE_MARKER:
                    return self.deferreds.promise(ident)
                return self.deferreds.stream(ident)
        except (KeyError, TypeError, ValueError, decimal.InvalidOperation) as e:
            raise CodecFailure(f"Malformed '{tag}' entry: {e}") from e
        raise CodecFailure(f"Unknown wire tag: {tag!r}")

    def node(self, index: Any) -> Any:
        if type(index) is not int or not 0 <= index < len(self.nodes):
            raise CodecFailure(f"Invalid node reference: {index!r}")
        if index in self.memo:
            value = self.memo[index]
            if value is _BUILDING:
                raise CodecFailure("Reference cycle through an immutable node")
            return value

        raw = self.nodes[index]
        if not (isinstance(raw, list) and len(raw) == 2 and isinstance(raw[1], list)):
            raise CodecFailure(f"Malformed node {index}")
        tag, items = raw

        try:
            if tag == "list":
                value = []
                self.memo[index] = value
                value.extend(self.entry(item) for item in items)
            elif tag == "dict":
                value = {}
                self.memo[index] = value
                for pair in items:
                    if not (isinstance(pair, list) and len(pair) == 2):
                        raise CodecFailure(f"Malformed dict entry in node {index}")
                    value[self.entry(pair[0])] = self.entry(pair[1])
            elif tag == "set":
                value = set()
                self.memo[index] = value
                value.update(self.entry(item) for item in items)
            elif tag in _IMMUTABLE_TAGS:
                self.memo[index] = _BUILDING
                built = [self.entry(item) for item in items]
                value = tuple(built) if tag == "tuple" else frozenset(built)
                self.memo[index] = value
            else:
                raise CodecFailure(f"Unknown node tag: {tag!r}")
        except TypeError as e:
            # unhashable key or set member
            raise CodecFailure(f"Invalid node {index}: {e}") from e
        return value


class ValueCodec:
    """
    Encoder/decoder for values crossing the process boundary.

    Besides values, the codec keeps the allow-list of exception classes that
    may be rebuilt on the calling side when a remote body raises them.
    """

    def __init__(self):
        self._error_types: Dict[str, Type[BaseException]] = {}

    def encode(self, value: Any, deferreds: Optional[DeferredSink] = None) -> Dict[str, Any]:
        """
        Encode a value into its wire shape.

        Args:
            value: Value to encode
            deferreds: Sink for awaitables and generators; without one they are unencodable

        Returns:
            JSON-compatible wire dictionary

        Raises:
            Unencodable: If the value contains something outside the supported universe
        """
        encoder = _Encoder(deferreds)
        try:
            root = encoder.entry(value)
        except RecursionError as e:
            raise Unencodable("Value is nested too deeply to encode") from e
        return {"version": WIRE_VERSION, "root": root, "nodes": encoder.nodes}

    def decode(self, wire: Any, deferreds: Optional[DeferredSource] = None) -> Any:
        """
        Decode a wire shape back into a value.

        Raises:
            CodecFailure: If the wire data is malformed
        """
        if not isinstance(wire, dict) or "root" not in wire or not isinstance(wire.get("nodes"), list):
            raise CodecFailure("Wire value must be an object with 'root' and 'nodes'")
        if wire.get("version") != WIRE_VERSION:
            raise CodecFailure(f"Unsupported wire version: {wire.get('version')!r}")

        decoder = _Decoder(wire["nodes"], deferreds)
        try:
            return decoder.entry(wire["root"])
        except RecursionError as e:
            raise CodecFailure("Wire value is nested too deeply to decode") from e

    def register_error(self, error_type: Type[BaseException]) -> Type[BaseException]:
        """
        Allow an exception class to be rebuilt when a remote body raises it.

        Usable as a class decorator.
        """
        if not (isinstance(error_type, type) and issubclass(error_type, Exception)):
            raise TypeError("Only Exception subclasses can be registered")
        self._error_types[f"{error_type.__module__}.{error_type.__qualname__}"] = error_type
        return error_type

    def resolve_error(self, module: str, name: str) -> Optional[Type[BaseException]]:
        """Find the class for a remote error, limited to builtins and registered types."""
        if module == "builtins":
            candidate = getattr(builtins, name, None)
            if isinstance(candidate, type) and issubclass(candidate, Exception):
                return candidate
            return None
        return self._error_types.get(f"{module}.{name}")
