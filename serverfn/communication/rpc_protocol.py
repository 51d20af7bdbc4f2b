"""
Wire Protocol for Server Function Calls

This module defines the messages exchanged between a calling process and the
dispatch endpoint: the invocation envelope, the buffered response envelope,
the frames of a streamed response and the descriptor that carries an error.
"""

import json
import traceback
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from ..core.codec import ValueCodec
from ..core.errors import (
    CodecFailure, ErrorKind, NotFound, RemoteFailure, ServerFunctionError,
    TransportFailure, Unencodable
)


PROTOCOL_VERSION = "1"

HEADER_IDENTIFIER = "X-Serverfn-Id"
HEADER_MODE = "X-Serverfn-Mode"
HEADER_RESPONSE = "X-Serverfn-Response"
HEADER_PROTOCOL = "X-Serverfn-Protocol"

CONTENT_TYPE_JSON = "application/json"
CONTENT_TYPE_STREAM = "application/x-ndjson"


class InvocationMode(Enum):
    """Result shape a caller asks for."""
    SINGLE = "single"
    STREAM = "stream"


class ResponseMode(Enum):
    """Body encoding of a response, announced in the response headers."""
    BUFFERED = "buffered"
    STREAM = "stream"


class ResponseStatus(Enum):
    """Outcome of a buffered response."""
    SUCCESS = "success"
    ERROR = "error"


class FrameType(Enum):
    """Frames of a streamed response."""
    VALUE = "value"
    CHUNK = "chunk"
    END = "end"
    ERROR = "error"
    RESOLVE = "resolve"
    REJECT = "reject"
    DONE = "done"


@dataclass
class ErrorDescriptor:
    """
    Wire form of an exception.

    Attributes:
        kind: ErrorKind value
        type: Exception class name
        module: Module defining the exception class
        message: str() of the exception
        args: Encoded exception args, or None when they could not be encoded
        traceback: Formatted server traceback, only when tracebacks are exposed
    """
    kind: str
    type: str
    module: str
    message: str
    args: Optional[Dict[str, Any]] = None
    traceback: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "kind": self.kind,
            "type": self.type,
            "module": self.module,
            "message": self.message,
            "args": self.args,
            "traceback": self.traceback,
        }

    @classmethod
    def from_dict(cls, data: Any) -> 'ErrorDescriptor':
        """Create ErrorDescriptor from dictionary."""
        if not isinstance(data, dict):
            raise CodecFailure("Error descriptor must be an object")
        try:
            return cls(
                kind=str(data["kind"]),
                type=str(data.get("type", "")),
                module=str(data.get("module", "")),
                message=str(data.get("message", "")),
                args=data.get("args"),
                traceback=data.get("traceback"),
            )
        except KeyError as e:
            raise CodecFailure(f"Error descriptor is missing {e}") from e

    @classmethod
    def from_exception(cls,
                       error: BaseException,
                       codec: ValueCodec,
                       include_traceback: bool = False) -> 'ErrorDescriptor':
        """
        Describe an exception for the wire.

        Args:
            error: The exception to describe
            codec: Codec used to encode the exception args
            include_traceback: Whether to ship the formatted traceback

        Returns:
            ErrorDescriptor for the exception
        """
        kind = getattr(error, "kind", ErrorKind.REMOTE)
        try:
            args = codec.encode(list(error.args))
        except ServerFunctionError:
            args = None

        formatted = None
        if include_traceback:
            formatted = "".join(traceback.format_exception(type(error), error, error.__traceback__))

        return cls(
            kind=kind.value,
            type=type(error).__qualname__,
            module=type(error).__module__,
            message=str(error),
            args=args,
            traceback=formatted,
        )

    def to_exception(self, codec: ValueCodec) -> Exception:
        """
        Rebuild the exception on the calling side.

        Protocol failures map back to their own classes; body failures are
        rebuilt as the original type when the codec allows it, otherwise they
        become RemoteFailure.
        """
        if self.kind == ErrorKind.NOT_FOUND.value:
            return NotFound("", self.message)
        if self.kind == ErrorKind.UNENCODABLE.value:
            return Unencodable(self.message)
        if self.kind == ErrorKind.CODEC.value:
            return CodecFailure(self.message)
        if self.kind == ErrorKind.TRANSPORT.value:
            return TransportFailure(self.message)

        error_type = codec.resolve_error(self.module, self.type)
        args = self._decoded_args(codec)
        if error_type is not None and args is not None:
            try:
                error = error_type(*args)
            except Exception:
                error = None
            if error is not None:
                if self.traceback:
                    error.remote_traceback = self.traceback
                return error

        remote_type = self.type if self.module == "builtins" else f"{self.module}.{self.type}"
        return RemoteFailure(self.message, remote_type=remote_type, remote_traceback=self.traceback)

    def _decoded_args(self, codec: ValueCodec) -> Optional[List[Any]]:
        if self.args is None:
            return None
        try:
            args = codec.decode(self.args)
        except CodecFailure:
            return None
        return args if isinstance(args, list) else None


@dataclass
class InvocationEnvelope:
    """
    Request sent to the dispatch endpoint.

    Attributes:
        identifier: Identifier of the target function
        args: Codec payload of ``[positional_args, keyword_args]``
        mode: Result shape the caller expects
        request_id: Correlation id for logs
    """
    identifier: str
    args: Dict[str, Any]
    mode: InvocationMode = InvocationMode.SINGLE
    request_id: str = ""

    def __post_init__(self):
        if not self.request_id:
            self.request_id = str(uuid.uuid4())

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "identifier": self.identifier,
            "args": self.args,
            "mode": self.mode.value,
            "request_id": self.request_id,
        }

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_dict(cls, data: Any) -> 'InvocationEnvelope':
        """Create InvocationEnvelope from dictionary."""
        if not isinstance(data, dict):
            raise CodecFailure("Invocation envelope must be a JSON object")
        try:
            return cls(
                identifier=data["identifier"],
                args=data["args"],
                mode=InvocationMode(data.get("mode", InvocationMode.SINGLE.value)),
                request_id=data.get("request_id", ""),
            )
        except KeyError as e:
            raise CodecFailure(f"Invocation envelope is missing {e}") from e
        except ValueError as e:
            raise CodecFailure(f"Invalid invocation envelope: {e}") from e

    @classmethod
    def from_json(cls, raw: bytes) -> 'InvocationEnvelope':
        """Create InvocationEnvelope from a JSON request body."""
        try:
            data = json.loads(raw)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise CodecFailure(f"Invalid JSON in request body: {e}") from e
        return cls.from_dict(data)


@dataclass
class ResponseEnvelope:
    """Buffered response: a single value or an error."""
    status: ResponseStatus
    value: Optional[Dict[str, Any]] = None
    error: Optional[ErrorDescriptor] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        result: Dict[str, Any] = {"status": self.status.value}
        if self.status is ResponseStatus.SUCCESS:
            result["value"] = self.value
        else:
            result["error"] = self.error.to_dict()
        return result

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_dict(cls, data: Any) -> 'ResponseEnvelope':
        """Create ResponseEnvelope from dictionary."""
        if not isinstance(data, dict) or "status" not in data:
            raise CodecFailure("Response envelope must be an object with a status")
        try:
            status = ResponseStatus(data["status"])
        except ValueError as e:
            raise CodecFailure(f"Invalid response status: {data['status']!r}") from e

        if status is ResponseStatus.SUCCESS:
            if "value" not in data:
                raise CodecFailure("Successful response envelope has no value")
            return cls(status=status, value=data["value"])
        return cls(status=status, error=ErrorDescriptor.from_dict(data.get("error")))

    @classmethod
    def from_json(cls, raw: bytes) -> 'ResponseEnvelope':
        """Create ResponseEnvelope from a JSON response body."""
        try:
            data = json.loads(raw)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise CodecFailure(f"Invalid JSON in response body: {e}") from e
        return cls.from_dict(data)

    @classmethod
    def create_success_response(cls, value: Dict[str, Any]) -> 'ResponseEnvelope':
        """Create a successful response."""
        return cls(status=ResponseStatus.SUCCESS, value=value)

    @classmethod
    def create_error_response(cls, error: ErrorDescriptor) -> 'ResponseEnvelope':
        """Create an error response."""
        return cls(status=ResponseStatus.ERROR, error=error)


def make_frame(frame_type: FrameType, ident: Optional[int] = None, **fields: Any) -> Dict[str, Any]:
    """Build a stream frame."""
    frame: Dict[str, Any] = {"type": frame_type.value}
    if ident is not None:
        frame["id"] = ident
    frame.update(fields)
    return frame


def encode_frame(frame: Dict[str, Any]) -> bytes:
    """Serialize a frame as one NDJSON line."""
    return (json.dumps(frame, separators=(",", ":")) + "\n").encode("utf-8")


def decode_frame(line: bytes) -> Dict[str, Any]:
    """
    Parse one NDJSON line into a frame.

    Raises:
        CodecFailure: If the line is not a valid frame
    """
    try:
        frame = json.loads(line)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise CodecFailure(f"Invalid frame: {e}") from e
    if not isinstance(frame, dict) or "type" not in frame:
        raise CodecFailure("Frame must be an object with a type")
    try:
        frame["type"] = FrameType(frame["type"])
    except ValueError as e:
        raise CodecFailure(f"Unknown frame type: {frame['type']!r}") from e
    return frame


@dataclass
class DispatchEndpoint:
    """Network location of a dispatch route."""
    host: str
    port: int
    path: str = "/_serverfn"
    protocol: str = "http"

    def get_url(self, path: Optional[str] = None) -> str:
        """
        Get the full URL for this endpoint.

        Args:
            path: Path to use instead of the dispatch path

        Returns:
            Full URL string
        """
        path = self.path if path is None else path
        if path and not path.startswith('/'):
            path = '/' + path
        return f"{self.protocol}://{self.host}:{self.port}{path}"

    @classmethod
    def from_url(cls, url: str) -> 'DispatchEndpoint':
        """Parse a dispatch URL."""
        parsed = urlparse(url)
        if not parsed.hostname:
            raise ValueError(f"Dispatch URL has no host: {url!r}")
        protocol = parsed.scheme or "http"
        port = parsed.port or (443 if protocol == "https" else 80)
        return cls(host=parsed.hostname, port=port, path=parsed.path or "/_serverfn", protocol=protocol)

    def __str__(self) -> str:
        return self.get_url()


def validate_invocation(envelope: InvocationEnvelope) -> List[str]:
    """
    Validate an invocation envelope and return list of validation errors.

    Args:
        envelope: InvocationEnvelope to validate

    Returns:
        List of validation error messages (empty if valid)
    """
    errors = []

    if not isinstance(envelope.identifier, str) or not envelope.identifier:
        errors.append("identifier must be a non-empty string")

    if not isinstance(envelope.args, dict):
        errors.append("args must be an encoded value")

    if not isinstance(envelope.request_id, str):
        errors.append("request_id must be a string")

    return errors
