"""
Error taxonomy for server function calls.

Every failure a caller can observe carries an ErrorKind so it can travel
across the wire and be raised again on the calling side.
"""

from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    """Kinds of failure a server function call can surface."""
    NOT_FOUND = "not_found"
    UNENCODABLE = "unencodable"
    CODEC = "codec"
    TRANSPORT = "transport"
    REMOTE = "remote"


class ServerFunctionError(Exception):
    """Base exception for server function calls."""

    kind = ErrorKind.REMOTE

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(ServerFunctionError):
    """Raised when an identifier does not resolve to a registered function."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, identifier: str, message: Optional[str] = None):
        super().__init__(message or f"Server function '{identifier}' not found")
        self.identifier = identifier


class Unencodable(ServerFunctionError):
    """Raised when a value falls outside what the codec can carry."""

    kind = ErrorKind.UNENCODABLE


class CodecFailure(ServerFunctionError):
    """Raised when wire data is malformed."""

    kind = ErrorKind.CODEC


class TransportFailure(ServerFunctionError):
    """Raised when the dispatch endpoint cannot be reached or the connection breaks."""

    kind = ErrorKind.TRANSPORT

    def __init__(self, message: str, endpoint: Optional[str] = None):
        super().__init__(message)
        self.endpoint = endpoint


class RemoteFailure(ServerFunctionError):
    """Raised when a function body failed remotely and its error type could not be rebuilt."""

    kind = ErrorKind.REMOTE

    def __init__(self,
                 message: str,
                 remote_type: str = "",
                 remote_traceback: Optional[str] = None):
        super().__init__(message)
        self.remote_type = remote_type
        self.remote_traceback = remote_traceback

    def __str__(self) -> str:
        if self.remote_type:
            return f"{self.remote_type}: {self.message}"
        return self.message


class RegistryError(Exception):
    """Exception raised by registry operations."""
    pass


class ContextExpiredError(RuntimeError):
    """Raised when a request context is used after its request completed."""

    def __init__(self, message: str = "Request context used after its request completed"):
        super().__init__(message)


def status_code_for(error: BaseException) -> int:
    """Map an error to the HTTP status the dispatch endpoint answers with."""
    kind = getattr(error, "kind", ErrorKind.REMOTE)
    if kind is ErrorKind.NOT_FOUND:
        return 404
    if kind is ErrorKind.CODEC:
        return 400
    if kind is ErrorKind.TRANSPORT:
        return 502
    return 500
