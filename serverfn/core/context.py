"""
Request Context for Server Functions

A RequestContext carries the headers, cookies and environment of the request
that triggered a server-side execution. It exists only while that request is
being served and is never available to client-side proxy calls.
"""

import contextvars
import logging
import os
from collections.abc import Mapping
from contextlib import contextmanager
from http.cookies import CookieError, SimpleCookie
from types import MappingProxyType
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from .errors import ContextExpiredError


logger = logging.getLogger(__name__)

_current_context: contextvars.ContextVar[Optional['RequestContext']] = contextvars.ContextVar(
    "serverfn_request_context", default=None
)


class Headers(Mapping):
    """Read-only, case-insensitive view of request headers."""

    def __init__(self, items: Iterable[Tuple[str, str]] = ()):
        self._values: Dict[str, List[str]] = {}
        self._names: Dict[str, str] = {}
        for name, value in items:
            key = name.lower()
            self._values.setdefault(key, []).append(value)
            self._names.setdefault(key, name)

    def __getitem__(self, name: str) -> str:
        return ", ".join(self._values[name.lower()])

    def __iter__(self) -> Iterator[str]:
        return iter(self._names.values())

    def __len__(self) -> int:
        return len(self._values)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.lower() in self._values

    def get_all(self, name: str) -> List[str]:
        """Get every value sent for a header, in order."""
        return list(self._values.get(name.lower(), ()))

    def __repr__(self) -> str:
        return f"Headers({dict(self)!r})"


class Cookies:
    """
    Cookie jar of one request.

    Reads come from the request's Cookie header. Writes are collected and
    turned into Set-Cookie headers on the response; once the response headers
    are out the jar is sealed and further writes are dropped.
    """

    def __init__(self, cookie_header: str = "", inert: bool = False):
        self._values: Dict[str, str] = {}
        self._outgoing = SimpleCookie()
        self._inert = inert
        self._sealed = False

        if cookie_header:
            parsed = SimpleCookie()
            try:
                parsed.load(cookie_header)
            except CookieError as e:
                logger.warning(f"Ignoring malformed Cookie header: {e}")
            else:
                self._values = {name: morsel.value for name, morsel in parsed.items()}

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self._values.get(name, default)

    def __getitem__(self, name: str) -> str:
        return self._values[name]

    def __contains__(self, name: object) -> bool:
        return name in self._values

    def items(self):
        return self._values.items()

    def set(self,
            name: str,
            value: str,
            max_age: Optional[int] = None,
            path: str = "/",
            http_only: bool = True,
            secure: bool = False,
            same_site: Optional[str] = "Lax") -> None:
        """Set a cookie on the response and make it visible to later reads."""
        if not self._accepts_writes(name):
            return

        self._values[name] = value
        self._outgoing[name] = value
        morsel = self._outgoing[name]
        morsel["path"] = path
        if max_age is not None:
            morsel["max-age"] = max_age
        if http_only:
            morsel["httponly"] = True
        if secure:
            morsel["secure"] = True
        if same_site:
            morsel["samesite"] = same_site

    def delete(self, name: str, path: str = "/") -> None:
        """Expire a cookie on the client."""
        if not self._accepts_writes(name):
            return

        self._values.pop(name, None)
        self._outgoing[name] = ""
        self._outgoing[name]["path"] = path
        self._outgoing[name]["max-age"] = 0

    def _accepts_writes(self, name: str) -> bool:
        if self._inert:
            logger.debug(f"Ignoring cookie write '{name}' outside a request")
            return False
        if self._sealed:
            logger.warning(f"Cookie '{name}' set after response headers were sent; it will not reach the client")
            return False
        return True

    def seal(self) -> None:
        self._sealed = True

    def set_cookie_headers(self) -> List[str]:
        """Values for the Set-Cookie response headers."""
        return [morsel.OutputString() for morsel in self._outgoing.values()]


class RequestContext:
    """
    Ambient per-request environment handed to server function bodies.

    Attributes:
        headers: Read-only request headers
        cookies: Request cookies; writes propagate to the response
        environment: Read-only server environment
    """

    def __init__(self,
                 headers: Headers,
                 cookies: Cookies,
                 environment: Mapping,
                 inert: bool = False):
        self._headers = headers
        self._cookies = cookies
        self._environment = MappingProxyType(dict(environment))
        self._inert = inert
        self._closed = False

    @classmethod
    def from_request(cls,
                     header_items: Iterable[Tuple[str, str]],
                     environment: Optional[Mapping] = None) -> 'RequestContext':
        """
        Build the context of an incoming request.

        Args:
            header_items: (name, value) pairs of the request headers
            environment: Environment exposed to function bodies

        Returns:
            RequestContext for the request
        """
        headers = Headers(header_items)
        cookie_header = "; ".join(headers.get_all("Cookie"))
        return cls(headers, Cookies(cookie_header), environment or {})

    @classmethod
    def inert(cls) -> 'RequestContext':
        """Empty context for calls made outside any request."""
        return cls(Headers(), Cookies(inert=True), {}, inert=True)

    def _check_open(self) -> None:
        if self._closed:
            raise ContextExpiredError()

    @property
    def headers(self) -> Headers:
        self._check_open()
        return self._headers

    @property
    def cookies(self) -> Cookies:
        self._check_open()
        return self._cookies

    @property
    def environment(self) -> Mapping:
        self._check_open()
        return self._environment

    @property
    def is_inert(self) -> bool:
        return self._inert

    @property
    def is_closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Invalidate the context once its request completed."""
        self._closed = True

    def __repr__(self) -> str:
        state = "inert" if self._inert else ("closed" if self._closed else "active")
        return f"<RequestContext {state}>"


def environment_snapshot(prefix: str = "") -> Dict[str, str]:
    """Copy of the process environment, limited to names starting with prefix."""
    return {name: value for name, value in os.environ.items() if name.startswith(prefix)}


def get_request_context() -> Optional[RequestContext]:
    """Get the context of the request currently being served, if any."""
    return _current_context.get()


@contextmanager
def bind_context(context: RequestContext):
    """Make a context the current one for the duration of a block."""
    token = _current_context.set(context)
    try:
        yield context
    finally:
        _current_context.reset(token)
