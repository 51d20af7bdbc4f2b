"""
RPC Client for Remote Server Function Calls

This module provides the REMOTE execution strategy: it turns a proxy call
into an HTTP request against the dispatch endpoint and turns the response
back into the shape the caller expects.
"""

import asyncio
import http.client
import json
import logging
import threading
import time
from typing import Any, AsyncIterator, Dict, Iterator, Optional, Tuple
import urllib.request
import urllib.error

from .rpc_protocol import (
    CONTENT_TYPE_JSON, CONTENT_TYPE_STREAM, HEADER_IDENTIFIER, HEADER_MODE, HEADER_PROTOCOL,
    HEADER_RESPONSE, PROTOCOL_VERSION, DispatchEndpoint, InvocationEnvelope, InvocationMode,
    ResponseEnvelope, ResponseMode, ResponseStatus
)
from .streaming import FrameReader, RemoteStream
from ..core.codec import ValueCodec
from ..core.errors import CodecFailure, NotFound, TransportFailure
from ..core.function_interface import FunctionDescriptor, FunctionKind


class RPCClient:
    """
    Client side of server function calls over HTTP.
    """

    def __init__(self,
                 endpoint_url: str,
                 codec: ValueCodec,
                 timeout: float = 30.0,
                 headers: Optional[Dict[str, str]] = None):
        """
        Initialize the RPC client.

        Args:
            endpoint_url: Full URL of the dispatch endpoint
            codec: Codec shared with the serving process
            timeout: Socket timeout in seconds, applied to every read
            headers: Extra headers sent with every request
        """
        self.endpoint_url = endpoint_url
        self.endpoint = DispatchEndpoint.from_url(endpoint_url)
        self.codec = codec
        self.timeout = timeout
        self.default_headers = dict(headers or {})

        # Set up logging
        self.logger = logging.getLogger(__name__)

        # Statistics
        self._stats_lock = threading.Lock()
        self.stats = self._empty_stats()

    @staticmethod
    def _empty_stats() -> Dict[str, Any]:
        return {
            "requests_sent": 0,
            "successful_requests": 0,
            "failed_requests": 0,
            "streamed_responses": 0,
            "total_response_time": 0.0
        }

    def invoke(self, descriptor: FunctionDescriptor, args: Tuple[Any, ...], kwargs: Dict[str, Any]) -> Any:
        """
        Call a server function remotely.

        Arguments are checked and encoded here, before any request is made.
        Sequence kinds return lazy iterators that send the request on the
        first pull; promises return a coroutine.

        Raises:
            TypeError: If the arguments do not fit the function's signature
            Unencodable: If an argument cannot be carried by the codec
        """
        descriptor.check_arguments(args, kwargs)
        payload = self.codec.encode([list(args), dict(kwargs)])

        if descriptor.kind is FunctionKind.SEQUENCE:
            return self._sequence(descriptor, payload)
        if descriptor.kind is FunctionKind.ASYNC_SEQUENCE:
            return self._async_sequence(descriptor, payload)
        if descriptor.kind is FunctionKind.PROMISE:
            return self._promise(descriptor, payload)
        return self.call(descriptor, payload)

    def _sequence(self, descriptor: FunctionDescriptor, payload: Dict[str, Any]) -> Iterator[Any]:
        stream = self._open_stream(descriptor, payload)
        try:
            yield from stream
        finally:
            stream.close()

    async def _async_sequence(self, descriptor: FunctionDescriptor, payload: Dict[str, Any]) -> AsyncIterator[Any]:
        stream = await asyncio.to_thread(self._open_stream, descriptor, payload)
        try:
            async for item in stream:
                yield item
        finally:
            stream.close()

    async def _promise(self, descriptor: FunctionDescriptor, payload: Dict[str, Any]) -> Any:
        return await asyncio.to_thread(self.call, descriptor, payload)

    def _open_stream(self, descriptor: FunctionDescriptor, payload: Dict[str, Any]) -> RemoteStream:
        result = self.call(descriptor, payload, InvocationMode.STREAM)
        if not isinstance(result, RemoteStream):
            raise CodecFailure(
                f"{descriptor.name} answered with {type(result).__name__} where a stream was expected"
            )
        return result

    def call(self,
             descriptor: FunctionDescriptor,
             payload: Dict[str, Any],
             mode: InvocationMode = InvocationMode.SINGLE) -> Any:
        """
        Send one invocation and decode its result.

        Args:
            descriptor: Descriptor of the target function
            payload: Encoded ``[positional_args, keyword_args]``
            mode: Result shape the caller expects

        Returns:
            The decoded result; deferred parts stay bound to the open response
        """
        try:
            return self.call_identifier(descriptor.identifier, payload, mode)
        except NotFound as e:
            if not e.identifier:
                e.identifier = descriptor.identifier
            raise

    def call_identifier(self,
                        identifier: str,
                        payload: Dict[str, Any],
                        mode: InvocationMode = InvocationMode.SINGLE) -> Any:
        """Send one invocation addressed by identifier only."""
        envelope = InvocationEnvelope(identifier=identifier, args=payload, mode=mode)
        request_body = envelope.to_json().encode('utf-8')
        headers = dict(self.default_headers)
        headers.update({
            'Content-Type': CONTENT_TYPE_JSON,
            'Content-Length': str(len(request_body)),
            'Accept': f"{CONTENT_TYPE_JSON}, {CONTENT_TYPE_STREAM}",
            HEADER_IDENTIFIER: identifier,
            HEADER_MODE: mode.value,
            HEADER_PROTOCOL: PROTOCOL_VERSION
        })
        req = urllib.request.Request(self.endpoint_url, data=request_body, headers=headers, method="POST")

        self._count("requests_sent")
        start_time = time.time()
        self.logger.debug(f"Calling {identifier} ({mode.value}) request {envelope.request_id}")

        try:
            response = urllib.request.urlopen(req, timeout=self.timeout)
        except urllib.error.HTTPError as e:
            self._count("failed_requests")
            raise self._error_from_http(e) from None
        except urllib.error.URLError as e:
            self._count("failed_requests")
            raise TransportFailure(f"Connection failed: {e.reason}", self.endpoint_url) from e
        except (OSError, http.client.HTTPException) as e:
            self._count("failed_requests")
            raise TransportFailure(f"Request failed: {e}", self.endpoint_url) from e

        try:
            if response.headers.get(HEADER_RESPONSE) == ResponseMode.STREAM.value:
                self._count("streamed_responses")
                result = FrameReader(response, self.codec, self.endpoint_url).read_value()
            else:
                result = self._read_buffered(response)
        except Exception:
            self._count("failed_requests")
            raise
        finally:
            with self._stats_lock:
                self.stats["total_response_time"] += time.time() - start_time

        self._count("successful_requests")
        return result

    def _read_buffered(self, response: Any) -> Any:
        with response:
            try:
                raw = response.read()
            except (OSError, http.client.HTTPException) as e:
                raise TransportFailure(f"Connection lost while reading the response: {e}", self.endpoint_url) from e

        envelope = ResponseEnvelope.from_json(raw)
        if envelope.status is ResponseStatus.ERROR:
            raise envelope.error.to_exception(self.codec)
        return self.codec.decode(envelope.value)

    def _error_from_http(self, error: urllib.error.HTTPError) -> Exception:
        """Rebuild the error carried by a non-200 response."""
        try:
            envelope = ResponseEnvelope.from_json(error.read())
        except (OSError, http.client.HTTPException, CodecFailure) as e:
            self.logger.debug(f"HTTP {error.code} without an error envelope: {e}")
            envelope = None
        finally:
            error.close()

        if envelope is None or envelope.error is None:
            return TransportFailure(f"HTTP {error.code} from dispatch endpoint: {error.reason}", self.endpoint_url)
        return envelope.error.to_exception(self.codec)

    def health_check(self, timeout_seconds: Optional[float] = None) -> Tuple[bool, Optional[Dict[str, Any]]]:
        """
        Perform a health check on the serving process.

        Returns:
            Tuple of (is_healthy, health_data)
        """
        timeout = timeout_seconds or min(self.timeout, 10.0)
        try:
            response_data = self._get_json("/health", timeout)
            return response_data.get("status") == "healthy", response_data
        except TransportFailure as e:
            self.logger.debug(f"Health check failed for {self.endpoint}: {e}")
            return False, None

    def list_remote_functions(self, timeout_seconds: Optional[float] = None) -> Dict[str, Any]:
        """
        List the functions the serving process exposes.

        Raises:
            TransportFailure: If the listing cannot be fetched
        """
        return self._get_json("/functions", timeout_seconds or self.timeout)

    def get_remote_status(self, timeout_seconds: Optional[float] = None) -> Dict[str, Any]:
        """Fetch server statistics and process resource usage."""
        return self._get_json("/status", timeout_seconds or self.timeout)

    def _get_json(self, path: str, timeout: float) -> Dict[str, Any]:
        url = self.endpoint.get_url(path)
        req = urllib.request.Request(url, headers=dict(self.default_headers), method="GET")
        try:
            with urllib.request.urlopen(req, timeout=timeout) as response:
                return json.loads(response.read().decode('utf-8'))
        except urllib.error.HTTPError as e:
            e.close()
            raise TransportFailure(f"HTTP {e.code} from {url}: {e.reason}", url) from None
        except urllib.error.URLError as e:
            raise TransportFailure(f"Connection failed: {e.reason}", url) from e
        except (OSError, http.client.HTTPException, ValueError) as e:
            raise TransportFailure(f"Request to {url} failed: {e}", url) from e

    def _count(self, key: str) -> None:
        with self._stats_lock:
            self.stats[key] += 1

    def get_stats(self) -> Dict[str, Any]:
        """Get client statistics."""
        with self._stats_lock:
            stats = self.stats.copy()

        # Calculate average response time
        if stats["successful_requests"] > 0:
            stats["average_response_time"] = (
                stats["total_response_time"] / stats["successful_requests"]
            )
        else:
            stats["average_response_time"] = 0.0

        # Calculate success rate
        total_requests = stats["requests_sent"]
        if total_requests > 0:
            stats["success_rate"] = stats["successful_requests"] / total_requests
        else:
            stats["success_rate"] = 0.0

        return stats

    def reset_stats(self):
        """Reset client statistics."""
        with self._stats_lock:
            self.stats = self._empty_stats()
