"""
Streaming Channel for Server Function Results

Server side, ResponseStream turns a function result into either a buffered
JSON response or a chunked stream of NDJSON frames when the result holds
deferred values (awaitables, generators). Client side, FrameReader reads those
frames on demand and settles the RemoteStream and RemoteDeferred placeholders
the codec created for each marker.

Buffer policy: producers never wait for the socket. Each produced item is
encoded and queued before the next item is pulled, and a single writer drains
the queue to the client, so a slow reader makes the queue grow, bounded only
by memory.
"""

import asyncio
import http.client
import inspect
import logging
import socket
import threading
from collections import deque
from typing import Any, Dict, Optional, Protocol, Tuple

from ..core.codec import PROMISE_MARKER, STREAM_MARKER, ValueCodec, is_stream_value
from ..core.errors import CodecFailure, TransportFailure, status_code_for
from .rpc_protocol import (
    ErrorDescriptor, FrameType, ResponseEnvelope, decode_frame, encode_frame, make_frame
)


logger = logging.getLogger(__name__)

_STOP = object()
_EXHAUSTED = object()
_END = object()
_PENDING = object()


class Responder(Protocol):
    """Transport side of a dispatched call, implemented by the router."""

    def send_buffered(self, status_code: int, payload: bytes) -> None:
        ...

    def start_stream(self) -> None:
        ...

    def write_frame(self, data: bytes) -> None:
        ...

    def finish_stream(self) -> None:
        ...


class ResponseStream:
    """
    Serving side of one response.

    Acts as the codec's deferred sink: every awaitable or generator found in
    the result gets an id and a producer task that reports its outcome as
    frames.
    """

    def __init__(self, codec: ValueCodec, responder: Responder, expose_tracebacks: bool = False):
        self._codec = codec
        self._responder = responder
        self._expose_tracebacks = expose_tracebacks
        self._next_id = 0
        self._pending: Dict[asyncio.Task, Any] = {}
        self._queue: Optional[asyncio.Queue] = None
        self._closed = False
        self.frames_written = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def register_deferred(self, value: Any) -> Tuple[str, int]:
        ident = self._next_id
        self._next_id += 1
        loop = asyncio.get_running_loop()

        if is_stream_value(value):
            task = loop.create_task(self._pump_stream(ident, value))
            marker = STREAM_MARKER
        else:
            task = loop.create_task(self._settle_promise(ident, value))
            marker = PROMISE_MARKER

        self._pending[task] = value
        return marker, ident

    async def run(self, result: Any) -> None:
        """
        Send a function result to the client.

        Results without deferred values go out as one buffered envelope.
        Anything else switches the response to streaming mode and returns once
        every deferred value has settled or the client went away.
        """
        try:
            wire = self._codec.encode(result, deferreds=self)
        except Exception as e:
            self._abandon_pending()
            self.fail(e)
            return

        if not self._pending:
            envelope = ResponseEnvelope.create_success_response(wire)
            self._responder.send_buffered(200, envelope.to_json().encode("utf-8"))
            return

        self._queue = asyncio.Queue()
        try:
            self._responder.start_stream()
        except OSError as e:
            logger.info(f"Client went away before the stream started: {e}")
            self._close()

        writer = asyncio.get_running_loop().create_task(self._drain())
        self._put(make_frame(FrameType.VALUE, value=wire))
        try:
            await self._wait_pending()
            self._put(make_frame(FrameType.DONE))
        finally:
            self._queue.put_nowait(_STOP)
            await writer

        if not self._closed:
            try:
                self._responder.finish_stream()
            except OSError as e:
                logger.info(f"Client went away before the stream finished: {e}")

    def fail(self, error: BaseException) -> None:
        """Answer with a buffered error envelope."""
        descriptor = ErrorDescriptor.from_exception(error, self._codec, self._expose_tracebacks)
        envelope = ResponseEnvelope.create_error_response(descriptor)
        self._responder.send_buffered(status_code_for(error), envelope.to_json().encode("utf-8"))

    def _describe(self, error: BaseException) -> Dict[str, Any]:
        return ErrorDescriptor.from_exception(error, self._codec, self._expose_tracebacks).to_dict()

    def _put(self, frame: Dict[str, Any]) -> None:
        if not self._closed:
            self._queue.put_nowait(frame)

    async def _drain(self) -> None:
        while True:
            frame = await self._queue.get()
            if frame is _STOP:
                return
            if self._closed:
                continue
            try:
                await asyncio.to_thread(self._responder.write_frame, encode_frame(frame))
                self.frames_written += 1
            except OSError as e:
                logger.info(f"Client went away mid-stream, stopping producers: {e}")
                self._close()

    async def _wait_pending(self) -> None:
        while self._pending:
            done, _ = await asyncio.wait(list(self._pending))
            for task in done:
                self._pending.pop(task, None)
                if not task.cancelled() and task.exception() is not None:
                    logger.error(f"Producer task failed: {task.exception()!r}")

    async def _pump_stream(self, ident: int, source: Any) -> None:
        is_async = not inspect.isgenerator(source)
        exhausted = False
        try:
            # One item in flight: pull, encode, queue, then pull the next one
            while not self._closed:
                if is_async:
                    try:
                        item = await source.__anext__()
                    except StopAsyncIteration:
                        exhausted = True
                        break
                else:
                    item = await asyncio.to_thread(next, source, _EXHAUSTED)
                    if item is _EXHAUSTED:
                        exhausted = True
                        break
                self._put(make_frame(FrameType.CHUNK, ident, value=self._codec.encode(item, deferreds=self)))
        except Exception as e:
            logger.debug(f"Stream {ident} failed after producing items: {e!r}")
            self._put(make_frame(FrameType.ERROR, ident, error=self._describe(e)))
        finally:
            await self._close_source(source, is_async)

        if exhausted:
            self._put(make_frame(FrameType.END, ident))

    async def _settle_promise(self, ident: int, awaitable: Any) -> None:
        try:
            value = await awaitable
            wire = self._codec.encode(value, deferreds=self)
        except Exception as e:
            self._put(make_frame(FrameType.REJECT, ident, error=self._describe(e)))
            return
        self._put(make_frame(FrameType.RESOLVE, ident, value=wire))

    @staticmethod
    async def _close_source(source: Any, is_async: bool) -> None:
        try:
            if is_async:
                aclose = getattr(source, "aclose", None)
                if aclose is not None:
                    await aclose()
            else:
                source.close()
        except Exception as e:
            logger.warning(f"Error closing stream source: {e!r}")

    def _close(self) -> None:
        self._closed = True
        for task, source in list(self._pending.items()):
            # sync generators run on a worker thread and stop at their next pull instead
            if not inspect.isgenerator(source):
                task.cancel()

    def _abandon_pending(self) -> None:
        for task, source in list(self._pending.items()):
            task.cancel()
            if inspect.iscoroutine(source) and inspect.getcoroutinestate(source) == inspect.CORO_CREATED:
                source.close()
            elif inspect.isgenerator(source):
                source.close()
        self._pending.clear()


class RemoteDeferred:
    """Client-side placeholder for a value the server resolves later in the response."""

    def __init__(self, reader: 'FrameReader', ident: int):
        self._reader = reader
        self.ident = ident
        self._value: Any = None
        self._error: Optional[BaseException] = None
        self._settled = False

    def _resolve(self, value: Any) -> None:
        if not self._settled:
            self._value = value
            self._settled = True

    def _reject(self, error: BaseException) -> None:
        if not self._settled:
            self._error = error
            self._settled = True

    def done(self) -> bool:
        return self._settled

    def result(self) -> Any:
        """Block until the value arrives; raise if the server rejected it."""
        while not self._settled:
            if not self._reader.pump() and not self._settled:
                raise TransportFailure("Response ended before the deferred value settled")
        if self._error is not None:
            raise self._error
        return self._value

    def __await__(self):
        return asyncio.to_thread(self.result).__await__()

    def __repr__(self) -> str:
        return f"<RemoteDeferred {self.ident} {'settled' if self._settled else 'pending'}>"


class RemoteStream:
    """
    Client-side lazy sequence of the chunks of one server stream.

    Iterating pulls frames from the connection only when no chunk is buffered.
    A failure is raised once, after every chunk delivered before it.
    """

    def __init__(self, reader: 'FrameReader', ident: int):
        self._reader = reader
        self.ident = ident
        self._items: deque = deque()
        self._error: Optional[BaseException] = None
        self._done = False

    def _push(self, item: Any) -> None:
        self._items.append(item)

    def _finish(self) -> None:
        self._done = True

    def _fail(self, error: BaseException) -> None:
        if not self._done:
            self._error = error
            self._done = True

    @property
    def settled(self) -> bool:
        return self._done

    def _next_item(self) -> Any:
        while True:
            if self._items:
                return self._items.popleft()
            if self._done:
                if self._error is not None:
                    error, self._error = self._error, None
                    raise error
                return _END
            if not self._reader.pump() and not self._done and not self._items:
                raise TransportFailure("Response ended before the stream completed")

    def __iter__(self):
        return self

    def __next__(self) -> Any:
        item = self._next_item()
        if item is _END:
            raise StopIteration
        return item

    def __aiter__(self):
        return self

    async def __anext__(self) -> Any:
        item = await asyncio.to_thread(self._next_item)
        if item is _END:
            raise StopAsyncIteration
        return item

    def close(self) -> None:
        """Stop consuming; tears down the connection so the server stops producing."""
        self._reader.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def __repr__(self) -> str:
        return f"<RemoteStream {self.ident} {'settled' if self._done else 'open'}>"


class FrameReader:
    """
    Pull-based reader of a streamed response.

    Implements the codec's deferred source: markers decoded from frames become
    RemoteDeferred and RemoteStream objects bound to this reader.
    """

    def __init__(self, response: Any, codec: ValueCodec, endpoint: Optional[str] = None):
        self._response = response
        self._codec = codec
        self._endpoint = endpoint
        self._lock = threading.RLock()
        self._promises: Dict[int, RemoteDeferred] = {}
        self._streams: Dict[int, RemoteStream] = {}
        self._top: Any = _PENDING
        self._finished = False
        self._closing = False

    def promise(self, ident: int) -> RemoteDeferred:
        self._check_new(ident)
        deferred = RemoteDeferred(self, ident)
        self._promises[ident] = deferred
        return deferred

    def stream(self, ident: int) -> RemoteStream:
        self._check_new(ident)
        stream = RemoteStream(self, ident)
        self._streams[ident] = stream
        return stream

    def _check_new(self, ident: int) -> None:
        if ident in self._promises or ident in self._streams:
            raise CodecFailure(f"Deferred id {ident} used twice in one response")

    @property
    def finished(self) -> bool:
        return self._finished

    def read_value(self) -> Any:
        """Read frames until the top-level value arrives and return it."""
        with self._lock:
            while self._top is _PENDING:
                if not self.pump() and self._top is _PENDING:
                    raise TransportFailure("Response ended before the result arrived", self._endpoint)
        if isinstance(self._top, BaseException):
            raise self._top
        return self._top

    def pump(self) -> bool:
        """
        Read and route one frame.

        Returns:
            False once the response is exhausted, True otherwise
        """
        with self._lock:
            if self._finished:
                return False
            if self._closing:
                self._abort_closed()
                return False
            try:
                line = self._response.readline()
            except (OSError, ValueError, http.client.HTTPException) as e:
                if self._closing:
                    self._abort_closed()
                else:
                    self._abort(TransportFailure(f"Connection lost while streaming: {e}", self._endpoint))
                return False

            if self._closing:
                self._abort_closed()
                return False
            if not line:
                self._abort(TransportFailure("Response ended before completion", self._endpoint))
                return False
            if not line.strip():
                return True

            try:
                self._route(decode_frame(line))
            except CodecFailure as e:
                logger.error(f"Malformed stream from {self._endpoint}: {e}")
                self._abort(e)
                return False
            return True

    def _route(self, frame: Dict[str, Any]) -> None:
        frame_type = frame["type"]

        if frame_type is FrameType.VALUE:
            self._top = self._codec.decode(frame.get("value"), deferreds=self)
        elif frame_type is FrameType.CHUNK:
            self._target(self._streams, frame)._push(self._codec.decode(frame.get("value"), deferreds=self))
        elif frame_type is FrameType.END:
            self._target(self._streams, frame)._finish()
        elif frame_type is FrameType.ERROR:
            self._target(self._streams, frame)._fail(self._error(frame))
        elif frame_type is FrameType.RESOLVE:
            self._target(self._promises, frame)._resolve(self._codec.decode(frame.get("value"), deferreds=self))
        elif frame_type is FrameType.REJECT:
            self._target(self._promises, frame)._reject(self._error(frame))
        elif frame_type is FrameType.DONE:
            self._abort(TransportFailure("Response completed without settling this value", self._endpoint))

    def _target(self, table: Dict[int, Any], frame: Dict[str, Any]) -> Any:
        target = table.get(frame.get("id"))
        if target is None:
            raise CodecFailure(f"Frame {frame['type'].value} refers to unknown id {frame.get('id')!r}")
        return target

    def _error(self, frame: Dict[str, Any]) -> BaseException:
        return ErrorDescriptor.from_dict(frame.get("error")).to_exception(self._codec)

    def _abort(self, error: BaseException) -> None:
        self._finished = True
        self._close_response()
        if self._top is _PENDING:
            self._top = error
        for stream in self._streams.values():
            stream._fail(error)
        for deferred in self._promises.values():
            deferred._reject(error)

    def _close_response(self) -> None:
        try:
            self._response.close()
        except Exception as e:
            logger.debug(f"Error closing response: {e!r}")

    def _abort_closed(self) -> None:
        self._abort(TransportFailure("Stream closed by the caller", self._endpoint))

    def _shutdown_socket(self) -> None:
        # Unblocks a readline waiting in another thread; closing the buffered
        # reader instead would wait for that read to return
        raw = getattr(getattr(self._response, "fp", None), "raw", None)
        sock = getattr(raw, "_sock", None)
        if sock is None:
            return
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError as e:
            logger.debug(f"Error shutting down stream socket: {e!r}")

    def close(self) -> None:
        """
        Abandon the response; unsettled values fail with TransportFailure.

        Never waits for a read in progress, so it is safe to call from an
        event loop. A reader blocked in another thread sees the connection
        go down and finishes the abort itself.
        """
        if self._finished or self._closing:
            return
        self._closing = True
        self._shutdown_socket()
        if self._lock.acquire(blocking=False):
            try:
                if not self._finished:
                    self._abort_closed()
            finally:
                self._lock.release()
