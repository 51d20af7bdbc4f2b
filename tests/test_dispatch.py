"""
Test Suite for the Dispatcher and the Server Side of Streaming

The dispatcher is driven with an in-memory responder so the tests can look
at status codes, envelopes and every frame written.
"""

import asyncio
import json
import unittest

from serverfn import ExecutionMode, Runtime
from serverfn.communication.dispatcher import Dispatcher
from serverfn.communication.rpc_protocol import InvocationEnvelope, InvocationMode
from serverfn.config import Config
from serverfn.core.context import RequestContext, get_request_context


class FakeResponder:
    """Responder that records what the dispatcher sends."""

    def __init__(self, fail_after=None):
        self.status = None
        self.payload = None
        self.streaming = False
        self.finished = False
        self.frames = []
        self.fail_after = fail_after

    def send_buffered(self, status_code, payload):
        self.status = status_code
        self.payload = json.loads(payload)

    def start_stream(self):
        self.status = 200
        self.streaming = True

    def write_frame(self, data):
        if self.fail_after is not None and len(self.frames) >= self.fail_after:
            raise BrokenPipeError("client went away")
        self.frames.append(json.loads(data))

    def finish_stream(self):
        self.finished = True

    @property
    def frame_types(self):
        return [frame["type"] for frame in self.frames]


def greet(name):
    return f"Hello, {name}!"


def explode(message):
    raise ValueError(message)


def three_then_fail():
    yield 1
    yield 2
    yield 3
    raise RuntimeError("producer broke")


def tally(limit):
    for i in range(limit):
        yield i


async def summary():
    async def total():
        await asyncio.sleep(0.01)
        return 99

    return {"label": "totals", "total": total()}


def caller_header():
    return get_request_context().headers.get("X-Caller")


PULLED = []
CLOSED = []


def endless():
    try:
        i = 0
        while True:
            PULLED.append(i)
            yield i
            i += 1
    finally:
        CLOSED.append(True)


class TestDispatcher(unittest.IsolatedAsyncioTestCase):
    """Test dispatching invocation envelopes."""

    def setUp(self):
        self.runtime = Runtime(mode=ExecutionMode.LOCAL, settings=Config(env_file=""))
        self.codec = self.runtime.codec
        self.dispatcher = Dispatcher(self.runtime.executor, self.codec)
        self.functions = {
            func.__name__: self.runtime.server_function(func)
            for func in (greet, explode, three_then_fail, tally, summary, caller_header, endless)
        }

    def envelope(self, name, *args, mode=None, **kwargs):
        proxy = self.functions[name]
        if mode is None:
            mode = InvocationMode.STREAM if proxy.kind.is_sequence else InvocationMode.SINGLE
        payload = self.codec.encode([list(args), kwargs])
        return InvocationEnvelope(identifier=proxy.identifier, args=payload, mode=mode).to_json().encode("utf-8")

    async def dispatch(self, body, responder=None, headers=()):
        responder = responder or FakeResponder()
        context = RequestContext.from_request(headers)
        await self.dispatcher.dispatch(body, context, responder)
        return responder

    def decode(self, wire):
        return self.codec.decode(wire)

    async def test_buffered_success(self):
        """Test a plain value is answered with one buffered envelope."""
        responder = await self.dispatch(self.envelope("greet", "Ada"))
        self.assertEqual(responder.status, 200)
        self.assertFalse(responder.streaming)
        self.assertEqual(responder.payload["status"], "success")
        self.assertEqual(self.decode(responder.payload["value"]), "Hello, Ada!")

    async def test_unknown_identifier(self):
        """Test an unknown identifier is a 404 and is logged as possible skew."""
        body = InvocationEnvelope(
            identifier="elsewhere.fn:000000000000", args=self.codec.encode([[], {}])
        ).to_json().encode("utf-8")

        with self.assertLogs("serverfn.communication.dispatcher", level="WARNING") as logs:
            responder = await self.dispatch(body)

        self.assertEqual(responder.status, 404)
        self.assertEqual(responder.payload["error"]["kind"], "not_found")
        self.assertIn("version skew", logs.output[0])

    async def test_malformed_bodies(self):
        """Test malformed envelopes are rejected with 400."""
        bodies = [
            b"not json",
            b"[]",
            json.dumps({"identifier": "x"}).encode(),
            json.dumps({"identifier": "", "args": {}}).encode(),
            json.dumps({"identifier": self.functions["greet"].identifier, "args": {"bogus": 1}}).encode(),
            json.dumps({
                "identifier": self.functions["greet"].identifier,
                "args": self.codec.encode({"not": "a pair"})
            }).encode(),
        ]
        for body in bodies:
            with self.subTest(body=body):
                responder = await self.dispatch(body)
                self.assertEqual(responder.status, 400)
                self.assertEqual(responder.payload["error"]["kind"], "codec")

    async def test_sequence_requires_stream_mode(self):
        """Test a single-value request to a generator function is rejected."""
        responder = await self.dispatch(self.envelope("tally", 3, mode=InvocationMode.SINGLE))
        self.assertEqual(responder.status, 400)
        self.assertEqual(responder.payload["error"]["kind"], "codec")
        self.assertFalse(responder.streaming)

    async def test_mode_header_wins(self):
        """Test the mode announced by the transport overrides the envelope."""
        responder = FakeResponder()
        body = self.envelope("tally", 2, mode=InvocationMode.SINGLE)
        await self.dispatcher.dispatch(body, RequestContext.from_request([]), responder, InvocationMode.STREAM)
        self.assertEqual(responder.frame_types, ["value", "chunk", "chunk", "end", "done"])

    async def test_arity_error(self):
        """Test bad arguments surface as a TypeError from the server."""
        responder = await self.dispatch(self.envelope("greet"))
        self.assertEqual(responder.status, 500)
        self.assertEqual(responder.payload["error"]["type"], "TypeError")

    async def test_body_exception(self):
        """Test an exception from the body becomes an error envelope."""
        responder = await self.dispatch(self.envelope("explode", "kaboom"))
        self.assertEqual(responder.status, 500)
        error = responder.payload["error"]
        self.assertEqual(error["kind"], "remote")
        self.assertEqual(error["type"], "ValueError")
        self.assertEqual(error["module"], "builtins")
        self.assertEqual(error["message"], "kaboom")
        self.assertEqual(self.decode(error["args"]), ["kaboom"])
        self.assertIsNone(error["traceback"])

    async def test_tracebacks_when_exposed(self):
        """Test tracebacks are shipped only when enabled."""
        self.dispatcher = Dispatcher(self.runtime.executor, self.codec, expose_tracebacks=True)
        responder = await self.dispatch(self.envelope("explode", "kaboom"))
        self.assertIn("Traceback", responder.payload["error"]["traceback"])

    async def test_stream_frames_in_order(self):
        """Test a generator result is streamed chunk by chunk in order."""
        responder = await self.dispatch(self.envelope("tally", 5))
        self.assertTrue(responder.streaming)
        self.assertTrue(responder.finished)
        self.assertEqual(responder.frame_types, ["value"] + ["chunk"] * 5 + ["end", "done"])

        marker = responder.frames[0]["value"]["root"]
        self.assertEqual(marker["$"], "stream")
        chunks = [self.decode(frame["value"]) for frame in responder.frames if frame["type"] == "chunk"]
        self.assertEqual(chunks, [0, 1, 2, 3, 4])
        self.assertTrue(all(frame["id"] == marker["id"] for frame in responder.frames[1:-1]))

    async def test_partial_stream_failure(self):
        """Test a failing producer keeps its chunks and ends with an error frame."""
        responder = await self.dispatch(self.envelope("three_then_fail"))
        self.assertEqual(responder.frame_types, ["value", "chunk", "chunk", "chunk", "error", "done"])
        error = responder.frames[4]["error"]
        self.assertEqual(error["type"], "RuntimeError")
        self.assertEqual(error["message"], "producer broke")

    async def test_nested_promise(self):
        """Test an awaitable inside the result is resolved in a later frame."""
        responder = await self.dispatch(self.envelope("summary"))
        self.assertEqual(responder.frame_types, ["value", "resolve", "done"])
        self.assertEqual(self.decode(responder.frames[1]["value"]), 99)

    async def test_client_disconnect_stops_producer(self):
        """Test a failed write stops pulling from the generator and closes it."""
        PULLED.clear()
        CLOSED.clear()
        responder = FakeResponder(fail_after=3)

        await asyncio.wait_for(self.dispatch(self.envelope("endless"), responder), timeout=10)

        self.assertEqual(CLOSED, [True])
        self.assertFalse(responder.finished)
        self.assertEqual(len(responder.frames), 3)
        pulled = len(PULLED)
        await asyncio.sleep(0.05)
        self.assertEqual(len(PULLED), pulled)

    async def test_context_is_bound(self):
        """Test the body sees the context of its own request."""
        first = await self.dispatch(self.envelope("caller_header"), headers=[("X-Caller", "one")])
        second = await self.dispatch(self.envelope("caller_header"), headers=[("X-Caller", "two")])
        self.assertEqual(self.decode(first.payload["value"]), "one")
        self.assertEqual(self.decode(second.payload["value"]), "two")
        self.assertIsNone(get_request_context())


if __name__ == "__main__":
    unittest.main(verbosity=2)
