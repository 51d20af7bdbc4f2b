"""
Test Suite for the Request Context
"""

import os
import threading
import unittest
from unittest.mock import patch

from serverfn.core.context import (
    Cookies, Headers, RequestContext, bind_context, environment_snapshot, get_request_context
)
from serverfn.core.errors import ContextExpiredError


class TestHeaders(unittest.TestCase):
    """Test the read-only header view."""

    def test_case_insensitive(self):
        """Test lookups ignore case."""
        headers = Headers([("Content-Type", "application/json"), ("X-Trace", "abc")])
        self.assertEqual(headers["content-type"], "application/json")
        self.assertEqual(headers.get("X-TRACE"), "abc")
        self.assertIn("x-trace", headers)
        self.assertIsNone(headers.get("missing"))

    def test_repeated_headers(self):
        """Test repeated headers are all kept."""
        headers = Headers([("Accept", "text/html"), ("accept", "application/json")])
        self.assertEqual(headers.get_all("ACCEPT"), ["text/html", "application/json"])
        self.assertEqual(headers.get_all("missing"), [])

    def test_read_only(self):
        """Test headers cannot be modified."""
        headers = Headers([("A", "1")])
        with self.assertRaises(TypeError):
            headers["A"] = "2"


class TestCookies(unittest.TestCase):
    """Test the request cookie jar."""

    def test_parse_cookie_header(self):
        """Test cookies are read from the Cookie header."""
        cookies = Cookies("session=abc123; theme=dark")
        self.assertEqual(cookies.get("session"), "abc123")
        self.assertEqual(cookies["theme"], "dark")
        self.assertIn("theme", cookies)
        self.assertIsNone(cookies.get("missing"))

    def test_set_produces_header(self):
        """Test a set cookie becomes a Set-Cookie header and is readable."""
        cookies = Cookies()
        cookies.set("visits", "3", max_age=60)
        self.assertEqual(cookies.get("visits"), "3")
        headers = cookies.set_cookie_headers()
        self.assertEqual(len(headers), 1)
        self.assertTrue(headers[0].startswith("visits=3"))
        self.assertIn("Max-Age=60", headers[0])
        self.assertIn("HttpOnly", headers[0])
        self.assertIn("Path=/", headers[0])

    def test_delete(self):
        """Test delete expires the cookie."""
        cookies = Cookies("session=abc")
        cookies.delete("session")
        self.assertNotIn("session", cookies)
        self.assertIn("Max-Age=0", cookies.set_cookie_headers()[0])

    def test_sealed_jar_drops_writes(self):
        """Test writes after the headers went out are dropped."""
        cookies = Cookies()
        cookies.seal()
        with self.assertLogs("serverfn.core.context", level="WARNING"):
            cookies.set("late", "1")
        self.assertEqual(cookies.set_cookie_headers(), [])
        self.assertNotIn("late", cookies)

    def test_inert_jar_ignores_writes(self):
        """Test the inert jar accepts and ignores writes."""
        cookies = Cookies(inert=True)
        cookies.set("ignored", "1")
        self.assertEqual(cookies.set_cookie_headers(), [])


class TestRequestContext(unittest.TestCase):
    """Test context construction, expiry and binding."""

    def test_from_request(self):
        """Test a context is built from headers and environment."""
        ctx = RequestContext.from_request(
            [("User-Agent", "tests"), ("Cookie", "a=1"), ("Cookie", "b=2")],
            {"APP_NAME": "demo"}
        )
        self.assertEqual(ctx.headers["user-agent"], "tests")
        self.assertEqual(ctx.cookies.get("a"), "1")
        self.assertEqual(ctx.cookies.get("b"), "2")
        self.assertEqual(ctx.environment["APP_NAME"], "demo")
        self.assertFalse(ctx.is_inert)

    def test_environment_is_read_only(self):
        """Test the environment cannot be changed through the context."""
        ctx = RequestContext.from_request([], {"A": "1"})
        with self.assertRaises(TypeError):
            ctx.environment["A"] = "2"

    def test_expired_context(self):
        """Test every access fails once the request completed."""
        ctx = RequestContext.from_request([("X-A", "1")])
        ctx.close()
        self.assertTrue(ctx.is_closed)
        with self.assertRaises(ContextExpiredError):
            ctx.headers
        with self.assertRaises(ContextExpiredError):
            ctx.cookies
        with self.assertRaises(ContextExpiredError):
            ctx.environment

    def test_inert_context(self):
        """Test the inert context is empty."""
        ctx = RequestContext.inert()
        self.assertTrue(ctx.is_inert)
        self.assertEqual(len(ctx.headers), 0)
        self.assertEqual(dict(ctx.environment), {})

    def test_bind_context(self):
        """Test binding makes a context current for a block only."""
        ctx = RequestContext.from_request([])
        self.assertIsNone(get_request_context())
        with bind_context(ctx):
            self.assertIs(get_request_context(), ctx)
        self.assertIsNone(get_request_context())

    def test_binding_is_per_thread(self):
        """Test a context bound in one thread is invisible to another."""
        ctx = RequestContext.from_request([])
        seen = []

        with bind_context(ctx):
            worker = threading.Thread(target=lambda: seen.append(get_request_context()))
            worker.start()
            worker.join()

        self.assertEqual(seen, [None])

    @patch.dict(os.environ, {"SFNTEST_MODE": "test", "SFNTEST_REGION": "eu", "SFNOTHER": "x"})
    def test_environment_snapshot(self):
        """Test the snapshot is filtered by prefix."""
        snapshot = environment_snapshot("SFNTEST_")
        self.assertEqual(snapshot, {"SFNTEST_MODE": "test", "SFNTEST_REGION": "eu"})
        self.assertIn("SFNOTHER", environment_snapshot())


if __name__ == "__main__":
    unittest.main(verbosity=2)
