"""
HTTP Server for the Dispatch Endpoint

This module provides the HTTP binding of the dispatcher: a threaded server
exposing one dispatch route for invocations, plus health, status and function
listing endpoints. Each invocation runs on its own handler thread with its
own event loop.
"""

import asyncio
import json
import logging
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import TYPE_CHECKING, Any, Dict, Optional
from urllib.parse import urlparse

import psutil

from ..core.context import RequestContext, environment_snapshot
from ..core.proxy import ExecutionMode
from .dispatcher import Dispatcher
from .rpc_protocol import (
    CONTENT_TYPE_JSON, CONTENT_TYPE_STREAM, HEADER_MODE, HEADER_PROTOCOL, HEADER_RESPONSE,
    PROTOCOL_VERSION, InvocationMode, ResponseMode
)

if TYPE_CHECKING:
    from ..config import Config
    from ..runtime import Runtime


class HTTPResponder:
    """Responder writing a dispatched call's response to an HTTP connection."""

    def __init__(self, handler: BaseHTTPRequestHandler, context: RequestContext):
        self.handler = handler
        self.context = context
        self.headers_sent = False

    def _send_cookies(self) -> None:
        cookies = self.context.cookies
        for value in cookies.set_cookie_headers():
            self.handler.send_header("Set-Cookie", value)
        cookies.seal()

    def send_buffered(self, status_code: int, payload: bytes) -> None:
        handler = self.handler
        handler.send_response(status_code)
        handler.send_header("Content-Type", CONTENT_TYPE_JSON)
        handler.send_header("Content-Length", str(len(payload)))
        handler.send_header(HEADER_RESPONSE, ResponseMode.BUFFERED.value)
        handler.send_header(HEADER_PROTOCOL, PROTOCOL_VERSION)
        self._send_cookies()
        handler.end_headers()
        self.headers_sent = True
        handler.wfile.write(payload)

    def start_stream(self) -> None:
        handler = self.handler
        handler.send_response(200)
        handler.send_header("Content-Type", CONTENT_TYPE_STREAM)
        handler.send_header("Transfer-Encoding", "chunked")
        handler.send_header("Cache-Control", "no-cache")
        handler.send_header(HEADER_RESPONSE, ResponseMode.STREAM.value)
        handler.send_header(HEADER_PROTOCOL, PROTOCOL_VERSION)
        self._send_cookies()
        handler.end_headers()
        self.headers_sent = True

    def write_frame(self, data: bytes) -> None:
        self.handler.wfile.write(b"%x\r\n%s\r\n" % (len(data), data))
        self.handler.wfile.flush()

    def finish_stream(self) -> None:
        self.handler.wfile.write(b"0\r\n\r\n")
        self.handler.wfile.flush()
        self.handler.close_connection = True


class DispatchRequestHandler(BaseHTTPRequestHandler):
    """HTTP request handler for the dispatch endpoint."""

    protocol_version = "HTTP/1.1"

    def __init__(self, dispatch_server, *args, **kwargs):
        """Initialize the request handler with reference to the dispatch server."""
        self.dispatch_server = dispatch_server
        super().__init__(*args, **kwargs)

    def log_message(self, format, *args):
        """Override to use our logger instead of stderr."""
        self.dispatch_server.logger.debug(format % args)

    def do_GET(self):
        """Handle GET requests."""
        try:
            self.dispatch_server.stats["requests_handled"] += 1

            path = urlparse(self.path).path
            if path == '/health':
                self._handle_health_check()
            elif path == '/status':
                self._handle_status_request()
            elif path == '/functions':
                self._handle_list_functions()
            else:
                self._send_error_response(404, "Endpoint not found")

        except Exception as e:
            self.dispatch_server.stats["errors_encountered"] += 1
            self.dispatch_server.logger.error(f"Error handling GET request: {e}")
            self._send_error_response(500, f"Internal server error: {str(e)}")

    def do_POST(self):
        """Handle POST requests."""
        responder = None
        try:
            self.dispatch_server.stats["requests_handled"] += 1

            if urlparse(self.path).path == self.dispatch_server.dispatch_path:
                responder = self._handle_invocation()
            else:
                self._send_error_response(404, "Endpoint not found")

        except Exception as e:
            self.dispatch_server.stats["errors_encountered"] += 1
            self.dispatch_server.logger.error(f"Error handling invocation: {e}")
            if responder is None or not responder.headers_sent:
                self._send_error_response(500, f"Internal server error: {str(e)}")
            else:
                self.close_connection = True

    def _handle_health_check(self):
        """Handle health check requests."""
        response = {
            "status": "healthy",
            "functions": len(self.dispatch_server.runtime.registry),
            "timestamp": time.time()
        }
        self._send_json_response(200, response)

    def _handle_status_request(self):
        """Handle server status requests."""
        process = psutil.Process()
        with process.oneshot():
            memory = process.memory_info()
            process_info = {
                "pid": process.pid,
                "rss_mb": memory.rss / (1024 ** 2),
                "cpu_percent": process.cpu_percent(interval=None),
                "num_threads": process.num_threads()
            }

        response = {
            "server": self.dispatch_server.get_stats(),
            "executor": self.dispatch_server.runtime.executor.get_statistics(),
            "process": process_info
        }
        self._send_json_response(200, response)

    def _handle_list_functions(self):
        """Handle list functions requests."""
        registry = self.dispatch_server.runtime.registry
        response = {
            "functions": registry.list_identifiers(),
            "function_metadata": registry.describe(),
            "total_count": len(registry)
        }
        self._send_json_response(200, response)

    def _handle_invocation(self) -> Optional[HTTPResponder]:
        """Handle a server function invocation."""
        try:
            content_length = int(self.headers.get('Content-Length', 0))
        except ValueError:
            self._send_error_response(400, "Invalid Content-Length")
            return None

        if content_length <= 0:
            self._send_error_response(400, "Missing request body")
            return None
        if content_length > self.dispatch_server.max_request_bytes:
            self.close_connection = True
            self._send_error_response(413, "Request body too large")
            return None

        body = self.rfile.read(content_length)

        requested_mode = None
        mode_header = self.headers.get(HEADER_MODE)
        if mode_header:
            try:
                requested_mode = InvocationMode(mode_header)
            except ValueError:
                self.dispatch_server.logger.debug(f"Ignoring unknown invocation mode {mode_header!r}")

        context = RequestContext.from_request(self.headers.items(), self.dispatch_server.environment)
        responder = HTTPResponder(self, context)
        self.dispatch_server.stats["invocations"] += 1
        try:
            asyncio.run(self.dispatch_server.dispatcher.dispatch(body, context, responder, requested_mode))
        finally:
            context.close()
        return responder

    def _send_json_response(self, status_code: int, data: Dict[str, Any]):
        """Send a JSON response."""
        response_body = json.dumps(data, default=str, indent=2).encode('utf-8')

        self.send_response(status_code)
        self.send_header('Content-Type', CONTENT_TYPE_JSON)
        self.send_header('Content-Length', str(len(response_body)))
        self.end_headers()

        self.wfile.write(response_body)

    def _send_error_response(self, status_code: int, message: str):
        """Send an error response."""
        error_data = {
            "error": message,
            "status_code": status_code,
            "timestamp": time.time()
        }
        self._send_json_response(status_code, error_data)


class DispatchServer:
    """
    HTTP server exposing the dispatch endpoint of a serving runtime.
    """

    def __init__(self,
                 runtime: 'Runtime',
                 host: Optional[str] = None,
                 port: Optional[int] = None,
                 settings: Optional['Config'] = None):
        """
        Initialize the dispatch server.

        Args:
            runtime: Serving runtime whose registered functions are exposed
            host: Host to bind the server to (uses the configured bind address if None)
            port: Port to bind the server to (uses the configured port if None, 0 picks a free one)
            settings: Configuration (uses the runtime's if None)
        """
        if runtime.mode is not ExecutionMode.LOCAL:
            raise ValueError("Only a runtime in LOCAL mode can serve invocations")

        self.runtime = runtime
        self.config = settings or runtime.config
        self.host = self.config.network.bind_address if host is None else host
        self.port = self.config.network.default_port if port is None else port
        self.dispatch_path = self.config.network.dispatch_path
        self.max_request_bytes = self.config.rpc.max_request_size_mb * 1024 * 1024
        self.environment = environment_snapshot(self.config.context.environment_prefix)
        self.dispatcher = Dispatcher(runtime.executor, runtime.codec, self.config.security.expose_tracebacks)

        self.server: Optional[ThreadingHTTPServer] = None
        self.server_thread: Optional[threading.Thread] = None
        self.is_running = False

        self.logger = logging.getLogger(__name__)

        # Statistics
        self.stats = {
            "requests_handled": 0,
            "invocations": 0,
            "errors_encountered": 0,
            "start_time": None
        }

    def start(self) -> bool:
        """
        Start the dispatch server. Registration is closed from here on.

        Returns:
            True if started successfully, False otherwise
        """
        if self.is_running:
            self.logger.warning("Dispatch server is already running")
            return True

        try:
            def handler_factory(*args, **kwargs):
                return DispatchRequestHandler(self, *args, **kwargs)

            self.server = ThreadingHTTPServer((self.host, self.port), handler_factory)
            self.server.daemon_threads = True
            self.runtime.registry.freeze()

            self.server_thread = threading.Thread(
                target=self._run_server,
                name=f"serverfn-dispatch-{self.server.server_address[1]}",
                daemon=True
            )

            self.is_running = True
            self.stats["start_time"] = time.time()
            self.server_thread.start()

            host, port = self.server.server_address[:2]
            self.logger.info(
                f"Dispatch server started on {host}:{port}{self.dispatch_path} "
                f"with {len(self.runtime.registry)} functions"
            )
            return True

        except Exception as e:
            self.logger.error(f"Failed to start dispatch server: {e}")
            self.is_running = False
            return False

    def stop(self, timeout: float = 5.0) -> bool:
        """
        Stop the dispatch server.

        Args:
            timeout: Maximum time to wait for server to stop

        Returns:
            True if stopped successfully, False otherwise
        """
        if not self.is_running:
            return True

        try:
            self.is_running = False

            if self.server:
                self.server.shutdown()
                self.server.server_close()

            if self.server_thread and self.server_thread.is_alive():
                self.server_thread.join(timeout)

            self.logger.info("Dispatch server stopped")
            return True

        except Exception as e:
            self.logger.error(f"Error stopping dispatch server: {e}")
            return False

    def _run_server(self):
        """Run the HTTP server (internal method)."""
        try:
            self.server.serve_forever()
        except Exception as e:
            if self.is_running:  # Only log if not intentionally stopped
                self.logger.error(f"Dispatch server error: {e}")
        finally:
            self.is_running = False

    @property
    def bound_port(self) -> int:
        """Port actually bound (differs from port when port 0 was requested)."""
        if self.server is not None:
            return self.server.server_address[1]
        return self.port

    def get_stats(self) -> Dict[str, Any]:
        """Get server statistics."""
        stats = self.stats.copy()
        if stats["start_time"]:
            stats["uptime_seconds"] = time.time() - stats["start_time"]
        else:
            stats["uptime_seconds"] = 0

        stats["is_running"] = self.is_running
        stats["endpoint"] = f"{self.host}:{self.bound_port}"

        return stats

    def get_endpoint_url(self, path: Optional[str] = None) -> str:
        """
        Get the full URL for an endpoint.

        Args:
            path: Path to use instead of the dispatch path

        Returns:
            Full URL string
        """
        host = "127.0.0.1" if self.host in ("", "0.0.0.0") else self.host
        path = self.dispatch_path if path is None else path
        if path and not path.startswith('/'):
            path = '/' + path
        return f"http://{host}:{self.bound_port}{path}"
