#!/usr/bin/env python3
"""
Server Functions - Main Driver

This is the main entry point for serving and calling server functions.

Usage Examples:
    # Serve the functions defined in a file
    python main.py --mode server --port 8080

    # Call one function through its proxy
    python main.py --mode client --target 127.0.0.1:8080 --call math_operations --args '["add", 2, 3]'

    # List the functions a server exposes
    python main.py --mode list --target 127.0.0.1:8080
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
import threading
from typing import Any, Dict, List, Optional

from serverfn import (
    ExecutionMode, FunctionKind, RemoteDeferred, RemoteStream, ServerFunctionError, ValueCodec,
    configure_default_runtime
)
from serverfn.communication import DispatchServer, RPCClient
from serverfn.config import config, setup_logging
from serverfn.core import FunctionLoader, FunctionLoadError


DEFAULT_FUNCTIONS_FILE = "examples/sample_functions.py"


class ServerFunctionDriver:
    """Main driver for serving and calling server functions."""

    def __init__(self):
        """Initialize the driver."""
        self.logger = setup_logging(config)
        self.shutdown_event = threading.Event()
        self.server: Optional[DispatchServer] = None

        # Setup signal handlers for graceful shutdown
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals."""
        self.logger.info(f"Received signal {signum}, initiating graceful shutdown...")
        self.shutdown_event.set()

    @staticmethod
    def _endpoint_url(target: Optional[str]) -> str:
        """Turn a host:port or URL target into a dispatch endpoint URL."""
        if not target:
            return config.endpoint_url()
        if target.startswith(("http://", "https://")):
            return target
        return f"http://{target}{config.network.dispatch_path}"

    def mode_server(self, args) -> None:
        """Serve the functions of a file."""
        runtime = configure_default_runtime(mode=ExecutionMode.LOCAL)
        module = FunctionLoader.load_from_file(args.functions_file)
        functions = FunctionLoader.find_server_functions(module)

        self.server = runtime.create_server(host=args.bind_address, port=args.port)
        if not self.server.start():
            self.logger.error("Failed to start dispatch server")
            return

        print(f"🔧 Serving {len(functions)} functions from {args.functions_file}")
        print(f"📡 Dispatch endpoint: {self.server.get_endpoint_url()}")
        for name, proxy in sorted(functions.items()):
            print(f"   • {name} ({proxy.kind.value}) -> {proxy.identifier}")
        print("Press Ctrl+C to stop gracefully...")

        try:
            while not self.shutdown_event.is_set() and self.server.is_running:
                self.shutdown_event.wait(1)
        except KeyboardInterrupt:
            pass

        self._cleanup()

    def mode_client(self, args) -> None:
        """Call one function through its proxy."""
        endpoint = self._endpoint_url(args.target)
        runtime = configure_default_runtime(mode=ExecutionMode.REMOTE, endpoint=endpoint)

        is_healthy, _ = runtime.client.health_check()
        if not is_healthy:
            print(f"❌ Cannot reach {endpoint}")
            print("   Make sure the server is running!")
            return

        module = FunctionLoader.load_from_file(args.functions_file)
        functions = FunctionLoader.find_server_functions(module)
        proxy = functions.get(args.call)
        if proxy is None:
            print(f"❌ Function '{args.call}' not defined in {args.functions_file}")
            print(f"   Available: {', '.join(sorted(functions))}")
            return

        call_args: List[Any] = json.loads(args.args)
        call_kwargs: Dict[str, Any] = json.loads(args.kwargs)
        print(f"🎯 Calling {proxy.identifier}...")

        try:
            result = proxy(*call_args, **call_kwargs)
            if proxy.kind is FunctionKind.PROMISE:
                result = asyncio.run(result)
            elif proxy.kind is FunctionKind.ASYNC_SEQUENCE:
                result = asyncio.run(self._collect(result))
            elif proxy.kind is FunctionKind.SEQUENCE:
                for item in result:
                    print(f"   ➡️  {item!r}")
                result = None
        except ServerFunctionError as e:
            print(f"❌ {e.__class__.__name__}: {e}")
            return
        except Exception as e:
            print(f"❌ Remote {e.__class__.__name__}: {e}")
            return

        if result is not None:
            self._print_result(result)
        print(f"📊 Client stats: {runtime.client.get_stats()}")

    async def _collect(self, stream) -> None:
        async for item in stream:
            print(f"   ➡️  {item!r}")

    @staticmethod
    def _print_result(result: Any) -> None:
        if isinstance(result, dict):
            for key, value in result.items():
                if isinstance(value, RemoteDeferred):
                    value = value.result()
                elif isinstance(value, RemoteStream):
                    value = list(value)
                print(f"   {key}: {value!r}")
        else:
            print(f"✅ Result: {result!r}")

    def mode_list(self, args) -> None:
        """List the functions a server exposes."""
        endpoint = self._endpoint_url(args.target)
        client = RPCClient(endpoint, ValueCodec(), timeout=config.rpc.timeout_seconds)

        try:
            functions_info = client.list_remote_functions()
        except ServerFunctionError as e:
            print(f"❌ Could not retrieve function list: {e}")
            return

        print(f"📋 {functions_info['total_count']} functions at {endpoint}")
        for identifier, metadata in sorted(functions_info["function_metadata"].items()):
            context_note = ", takes context" if metadata.get("takes_context") else ""
            print(f"   • {identifier} ({metadata['kind']}{context_note})")

    def _cleanup(self):
        """Stop the server if one is running."""
        if self.server is not None:
            self.server.stop()
            print("✅ Server stopped")
            self.server = None


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Server Functions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --mode server --port 8080
  %(prog)s --mode client --target 127.0.0.1:8080 --call countdown --args '[5]'
  %(prog)s --mode list --target 127.0.0.1:8080
        """
    )

    parser.add_argument(
        '--mode',
        required=True,
        choices=['server', 'client', 'list'],
        help='Operational mode'
    )

    parser.add_argument(
        '--port',
        type=int,
        default=config.network.default_port,
        help=f'Port to bind server (default: {config.network.default_port})'
    )

    parser.add_argument(
        '--bind-address',
        default=config.network.bind_address,
        help=f'Address to bind server (default: {config.network.bind_address})'
    )

    parser.add_argument(
        '--target',
        help='Server to call (host:port or dispatch URL, default from SERVERFN_ENDPOINT)'
    )

    parser.add_argument(
        '--functions-file',
        default=DEFAULT_FUNCTIONS_FILE,
        help=f'File defining the server functions (default: {DEFAULT_FUNCTIONS_FILE})'
    )

    parser.add_argument(
        '--call',
        help='Function to call in client mode'
    )

    parser.add_argument(
        '--args',
        default='[]',
        help='JSON list of positional arguments (default: [])'
    )

    parser.add_argument(
        '--kwargs',
        default='{}',
        help='JSON object of keyword arguments (default: {})'
    )

    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging'
    )

    args = parser.parse_args()

    # Validate arguments
    if args.mode == 'client' and not args.call:
        parser.error("Client mode requires --call argument")

    # Create and run driver
    driver = ServerFunctionDriver()

    # Setup logging level
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        if args.mode == 'server':
            driver.mode_server(args)
        elif args.mode == 'client':
            driver.mode_client(args)
        elif args.mode == 'list':
            driver.mode_list(args)

    except KeyboardInterrupt:
        print("\n👋 Shutdown requested by user")
    except (FunctionLoadError, json.JSONDecodeError) as e:
        print(f"❌ {e}")
        sys.exit(2)
    except Exception as e:
        print(f"❌ Fatal error: {e}")
        logging.exception("Fatal error occurred")
        sys.exit(1)


if __name__ == "__main__":
    main()
