"""
Demo: Server Functions Across a Process Boundary

This demo showcases remote calls of server functions including:
- Serving the sample functions from a LOCAL runtime
- Calling the same functions through a REMOTE runtime
- Streamed sequences and values that resolve later
- Error reconstruction and server monitoring
"""

import asyncio
import logging
import os
import sys
import time

# Add the parent directory to the Python path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from serverfn import (
    ExecutionMode, NotFound, RemoteDeferred, RemoteStream, Runtime, TransportFailure,
    configure_default_runtime
)
from serverfn.core import FunctionLoader


FUNCTIONS_FILE = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))),
                              "examples", "sample_functions.py")


class RemoteCallDemo:
    """Demo for server functions called over HTTP."""

    def __init__(self):
        """Initialize the demo."""
        logging.basicConfig(
            level=logging.INFO,
            format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )
        self.logger = logging.getLogger(__name__)

        self.server_runtime = configure_default_runtime(mode=ExecutionMode.LOCAL)
        self.server = None
        self.client_runtime = None
        self.remote = {}
        self.module = None

    def setup(self):
        """Serve the sample functions and wrap them again on the calling side."""
        self.module = FunctionLoader.load_from_file(FUNCTIONS_FILE)
        served = FunctionLoader.find_server_functions(self.module)

        self.server = self.server_runtime.create_server(host="127.0.0.1", port=0)
        if not self.server.start():
            raise RuntimeError("Failed to start dispatch server")
        self.logger.info(f"Serving {len(served)} functions at {self.server.get_endpoint_url()}")

        # Same bodies, so the calling side computes the same identifiers
        self.client_runtime = Runtime(mode=ExecutionMode.REMOTE, endpoint=self.server.get_endpoint_url())
        self.client_runtime.register_error(self.module.QuotaExceeded)
        for name, proxy in served.items():
            self.remote[name] = self.client_runtime.server_function(
                proxy.__wrapped__, with_context=proxy.descriptor.takes_context
            )

    def demo_plain_calls(self):
        """Demonstrate plain calls."""
        print("\n" + "="*60)
        print("DEMO: Plain Calls")
        print("="*60)

        print(f"   ✓ {self.remote['hello_world']('Alice')}")
        result = self.remote["math_operations"]("power", 2, 10)
        print(f"   ✓ 2 ** 10 = {result['result']} (operands {result['operands']})")
        stats = self.remote["data_processing"]([3, 1, 4, 1, 5, 9, 2, 6])
        print(f"   ✓ mean {stats['mean']:.2f}, median {stats['median']}")
        print(f"   ✓ whoami: {self.remote['whoami']()}")

    def demo_streaming(self):
        """Demonstrate promises, sequences and nested deferred values."""
        print("\n" + "="*60)
        print("DEMO: Promises and Streams")
        print("="*60)

        print(f"   ✓ slow_square(12) = {asyncio.run(self.remote['slow_square'](12, delay=0.2))}")

        start_time = time.time()
        for n in self.remote["countdown"](5, delay=0.1):
            print(f"   ➡️  {n} after {time.time() - start_time:.2f}s")

        async def ticks():
            async for tick in self.remote["ticker"](3, interval=0.1):
                print(f"   ⏱️  tick {tick['tick']}")

        asyncio.run(ticks())

        report = self.remote["report"](4)
        print(f"   ✓ report of size {report['size']}")
        if isinstance(report["rows"], RemoteStream):
            for row in report["rows"]:
                print(f"      row {row}")
        if isinstance(report["total"], RemoteDeferred):
            print(f"   ✓ total resolved later: {report['total'].result()}")

    def demo_error_handling(self):
        """Demonstrate how failures surface on the calling side."""
        print("\n" + "="*60)
        print("DEMO: Error Handling")
        print("="*60)

        try:
            self.remote["math_operations"]("divide", 1, 0)
        except ValueError as e:
            print(f"   ✓ Builtin error kept its type: ValueError: {e}")

        try:
            self.remote["reserve"](500)
        except self.module.QuotaExceeded as e:
            print(f"   ✓ Registered error kept its type: QuotaExceeded: {e}")

        def not_served():
            return None

        try:
            self.client_runtime.server_function(not_served)()
        except NotFound as e:
            print(f"   ✓ Unknown function: {e}")

        offline = Runtime(mode=ExecutionMode.REMOTE, endpoint="http://127.0.0.1:9/_serverfn")
        try:
            offline.server_function(not_served)()
        except TransportFailure as e:
            print(f"   ✓ Unreachable endpoint: {e}")

    def demo_monitoring(self):
        """Demonstrate the monitoring endpoints and statistics."""
        print("\n" + "="*60)
        print("DEMO: Monitoring")
        print("="*60)

        client = self.client_runtime.client
        is_healthy, health = client.health_check()
        print(f"   ✓ Healthy: {is_healthy} ({health['functions'] if health else 0} functions)")

        status = client.get_remote_status()
        print(f"   ✓ Server RSS: {status['process']['rss_mb']:.1f} MB, "
              f"threads: {status['process']['num_threads']}")

        client_stats = client.get_stats()
        print("\n📈 Client Statistics:")
        print(f"   Total Requests: {client_stats['requests_sent']}")
        print(f"   Streamed Responses: {client_stats['streamed_responses']}")
        print(f"   Success Rate: {client_stats['success_rate']:.1%}")
        print(f"   Average Response Time: {client_stats['average_response_time']:.3f}s")

        server_stats = self.server.get_stats()
        print("\n📈 Server Statistics:")
        print(f"   Uptime: {server_stats['uptime_seconds']:.1f}s")
        print(f"   Requests Handled: {server_stats['requests_handled']}")
        print(f"   Invocations: {server_stats['invocations']}")
        print(f"   Errors Encountered: {server_stats['errors_encountered']}")

    def run_complete_demo(self):
        """Run the complete demo."""
        print("🌟 STARTING SERVER FUNCTIONS DEMO")
        print("="*70)

        try:
            self.setup()
            self.demo_plain_calls()
            self.demo_streaming()
            self.demo_error_handling()
            self.demo_monitoring()

            print("\n" + "="*70)
            print("🎉 DEMO COMPLETED SUCCESSFULLY!")
            print("="*70)

        except Exception as e:
            self.logger.error(f"Demo failed: {e}")
            print(f"\n❌ Demo failed: {e}")

        finally:
            if self.server:
                self.server.stop()
            print("\n🧹 Cleanup completed")


def main():
    """Main demo function."""
    demo = RemoteCallDemo()
    demo.run_complete_demo()


if __name__ == "__main__":
    main()
