"""
Example server functions.

Loaded by ``main.py`` in both roles: the serving process runs the bodies, a
client process loading the same file gets proxies that call the server.
"""

import asyncio
import math
import time
from typing import Any, Dict, List

from serverfn import get_default_runtime, server_function


@get_default_runtime().register_error
class QuotaExceeded(Exception):
    """Raised by ``reserve`` when a caller asks for too much."""


@server_function
def hello_world(name: str = "World") -> str:
    """Return a personalized greeting."""
    return f"Hello, {name}!"


@server_function
def math_operations(operation: str, a: float, b: float = 0.0) -> Dict[str, Any]:
    """Perform a mathematical operation on two numbers."""
    if operation == "add":
        result = a + b
    elif operation == "subtract":
        result = a - b
    elif operation == "multiply":
        result = a * b
    elif operation == "divide":
        if b == 0:
            raise ValueError("Cannot divide by zero")
        result = a / b
    elif operation == "power":
        result = a ** b
    elif operation == "sqrt":
        if a < 0:
            raise ValueError("Cannot take square root of negative number")
        result = math.sqrt(a)
    else:
        raise ValueError(f"Unsupported operation: {operation}")

    return {
        "operation": operation,
        "operands": (a, b),
        "result": result
    }


@server_function
def data_processing(numbers: List[float]) -> Dict[str, float]:
    """Process a list of numbers and return statistics."""
    if not numbers:
        raise ValueError("'numbers' must be a non-empty list")

    count = len(numbers)
    mean = sum(numbers) / count
    ordered = sorted(numbers)
    if count % 2 == 0:
        median = (ordered[count // 2 - 1] + ordered[count // 2]) / 2
    else:
        median = ordered[count // 2]
    variance = sum((x - mean) ** 2 for x in numbers) / count

    return {
        "count": count,
        "mean": mean,
        "median": median,
        "min": ordered[0],
        "max": ordered[-1],
        "std_dev": math.sqrt(variance)
    }


@server_function
async def slow_square(x: float, delay: float = 0.5) -> float:
    """Square a number after a delay."""
    await asyncio.sleep(delay)
    return x * x


@server_function
def countdown(start: int, delay: float = 0.0):
    """Yield start, start - 1, ..., 1."""
    for n in range(start, 0, -1):
        if delay:
            time.sleep(delay)
        yield n


@server_function
async def ticker(count: int, interval: float = 0.2):
    """Yield a timestamped tick every interval."""
    for i in range(count):
        await asyncio.sleep(interval)
        yield {"tick": i, "at": time.time()}


@server_function
def report(size: int) -> Dict[str, Any]:
    """A summary now, plus a total that resolves later and rows streamed one by one."""
    async def total():
        await asyncio.sleep(0.1)
        return sum(range(size))

    def rows():
        for i in range(size):
            yield {"row": i, "square": i * i}

    return {"size": size, "total": total(), "rows": rows()}


@server_function(with_context=True)
def whoami(ctx) -> Dict[str, Any]:
    """Describe the caller from its request headers and count visits in a cookie."""
    visits = int(ctx.cookies.get("visits") or 0) + 1
    ctx.cookies.set("visits", str(visits), max_age=3600)
    return {
        "user_agent": ctx.headers.get("User-Agent"),
        "visits": visits
    }


@server_function
def reserve(units: int) -> int:
    """Reserve units from a fixed quota."""
    if units > 100:
        raise QuotaExceeded(f"Requested {units} units, quota is 100")
    return 100 - units
