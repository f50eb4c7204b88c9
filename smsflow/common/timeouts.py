"""Race-against-timeout helper for read-only preview queries."""

import asyncio
from typing import Awaitable, Callable, TypeVar

from smsflow.common.errors import QueryTimeout

T = TypeVar("T")


async def run_with_timeout(operation: Callable[[], Awaitable[T]], timeout_seconds: float, label: str) -> T:
    """Await `operation()` and surface `QueryTimeout` instead of a generic failure."""

    try:
        return await asyncio.wait_for(operation(), timeout=timeout_seconds)
    except asyncio.TimeoutError as exc:
        raise QueryTimeout(f"{label} timed out after {timeout_seconds}s") from exc
