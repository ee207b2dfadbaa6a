"""Async utilities for bridging blocking HTTP calls into the sync loop."""

import asyncio
from typing import Any, Callable, TypeVar

T = TypeVar("T")


async def run_sync(
    func: Callable[..., T], *args: Any, **kwargs: Any
) -> T:
    """Run a synchronous function in a thread pool without blocking the event loop.

    Every ``PiHoleClient`` call made from the scheduler or the session
    keepalive goes through here.

    Args:
        func: Synchronous function to call
        *args: Positional arguments for func
        **kwargs: Keyword arguments for func

    Returns:
        Result of func(*args, **kwargs)

    Example:
        client = PiHoleClient(instance)
        config = await run_sync(client.get_config, token)
    """
    return await asyncio.to_thread(func, *args, **kwargs)
