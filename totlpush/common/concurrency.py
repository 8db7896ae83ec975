"""Helpers for calling blocking store code from the async dispatcher."""

import asyncio
from typing import Any, Callable, TypeVar

T = TypeVar("T")


async def run_blocking(func: Callable[..., T], *args: Any, timeout: float | None = None, **kwargs: Any) -> T:
    """Run a sync callable in a worker thread with an optional deadline.

    A timeout surfaces as `asyncio.TimeoutError`; the worker thread itself is
    not interrupted, so callers must treat the call's side effects as unknown.
    """

    call = asyncio.to_thread(func, *args, **kwargs)
    if timeout is None:
        return await call
    return await asyncio.wait_for(call, timeout=timeout)
