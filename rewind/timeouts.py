"""Deadline guard for blocking I/O."""
from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Callable, TypeVar, Union

from rewind.exceptions import OperationTimeout

T = TypeVar("T")

FILE_STAT_TIMEOUT = 10.0
FILE_READ_TIMEOUT = 30.0
DATABASE_SHUTDOWN_TIMEOUT = 5.0


async def run_with_timeout(
    operation: Union[Awaitable[T], Callable[[], Any]],
    deadline: float,
    label: str,
) -> T:
    """Race ``operation`` against ``deadline`` seconds.

    Plain callables run in a worker thread. On timeout the thread keeps
    running and its eventual result is dropped; callers must not assume the
    underlying I/O was cancelled.
    """
    if inspect.isawaitable(operation):
        awaitable = operation
    elif callable(operation):
        awaitable = asyncio.to_thread(operation)
    else:
        raise TypeError(f"Expected an awaitable or callable, got {type(operation)!r}")

    try:
        return await asyncio.wait_for(awaitable, timeout=deadline)
    except asyncio.TimeoutError:
        raise OperationTimeout(label, deadline) from None
