"""Helpers for callbacks that may be plain functions or coroutines."""

from __future__ import annotations

import inspect
from typing import Any, Callable

__all__ = ["call_maybe_async"]


async def call_maybe_async(callback: Callable[..., Any] | None, *args: Any) -> Any:
    """Invoke ``callback`` and await its result when it is awaitable."""
    if callback is None:
        return None
    result = callback(*args)
    if inspect.isawaitable(result):
        return await result
    return result
