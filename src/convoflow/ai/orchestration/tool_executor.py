"""Concurrent execution of model-requested tools.

The host supplies a :class:`ToolExecutor`; this module only knows how to
dispatch a batch of :class:`ToolCallRequest` objects to it, capture each
outcome in a :class:`ToolUsage` and serialize the results into the
continuation payload sent back to the model.
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import json
import logging
import time
from concurrent.futures import Executor
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Protocol, Sequence, Tuple

from ..errors import ToolExecutionError
from .response_parser import tool_calls_from_payload
from .types import ToolCallRequest, ToolStatus, ToolUsage

__all__ = [
    "ToolExecutor",
    "ToolBatchResult",
    "ToolExecutionCoordinator",
    "tool_calls_from_payload",
]

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Host capability
# -----------------------------------------------------------------------------


class ToolExecutor(Protocol):
    """Runs one tool on behalf of the model.

    ``execute`` may be synchronous (it then runs on a worker thread) or a
    coroutine function. It returns the result as a JSON string or a
    mapping; raising marks that tool as failed.
    """

    def execute(self, working_directory: Path, tool_name: str, args_json: str) -> Any: ...


# -----------------------------------------------------------------------------
# Results
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolBatchResult:
    """Outcome of one batch, in request order.

    ``errors`` holds one :class:`ToolExecutionError` per tool that raised or
    timed out; tools that merely reported ``ok: false`` are not listed.
    """

    usages: tuple[ToolUsage, ...]
    results: tuple[Dict[str, Any], ...]
    errors: tuple[ToolExecutionError, ...] = ()

    @property
    def failed_count(self) -> int:
        return sum(1 for usage in self.usages if usage.status is ToolStatus.FAILED)

    @property
    def all_succeeded(self) -> bool:
        return self.failed_count == 0

    def continuation_payload(self) -> str:
        """JSON document fed back to the model as the next user message."""
        return json.dumps(
            {"action": "tool_result", "results": list(self.results)},
            ensure_ascii=False,
            default=str,
        )


# -----------------------------------------------------------------------------
# Coordinator
# -----------------------------------------------------------------------------


class ToolExecutionCoordinator:
    """Executes tool batches concurrently against the host executor.

    Example:
        coordinator = ToolExecutionCoordinator(executor, Path("."), timeout=30)
        batch = await coordinator.execute_tools(parsed.tool_calls)
        payload = batch.continuation_payload()
    """

    def __init__(
        self,
        executor: ToolExecutor,
        working_directory: Path,
        *,
        pool: Executor | None = None,
        max_concurrency: int | None = None,
        timeout: float | None = None,
    ) -> None:
        """Initialize the coordinator.

        Args:
            executor: Host-provided tool implementation.
            working_directory: Directory handed to every tool call.
            pool: Thread pool for synchronous executors; the loop's default
                executor is used when omitted.
            max_concurrency: Upper bound on tools running at once.
            timeout: Per-tool timeout in seconds.
        """
        self._executor = executor
        self._working_directory = Path(working_directory)
        self._pool = pool
        self._max_concurrency = max_concurrency if max_concurrency and max_concurrency > 0 else None
        self._timeout = timeout if timeout and timeout > 0 else None
        self._is_async = inspect.iscoroutinefunction(getattr(executor, "execute", None))

    @property
    def working_directory(self) -> Path:
        return self._working_directory

    async def execute_tools(self, calls: Sequence[ToolCallRequest]) -> ToolBatchResult:
        """Run every call and wait for all of them.

        A failing tool never aborts its siblings. Cancelling the awaiting
        task does not interrupt a batch that was already dispatched.
        """
        if not calls:
            return ToolBatchResult(usages=(), results=())
        return await asyncio.shield(self._run_batch(list(calls)))

    async def _run_batch(self, calls: list[ToolCallRequest]) -> ToolBatchResult:
        semaphore = asyncio.Semaphore(self._max_concurrency) if self._max_concurrency else None
        usages = [self._usage_for(call) for call in calls]
        LOGGER.debug("Dispatching %d tool call(s)", len(calls))
        outcomes = await asyncio.gather(
            *(self._run_one(call, usage, semaphore) for call, usage in zip(calls, usages))
        )
        results = tuple(
            {"toolName": call.name, "result": result} for call, (result, _) in zip(calls, outcomes)
        )
        errors = tuple(error for _, error in outcomes if error is not None)
        batch = ToolBatchResult(usages=tuple(usages), results=results, errors=errors)
        if batch.failed_count:
            LOGGER.info("%d of %d tool call(s) failed", batch.failed_count, len(calls))
        return batch

    async def _run_one(
        self,
        call: ToolCallRequest,
        usage: ToolUsage,
        semaphore: asyncio.Semaphore | None,
    ) -> Tuple[Dict[str, Any], ToolExecutionError | None]:
        if semaphore is None:
            return await self._invoke(call, usage)
        async with semaphore:
            return await self._invoke(call, usage)

    async def _invoke(
        self, call: ToolCallRequest, usage: ToolUsage
    ) -> Tuple[Dict[str, Any], ToolExecutionError | None]:
        usage.start()
        start_time = time.perf_counter()
        error: ToolExecutionError | None = None
        try:
            raw = await self._call_executor(call)
            result = _normalize_result(raw)
        except asyncio.TimeoutError as exc:
            message = f"Tool '{call.name}' timed out after {self._timeout}s"
            LOGGER.warning("%s", message)
            error = ToolExecutionError(message, tool_name=call.name, cause=exc)
            result = {"ok": False, "error": message}
        except Exception as exc:
            LOGGER.warning("Tool %s failed: %s", call.name, exc, exc_info=True)
            error = ToolExecutionError(f"Tool '{call.name}' failed: {exc}", tool_name=call.name, cause=exc)
            result = {"ok": False, "error": str(exc) or type(exc).__name__}
        duration_ms = (time.perf_counter() - start_time) * 1000
        usage.finish(result, duration_ms)
        LOGGER.debug("Tool %s finished in %.1fms (ok=%s)", call.name, duration_ms, usage.ok)
        return result, error

    async def _call_executor(self, call: ToolCallRequest) -> Any:
        args_json = call.arguments_json
        if self._is_async:
            awaitable = self._executor.execute(self._working_directory, call.name, args_json)
        else:
            loop = asyncio.get_running_loop()
            awaitable = loop.run_in_executor(
                self._pool,
                functools.partial(self._executor.execute, self._working_directory, call.name, args_json),
            )
        if self._timeout is not None:
            return await asyncio.wait_for(awaitable, timeout=self._timeout)
        return await awaitable

    @staticmethod
    def _usage_for(call: ToolCallRequest) -> ToolUsage:
        path = call.arguments.get("path") or call.arguments.get("oldPath")
        return ToolUsage(
            tool_name=call.name,
            args_json=call.arguments_json,
            file_path=str(path) if path else None,
        )


def _normalize_result(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, Mapping):
        return dict(raw)
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    if isinstance(raw, str):
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError:
            return {"ok": True, "output": raw}
        if isinstance(decoded, dict):
            return decoded
        return {"ok": True, "output": decoded}
    if raw is None:
        return {"ok": True}
    return {"ok": True, "output": raw}
