"""Synchronous tool execution that always returns a :class:`ToolResult`."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import CancelledError, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Mapping, Optional

from ..models.messages import ToolErrorKind, ToolResult
from .registry import ToolRegistry

__all__ = ["ToolExecutionBridge"]

LOGGER = logging.getLogger(__name__)


class ToolExecutionBridge:
    """Run registry tools on a worker thread so the caller never blocks indefinitely."""

    def __init__(
        self,
        registry: ToolRegistry,
        *,
        timeout: Optional[float] = 600.0,
        executor: Optional[ThreadPoolExecutor] = None,
    ) -> None:
        self._registry = registry
        self._timeout = timeout
        self._owns_executor = executor is None
        self._executor = executor or _worker_pool()

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    def execute(
        self,
        name: str,
        args: Optional[Mapping[str, Any]] = None,
        *,
        cancel: Optional[threading.Event] = None,
    ) -> ToolResult:
        if cancel is not None and cancel.is_set():
            return ToolResult.failure(f"Tool '{name}' was cancelled before it started.", ToolErrorKind.CANCELLED)

        tool = self._registry.get_tool(name)
        if tool is None:
            return ToolResult.failure(f"Tool '{name}' not found.", ToolErrorKind.UNKNOWN_TOOL)

        raw_args = dict(args or {})
        try:
            params = tool.validate_params(raw_args)
            if params is None:
                details = "; ".join(tool.param_errors(raw_args)) or "parameters did not validate"
                return ToolResult.failure(f"Invalid parameters for '{name}': {details}", ToolErrorKind.INVALID_PARAMS)
            invocation = tool.build(params)
        except Exception as error:
            LOGGER.warning("Tool %s rejected its parameters: %s", name, error)
            return ToolResult.failure(f"Invalid parameters for '{name}': {error}", ToolErrorKind.INVALID_PARAMS)

        future = self._executor.submit(invocation.execute)
        try:
            result = future.result(timeout=self._timeout)
        except FutureTimeout:
            if not future.cancel():
                self._abandon_worker(name)
            return ToolResult.failure(f"Tool '{name}' timed out after {self._timeout}s.", ToolErrorKind.TIMEOUT)
        except CancelledError:
            return ToolResult.failure(f"Tool '{name}' was cancelled.", ToolErrorKind.CANCELLED)
        except Exception as error:
            LOGGER.warning("Tool %s failed: %s", name, error)
            return ToolResult.failure(f"Tool '{name}' failed: {error}", ToolErrorKind.EXECUTION_FAILED)

        if not isinstance(result, ToolResult):
            return ToolResult.failure(f"Tool '{name}' returned no result.", ToolErrorKind.EXECUTION_FAILED)
        return result

    def _abandon_worker(self, name: str) -> None:
        """Leave the stuck call on its old worker and give later calls a fresh one."""
        LOGGER.warning("Tool %s is still running after its timeout; moving to a new worker", name)
        if self._owns_executor:
            self._executor.shutdown(wait=False)
        self._executor = _worker_pool()
        self._owns_executor = True

    def close(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=False)


def _worker_pool() -> ThreadPoolExecutor:
    return ThreadPoolExecutor(max_workers=1, thread_name_prefix="relay-tool")
