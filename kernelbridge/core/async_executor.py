"""
AsyncExecutor - the boundary between a host's command layer and kernelbridge.

Command handlers in the host run kernelbridge coroutines through this class.
User-initiated cancellation is swallowed here (logged at info level); every
other failure is logged, reported through the optional notifier and re-raised.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from ..exceptions import OperationCanceledError

Notifier = Callable[[str, str], None]


class AsyncExecutor:
    """
    Centralized async execution management for host command handlers.

    Handles event loop detection, proper task scheduling, and error handling
    for kernelbridge operations invoked from synchronous host callbacks.
    """

    def __init__(self, notifier: Optional[Notifier] = None, logger: Optional[logging.Logger] = None):
        """
        Initialize the AsyncExecutor.

        Args:
            notifier: Optional callable(message, level) used to surface errors to the user.
                level is 'info' or 'error'.
            logger: Optional logger instance. If None, will create one.
        """
        self.notifier = notifier
        self._logger = logger or logging.getLogger("kernelbridge.async_executor")

    def _notify(self, message: str, level: str) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier(message, level)
        except Exception as notify_error:
            self._logger.error(f"Failed to notify user: {notify_error}")

    async def execute_async(self, coro: Awaitable[Any], error_context: str = "operation") -> Any:
        """
        Execute an async coroutine with proper error handling.

        Args:
            coro: The coroutine to execute
            error_context: Context string for error messages

        Returns:
            The result of the coroutine execution, or None if it was canceled
        """
        try:
            return await coro
        except OperationCanceledError:
            self._logger.info(f"{error_context} canceled")
            return None
        except Exception as e:
            self._logger.error(f"{error_context} failed: {e}")
            self._notify(f"{error_context} failed: {e}", "error")
            raise

    def execute_sync(self, coro: Optional[Awaitable[Any]], error_context: str = "operation") -> Any:
        """
        Execute an async coroutine from a sync context with proper event loop handling.

        When a loop is already running the coroutine is scheduled as a background
        task and None is returned; failures are then logged and reported via the notifier.

        Args:
            coro: The coroutine to execute
            error_context: Context string for error messages

        Returns:
            The result of the coroutine execution
        """
        if coro is None:
            return None

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is None:
            return asyncio.run(self.execute_async(coro, error_context))

        task = loop.create_task(self.execute_async(coro, error_context))

        def handle_task_exception(task):
            """Handle exceptions from background tasks"""
            if task.cancelled():
                return
            if task.exception():
                self._logger.error(f"Background task failed in {error_context}: {task.exception()}")

        task.add_done_callback(handle_task_exception)
        return None
