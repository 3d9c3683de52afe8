"""
Cooperative cancellation tokens and call-local deadlines.

Every suspendable operation in kernelbridge accepts an optional
CancellationToken. Operations observe the token at their suspension points
and unwind with OperationCanceledError. Deadlines are wall-clock timeouts
local to one call and surface as the caller's typed timeout error.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

from ..exceptions import KernelBridgeError, OperationCanceledError

T = TypeVar("T")

_logger = logging.getLogger("kernelbridge.cancellation")


class CancellationToken:
    """Read-only view of a CancellationTokenSource."""

    def __init__(self, source: Optional["CancellationTokenSource"] = None):
        self._source = source

    @classmethod
    def none(cls) -> "CancellationToken":
        """A token that is never cancelled."""
        return cls(None)

    @property
    def is_cancellation_requested(self) -> bool:
        return self._source is not None and self._source.is_cancelled

    def raise_if_cancelled(self, message: str = "Operation canceled") -> None:
        if self.is_cancellation_requested:
            raise OperationCanceledError(message)

    def register(self, callback: Callable[[], Any]) -> Callable[[], None]:
        """
        Invoke callback once when cancellation is requested.

        Returns a function that removes the registration.
        """
        if self._source is None:
            return lambda: None
        return self._source._register(callback)

    async def wait(self) -> None:
        """Suspend until cancellation is requested (forever for CancellationToken.none())."""
        if self._source is None:
            await asyncio.Event().wait()
            return
        await self._source._event.wait()


class CancellationTokenSource:
    """Owner side of a cancellation token."""

    def __init__(self):
        self._event = asyncio.Event()
        self._callbacks: List[Callable[[], Any]] = []
        self._unlinks: List[Callable[[], None]] = []
        self.token = CancellationToken(self)

    @classmethod
    def linked(cls, *tokens: Optional[CancellationToken]) -> "CancellationTokenSource":
        """Create a source that is cancelled as soon as any of the given tokens is."""
        source = cls()
        for token in tokens:
            if token is None:
                continue
            if token.is_cancellation_requested:
                source.cancel()
            else:
                source._unlinks.append(token.register(source.cancel))
        return source

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        if self._event.is_set():
            return
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                _logger.warning(f"Cancellation callback failed: {e}")

    def dispose(self) -> None:
        """Detach from any parent tokens and drop callbacks."""
        for unlink in self._unlinks:
            unlink()
        self._unlinks.clear()
        self._callbacks.clear()

    def _register(self, callback: Callable[[], Any]) -> Callable[[], None]:
        if self._event.is_set():
            callback()
            return lambda: None
        self._callbacks.append(callback)

        def unregister():
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass

        return unregister


def deadline_ms_to_seconds(timeout_ms: Optional[float]) -> Optional[float]:
    """None or a non-positive value means no deadline."""
    if timeout_ms is None or timeout_ms <= 0:
        return None
    return timeout_ms / 1000.0


async def race(awaitable: Awaitable[T], token: Optional[CancellationToken], message: str = "Operation canceled") -> T:
    """
    Await awaitable unless token is cancelled first.

    On cancellation the inner task is cancelled and OperationCanceledError raised.
    Partial side effects of the inner operation are not rolled back.
    """
    if token is None or token._source is None:
        return await awaitable
    if token.is_cancellation_requested:
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise OperationCanceledError(message)

    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(token.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        waiter.cancel()

    if task.done():
        return task.result()

    task.cancel()
    try:
        await task
    except (asyncio.CancelledError, Exception):
        pass
    raise OperationCanceledError(message)


async def with_deadline(
    awaitable: Awaitable[T],
    timeout_ms: Optional[float],
    error_factory: Callable[[], KernelBridgeError],
    token: Optional[CancellationToken] = None,
) -> T:
    """
    Await awaitable under a call-local deadline and an optional cancellation token.

    Raises the error built by error_factory when the deadline passes; raises
    OperationCanceledError when the token fires first.
    """
    timeout = deadline_ms_to_seconds(timeout_ms)
    try:
        return await asyncio.wait_for(race(awaitable, token), timeout=timeout)
    except asyncio.TimeoutError:
        raise error_factory() from None
