"""
Cross-cutting interceptors invoked around public session and cache operations.

An interceptor wraps one call: it receives the operation name and a
zero-argument coroutine function, and must await it exactly once.
"""
import logging
import time
from typing import Any, Awaitable, Callable, List, Optional, Protocol, Sequence

from ..exceptions import OperationCanceledError


class Interceptor(Protocol):
    async def around(self, name: str, call: Callable[[], Awaitable[Any]]) -> Any:
        ...


class LoggingInterceptor:
    """Logs start, duration and outcome of every intercepted operation."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self._logger = logger or logging.getLogger("kernelbridge.operations")

    async def around(self, name: str, call: Callable[[], Awaitable[Any]]) -> Any:
        started = time.monotonic()
        self._logger.debug(f"{name} started")
        try:
            result = await call()
        except OperationCanceledError:
            self._logger.info(f"{name} canceled after {time.monotonic() - started:.3f}s")
            raise
        except Exception as e:
            self._logger.warning(f"{name} failed after {time.monotonic() - started:.3f}s: {e}")
            raise
        self._logger.debug(f"{name} completed in {time.monotonic() - started:.3f}s")
        return result


class InterceptorChain:
    """
    Ordered interceptors; the first one is outermost.
    """

    def __init__(self, interceptors: Optional[Sequence[Interceptor]] = None):
        self._interceptors: List[Interceptor] = list(interceptors) if interceptors is not None else [LoggingInterceptor()]

    def add(self, interceptor: Interceptor) -> None:
        self._interceptors.append(interceptor)

    async def invoke(self, name: str, call: Callable[[], Awaitable[Any]]) -> Any:
        wrapped = call
        for interceptor in reversed(self._interceptors):
            wrapped = _bind(interceptor, name, wrapped)
        return await wrapped()


def _bind(interceptor: Interceptor, name: str, call: Callable[[], Awaitable[Any]]) -> Callable[[], Awaitable[Any]]:
    async def invoke():
        return await interceptor.around(name, call)

    return invoke
