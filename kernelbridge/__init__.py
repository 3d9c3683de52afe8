"""
kernelbridge - launch, cache and drive Jupyter kernels for editor integrations.

A ServerCache hands out one KernelSession per launch fingerprint. Sessions
execute code cell by cell and stream Cell snapshots back to the caller.
"""
from .core.async_executor import AsyncExecutor
from .core.cancellation import CancellationToken, CancellationTokenSource
from .core.config import BridgeConfig, configure_logging, load_config
from .core.interceptors import InterceptorChain, LoggingInterceptor
from .exceptions import (
    ConnectionNegotiationError,
    ConnectionTimeoutError,
    KernelBridgeError,
    KernelDiedError,
    KernelPromiseTimeoutError,
    KernelRestartedError,
    LaunchError,
    OperationCanceledError,
    ProcessExitedError,
    RemoteConnectionRefusedError,
    ServerRequestError,
    SessionDisposedError,
    UntrustedCertificateError,
)
from .execution import ExecutionLogger, ExecutionPipeline
from .kernel_session import KernelSession
from .models import (
    Cell,
    CellOutput,
    CellState,
    CellType,
    Connection,
    InterruptResult,
    KernelSpecInfo,
    KernelStatus,
    LaunchOptions,
)
from .server_cache import ServerCache
from .server_factory import InterpreterDiscovery, ProcessDiscovery, ServerFactory

__version__ = "0.1.0"

__all__ = [
    "AsyncExecutor",
    "BridgeConfig",
    "CancellationToken",
    "CancellationTokenSource",
    "Cell",
    "CellOutput",
    "CellState",
    "CellType",
    "Connection",
    "ConnectionNegotiationError",
    "ConnectionTimeoutError",
    "ExecutionLogger",
    "ExecutionPipeline",
    "InterceptorChain",
    "InterpreterDiscovery",
    "InterruptResult",
    "KernelBridgeError",
    "KernelDiedError",
    "KernelPromiseTimeoutError",
    "KernelRestartedError",
    "KernelSession",
    "KernelSpecInfo",
    "KernelStatus",
    "LaunchError",
    "LaunchOptions",
    "LoggingInterceptor",
    "OperationCanceledError",
    "ProcessDiscovery",
    "ProcessExitedError",
    "RemoteConnectionRefusedError",
    "ServerCache",
    "ServerFactory",
    "ServerRequestError",
    "SessionDisposedError",
    "UntrustedCertificateError",
    "configure_logging",
    "load_config",
]
