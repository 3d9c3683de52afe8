"""Exception hierarchy for kernelbridge.

All exceptions inherit from KernelBridgeError.

Hierarchy:
    KernelBridgeError (base)
    ├── LaunchError                     ← server process could not be spawned
    ├── ProcessExitedError              ← process exited before announcing an endpoint
    ├── ConnectionNegotiationError
    │   ├── ConnectionTimeoutError      ← no endpoint before the deadline
    │   ├── RemoteConnectionRefusedError
    │   └── UntrustedCertificateError   ← self-signed cert without opt-in
    ├── OperationCanceledError          ← cancellation token fired
    ├── KernelPromiseTimeoutError       ← restart/interrupt/idle deadline exceeded
    ├── KernelDiedError                 ← kernel or server died
    ├── KernelRestartedError            ← execution overtaken by a kernel restart
    ├── ServerRequestError              ← REST call to the notebook server failed
    └── SessionDisposedError            ← session used after dispose()
"""

from typing import Any, Dict, Optional


class KernelBridgeError(Exception):
    """Base exception for all kernelbridge errors.

    Attributes:
        message: Human-readable error message
        context: Structured error context for logging/debugging
    """

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


class LaunchError(KernelBridgeError):
    """The notebook server process could not be started."""


class ProcessExitedError(KernelBridgeError):
    """The launched process exited before a connection was established."""

    def __init__(self, message: str, exit_code: Optional[int] = None, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, context)
        self.exit_code = exit_code


class ConnectionNegotiationError(KernelBridgeError):
    """Base for failures while obtaining a reachable endpoint."""


class ConnectionTimeoutError(ConnectionNegotiationError):
    """No endpoint was announced (or answered) before the deadline."""


class RemoteConnectionRefusedError(ConnectionNegotiationError, ConnectionRefusedError):
    """The endpoint refused the handshake or rejected the token."""


class UntrustedCertificateError(ConnectionNegotiationError):
    """The endpoint presented a certificate that could not be verified.

    Terminal unless the caller retries with unauthorized remote connections allowed.
    """


class OperationCanceledError(KernelBridgeError):
    """A cancellation token was triggered while the operation was suspended."""

    def __init__(self, message: str = "Operation canceled", context: Optional[Dict[str, Any]] = None):
        super().__init__(message, context)


class KernelPromiseTimeoutError(KernelBridgeError):
    """A kernel restart, interrupt or idle wait did not complete in time."""

    def __init__(self, message: str, timeout_ms: Optional[int] = None, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, context)
        self.timeout_ms = timeout_ms


class KernelDiedError(KernelBridgeError):
    """The kernel (or the server hosting it) exited unexpectedly."""


class SessionDisposedError(KernelBridgeError):
    """The session has been disposed and can no longer be used."""


class KernelRestartedError(KernelBridgeError):
    """An execution was queued or running when the kernel restarted."""


class ServerRequestError(KernelBridgeError):
    """A REST request to the notebook server failed."""

    def __init__(self, message: str, status: Optional[int] = None, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, context)
        self.status = status
