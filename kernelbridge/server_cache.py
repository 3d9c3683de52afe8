"""
ServerCache - at most one live KernelSession per launch fingerprint.

Concurrent connect() calls for the same fingerprint share one creation.
The in-flight slot is claimed while the table lock is held, so a second
caller always finds either the live session or the pending creation.
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional, Set, Tuple

from .core.cancellation import CancellationToken, CancellationTokenSource, race
from .core.config import BridgeConfig
from .core.interceptors import InterceptorChain
from .exceptions import OperationCanceledError, SessionDisposedError
from .kernel_session import KernelSession
from .models import LaunchOptions
from .server_factory import ServerFactory

Fingerprint = Tuple[bool, Optional[str], str]


class _PendingCreation:
    """A creation in flight and the callers waiting on it."""

    def __init__(self, key: Fingerprint, source: CancellationTokenSource):
        self.key = key
        self.source = source
        self.task: Optional[asyncio.Task] = None
        self.waiters = 0


class ServerCache:
    """
    Manages the lifecycle of cached kernel sessions.
    """

    def __init__(
        self,
        factory: Optional[ServerFactory] = None,
        config: Optional[BridgeConfig] = None,
        interceptors: Optional[InterceptorChain] = None,
    ):
        self.factory = factory or ServerFactory()
        self.config = config or BridgeConfig()
        self.sessions: Dict[Fingerprint, KernelSession] = {}
        self._pending: Dict[Fingerprint, _PendingCreation] = {}
        self._lock = asyncio.Lock()
        self._interceptors = interceptors or InterceptorChain()
        self._background: Set[asyncio.Task] = set()
        self._disposed = False
        self._logger = logging.getLogger("kernelbridge.server_cache")

    async def connect(
        self,
        options: Optional[LaunchOptions] = None,
        config: Optional[BridgeConfig] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> KernelSession:
        """
        Return the live session for options, creating it if necessary.

        Args:
            options: Launch options; only their fingerprint decides sharing
                (default: LaunchOptions with the configured use_default_config)
            config: Configuration used if a new session has to be created
            cancel_token: Cancels this caller's wait. The shared creation is
                canceled only when every waiting caller has canceled.

        Raises:
            OperationCanceledError: If cancel_token fires first
            SessionDisposedError: If the cache was disposed
            KernelBridgeError: Whatever the creation failed with; it is not retried
        """
        config = config or self.config
        options = options or LaunchOptions(use_default_config=config.use_default_config)
        return await self._interceptors.invoke("connect", lambda: self._connect(options, config, cancel_token))

    async def _connect(
        self, options: LaunchOptions, config: BridgeConfig, cancel_token: Optional[CancellationToken]
    ) -> KernelSession:
        if cancel_token is not None:
            cancel_token.raise_if_cancelled("Connect canceled")

        key = options.fingerprint()
        async with self._lock:
            if self._disposed:
                raise SessionDisposedError("Server cache has been disposed")

            session = self.sessions.get(key)
            if session is not None:
                if session.is_healthy:
                    self._logger.debug(f"Reusing session {session.id[:8]} for {key}")
                    return session
                self._logger.info(f"Purging unhealthy session {session.id[:8]}")
                self._purge(key, session)

            pending = self._pending.get(key)
            if pending is None:
                pending = self._begin_creation(key, options, config)
            else:
                self._logger.debug(f"Joining in-flight creation for {key}")
            pending.waiters += 1

        try:
            return await race(asyncio.shield(pending.task), cancel_token, "Connect canceled")
        except OperationCanceledError:
            self._release_waiter(pending)
            raise

    def _begin_creation(self, key: Fingerprint, options: LaunchOptions, config: BridgeConfig) -> _PendingCreation:
        pending = _PendingCreation(key, CancellationTokenSource())
        pending.task = asyncio.create_task(self._create(pending, options, config))
        pending.task.add_done_callback(self._log_creation_outcome)
        self._pending[key] = pending
        self._logger.info(f"Creating session for {key}")
        return pending

    def _release_waiter(self, pending: _PendingCreation) -> None:
        pending.waiters -= 1
        if pending.waiters > 0 or pending.task.done():
            return
        self._logger.info(f"Every caller canceled; canceling creation for {pending.key}")
        if self._pending.get(pending.key) is pending:
            del self._pending[pending.key]
        pending.source.cancel()

    async def _create(self, pending: _PendingCreation, options: LaunchOptions, config: BridgeConfig) -> KernelSession:
        try:
            session = await self.factory.create(options, config, pending.source.token)
            if pending.source.is_cancelled or self._disposed:
                await session.dispose()
                raise OperationCanceledError("Session creation canceled")
            self.sessions[pending.key] = session
            session.on_terminated(lambda s: self._on_session_terminated(pending.key, s))
            self._logger.info(f"Session {session.id[:8]} ready for {pending.key}")
            return session
        finally:
            if self._pending.get(pending.key) is pending:
                del self._pending[pending.key]
            pending.source.dispose()

    def _log_creation_outcome(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None and not isinstance(error, OperationCanceledError):
            self._logger.error(f"Session creation failed: {error}")

    def _on_session_terminated(self, key: Fingerprint, session: KernelSession) -> None:
        if self.sessions.get(key) is session:
            del self.sessions[key]
            self._logger.info(f"Session {session.id[:8]} terminated, removed from cache")

    def _purge(self, key: Fingerprint, session: KernelSession) -> None:
        if self.sessions.get(key) is session:
            del self.sessions[key]
        task = asyncio.ensure_future(session.dispose())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def list_sessions(self) -> List[Dict[str, Any]]:
        """
        Get information about all live sessions.
        """
        return [session.info() for session in self.sessions.values()]

    async def dispose(self) -> None:
        """
        Dispose every cached session and cancel in-flight creations.
        """
        if self._disposed:
            return
        async with self._lock:
            self._disposed = True
            sessions = list(self.sessions.values())
            pending = list(self._pending.values())
            self.sessions.clear()
            self._pending.clear()

        self._logger.info(f"Disposing {len(sessions)} sessions and {len(pending)} pending creations")
        for creation in pending:
            creation.source.cancel()

        results = await asyncio.gather(
            *(session.dispose() for session in sessions),
            *(creation.task for creation in pending),
            *self._background,
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, Exception) and not isinstance(result, OperationCanceledError):
                self._logger.warning(f"Error while disposing the cache: {result}")
